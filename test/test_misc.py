from datetime import datetime, timezone
import base64
import json
import io

import pytest

from protolauncher.util import LibrarySpecifier, calc_input_sha1, calc_file_sha1, from_iso_date, decode_jwt_payload
from protolauncher.http import http_request, http_head_size, HttpError
from protolauncher.context import Context, Endpoints
from protolauncher.system import PlatformInfo


def test_lib_spec():

    spec = LibrarySpecifier.from_str("foo.bar:baz:0.1.0")
    assert (spec.group, spec.artifact, spec.version, spec.classifier, spec.extension) == ("foo.bar", "baz", "0.1.0", None, "jar")
    assert str(spec) == "foo.bar:baz:0.1.0"
    assert spec.file_path() == "foo/bar/baz/0.1.0/baz-0.1.0.jar"

    spec = LibrarySpecifier.from_str("foo.bar:baz:0.1.0:natives-linux@zip")
    assert spec.classifier == "natives-linux"
    assert spec.extension == "zip"
    assert str(spec) == "foo.bar:baz:0.1.0:natives-linux@zip"
    assert spec.file_path() == "foo/bar/baz/0.1.0/baz-0.1.0-natives-linux.zip"

    spec = LibrarySpecifier.from_str("foo.bar:baz:0.1.0").with_classifier("natives-osx")
    assert spec == LibrarySpecifier("foo.bar", "baz", "0.1.0", "natives-osx")

    with pytest.raises(ValueError):
        LibrarySpecifier.from_str("foo.bar:baz")
    with pytest.raises(ValueError):
        LibrarySpecifier.from_str("foo.bar:baz:0.1.0@")


def test_sha1(tmp_path):

    assert calc_input_sha1(io.BytesIO(b"hello world")) == "2aae6c35c94fcfb415dbe95f408b9ce91ee846ed"

    file = tmp_path / "file"
    file.write_bytes(b"hello world")
    assert calc_file_sha1(file) == "2aae6c35c94fcfb415dbe95f408b9ce91ee846ed"
    assert calc_file_sha1(tmp_path / "missing") is None


def test_from_iso_date():
    expected = datetime(2023, 6, 12, 13, 25, 51, tzinfo=timezone.utc)
    assert from_iso_date("2023-06-12T13:25:51+00:00") == expected
    assert from_iso_date("2023-06-12T13:25:51Z") == expected
    assert from_iso_date("2023-06-12T13:25:51") == expected


def test_decode_jwt_payload():

    payload = base64.urlsafe_b64encode(json.dumps({"xuid": "123"}).encode()).decode().rstrip("=")
    assert decode_jwt_payload(f"header.{payload}.signature") == {"xuid": "123"}

    with pytest.raises(ValueError):
        decode_jwt_payload("not a jwt")


def test_context(tmp_path):

    context = Context(tmp_path / "main", tmp_path / "work")
    assert context.versions_dir == tmp_path / "main" / "versions"
    assert context.version_jar_file("1.20.1") == tmp_path / "main" / "versions" / "1.20.1" / "1.20.1.jar"
    assert context.bin_dir == tmp_path / "work" / "bin"
    assert context.gen_bin_dir() != context.gen_bin_dir()

    context = Context(tmp_path)
    assert context.work_dir == tmp_path


def test_endpoints():
    endpoints = Endpoints(resources="http://localhost/objects", mc_services="http://localhost/mc/")
    assert endpoints.resources == "http://localhost/objects/"
    assert endpoints.mc_services == "http://localhost/mc/"


def test_platform():

    assert PlatformInfo("linux", "", "x86_64", 64).jvm_os == "linux"
    assert PlatformInfo("osx", "", "arm64", 64).jvm_os == "mac-os-arm64"
    assert PlatformInfo("linux", "", "arm32", 32).jvm_os is None
    assert PlatformInfo("windows", "", "x86_64", 64).jvm_bin_filename == "javaw.exe"

    current = PlatformInfo.current()
    assert isinstance(current.os_version, str)


def test_http_request(file_server):

    file_server.routes["/json"] = (200, b'{"hello": "world"}', {"X-Custom": "value"})
    file_server.routes["/error"] = (500, b"error", {})

    res = http_request("GET", f"{file_server.url}/json", accept="application/json")
    assert res.status == 200
    assert res.json() == {"hello": "world"}
    assert res.headers["X-Custom"] == "value"

    # The user agent is always sent.
    _method, _path, headers = file_server.requests[-1]
    assert headers["User-Agent"].startswith("protolauncher/")

    with pytest.raises(HttpError) as err:
        http_request("GET", f"{file_server.url}/error")
    assert err.value.res.status == 500
    assert err.value.res.data == b"error"
    assert not err.value.is_network()

    with pytest.raises(HttpError) as err:
        http_request("GET", "http://127.0.0.1:1/")
    assert err.value.is_network()

    assert http_head_size(f"{file_server.url}/json") == len(b'{"hello": "world"}')
