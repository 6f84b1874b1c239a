from datetime import datetime, timedelta, timezone
import hashlib
import json

import pytest

from protolauncher.version import VersionManifest, VersionDirectory, VersionNotFoundError, \
    TooMuchParentsError, merge, resolve_arguments, expand_arguments, write_atomic
from protolauncher.metadata import ArgumentTemplate, parse_version, parse_arguments
from protolauncher.download import IntegrityError
from protolauncher.http import HttpError
from protolauncher.system import PlatformInfo


LINUX = PlatformInfo("linux", "6.1.0", "x86_64", 64)
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _manifest_data(*versions):
    return {
        "latest": {"release": "1.20.1", "snapshot": "23w31a"},
        "versions": list(versions)
    }


def _write_cache(path, last_update):
    data = _manifest_data({"id": "cached", "type": "release"})
    data["last_update"] = last_update.isoformat()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


def test_manifest_outdated_cache(tmp_path, file_server):

    file_server.routes["/manifest.json"] = json.dumps(_manifest_data({"id": "fresh", "type": "release"})).encode()

    cache_file = tmp_path / "version_manifest.json"
    _write_cache(cache_file, NOW - timedelta(hours=13))

    manifest = VersionManifest(cache_file, url=f"{file_server.url}/manifest.json", clock=lambda: NOW)
    assert manifest.get_version("fresh") is not None
    assert file_server.count("/manifest.json") == 1

    # The cache is rewritten with the new fetch instant.
    cache_data = json.loads(cache_file.read_text())
    assert cache_data["last_update"] == NOW.isoformat()


def test_manifest_fresh_cache(tmp_path, file_server):

    file_server.routes["/manifest.json"] = json.dumps(_manifest_data({"id": "fresh", "type": "release"})).encode()

    cache_file = tmp_path / "version_manifest.json"
    _write_cache(cache_file, NOW - timedelta(hours=1))

    manifest = VersionManifest(cache_file, url=f"{file_server.url}/manifest.json", clock=lambda: NOW)
    assert manifest.get_version("cached") is not None
    assert manifest.get_version("fresh") is None
    assert file_server.count("/manifest.json") == 0


def test_manifest_max_age(tmp_path, file_server):

    file_server.routes["/manifest.json"] = json.dumps(_manifest_data()).encode()

    cache_file = tmp_path / "version_manifest.json"
    _write_cache(cache_file, NOW - timedelta(hours=1))

    manifest = VersionManifest(cache_file, url=f"{file_server.url}/manifest.json", clock=lambda: NOW)
    manifest.load(timedelta(minutes=30))
    assert file_server.count("/manifest.json") == 1


def test_manifest_offline_uses_cache(tmp_path):

    cache_file = tmp_path / "version_manifest.json"
    _write_cache(cache_file, NOW - timedelta(days=3))

    # Nothing listens on this port.
    manifest = VersionManifest(cache_file, url="http://127.0.0.1:1/manifest.json", clock=lambda: NOW)
    assert manifest.get_version("cached") is not None


def test_manifest_offline_without_cache(tmp_path):
    manifest = VersionManifest(tmp_path / "missing.json", url="http://127.0.0.1:1/manifest.json")
    with pytest.raises(HttpError) as err:
        manifest.load()
    assert err.value.is_network()


def test_manifest_alias(tmp_path, file_server):

    file_server.routes["/manifest.json"] = json.dumps(_manifest_data({"id": "1.20.1", "type": "release"})).encode()
    manifest = VersionManifest(None, url=f"{file_server.url}/manifest.json")

    assert manifest.filter_latest("release") == ("1.20.1", True)
    assert manifest.filter_latest("1.19") == ("1.19", False)
    assert manifest.get_version("release")["id"] == "1.20.1"


def _serve_versions(file_server, *descriptors):
    """Serve every descriptor and its manifest entry, return the manifest."""
    entries = []
    for data in descriptors:
        raw = json.dumps(data).encode()
        path = f"/v1/{data['id']}.json"
        file_server.routes[path] = raw
        entries.append({
            "id": data["id"],
            "type": "release",
            "url": f"{file_server.url}{path}",
            "sha1": hashlib.sha1(raw).hexdigest()
        })
    file_server.routes["/manifest.json"] = json.dumps(_manifest_data(*entries)).encode()
    return VersionManifest(None, url=f"{file_server.url}/manifest.json")


def test_resolve_version_hierarchy(context, file_server):

    manifest = _serve_versions(file_server, {
        "id": "parent",
        "type": "release",
        "mainClass": "net.minecraft.client.main.Main",
        "libraries": [{"name": "a:a:1"}, {"name": "b:b:1"}],
        "arguments": {"game": ["--parent"]}
    }, {
        "id": "child",
        "inheritsFrom": "parent",
        "mainClass": "net.fabricmc.loader.impl.launch.knot.KnotClient",
        "libraries": [{"name": "c:c:1"}],
        "arguments": {"game": ["--child"]}
    })

    directory = VersionDirectory(context, manifest)
    desc = directory.resolve_version("child")

    assert desc.id == "child"
    assert desc.type == "release"
    assert desc.main_class == "net.fabricmc.loader.impl.launch.knot.KnotClient"
    assert desc.inherits_from is None
    assert [lib.spec.artifact for lib in desc.libraries] == ["a", "b", "c"]
    assert expand_arguments(desc.game_args, LINUX) == ["--parent", "--child"]

    # Both descriptors have been stored locally.
    assert context.version_metadata_file("parent").is_file()
    assert context.version_metadata_file("child").is_file()

    # Resolving again reuses the stored descriptors.
    directory.resolve_version("child")
    assert file_server.count("/v1/child.json") == 1


def test_resolve_version_case_insensitive(context, file_server):
    manifest = _serve_versions(file_server, {"id": "Combat-Test-8c"})
    desc = VersionDirectory(context, manifest).resolve_version("combat-test-8c")
    assert desc.id == "Combat-Test-8c"
    assert context.version_metadata_file("Combat-Test-8c").is_file()


def test_stale_descriptor_is_fetched_again(context, file_server):

    manifest = _serve_versions(file_server, {"id": "1.20.1", "mainClass": "new"})
    write_atomic(context.version_metadata_file("1.20.1"), json.dumps({"id": "1.20.1", "mainClass": "old"}).encode())

    desc = VersionDirectory(context, manifest).resolve_version("1.20.1")
    assert desc.main_class == "new"
    assert file_server.count("/v1/1.20.1.json") == 1


def test_descriptor_integrity(context, file_server):

    manifest = _serve_versions(file_server, {"id": "1.20.1"})
    # Serve another content than the one referenced by the manifest.
    file_server.routes["/v1/1.20.1.json"] = json.dumps({"id": "1.20.1", "mainClass": "x"}).encode()

    with pytest.raises(IntegrityError):
        VersionDirectory(context, manifest).resolve_version("1.20.1")

    assert not context.version_metadata_file("1.20.1").exists()


def test_local_only_version(context, file_server):

    manifest = _serve_versions(file_server, {"id": "1.20.1"})
    write_atomic(context.version_metadata_file("custom"), json.dumps({"id": "custom", "mainClass": "Custom"}).encode())

    directory = VersionDirectory(context, manifest)
    assert directory.resolve_version("custom").main_class == "Custom"

    with pytest.raises(VersionNotFoundError):
        directory.resolve_version("unknown")


def test_too_much_parents(context, file_server):

    manifest = _serve_versions(file_server)
    for i in range(12):
        write_atomic(context.version_metadata_file(f"v{i}"), json.dumps({"id": f"v{i}", "inheritsFrom": f"v{i + 1}"}).encode())

    with pytest.raises(TooMuchParentsError):
        VersionDirectory(context, manifest).resolve_version("v0")


def test_merge_keeps_order_and_duplicates():

    base = parse_version({
        "id": "base",
        "type": "release",
        "assets": "5",
        "libraries": [{"name": "a:a:1"}, {"name": "b:b:1"}],
        "arguments": {"jvm": ["-a"]}
    })
    overlay = parse_version({
        "id": "overlay",
        "libraries": [{"name": "b:b:1"}],
        "arguments": {"jvm": ["-b"], "game": ["--demo"]}
    })

    merged = merge(base, overlay)

    assert merged.id == "overlay"
    assert merged.type == "release"
    assert merged.assets == "5"
    assert [lib.spec.artifact for lib in merged.libraries] == ["a", "b", "b"]
    assert expand_arguments(merged.jvm_args, LINUX) == ["-a", "-b"]
    assert expand_arguments(merged.game_args, LINUX) == ["--demo"]

    # Inputs are left untouched.
    assert len(base.libraries) == 2
    assert len(overlay.libraries) == 1
    assert expand_arguments(base.jvm_args, LINUX) == ["-a"]
    assert base.game_args is None


def test_resolve_arguments():

    parent = parse_version({"id": "p", "arguments": {"game": ["a", "b"]}})
    child = parse_version({"id": "c", "arguments": {"game": ["c"]}})
    assert resolve_arguments(merge(parent, child).game_args, LINUX) == "a b c"

    template = parse_arguments([
        "-a",
        {"rules": [{"action": "allow", "os": {"name": "linux"}}], "value": ["-b", "-c"]},
        {"rules": [{"action": "allow", "os": {"name": "linux"}}], "value": "-d"},
        {"rules": [{"action": "allow", "os": {"name": "osx"}}], "value": "-e"},
    ], "args")

    assert resolve_arguments(template, LINUX) == '-a "-b" "-c" -d'
    assert resolve_arguments(ArgumentTemplate(), LINUX) == ""


def test_write_atomic(tmp_path):

    dst = tmp_path / "a" / "b.json"
    write_atomic(dst, b"first")
    write_atomic(dst, b"second")

    assert dst.read_bytes() == b"second"
    assert [p.name for p in dst.parent.iterdir()] == ["b.json"]


@pytest.mark.slow
def test_official_manifest(tmp_path):

    manifest = VersionManifest(tmp_path / "version_manifest.json")
    release, alias = manifest.filter_latest("release")

    assert alias
    assert manifest.get_version(release)["type"] == "release"
    assert (tmp_path / "version_manifest.json").is_file()
