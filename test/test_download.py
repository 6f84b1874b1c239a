from pathlib import Path
import hashlib

import pytest

from protolauncher.download import DownloadEntry, DownloadList, DownloadResult, \
    DownloadResultError, DownloadResultProgress, IntegrityError, DownloadError, \
    DownloadCancelledError, download_all
from protolauncher.progress import CancelToken


def _sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def test_download_list(tmp_path, file_server):

    icon = bytes(range(256)) * 10
    file_server.routes["/icon.png"] = icon
    file_server.routes["/redirect"] = (302, b"", {"Location": "/icon.png"})

    default = DownloadEntry(f"{file_server.url}/icon.png", tmp_path / "default.png", name="default")
    check_all = DownloadEntry(f"{file_server.url}/icon.png", tmp_path / "check_all.png", sha1=_sha1(icon), size=len(icon))
    redirect = DownloadEntry(f"{file_server.url}/redirect", tmp_path / "redirect.png", sha1=_sha1(icon))
    wrong_sha1 = DownloadEntry(f"{file_server.url}/icon.png", tmp_path / "wrong_sha1.png", sha1="0" * 40)
    wrong_size = DownloadEntry(f"{file_server.url}/icon.png", tmp_path / "wrong_size.png", size=1189)
    not_found = DownloadEntry(f"{file_server.url}/missing.png", tmp_path / "not_found.png")
    conn_err = DownloadEntry("http://127.0.0.1:1/icon.png", tmp_path / "conn_err.png")

    dl = DownloadList()
    for entry in (default, check_all, redirect, wrong_sha1, wrong_size, not_found, conn_err):
        dl.add(entry)

    with pytest.raises(ValueError):
        dl.add(DownloadEntry("ssh://foo.bar", Path("invalid")))

    results = {}
    for _count, batch in dl.download(2, retry_backoff=0):
        for result in batch:
            results[result.entry.dst] = result

    def is_error(result: DownloadResult, code: str) -> bool:
        return isinstance(result, DownloadResultError) and result.code == code

    assert len(results) == 7

    assert is_error(results[wrong_sha1.dst], DownloadResultError.INVALID_SHA1)
    assert is_error(results[wrong_size.dst], DownloadResultError.INVALID_SIZE)
    assert is_error(results[not_found.dst], DownloadResultError.NOT_FOUND)
    assert is_error(results[conn_err.dst], DownloadResultError.CONNECTION)

    for entry in (default, check_all, redirect):
        assert isinstance(results[entry.dst], DownloadResultProgress)
        assert entry.dst.read_bytes() == icon

    for entry in (wrong_sha1, wrong_size, not_found, conn_err):
        assert not entry.dst.exists()

    # No temporary file is left behind.
    assert all(not path.name.endswith(".part") for path in tmp_path.iterdir())


def test_download_all_concurrent(tmp_path, file_server):

    entries = []
    for i in range(20):
        data = f"file number {i}".encode() * 1000
        file_server.routes[f"/files/{i}"] = data
        entries.append(DownloadEntry(f"{file_server.url}/files/{i}", tmp_path / "files" / str(i), sha1=_sha1(data), size=len(data)))

    progress = []
    download_all(entries, max_workers=4, on_progress=lambda done, total: progress.append((done, total)))

    for i, entry in enumerate(entries):
        assert entry.dst.read_bytes() == f"file number {i}".encode() * 1000

    total = sum(entry.size for entry in entries)
    assert progress[-1] == (total, total)
    assert all(done <= total_ for done, total_ in progress)


def test_download_all_integrity(tmp_path, file_server):

    data = b"original content of the file"
    tampered = bytearray(data)
    tampered[0] ^= 1
    file_server.routes["/file"] = bytes(tampered)

    dst = tmp_path / "file"
    with pytest.raises(IntegrityError) as err:
        download_all([DownloadEntry(f"{file_server.url}/file", dst, sha1=_sha1(data), name="file")], retry_backoff=0)

    assert err.value.artifact_id == "file"
    assert err.value.expected_hash == _sha1(data)
    assert err.value.actual_hash == _sha1(bytes(tampered))
    assert not dst.exists()

    # The download has been tried 3 times.
    assert file_server.count("/file") == 3


def test_download_all_not_found(tmp_path, file_server):
    with pytest.raises(DownloadError):
        download_all([DownloadEntry(f"{file_server.url}/missing", tmp_path / "missing")], retry_backoff=0)


def test_download_all_cancelled(tmp_path, file_server):

    file_server.routes["/file"] = b"content"
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(DownloadCancelledError):
        download_all([DownloadEntry(f"{file_server.url}/file", tmp_path / "file")], cancel=cancel)

    assert not (tmp_path / "file").exists()


def test_download_executable(tmp_path, file_server):

    file_server.routes["/java"] = b"#!/bin/sh\n"
    dst = tmp_path / "bin" / "java"
    download_all([DownloadEntry(f"{file_server.url}/java", dst, executable=True)])

    assert dst.stat().st_mode & 0o100


def test_download_redirect_loop(tmp_path, file_server):

    file_server.routes["/loop"] = (302, b"", {"Location": "/loop"})
    dst = tmp_path / "loop"

    with pytest.raises(DownloadError) as err:
        download_all([DownloadEntry(f"{file_server.url}/loop", dst, name="loop")], retry_backoff=0)

    assert err.value.name == "loop"
    assert "redirects" in str(err.value.cause)
    assert not dst.exists()


def test_download_redirect_unsupported_scheme(tmp_path, file_server):

    file_server.routes["/ftp"] = (302, b"", {"Location": "ftp://example.com/file"})

    with pytest.raises(DownloadError) as err:
        download_all([DownloadEntry(f"{file_server.url}/ftp", tmp_path / "file", name="file")], retry_backoff=0)

    assert err.value.name == "file"
    assert isinstance(err.value.cause, ValueError)
