from __future__ import annotations

import hashlib

import pytest
import requests

from upgrades.modules.patch import DownloadFailed
from upgrades.utils.downloader import download_file, filename_from_url

PAYLOAD = b"0123456789" * 1000


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None):
        self.status_code = status_code
        self.body = body
        self.headers = headers if headers is not None else {"Content-Length": str(len(body))}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start:start + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def get(self, url, stream=False, headers=None, timeout=None):
        self.requests.append({"url": url, "headers": headers or {}})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def test_http_download(tmp_path):
    session = FakeSession(FakeResponse(body=PAYLOAD))
    progress = []

    result = download_file(
        "https://releases.example.com/pkg/stack-1.0.1.tar.gz?token=x",
        tmp_path / "dl",
        session=session,
        progress=lambda done, total: progress.append((done, total)),
    )

    assert result.path == tmp_path / "dl" / "stack-1.0.1.tar.gz"
    assert result.path.read_bytes() == PAYLOAD
    assert result.sha256 == _sha(PAYLOAD)
    assert result.size == len(PAYLOAD)
    assert not result.reused
    assert progress[-1] == (len(PAYLOAD), len(PAYLOAD))
    assert not (tmp_path / "dl" / "stack-1.0.1.tar.gz.part").exists()


def test_resumes_partial_download(tmp_path):
    (tmp_path / "pkg.tar.gz.part").write_bytes(PAYLOAD[:4000])
    session = FakeSession(FakeResponse(status_code=206, body=PAYLOAD[4000:]))

    result = download_file("https://example.com/pkg.tar.gz", tmp_path, session=session)

    assert session.requests[0]["headers"] == {"Range": "bytes=4000-"}
    assert result.path.read_bytes() == PAYLOAD


def test_restarts_when_range_ignored(tmp_path):
    (tmp_path / "pkg.tar.gz.part").write_bytes(b"stale bytes")
    session = FakeSession(FakeResponse(status_code=200, body=PAYLOAD))

    result = download_file("https://example.com/pkg.tar.gz", tmp_path, session=session)

    assert result.path.read_bytes() == PAYLOAD


def test_range_not_satisfiable_finalises_part(tmp_path):
    (tmp_path / "pkg.tar.gz.part").write_bytes(PAYLOAD)
    session = FakeSession(FakeResponse(status_code=416, headers={}))

    result = download_file("https://example.com/pkg.tar.gz", tmp_path, session=session)

    assert result.sha256 == _sha(PAYLOAD)


def test_reuses_verified_file(tmp_path):
    (tmp_path / "pkg.tar.gz").write_bytes(PAYLOAD)
    session = FakeSession()

    result = download_file(
        "https://example.com/pkg.tar.gz", tmp_path, expected_hash="sha256:" + _sha(PAYLOAD), session=session
    )

    assert result.reused
    assert session.requests == []


def test_copies_local_path(tmp_path):
    source = tmp_path / "mirror" / "pkg.tar.gz"
    source.parent.mkdir()
    source.write_bytes(PAYLOAD)

    result = download_file(str(source), tmp_path / "dl")

    assert result.path == tmp_path / "dl" / "pkg.tar.gz"
    assert result.sha256 == _sha(PAYLOAD)


def test_missing_local_path(tmp_path):
    with pytest.raises(DownloadFailed, match="not found"):
        download_file(str(tmp_path / "absent.tar.gz"), tmp_path / "dl")


@pytest.mark.parametrize(
    "response",
    [requests.ConnectionError("connection refused"), FakeResponse(status_code=404)],
)
def test_transport_errors(tmp_path, response):
    with pytest.raises(DownloadFailed) as excinfo:
        download_file("https://example.com/pkg.tar.gz", tmp_path, session=FakeSession(response))
    assert excinfo.value.is_recoverable()
    assert not excinfo.value.requires_rollback()


def test_filename_from_url():
    assert filename_from_url("https://example.com/a/b/stack.tar.gz?x=1") == "stack.tar.gz"
    assert filename_from_url("https://example.com/") == "package.tar.gz"


def test_owned_session_is_closed(tmp_path, monkeypatch):
    session = FakeSession(FakeResponse(body=PAYLOAD))
    monkeypatch.setattr("upgrades.utils.downloader.requests.Session", lambda: session)

    result = download_file("https://example.com/pkg.tar.gz", tmp_path)

    assert result.path.read_bytes() == PAYLOAD
    assert session.closed


def test_caller_session_is_left_open(tmp_path):
    session = FakeSession(FakeResponse(body=PAYLOAD))
    download_file("https://example.com/pkg.tar.gz", tmp_path, session=session)
    assert not session.closed
