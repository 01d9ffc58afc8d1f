from __future__ import annotations

import base64
from email.message import Message
import io
from pathlib import Path
import urllib.error

import pytest

from singlink_client.core.config_fetcher import ConfigFetcher, basic_auth_target
from singlink_client.core.errors import (
    AuthInvalidError,
    AuthRequiredError,
    ConfigMissingError,
    FetchError,
    UnsupportedSchemeError,
)
from singlink_client.core.models import Credential


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeOpener:
    """Replays queued results; records every request it receives."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.requests = []
        self.timeouts = []

    def open(self, request, timeout):  # noqa: ANN001
        self.requests.append(request)
        self.timeouts.append(timeout)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return _Response(result)


def _http_error(url: str, code: int, challenge: str | None = None) -> urllib.error.HTTPError:
    headers = Message()
    if challenge:
        headers["WWW-Authenticate"] = challenge
    return urllib.error.HTTPError(url, code, "Unauthorized" if code == 401 else "Error", headers, None)


def test_fetch_http_returns_body_with_timeout() -> None:
    opener = FakeOpener(b'{"inbounds": []}')
    fetcher = ConfigFetcher(opener=opener)

    assert fetcher.fetch("https://example.com/sub?token=x") == b'{"inbounds": []}'
    assert opener.timeouts == [15.0]
    assert opener.requests[0].get_header("Authorization") is None


def test_fetch_sends_basic_auth_header() -> None:
    opener = FakeOpener(b"{}")
    ConfigFetcher(opener=opener).fetch("http://example.com/c", Credential(username="bob", secret="pw"))

    expected = "Basic " + base64.b64encode(b"bob:pw").decode("ascii")
    assert opener.requests[0].get_header("Authorization") == expected


def test_401_basic_without_credential_is_auth_required() -> None:
    url = "https://example.com/c"
    fetcher = ConfigFetcher(opener=FakeOpener(_http_error(url, 401, 'Basic realm="sub"')))

    with pytest.raises(AuthRequiredError) as excinfo:
        fetcher.fetch(url)
    assert excinfo.value.origin == "https://example.com:443"


def test_401_basic_with_credential_is_auth_invalid() -> None:
    url = "http://example.com:8080/c"
    fetcher = ConfigFetcher(opener=FakeOpener(_http_error(url, 401, 'Bearer, Basic realm="x"')))

    with pytest.raises(AuthInvalidError) as excinfo:
        fetcher.fetch(url, Credential(username="a", secret="b"))
    assert excinfo.value.origin == "http://example.com:8080"


def test_401_without_basic_challenge_is_generic_failure() -> None:
    url = "https://example.com/c"
    fetcher = ConfigFetcher(opener=FakeOpener(_http_error(url, 401, "Bearer")))
    with pytest.raises(FetchError):
        fetcher.fetch(url)


def test_transport_errors_become_fetch_error() -> None:
    fetcher = ConfigFetcher(
        opener=FakeOpener(
            urllib.error.URLError("connection refused"),
            _http_error("https://example.com/c", 500),
        )
    )
    with pytest.raises(FetchError):
        fetcher.fetch("https://example.com/c")
    with pytest.raises(FetchError) as excinfo:
        fetcher.fetch("https://example.com/c")
    assert "500" in excinfo.value.user_message


@pytest.mark.parametrize("source", ["", "   ", "ftp://example.com/config.json", "vless://abc@host:443"])
def test_rejects_blank_and_unsupported_sources(source: str) -> None:
    with pytest.raises(UnsupportedSchemeError):
        ConfigFetcher(opener=FakeOpener()).fetch(source)


def test_reads_local_files(tmp_path: Path, monkeypatch) -> None:
    config = tmp_path / "my config.json"
    config.write_bytes(b'{"a": 1}')
    fetcher = ConfigFetcher(opener=FakeOpener())

    assert fetcher.fetch(str(config)) == b'{"a": 1}'
    assert fetcher.fetch(f'"{config}"') == b'{"a": 1}'
    assert fetcher.fetch(config.as_uri()) == b'{"a": 1}'

    monkeypatch.setenv("SINGLINK_TEST_DIR", str(tmp_path))
    assert fetcher.fetch("$SINGLINK_TEST_DIR/my%20config.json") == b'{"a": 1}'


def test_missing_local_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigMissingError):
        ConfigFetcher(opener=FakeOpener()).fetch(str(tmp_path / "absent.json"))


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://example.com/sub", "https://example.com:443"),
        ("http://Example.com/sub", "http://example.com:80"),
        ("https://user@example.com:8443/x?y", "https://example.com:8443"),
        ("http://[::1]:9000/", "http://[::1]:9000"),
        ("/home/me/config.json", None),
        ("ftp://example.com/", None),
        ("", None),
        (None, None),
    ],
)
def test_basic_auth_target(url, expected) -> None:
    assert basic_auth_target(url) == expected
