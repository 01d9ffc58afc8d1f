"""Download or read the source config document.

Sources are either ``http``/``https`` URLs or local file paths. HTTP sources
may sit behind Basic authentication; a 401 with a Basic challenge is reported
as ``AuthRequiredError`` (no credential sent) or ``AuthInvalidError``
(credential rejected) so the caller can drive its prompt loop.
"""

from __future__ import annotations

import base64
import logging
import os
from pathlib import Path
from typing import Any, Final
import urllib.error
import urllib.parse
import urllib.request

from singlink_client.core.errors import (
    AuthInvalidError,
    AuthRequiredError,
    ConfigMissingError,
    FetchError,
    UnsupportedSchemeError,
)
from singlink_client.core.logging_setup import redact
from singlink_client.core.models import Credential

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_S: Final[float] = 15.0
USER_AGENT: Final[str] = "singlink-client/0.1"
_HTTP_SCHEMES: Final[frozenset[str]] = frozenset({"http", "https"})
_DEFAULT_PORTS: Final[dict[str, int]] = {"http": 80, "https": 443}


def looks_like_url(source: str) -> bool:
    lowered = source.lower()
    return "://" in source or lowered.startswith(("http:", "https:"))


def basic_auth_target(url: str | None) -> str | None:
    """``scheme://host:port`` for an HTTP(S) URL, the key credentials are stored under."""
    raw = (url or "").strip()
    if not raw:
        return None
    try:
        parsed = urllib.parse.urlsplit(raw)
        port = parsed.port
    except ValueError:
        return None
    scheme = parsed.scheme.lower()
    if scheme not in _HTTP_SCHEMES or not parsed.hostname:
        return None
    host = parsed.hostname
    if ":" in host:
        host = f"[{host}]"
    return f"{scheme}://{host}:{port or _DEFAULT_PORTS[scheme]}"


def _is_basic_challenge(headers: Any) -> bool:
    if headers is None:
        return False
    values = headers.get_all("WWW-Authenticate") if hasattr(headers, "get_all") else None
    if values is None:
        single = headers.get("WWW-Authenticate")
        values = [single] if single else []
    for value in values:
        for challenge in str(value).split(","):
            scheme = challenge.strip().split(" ", 1)[0]
            if scheme.lower() == "basic":
                return True
    return False


def resolve_local_path(source: str) -> Path:
    raw = source.strip().strip('"')
    if raw.lower().startswith("file:"):
        raw = urllib.request.url2pathname(urllib.parse.urlsplit(raw).path)
    raw = urllib.parse.unquote(raw)
    return Path(os.path.expandvars(os.path.expanduser(raw)))


class ConfigFetcher:
    def __init__(self, timeout_s: float = FETCH_TIMEOUT_S, opener: Any | None = None) -> None:
        self._timeout_s = timeout_s
        self._opener = opener or urllib.request.build_opener()

    def fetch(self, source: str, credential: Credential | None = None) -> bytes:
        cleaned = (source or "").strip()
        if not cleaned:
            raise UnsupportedSchemeError(
                "Config source is empty",
                user_message="Enter a config URL or file path.",
            )

        if looks_like_url(cleaned) and not cleaned.lower().startswith("file:"):
            scheme = urllib.parse.urlsplit(cleaned).scheme.lower()
            if scheme not in _HTTP_SCHEMES:
                raise UnsupportedSchemeError(
                    f"Unsupported config source scheme: {scheme or '<none>'}",
                    user_message="Only http, https or local file sources are supported.",
                )
            return self._fetch_http(cleaned, credential)

        return self._read_local(cleaned)

    def _fetch_http(self, url: str, credential: Credential | None) -> bytes:
        headers = {"User-Agent": USER_AGENT}
        if credential is not None:
            token = base64.b64encode(
                f"{credential.username}:{credential.secret}".encode("utf-8")
            ).decode("ascii")
            headers["Authorization"] = f"Basic {token}"
        request = urllib.request.Request(url, headers=headers, method="GET")
        safe_url = redact(url)

        logger.info("Fetching config from %s", safe_url)
        try:
            with self._opener.open(request, timeout=self._timeout_s) as response:
                body = response.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 401 and _is_basic_challenge(exc.headers):
                origin = basic_auth_target(url) or safe_url
                if credential is None:
                    logger.info("Config server %s requires Basic authentication", origin)
                    raise AuthRequiredError(origin) from exc
                logger.warning("Config server %s rejected the supplied credential", origin)
                raise AuthInvalidError(origin) from exc
            logger.error("Config fetch failed: HTTP %s %s (%s)", exc.code, exc.reason, safe_url)
            raise FetchError(
                f"HTTP {exc.code} {exc.reason} from {safe_url}",
                user_message=f"Config download failed: HTTP {exc.code} {exc.reason}",
            ) from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            logger.exception("Config fetch failed: %s", safe_url)
            reason = getattr(exc, "reason", exc)
            raise FetchError(
                f"Failed to fetch {safe_url}: {reason}",
                user_message=f"Config download failed: {reason}",
            ) from exc

        logger.info("Fetched %d bytes from %s", len(body), safe_url)
        return body

    @staticmethod
    def _read_local(source: str) -> bytes:
        path = resolve_local_path(source)
        if not path.is_file():
            raise ConfigMissingError(
                f"Config file not found: {path}",
                user_message=f"Config file not found: {path}",
            )
        try:
            return path.read_bytes()
        except OSError as exc:
            logger.exception("Failed to read config file %s", path)
            raise ConfigMissingError(
                f"Failed to read config file {path}: {exc}",
                user_message=f"Config file could not be read: {exc}",
            ) from exc
