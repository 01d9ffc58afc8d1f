"""``singlink://import`` deep links.

Two forms are accepted::

    singlink://import/<percent-encoded source>
    singlink://import?url=<percent-encoded source>
"""

from __future__ import annotations

from typing import Iterable
import urllib.parse

IMPORT_SCHEME = "singlink"
IMPORT_HOST = "import"
_PATH_PREFIX = f"{IMPORT_SCHEME}://{IMPORT_HOST}/"


def parse_import_argument(argument: str | None) -> str | None:
    trimmed = (argument or "").strip().strip('"').strip()
    if not trimmed:
        return None

    if trimmed.lower().startswith(_PATH_PREFIX):
        candidate = trimmed[len(_PATH_PREFIX):].strip()
        if candidate.startswith("?"):
            return _from_query(candidate[1:])
        return urllib.parse.unquote(candidate).strip() or None

    parsed = urllib.parse.urlsplit(trimmed)
    if parsed.scheme.lower() != IMPORT_SCHEME or parsed.netloc.lower() != IMPORT_HOST:
        return None

    path = urllib.parse.unquote(parsed.path).strip("/")
    if path:
        return path
    return _from_query(parsed.query)


def _from_query(query: str) -> str | None:
    for key, value in urllib.parse.parse_qsl(query, keep_blank_values=False):
        if key.lower() == "url":
            return value.strip() or None
    return None


def find_import_url(argv: Iterable[str]) -> str | None:
    for arg in argv:
        url = parse_import_argument(arg)
        if url:
            return url
    return None
