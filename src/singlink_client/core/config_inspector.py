"""Read the mixed inbound listener out of a config document."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from singlink_client.core.errors import InvalidPortError
from singlink_client.core.models import DEFAULT_PROXY_HOST, MixedInboundProxy
from singlink_client.core.runtime_config import find_inbound, load_config_document

_WILDCARD_HOSTS = {"0.0.0.0", "::", "[::]"}


def find_mixed_inbound(config_path: Path) -> MixedInboundProxy | None:
    """Return the listener the system proxy should target.

    ``None`` means the config has no mixed inbound at all. A mixed inbound
    without a usable port raises ``InvalidPortError`` instead, so callers can
    tell a misconfigured listener apart from a missing one.
    """
    document = load_config_document(config_path)
    inbound = find_inbound(document, "mixed")
    if inbound is None:
        return None

    port = _parse_port(inbound.get("listen_port"))
    if port is None:
        port = _parse_port(inbound.get("port"))
    if port is None:
        raise InvalidPortError(
            f"Mixed inbound has no valid port in {config_path}",
            user_message="The mixed inbound has no valid listen_port (1-65535).",
        )

    return MixedInboundProxy(host=normalize_host(inbound.get("listen")), port=port)


def normalize_host(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        return DEFAULT_PROXY_HOST
    host = raw.strip()
    if host.lower() in _WILDCARD_HOSTS:
        return DEFAULT_PROXY_HOST
    return host


def _parse_port(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        try:
            value = int(raw.strip())
        except ValueError:
            return None
    else:
        return None
    if 1 <= value <= 65535:
        return value
    return None
