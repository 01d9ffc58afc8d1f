"""Shared value types."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

DEFAULT_PROXY_HOST = "127.0.0.1"


class InboundMode(Enum):
    PROXY = "proxy"
    TUN = "tun"

    @property
    def inbound_type(self) -> str:
        return "tun" if self is InboundMode.TUN else "mixed"

    @property
    def label(self) -> str:
        return "TUN" if self is InboundMode.TUN else "System proxy"

    @classmethod
    def parse(cls, raw: Any) -> "InboundMode":
        if isinstance(raw, InboundMode):
            return raw
        if isinstance(raw, bool):
            return cls.PROXY
        if isinstance(raw, int):
            return cls.TUN if raw == 1 else cls.PROXY
        if isinstance(raw, str) and raw.strip().lower() == "tun":
            return cls.TUN
        return cls.PROXY


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


def format_proxy_target(host: str, port: int) -> str:
    normalized = (host or "").strip() or DEFAULT_PROXY_HOST
    if ":" in normalized and not normalized.startswith("["):
        normalized = f"[{normalized}]"
    return f"{normalized}:{int(port)}"


@dataclass(frozen=True, slots=True)
class MixedInboundProxy:
    host: str
    port: int

    @property
    def target(self) -> str:
        return format_proxy_target(self.host, self.port)


@dataclass(frozen=True, slots=True)
class ProxySnapshot:
    """OS proxy fields; ``None`` means the field is not set.

    ``proxy_mode`` holds the raw desktop mode (e.g. GNOME's ``auto``) for
    backends whose on/off switch has more than two states, so a restore can put
    it back verbatim.
    """

    proxy_enabled: int | None
    proxy_server: str | None
    proxy_mode: str | None = None


@dataclass(frozen=True, slots=True)
class Credential:
    username: str
    secret: str

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, secret=<redacted>)"
