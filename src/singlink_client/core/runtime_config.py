"""Build the runtime config handed to sing-box.

The downloaded config may declare several inbounds (typically a ``mixed``
listener and a ``tun`` interface). The runtime copy keeps exactly the one that
matches the selected inbound mode and points log/cache files at locations owned
by this app.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
import re
from typing import Any

from singlink_client.core import jsonc
from singlink_client.core.errors import ConfigMissingError, InboundNotFoundError
from singlink_client.core.models import InboundMode
from singlink_client.core.storage import ENGINE_LOG_FILE, atomic_write_bytes, get_logs_dir

logger = logging.getLogger(__name__)

DEFAULT_CACHE_FILE_NAME = "cache.db"

_PATH_SEPARATORS = re.compile(r"[\\/]")
_WINDOWS_ENV_VAR = re.compile(r"%([^%]+)%")


def load_config_document(path: Path) -> dict[str, Any]:
    if not path or not Path(path).is_file():
        raise ConfigMissingError(
            f"Config file not found: {path}",
            user_message="Config file is missing. Update the config first.",
        )
    try:
        document = jsonc.load_file(Path(path))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.exception("Failed to parse config: %s", path)
        raise ConfigMissingError(
            f"Failed to parse config {path}: {exc}",
            user_message=f"Config file could not be read: {exc}",
        ) from exc
    if not isinstance(document, dict):
        raise ConfigMissingError(
            f"Config root is not an object: {path}",
            user_message="Config file is not a JSON object.",
        )
    return document


def find_inbound(document: dict[str, Any], inbound_type: str) -> dict[str, Any] | None:
    inbounds = document.get("inbounds")
    if not isinstance(inbounds, list):
        return None
    wanted = inbound_type.lower()
    for inbound in inbounds:
        if not isinstance(inbound, dict):
            continue
        kind = inbound.get("type")
        if isinstance(kind, str) and kind.strip().lower() == wanted:
            return inbound
    return None


def build_runtime_config(
    source_path: Path,
    mode: InboundMode,
    destination_path: Path,
    *,
    log_output: Path | None = None,
) -> Path:
    document = load_config_document(source_path)

    selected = find_inbound(document, mode.inbound_type)
    if selected is None:
        raise InboundNotFoundError(
            f"No '{mode.inbound_type}' inbound in {source_path}",
            user_message=(
                f"The config has no '{mode.inbound_type}' inbound required for "
                f"{mode.label} mode."
            ),
        )

    document["inbounds"] = [copy.deepcopy(selected)]
    _set_log_output(document, log_output or (get_logs_dir() / ENGINE_LOG_FILE))
    _set_cache_file_path(document, destination_path)

    atomic_write_bytes(destination_path, jsonc.dumps(document).encode("utf-8"))
    logger.info(
        "Runtime config written: mode=%s inbound=%s path=%s",
        mode.value,
        mode.inbound_type,
        destination_path,
    )
    return destination_path


def _set_log_output(document: dict[str, Any], output: Path) -> None:
    log_section = document.get("log")
    if not isinstance(log_section, dict):
        log_section = {}
        document["log"] = log_section
    log_section["output"] = str(output)


def _set_cache_file_path(document: dict[str, Any], destination_path: Path) -> None:
    experimental = document.get("experimental")
    if not isinstance(experimental, dict):
        return
    cache_file = experimental.get("cache_file")
    if not isinstance(cache_file, dict):
        return

    file_name = cache_file_name(cache_file.get("path")) or DEFAULT_CACHE_FILE_NAME
    cache_file["path"] = str(Path(destination_path).parent / file_name)


def cache_file_name(configured: Any) -> str | None:
    if not isinstance(configured, str) or not configured.strip():
        return None
    expanded = os.path.expanduser(configured.strip())
    expanded = os.path.expandvars(expanded)
    expanded = _WINDOWS_ENV_VAR.sub(lambda m: os.environ.get(m.group(1), m.group(0)), expanded)
    name = _PATH_SEPARATORS.split(expanded)[-1].strip()
    return name or None
