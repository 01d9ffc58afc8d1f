"""JSON with comments and trailing commas.

sing-box configs are commonly hand-edited, so the reader accepts ``//`` and
``/* */`` comments and trailing commas before ``}``/``]``. Everything else is
strict JSON handled by the standard ``json`` module.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def _strip_comments(text: str) -> str:
    out: list[str] = []
    i = 0
    n = len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue

        if ch == "/" and i + 1 < n and text[i + 1] == "/":
            end = text.find("\n", i)
            i = n if end == -1 else end
            continue

        if ch == "/" and i + 1 < n and text[i + 1] == "*":
            end = text.find("*/", i + 2)
            if end == -1:
                raise json.JSONDecodeError("Unterminated comment", text, i)
            # Keep line numbers stable for error messages.
            out.append(" " + "\n" * text.count("\n", i, end))
            i = end + 2
            continue

        out.append(ch)
        i += 1
    return "".join(out)


def _strip_trailing_commas(text: str) -> str:
    out: list[str] = []
    i = 0
    n = len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < n and text[j] in " \t\r\n":
                j += 1
            if j < n and text[j] in "}]":
                i += 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def loads(text: str) -> Any:
    """Parse permissive JSON. Raises ``json.JSONDecodeError`` on bad input."""
    if text.startswith("\ufeff"):
        text = text[1:]
    return json.loads(_strip_trailing_commas(_strip_comments(text)))


def load_file(path: Path) -> Any:
    return loads(path.read_text(encoding="utf-8-sig"))


def dumps(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"
