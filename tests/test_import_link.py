from __future__ import annotations

import pytest

from singlink_client.core.import_link import find_import_url, parse_import_argument


@pytest.mark.parametrize(
    ("argument", "expected"),
    [
        ("singlink://import/https%3A%2F%2Fexample.com%2Fsub%3Ftoken%3Dabc", "https://example.com/sub?token=abc"),
        ("SINGLINK://IMPORT/https://example.com/raw", "https://example.com/raw"),
        ('"singlink://import/https%3A%2F%2Fexample.com%2Fa"', "https://example.com/a"),
        ("singlink://import?url=https%3A%2F%2Fexample.com%2Fq", "https://example.com/q"),
        ("singlink://import/?URL=https%3A%2F%2Fexample.com%2Fq", "https://example.com/q"),
        ("singlink://import/", None),
        ("singlink://import?other=1", None),
        ("singlink://export/https%3A%2F%2Fexample.com", None),
        ("https://example.com/sub", None),
        ("--autostart", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_import_argument(argument, expected) -> None:
    assert parse_import_argument(argument) == expected


def test_find_import_url_scans_argv() -> None:
    argv = ["--autostart", "singlink://import?url=https%3A%2F%2Fexample.com%2Fx"]
    assert find_import_url(argv) == "https://example.com/x"
    assert find_import_url(["--autostart"]) is None
