"""Identifier/literal quoting and URL comparison helpers."""

from __future__ import annotations

from urllib.parse import parse_qsl, urlsplit

REDACTED = "redacted"


def quote_ident(name: str) -> str:
    """Quote an identifier; the engine does not accept identifiers as bind parameters."""

    return '"' + name.replace("\x00", "").replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal, switching to E'' syntax when backslashes are present."""

    escaped = value.replace("'", "''")
    if "\\" in escaped:
        return "E'" + escaped.replace("\\", "\\\\") + "'"
    return "'" + escaped + "'"


def unquote(value: str) -> str:
    """Strip one layer of SQL quoting from an engine-rendered value."""

    text = value.strip()
    if text[:2] in ("E'", "e'") and text.endswith("'") and len(text) >= 3:
        return text[2:-1].replace("''", "'").replace("\\\\", "\\")
    if len(text) >= 2 and text[0] == text[-1] == "'":
        return text[1:-1].replace("''", "'")
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1].replace('""', '"')
    return text


def compare_urls(left: str | None, right: str | None) -> bool:
    """Compare sink/storage URLs, ignoring query parameters the cluster redacts."""

    if left is None or right is None:
        return left == right
    try:
        first = urlsplit(left)
        second = urlsplit(right)
    except ValueError:
        return False
    if (first.scheme, first.netloc, first.path) != (second.scheme, second.netloc, second.path):
        return False
    params_first = dict(parse_qsl(first.query, keep_blank_values=True))
    params_second = dict(parse_qsl(second.query, keep_blank_values=True))
    redacted = {
        key
        for params in (params_first, params_second)
        for key, value in params.items()
        if value.lower() == REDACTED
    }
    for key in redacted:
        params_first.pop(key, None)
        params_second.pop(key, None)
    return params_first == params_second


__all__ = ["REDACTED", "compare_urls", "quote_ident", "quote_literal", "unquote"]
