"""Helpers for reading values out of quality report strings."""

from __future__ import annotations

import re

_VALUE = re.compile(r"[^\t\n\r ;]*")
_INT = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


class SplitError(ValueError):
    """Raised by split_comma_int; ``first`` holds the first value read, or 0."""

    def __init__(self, message: str, first: int = 0):
        super().__init__(message)
        self.first = first


def extract_xr(key: str, data: str) -> str:
    """Return the token after the first ``key`` in ``data``.

    The token ends at a tab, newline, carriage return, space or semicolon.
    An empty string is returned when ``key`` does not occur.
    """
    pos = data.find(key)
    if pos < 0:
        return ""
    match = _VALUE.match(data, pos + len(key))
    return match.group() if match else ""


def _atoi(text: str) -> int:
    if not _INT.fullmatch(text):
        raise ValueError(f"invalid integer {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer {text!r} out of range")
    return value


def split_comma_int(text: str) -> tuple[int, int]:
    """Parse ``"a,b"`` into two integers; raise SplitError otherwise."""
    head, sep, tail = text.partition(",")
    if not sep:
        raise SplitError("no comma in string")
    try:
        one = _atoi(head)
    except ValueError as err:
        raise SplitError(str(err)) from err
    if not tail:
        raise SplitError("no two values in string", one)
    try:
        two = _atoi(tail)
    except ValueError as err:
        raise SplitError(str(err), one) from err
    return one, two


def norm_max(value: float) -> float:
    """Map implausibly large values (above ten million) to zero."""
    if value > 10000000:
        return 0
    return value