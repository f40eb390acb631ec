from __future__ import annotations

import re

_OIB_RE = re.compile(r"[0-9]{11}")


def is_valid_oib(value: object) -> bool:
    """True when *value* is exactly 11 ASCII digits (the form the authorities accept)."""
    return isinstance(value, str) and _OIB_RE.fullmatch(value) is not None


def validate_oib(value: str) -> str:
    value = (value or "").strip()
    if not is_valid_oib(value):
        raise ValueError(f"OIB must be exactly 11 digits: '{value}'")
    return value
