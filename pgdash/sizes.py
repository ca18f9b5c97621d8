"""Helpers for PostgreSQL's human-readable size strings."""

from __future__ import annotations

import re

_NUMBER = re.compile(
    r"(?P<value>-?(?:\d+(?:\.\d*)?|\.\d+)(?:e[+-]?\d+)?)\s*(?P<unit>[a-z]*)", re.IGNORECASE
)

_UNIT_FACTORS: dict[str, float] = {
    "b": 1.0 / (1024.0 * 1024.0),
    "kb": 1.0 / 1024.0,
    "mb": 1.0,
    "gb": 1024.0,
    "tb": 1024.0 * 1024.0,
}

_UNIT_ALIASES: dict[str, str] = {
    "byte": "b",
    "bytes": "b",
    "k": "kb",
    "m": "mb",
    "g": "gb",
    "t": "tb",
}

BYTES_PER_MB = 1024.0 * 1024.0


def parse_size(text: object) -> float:
    """Convert a size string such as ``"7496 kB"`` into megabytes.

    Units are base 1024 and case-insensitive; ``KiB`` and ``kB`` are treated
    the same. A missing or unknown unit is read as bytes. Text without any
    number yields ``0.0``.
    """

    if not isinstance(text, str):
        return 0.0
    match = _NUMBER.search(text)
    if match is None:
        return 0.0
    try:
        value = float(match.group("value"))
    except ValueError:
        return 0.0
    return value * _UNIT_FACTORS[_normalize_unit(match.group("unit"))]


def bytes_to_mb(value: float | int | None) -> float:
    """Convert a raw byte count into megabytes."""

    if not value:
        return 0.0
    return float(value) / BYTES_PER_MB


def _normalize_unit(unit: str) -> str:
    unit = unit.lower()
    if unit.endswith("ib") and len(unit) == 3:
        unit = unit[0] + "b"
    unit = _UNIT_ALIASES.get(unit, unit)
    if unit in _UNIT_FACTORS:
        return unit
    return "b"


__all__ = ["BYTES_PER_MB", "bytes_to_mb", "parse_size"]
