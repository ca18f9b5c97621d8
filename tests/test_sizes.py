"""Tests for size string parsing."""

from __future__ import annotations

import pytest

from pgdash.sizes import BYTES_PER_MB, bytes_to_mb, parse_size


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1 MB", 1.0),
        ("2 GB", 2048.0),
        ("1 TB", 1024.0 * 1024.0),
        ("512 kB", 0.5),
        ("128MB", 128.0),
        ("8192 bytes", 8192 / BYTES_PER_MB),
        ("1 GiB", 1024.0),
    ],
)
def test_parse_size_converts_units_to_megabytes(text: str, expected: float) -> None:
    assert parse_size(text) == pytest.approx(expected)


def test_parse_size_treats_equivalent_sizes_equally() -> None:
    assert parse_size("1024 kB") == parse_size("1 MB")
    assert parse_size("1 kb") == parse_size("1 KB") == parse_size("1 KiB")


def test_parse_size_reads_pg_size_pretty_output() -> None:
    assert parse_size("7496 kB") == pytest.approx(7.32, abs=0.01)


def test_parse_size_keeps_the_exponent_of_scientific_notation() -> None:
    assert parse_size("1.5e3 kB") == pytest.approx(1500 / 1024)
    assert parse_size("2E-1 GB") == pytest.approx(0.2 * 1024)
    assert parse_size("1e6") == pytest.approx(1e6 / BYTES_PER_MB)


def test_parse_size_defaults_to_bytes_for_missing_or_unknown_units() -> None:
    assert parse_size("1048576") == pytest.approx(1.0)
    assert parse_size("1048576 parsecs") == pytest.approx(1.0)


@pytest.mark.parametrize("text", ["", "   ", "n/a", "MB", None, 42, ["1 MB"]])
def test_parse_size_returns_zero_without_a_number(text: object) -> None:
    assert parse_size(text) == 0.0


def test_parse_size_is_monotonic_within_a_unit() -> None:
    values = [parse_size(f"{n} kB") for n in (1, 10, 100, 1000)]

    assert values == sorted(values)


def test_bytes_to_mb() -> None:
    assert bytes_to_mb(BYTES_PER_MB * 3) == 3.0
    assert bytes_to_mb(None) == 0.0
    assert bytes_to_mb(0) == 0.0
