"""Tests for reading the forwarded port file."""

from __future__ import annotations

import pytest

from forwardarr.errors import ParseError, PortFileUnavailable, RangeError
from forwardarr.portfile import parse_port, read_port_file


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"54321", 54321),
        (b"54321\n", 54321),
        (b"  8080 \r\n", 8080),
        (b"\t1\t", 1),
        (b"65535", 65535),
        (b"007", 7),
        ("51413", 51413),
        (b"0" * 5000 + b"54321", 54321),
    ],
)
def test_parse_port_accepts_valid_values(data, expected) -> None:
    assert parse_port(data) == expected


@pytest.mark.parametrize(
    "data",
    [b"", b"   \n", b"abc", b"12 34", b"+80", b"-80", b"80.0", b"0x50", b"1_000", "¹²".encode(), b"\xff\xfe"],
)
def test_parse_port_rejects_non_integers(data) -> None:
    with pytest.raises(ParseError):
        parse_port(data)


@pytest.mark.parametrize(
    "data",
    [
        b"\x00",
        b"80\x00",
        b"\x0080",
        b"80\n90",
        "٨٠".encode(),  # Arabic-Indic digits
        "８０".encode(),  # fullwidth digits
        "٨٠",
        b"9" * 5000 + b"x",
    ],
)
def test_parse_port_rejects_non_ascii_digits_and_control_bytes(data) -> None:
    with pytest.raises(ParseError):
        parse_port(data)


@pytest.mark.parametrize(
    "data",
    [b"0", b"65536", b"999999", b"00000", b"100000", b"9" * 5000, "9" * 5000, b"1" + b"0" * 4400],
)
def test_parse_port_rejects_out_of_range(data) -> None:
    with pytest.raises(RangeError):
        parse_port(data)


def test_read_port_file(port_file) -> None:
    port_file.write_text("54321\n")

    assert read_port_file(port_file) == 54321


def test_read_port_file_missing(port_file) -> None:
    with pytest.raises(PortFileUnavailable):
        read_port_file(port_file)


def test_read_port_file_propagates_range_error(port_file) -> None:
    port_file.write_text("999999")

    with pytest.raises(RangeError):
        read_port_file(port_file)
