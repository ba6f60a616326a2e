from __future__ import annotations

from ble_scan_gateway import matches_byte_pattern, parse_byte_pattern

ADVERTISEMENT = bytes.fromhex("0201061aff4c000215e2c56db5")


def test_parse_pattern_tokens() -> None:
    assert parse_byte_pattern("aa xx BB") == [0xAA, None, 0xBB]
    assert parse_byte_pattern("") == []


def test_parse_pattern_rejects_bad_input() -> None:
    assert parse_byte_pattern("4c0") is None
    assert parse_byte_pattern("zz") is None
    assert parse_byte_pattern("+1") is None
    assert parse_byte_pattern("x1") is None


def test_exact_match_anywhere() -> None:
    assert matches_byte_pattern(ADVERTISEMENT, "4c000215")
    assert matches_byte_pattern(ADVERTISEMENT, "020106")
    assert not matches_byte_pattern(ADVERTISEMENT, "4c01")


def test_case_and_whitespace_insensitive() -> None:
    assert matches_byte_pattern(ADVERTISEMENT, "4C 00 02 15")
    assert matches_byte_pattern(ADVERTISEMENT, " 4c00\t0215 ")


def test_wildcard_matches_differing_byte() -> None:
    assert not matches_byte_pattern(ADVERTISEMENT, "4c000315")
    assert matches_byte_pattern(ADVERTISEMENT, "4c00xx15")
    assert matches_byte_pattern(ADVERTISEMENT, "ff XX 00")


def test_malformed_pattern_never_matches() -> None:
    assert not matches_byte_pattern(ADVERTISEMENT, "4c0")
    assert not matches_byte_pattern(ADVERTISEMENT, "4g00")


def test_pattern_longer_than_data() -> None:
    assert not matches_byte_pattern(b"\x4c", "4c00")
    assert not matches_byte_pattern(b"", "4c")
    assert not matches_byte_pattern(None, "4c")


def test_empty_pattern_matches() -> None:
    assert matches_byte_pattern(ADVERTISEMENT, "")
