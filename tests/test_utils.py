from datetime import datetime, timedelta, timezone

from eventvigil.utils import parse_iso, sha256_hex, slugify, to_iso


def test_slugify_strips_accents_and_punctuation():
    assert slugify("Café de Zwaan, Groningen!") == "cafe-de-zwaan-groningen"
    assert slugify("") == "untitled"
    assert slugify("???") == "untitled"
    assert slugify("a" * 100, 10) == "a" * 10


def test_iso_timestamps_sort_as_strings():
    earlier = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)
    later = earlier + timedelta(microseconds=5)
    assert to_iso(earlier) == "2025-06-01T08:00:00.000000+00:00"
    assert to_iso(earlier) < to_iso(later)


def test_to_iso_normalizes_offsets():
    amsterdam = timezone(timedelta(hours=2))
    assert to_iso(datetime(2025, 7, 12, 20, 30, tzinfo=amsterdam)) == "2025-07-12T18:30:00.000000+00:00"
    assert to_iso(datetime(2025, 7, 12, 20, 30)) == "2025-07-12T20:30:00.000000+00:00"


def test_parse_iso_accepts_zulu_and_naive():
    assert parse_iso("2025-06-01T08:00:00Z") == datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)
    assert parse_iso("2025-06-01T08:00:00").tzinfo == timezone.utc


def test_sha256_hex():
    assert sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
