from datetime import datetime, timedelta, timezone

from datetime_utils import days_ago, ensure_utc, parse_rfc3339, to_rfc3339_utc


def test_parse_rfc3339_zulu_and_offset():
    assert parse_rfc3339("2024-05-01T09:30:00Z") == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    shifted = parse_rfc3339("2024-05-01T12:30:00+03:00")
    assert shifted == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    assert parse_rfc3339("") is None
    assert parse_rfc3339("yesterday") is None


def test_naive_values_are_treated_as_utc():
    naive = datetime(2024, 1, 1, 8, 0)
    assert ensure_utc(naive).tzinfo == timezone.utc
    assert to_rfc3339_utc(naive) == "2024-01-01T08:00:00Z"


def test_days_ago_uses_reference_time():
    now = datetime(2024, 1, 10, tzinfo=timezone.utc)
    assert days_ago(7, now=now) == now - timedelta(days=7)
