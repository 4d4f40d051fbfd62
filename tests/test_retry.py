from datetime import datetime, timedelta, timezone

from app.services.retry import compute_backoff_seconds, next_run_after, parse_retry_after

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def test_backoff_doubles_from_attempt_count():
    assert [compute_backoff_seconds(n) for n in range(5)] == [1, 2, 4, 8, 16]
    assert compute_backoff_seconds(40) == 6 * 3600


def test_retry_after_seconds_and_http_date():
    assert parse_retry_after("30") == 30
    assert parse_retry_after("Sat, 17 Oct 2026 12:01:00 GMT", now=NOW) == 60
    assert parse_retry_after("") is None
    assert parse_retry_after("soon") is None


def test_next_run_is_at_least_one_second_out():
    assert next_run_after(NOW, 0) == NOW + timedelta(seconds=1)
    assert next_run_after(NOW, 8) == NOW + timedelta(seconds=8)
