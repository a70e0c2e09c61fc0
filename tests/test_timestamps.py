from datetime import UTC, datetime, timedelta, timezone

import pytest

from jobledger.utils.timestamps import isoformat, now_iso, parse_timestamp


def test_isoformat_normalises_to_utc():
    offset = datetime(2025, 3, 1, 10, 0, tzinfo=timezone(timedelta(hours=1)))
    assert isoformat(offset) == "2025-03-01T09:00:00Z"
    assert isoformat(datetime(2025, 3, 1, 9, 0)) == "2025-03-01T09:00:00Z"
    assert isoformat(datetime(2025, 3, 1, 9, 0, 0, 250, tzinfo=UTC)) == "2025-03-01T09:00:00.000250Z"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2025-03-01T09:00:00Z", datetime(2025, 3, 1, 9, 0, tzinfo=UTC)),
        ("2025-03-01T09:00:00", datetime(2025, 3, 1, 9, 0, tzinfo=UTC)),
        ("2025-03-01T11:00:00+02:00", datetime(2025, 3, 1, 9, 0, tzinfo=UTC)),
        (datetime(2025, 3, 1, 9, 0), datetime(2025, 3, 1, 9, 0, tzinfo=UTC)),
    ],
)
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


@pytest.mark.parametrize("value", ["soon", "", "   ", None])
def test_parse_timestamp_rejects_garbage(value):
    assert parse_timestamp(value) is None


def test_now_iso_round_trips():
    parsed = parse_timestamp(now_iso())
    assert parsed is not None
    assert parsed.tzinfo is not None
