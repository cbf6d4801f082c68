"""
Unit tests for quota day bucketing in the Pacific timezone.
"""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from backend.app.services.usage_recorder import next_quota_reset, quota_day_key

PT = "America/Los_Angeles"


def test_day_key_uses_pacific_date():
    # 06:30 UTC on Mar 2 is still Mar 1 in California
    now = datetime(2026, 3, 2, 6, 30, tzinfo=timezone.utc)
    assert quota_day_key(now, PT) == "2026-03-01"


def test_day_key_rolls_over_at_pacific_midnight():
    now = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)
    assert quota_day_key(now, PT) == "2026-03-02"


def test_next_reset_is_next_pacific_midnight():
    now = datetime(2026, 7, 10, 20, 0, tzinfo=timezone.utc)
    reset = next_quota_reset(now, PT)
    assert reset == datetime(2026, 7, 11, tzinfo=ZoneInfo(PT))
    assert reset.astimezone(timezone.utc) == datetime(2026, 7, 11, 7, 0, tzinfo=timezone.utc)
