"""Tests for segment matching, frequency capping and the daily quota."""

from datetime import UTC, date, datetime, timedelta

import pytest

from mailflow.automation.frequency import within_limit
from mailflow.automation.models import CustomerSnapshot, TrackingRecord, TrackingStatus
from mailflow.automation.quota import DailyQuota
from mailflow.automation.segment import matches
from mailflow.config_schema import SegmentConditions

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _sent(email: str, automation_type: str, sent_at: datetime, **kwargs) -> TrackingRecord:
    return TrackingRecord(
        id=f"{automation_type}_x",
        customer_email=email,
        automation_type=automation_type,
        scheduled_at=sent_at,
        status=kwargs.pop("status", TrackingStatus.SENT),
        sent_at=sent_at,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Tests: Segment
# ---------------------------------------------------------------------------


class TestSegment:
    def test_no_conditions_matches_everyone(self):
        assert matches(CustomerSnapshot(email="a@x.com"), None)
        assert matches(CustomerSnapshot(email="a@x.com"), SegmentConditions())

    @pytest.mark.parametrize(("spent", "expected"), [(40, False), (50, True), (60, True)])
    def test_min_order_value(self, spent, expected):
        conditions = SegmentConditions(min_order_value=50)

        assert matches(CustomerSnapshot(email="a@x.com", total_spent=spent), conditions) is expected

    def test_min_order_count(self):
        conditions = SegmentConditions(min_order_count=1)

        assert not matches(CustomerSnapshot(email="a@x.com", order_count=0), conditions)
        assert matches(CustomerSnapshot(email="a@x.com", order_count=1), conditions)

    def test_premium_tier_needs_quality_score_four(self):
        conditions = SegmentConditions(quality_tier="premium")

        assert not matches(CustomerSnapshot(email="a@x.com", quality_score=3.9), conditions)
        assert matches(CustomerSnapshot(email="a@x.com", quality_score=4), conditions)

    def test_standard_tier_imposes_nothing(self):
        conditions = SegmentConditions(quality_tier="standard")

        assert matches(CustomerSnapshot(email="a@x.com", quality_score=0), conditions)

    def test_categories_need_overlap(self):
        conditions = SegmentConditions(preferred_categories=["vases", "lamps"])

        assert matches(
            CustomerSnapshot(email="a@x.com", preferred_categories=("lamps",)), conditions
        )
        assert not matches(
            CustomerSnapshot(email="a@x.com", preferred_categories=("rugs",)), conditions
        )

    def test_customer_without_categories_not_excluded(self):
        conditions = SegmentConditions(preferred_categories=["vases"])

        assert matches(CustomerSnapshot(email="a@x.com"), conditions)

    def test_all_conditions_must_hold(self):
        conditions = SegmentConditions(min_order_value=75, quality_tier="premium")

        assert not matches(
            CustomerSnapshot(email="a@x.com", total_spent=100, quality_score=2), conditions
        )
        assert matches(
            CustomerSnapshot(email="a@x.com", total_spent=100, quality_score=5), conditions
        )


# ---------------------------------------------------------------------------
# Tests: Frequency
# ---------------------------------------------------------------------------


class TestFrequency:
    def test_empty_history_allows(self):
        assert within_limit("a@x.com", "CARE_GUIDE", timedelta(days=3), [], NOW)

    def test_recent_send_blocks(self):
        history = [_sent("a@x.com", "CARE_GUIDE", NOW - timedelta(days=2))]

        assert not within_limit("a@x.com", "CARE_GUIDE", timedelta(days=3), history, NOW)

    def test_send_outside_window_allows(self):
        history = [_sent("a@x.com", "CARE_GUIDE", NOW - timedelta(days=3, seconds=1))]

        assert within_limit("a@x.com", "CARE_GUIDE", timedelta(days=3), history, NOW)

    def test_zero_cap_always_allows(self):
        history = [_sent("a@x.com", "CARE_GUIDE", NOW)]

        assert within_limit("a@x.com", "CARE_GUIDE", timedelta(0), history, NOW)

    def test_other_customer_or_type_ignored(self):
        history = [
            _sent("b@x.com", "CARE_GUIDE", NOW),
            _sent("a@x.com", "WELCOME_SERIES", NOW),
        ]

        assert within_limit("a@x.com", "CARE_GUIDE", timedelta(days=3), history, NOW)

    @pytest.mark.parametrize(
        "status", [TrackingStatus.PENDING, TrackingStatus.FAILED, TrackingStatus.CANCELLED]
    )
    def test_only_sent_records_count(self, status):
        history = [_sent("a@x.com", "CARE_GUIDE", NOW, status=status)]

        assert within_limit("a@x.com", "CARE_GUIDE", timedelta(days=3), history, NOW)


# ---------------------------------------------------------------------------
# Tests: Daily quota
# ---------------------------------------------------------------------------


class TestDailyQuota:
    def test_consume_until_limit(self):
        quota = DailyQuota(limit=2)
        today = date(2026, 3, 2)

        assert quota.try_consume(today)
        assert quota.try_consume(today)
        assert not quota.try_consume(today)
        assert quota.usage().count == 2
        assert quota.usage().remaining == 0

    def test_resets_on_new_day(self):
        quota = DailyQuota(limit=1)
        assert quota.try_consume(date(2026, 3, 2))
        assert not quota.try_consume(date(2026, 3, 2))

        assert quota.try_consume(date(2026, 3, 3))
        assert quota.usage().date == "2026-03-03"

    def test_usage_rolls_to_today(self):
        quota = DailyQuota(limit=5)
        quota.try_consume(date(2026, 3, 2))

        usage = quota.usage(date(2026, 3, 3))

        assert (usage.date, usage.count, usage.limit) == ("2026-03-03", 0, 5)

    def test_restore(self):
        quota = DailyQuota(limit=3)
        quota.restore(date(2026, 3, 2), 3)

        assert not quota.try_consume(date(2026, 3, 2))
