"""Segment matching for automation targeting.

Usage:
    from mailflow.automation.segment import matches

    if not matches(customer, config.segment_conditions):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mailflow.automation.models import CustomerSnapshot
    from mailflow.config_schema import SegmentConditions

# Minimum quality score for the "premium" tier
PREMIUM_QUALITY_SCORE = 4


def matches(customer: CustomerSnapshot, conditions: SegmentConditions | None) -> bool:
    """Return True if the customer satisfies every configured condition.

    Args:
        customer: Snapshot taken when the automation was triggered
        conditions: Targeting conditions, or None for "everyone"

    Returns:
        True if all present sub-conditions hold
    """
    if conditions is None:
        return True

    if conditions.min_order_value and customer.total_spent < conditions.min_order_value:
        return False

    if conditions.min_order_count and customer.order_count < conditions.min_order_count:
        return False

    if conditions.quality_tier == "premium" and customer.quality_score < PREMIUM_QUALITY_SCORE:
        return False

    # A customer with no recorded categories is not excluded by this condition
    if conditions.preferred_categories and customer.preferred_categories:
        if not set(conditions.preferred_categories) & set(customer.preferred_categories):
            return False

    return True
