"""
child_subscriptions table access.

One row per student, unique on ``student_id``. Rows are never deleted: a
cancelled subscription is degraded to the free tier in place. Query errors
propagate to the caller, which decides whether a failure is fatal.
"""

import logging
from typing import Any

from src.config.supabase_config import execute_with_retry
from src.utils.stripe_objects import utc_now_iso

logger = logging.getLogger(__name__)

TABLE = "child_subscriptions"
FREE_TIER = "core"

_SCHEDULE_COLUMNS = ("scheduled_tier", "scheduled_change_date", "stripe_schedule_id")


def get_by_stripe_subscription_id(stripe_subscription_id: str) -> dict[str, Any] | None:
    """Return the record linked to a Stripe subscription, if any."""

    def _fetch(client):
        return (
            client.table(TABLE)
            .select("*")
            .eq("stripe_subscription_id", stripe_subscription_id)
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_fetch, operation_name="get_subscription_by_stripe_id")
    return result.data[0] if result.data else None


def get_for_student(student_id: str) -> dict[str, Any] | None:
    def _fetch(client):
        return client.table(TABLE).select("*").eq("student_id", student_id).limit(1).execute()

    result = execute_with_retry(_fetch, operation_name="get_subscription_for_student")
    return result.data[0] if result.data else None


def upsert_subscription(record: dict[str, Any]) -> dict[str, Any] | None:
    """
    Insert or replace the record for ``record["student_id"]``.

    Concurrent writers for the same student resolve to whichever upsert the
    database applies last; fields are replaced, never merged.
    """

    def _upsert(client):
        return client.table(TABLE).upsert(record, on_conflict="student_id").execute()

    result = execute_with_retry(_upsert, operation_name="upsert_child_subscription")
    return result.data[0] if result.data else None


def degrade_by_stripe_subscription_id(stripe_subscription_id: str) -> int:
    """
    Return the record owning ``stripe_subscription_id`` to the free tier.

    Returns:
        Number of rows updated (0 when no record references the subscription)
    """
    payload = {
        "tier": FREE_TIER,
        "stripe_subscription_id": None,
        "stripe_price_id": None,
        "stripe_status": "canceled",
        "is_active": True,
        "cancel_at_period_end": False,
        "current_period_start": None,
        "current_period_end": None,
        "next_billing_date": None,
        **{column: None for column in _SCHEDULE_COLUMNS},
        "updated_at": utc_now_iso(),
    }

    def _update(client):
        return (
            client.table(TABLE)
            .update(payload)
            .eq("stripe_subscription_id", stripe_subscription_id)
            .execute()
        )

    result = execute_with_retry(_update, operation_name="degrade_child_subscription")
    return len(result.data or [])


def set_scheduled_change(
    student_id: str, scheduled_tier: str, scheduled_change_date: str, stripe_schedule_id: str
) -> None:
    """Record a pending downgrade that Stripe will execute at period end."""
    payload = {
        "scheduled_tier": scheduled_tier,
        "scheduled_change_date": scheduled_change_date,
        "stripe_schedule_id": stripe_schedule_id,
        "updated_at": utc_now_iso(),
    }

    def _update(client):
        return client.table(TABLE).update(payload).eq("student_id", student_id).execute()

    execute_with_retry(_update, operation_name="set_scheduled_change")


def clear_scheduled_change(student_id: str) -> None:
    def _update(client):
        return (
            client.table(TABLE)
            .update({column: None for column in _SCHEDULE_COLUMNS})
            .eq("student_id", student_id)
            .execute()
        )

    execute_with_retry(_update, operation_name="clear_scheduled_change")
