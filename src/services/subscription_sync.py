"""
Subscription sync resolvers.

Every write path (command responses, webhooks, manual reconciliation) funnels
a Stripe subscription through ``sync_subscription_to_database`` so the local
``child_subscriptions`` row is always a projection of Stripe's state. The
resolvers never raise: failures come back as a ``SyncResult``.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.config.config import Config
from src.db import child_subscriptions, subscription_plans
from src.utils.exceptions import IdentityUnresolvableError
from src.utils.sentry_context import capture_data_integrity_issue
from src.utils.stripe_objects import (
    get_value,
    metadata_to_dict,
    subscription_period,
    subscription_price_id,
    timestamp_to_date,
    timestamp_to_iso,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})

PARENT_METADATA_KEY = "supabase_parent_id"
STUDENT_METADATA_KEY = "supabase_student_id"


@dataclass
class SyncResult:
    success: bool
    error: str | None = None
    identity_unresolved: bool = False


@dataclass
class SubscriptionIdentity:
    """Payer and beneficiary a Stripe subscription belongs to."""

    parent_id: str
    student_id: str
    source: str  # "metadata" or "record_lookup"


def resolve_identity(subscription: Any) -> SubscriptionIdentity:
    """
    Work out which parent and student a Stripe subscription belongs to.

    Metadata written at checkout is authoritative. When either key is missing
    (metadata edited in the dashboard, subscriptions created outside checkout)
    the existing child_subscriptions row for the subscription id is used.

    Raises:
        IdentityUnresolvableError: neither source yields an identity
        Exception: database errors from the fallback lookup propagate
    """
    subscription_id = get_value(subscription, "id")
    metadata = metadata_to_dict(get_value(subscription, "metadata"))
    parent_id = metadata.get(PARENT_METADATA_KEY)
    student_id = metadata.get(STUDENT_METADATA_KEY)

    if parent_id and student_id:
        return SubscriptionIdentity(parent_id, student_id, "metadata")

    existing = (
        child_subscriptions.get_by_stripe_subscription_id(subscription_id)
        if subscription_id
        else None
    )
    if not existing:
        raise IdentityUnresolvableError(
            f"Missing metadata in subscription {subscription_id} and no existing record found",
            subscription_id=subscription_id,
        )

    logger.warning(
        f"Subscription {subscription_id} is missing identity metadata; "
        f"using existing record for student {existing['student_id']}",
        extra={"identity_source": "record_lookup", "stripe_subscription_id": subscription_id},
    )
    return SubscriptionIdentity(existing["parent_id"], existing["student_id"], "record_lookup")


def resolve_tier(price_id: str | None) -> str:
    """
    Map a Stripe price to an entitlement tier through the plan catalog.

    An unknown price falls back to the lowest paid tier and is reported, since
    the customer has paid for something. With STRICT_PRICE_MAPPING enabled it
    raises instead.
    """
    plan = subscription_plans.get_plan_by_price_id(price_id) if price_id else None
    if plan and plan.get("id") in subscription_plans.TIER_ORDER:
        return plan["id"]

    if Config.STRICT_PRICE_MAPPING:
        raise ValueError(f"Stripe price {price_id} is not mapped to a subscription plan")

    logger.warning(
        f"Stripe price {price_id} not found in subscription_plans; "
        f"defaulting to tier '{subscription_plans.LOWEST_PAID_TIER}'",
        extra={"stripe_price_id": price_id},
    )
    capture_data_integrity_issue(
        "Unmapped Stripe price during subscription sync",
        {"stripe_price_id": price_id, "fallback_tier": subscription_plans.LOWEST_PAID_TIER},
    )
    return subscription_plans.LOWEST_PAID_TIER


def build_subscription_record(
    subscription: Any, identity: SubscriptionIdentity, tier: str
) -> dict[str, Any]:
    status = get_value(subscription, "status")
    cancel_at_period_end = bool(get_value(subscription, "cancel_at_period_end", False))
    period_start, period_end = subscription_period(subscription)
    start_date = get_value(subscription, "start_date")

    record: dict[str, Any] = {
        "parent_id": identity.parent_id,
        "student_id": identity.student_id,
        "tier": tier,
        "stripe_subscription_id": get_value(subscription, "id"),
        "stripe_price_id": subscription_price_id(subscription),
        "stripe_status": status,
        "is_active": status in ACTIVE_STATUSES,
        "current_period_start": timestamp_to_iso(period_start),
        "current_period_end": timestamp_to_iso(period_end),
        "cancel_at_period_end": cancel_at_period_end,
        "start_date": timestamp_to_date(start_date) or datetime.now(UTC).date().isoformat(),
        "next_billing_date": (
            None if cancel_at_period_end or period_end is None else timestamp_to_date(period_end)
        ),
        "updated_at": utc_now_iso(),
    }

    # A subscription without a schedule has no pending downgrade: it either ran or was released
    if not get_value(subscription, "schedule"):
        record.update(
            {"scheduled_tier": None, "scheduled_change_date": None, "stripe_schedule_id": None}
        )

    return record


def sync_subscription_to_database(subscription: Any) -> SyncResult:
    """
    Project a Stripe subscription onto its child_subscriptions row.

    Args:
        subscription: Stripe Subscription (StripeObject or dict)

    Returns:
        SyncResult. ``identity_unresolved`` is set when the subscription cannot
        be tied to a student; nothing is written in that case.
    """
    subscription_id = get_value(subscription, "id")

    try:
        identity = resolve_identity(subscription)
    except IdentityUnresolvableError as e:
        logger.error(str(e), extra={"stripe_subscription_id": subscription_id})
        capture_data_integrity_issue(
            "Stripe subscription could not be tied to a student",
            {"stripe_subscription_id": subscription_id},
        )
        return SyncResult(success=False, error=str(e), identity_unresolved=True)
    except Exception as e:
        logger.error(
            f"Error resolving identity for subscription {subscription_id}: {e}", exc_info=True
        )
        return SyncResult(success=False, error=str(e))

    try:
        tier = resolve_tier(subscription_price_id(subscription))
        record = build_subscription_record(subscription, identity, tier)
        child_subscriptions.upsert_subscription(record)
    except Exception as e:
        logger.error(f"Error syncing subscription {subscription_id} to database: {e}", exc_info=True)
        return SyncResult(success=False, error=str(e))

    logger.info(
        f"Subscription {subscription_id} synced for student {identity.student_id}, "
        f"tier: {tier}, status: {record['stripe_status']}",
        extra={"identity_source": identity.source, "stripe_subscription_id": subscription_id},
    )
    return SyncResult(success=True)


def resync_after_command(subscription: Any, operation: str) -> SyncResult:
    """
    Sync the subscription Stripe returned from a user command.

    The Stripe change has already happened by this point, so a failed local
    sync does not fail the command; the webhook for the same change repairs
    the row.
    """
    result = sync_subscription_to_database(subscription)
    if not result.success:
        logger.error(
            f"{operation}: subscription {get_value(subscription, 'id')} changed in Stripe "
            f"but local sync failed ({result.error}); awaiting webhook reconciliation"
        )
    return result


def sync_subscription_deletion(subscription_id: str) -> SyncResult:
    """
    Degrade the student owning ``subscription_id`` to the free tier.

    The row is kept, active, on the free tier. A subscription no row references
    is treated as already degraded.
    """
    try:
        updated = child_subscriptions.degrade_by_stripe_subscription_id(subscription_id)
    except Exception as e:
        logger.error(f"Error syncing subscription deletion for {subscription_id}: {e}", exc_info=True)
        return SyncResult(success=False, error=str(e))

    if updated:
        logger.info(f"Subscription {subscription_id} deleted, downgraded to free tier")
    else:
        logger.info(f"Subscription {subscription_id} deleted; no local record references it")
    return SyncResult(success=True)
