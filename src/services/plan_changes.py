"""
Plan change preview and application.

Upgrades take effect immediately with Stripe-computed proration and a new
billing cycle. Downgrades are deferred to the end of the current period through
a subscription schedule, so the local tier only changes when Stripe executes
the schedule and the resulting subscription update is synced.

Proration amounts are always Stripe's own numbers, copied through untouched.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import stripe

from src.db import child_subscriptions, subscription_plans
from src.services.subscription_sync import resync_after_command
from src.utils.exceptions import SubscriptionNotFoundError, ValidationError
from src.utils.stripe_objects import (
    first_subscription_item,
    format_iso,
    get_id,
    get_value,
    subscription_period,
    subscription_price_id,
    timestamp_to_iso,
)

logger = logging.getLogger(__name__)

# Used when the preview invoice carries no period for the new plan
_APPROXIMATE_CYCLE = timedelta(days=30)


def _load_current_subscription(student_id: str, parent_id: str, expand: list[str]) -> Any:
    record = child_subscriptions.get_for_student(student_id)
    if (
        not record
        or record.get("parent_id") != parent_id
        or not record.get("stripe_subscription_id")
    ):
        raise SubscriptionNotFoundError("No active subscription found")

    return stripe.Subscription.retrieve(record["stripe_subscription_id"], expand=expand)


def _compare_prices(subscription: Any, new_price_id: str) -> tuple[str, Any, Any]:
    """
    Returns:
        (current_price_id, current_price, new_price)

    Raises:
        ValidationError: the subscription is already on ``new_price_id``
    """
    current_price_id = subscription_price_id(subscription)
    if current_price_id == new_price_id:
        raise ValidationError("Already on this plan")

    current_price = stripe.Price.retrieve(current_price_id)
    new_price = stripe.Price.retrieve(new_price_id)
    return current_price_id, current_price, new_price


def _unit_amount(price: Any) -> int:
    return get_value(price, "unit_amount", 0) or 0


def _is_upgrade(current_price: Any, new_price: Any) -> bool:
    return _unit_amount(new_price) > _unit_amount(current_price)


def _new_cycle_end(preview_lines: list[Any], now: datetime) -> str:
    for line in preview_lines:
        if get_value(line, "proration"):
            continue
        end = get_value(get_value(line, "period"), "end")
        if end:
            return timestamp_to_iso(end)
    return format_iso(now + _APPROXIMATE_CYCLE)


def preview_change(student_id: str, parent_id: str, new_price_id: str) -> dict[str, Any]:
    """
    Describe what switching to ``new_price_id`` would do, without changing anything.

    Returns:
        Downgrade: ``isUpgrade`` False and ``effectiveDate`` = current period end.
        Upgrade: ``isUpgrade`` True with Stripe's ``amountDue``, ``currency`` and
        ``lineItems`` for a switch effective now.
    """
    subscription = _load_current_subscription(
        student_id, parent_id, expand=["items.data.price", "customer"]
    )
    current_price_id, current_price, new_price = _compare_prices(subscription, new_price_id)
    current_amount = _unit_amount(current_price)
    new_amount = _unit_amount(new_price)

    if not _is_upgrade(current_price, new_price):
        _, period_end = subscription_period(subscription)
        logger.info(f"Previewed downgrade for student {student_id} to {new_price_id}")
        return {
            "isUpgrade": False,
            "message": "Downgrade will be applied at the end of your current billing cycle",
            "effectiveDate": timestamp_to_iso(period_end),
            "currentPlan": {
                "name": subscription_plans.get_plan_name(current_price_id) or "Current Plan",
                "priceId": current_price_id,
                "amount": current_amount,
                "currency": get_value(current_price, "currency"),
            },
            "newPlan": {
                "name": subscription_plans.get_plan_name(new_price_id) or "New Plan",
                "priceId": new_price_id,
                "amount": new_amount,
                "currency": get_value(new_price, "currency"),
            },
        }

    now = datetime.now(UTC)
    item = first_subscription_item(subscription)
    preview = stripe.Invoice.create_preview(
        customer=get_id(get_value(subscription, "customer")),
        subscription=get_value(subscription, "id"),
        subscription_details={
            "items": [{"id": get_value(item, "id"), "price": new_price_id}],
            "proration_date": int(now.timestamp()),
            "billing_cycle_anchor": "now",
            "proration_behavior": "create_prorations",
        },
    )

    lines = get_value(get_value(preview, "lines"), "data") or []
    line_items = [
        {
            "description": get_value(line, "description"),
            "amount": get_value(line, "amount"),
            "currency": get_value(line, "currency"),
            "proration": get_value(line, "proration"),
        }
        for line in lines
    ]
    amount_due = get_value(preview, "amount_due", 0)
    currency = get_value(preview, "currency", "")

    logger.info(
        f"Previewed upgrade for student {student_id} to {new_price_id}: "
        f"{amount_due} {currency} due today"
    )
    return {
        "isUpgrade": True,
        "amountDue": amount_due,
        "currency": currency,
        "lineItems": line_items,
        "currentPlan": {
            "name": subscription_plans.get_plan_name(current_price_id) or "Current Plan",
            "priceId": current_price_id,
            "amount": current_amount,
        },
        "newPlan": {
            "name": subscription_plans.get_plan_name(new_price_id) or "New Plan",
            "priceId": new_price_id,
            "amount": new_amount,
        },
        "message": (
            f"You'll be charged {amount_due / 100:.2f} {currency.upper()} today. "
            "Your new billing cycle starts immediately."
        ),
        "newBillingCycleStart": format_iso(now),
        "newBillingCycleEnd": _new_cycle_end(lines, now),
    }


def _apply_upgrade(student_id: str, subscription: Any, new_price_id: str) -> dict[str, Any]:
    subscription_id = get_value(subscription, "id")
    schedule_id = get_id(get_value(subscription, "schedule"))
    if schedule_id:
        # A pending downgrade would otherwise revert the upgrade at period end
        stripe.SubscriptionSchedule.release(schedule_id)
        logger.info(f"Released schedule {schedule_id} before upgrading {subscription_id}")

    item = first_subscription_item(subscription)
    updated = stripe.Subscription.modify(
        subscription_id,
        items=[{"id": get_value(item, "id"), "price": new_price_id}],
        billing_cycle_anchor="now",
        proration_behavior="always_invoice",
        payment_behavior="error_if_incomplete",
    )

    resync_after_command(updated, "upgrade")
    child_subscriptions.clear_scheduled_change(student_id)

    period_start, period_end = subscription_period(updated)
    logger.info(f"Upgraded subscription {subscription_id} to {new_price_id} for student {student_id}")
    return {
        "success": True,
        "type": "immediate",
        "message": (
            "Upgrade applied immediately. You have been charged the prorated difference "
            "and your new billing cycle starts today."
        ),
        "subscription": {
            "id": get_value(updated, "id"),
            "status": get_value(updated, "status"),
            "currentPeriodStart": timestamp_to_iso(period_start),
            "currentPeriodEnd": timestamp_to_iso(period_end),
        },
    }


def _apply_downgrade(
    student_id: str, subscription: Any, current_price_id: str, new_price_id: str
) -> dict[str, Any]:
    subscription_id = get_value(subscription, "id")
    period_start, period_end = subscription_period(subscription)

    schedule_id = get_id(get_value(subscription, "schedule"))
    if not schedule_id:
        schedule_id = get_value(
            stripe.SubscriptionSchedule.create(from_subscription=subscription_id), "id"
        )

    schedule = stripe.SubscriptionSchedule.modify(
        schedule_id,
        phases=[
            {
                "items": [{"price": current_price_id, "quantity": 1}],
                "start_date": period_start,
                "end_date": period_end,
            },
            {
                "items": [{"price": new_price_id, "quantity": 1}],
                "start_date": period_end,
            },
        ],
        end_behavior="release",
    )

    # Tier stays as-is locally until Stripe runs the schedule
    updated = stripe.Subscription.retrieve(subscription_id)
    resync_after_command(updated, "downgrade")

    new_plan = subscription_plans.get_plan_by_price_id(new_price_id)
    scheduled_tier = new_plan.get("id") if new_plan else None
    scheduled_date = timestamp_to_iso(period_end)
    child_subscriptions.set_scheduled_change(
        student_id, scheduled_tier, scheduled_date, get_value(schedule, "id")
    )

    _, updated_period_end = subscription_period(updated)
    plan_name = new_plan.get("name") if new_plan else None
    logger.info(
        f"Scheduled downgrade of {subscription_id} to {new_price_id} at {scheduled_date} "
        f"for student {student_id}"
    )
    return {
        "success": True,
        "type": "scheduled",
        "message": f"Downgrade to {plan_name or 'new plan'} scheduled for next billing cycle",
        "scheduledDate": scheduled_date,
        "scheduleId": get_value(schedule, "id"),
        "scheduledTier": scheduled_tier,
        "subscription": {
            "id": get_value(updated, "id"),
            "status": get_value(updated, "status"),
            "currentPeriodEnd": timestamp_to_iso(updated_period_end),
        },
    }


def apply_change(student_id: str, parent_id: str, new_price_id: str) -> dict[str, Any]:
    """
    Switch the student's subscription to ``new_price_id``.

    Raises:
        SubscriptionNotFoundError: no Stripe-backed subscription for the student
        ValidationError: already on the requested price
        stripe.StripeError: Stripe rejected the change (e.g. the upgrade payment failed)
    """
    subscription = _load_current_subscription(
        student_id, parent_id, expand=["items.data.price", "schedule"]
    )
    current_price_id, current_price, new_price = _compare_prices(subscription, new_price_id)

    if _is_upgrade(current_price, new_price):
        return _apply_upgrade(student_id, subscription, new_price_id)
    return _apply_downgrade(student_id, subscription, current_price_id, new_price_id)
