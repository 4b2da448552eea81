import logging
from typing import Any

from src.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

TABLE = "subscription_plans"

# Ordered lowest to highest. "core" is the free tier; "max" is no longer sold
# but existing rows still carry it.
TIER_ORDER = ("core", "plus", "pro", "max")
LOWEST_PAID_TIER = "plus"


def get_plan_by_price_id(price_id: str) -> dict[str, Any] | None:
    """
    Look up the catalog entry for a Stripe price.

    Returns:
        ``{"id": <tier>, "name": <display name>, "stripe_price_id": ...}`` or None
        when the price is not in the catalog. Query errors propagate.
    """

    def _fetch(client):
        return (
            client.table(TABLE)
            .select("id, name, stripe_price_id")
            .eq("stripe_price_id", price_id)
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_fetch, operation_name="get_plan_by_price_id")
    if not result.data:
        logger.debug(f"No subscription plan found for price {price_id}")
        return None
    return result.data[0]


def get_plan_name(price_id: str | None) -> str | None:
    """Display name for a Stripe price, or None when it is not in the catalog."""
    if not price_id:
        return None
    plan = get_plan_by_price_id(price_id)
    return plan.get("name") if plan else None
