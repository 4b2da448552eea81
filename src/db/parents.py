"""Profile, payer and parent-student relationship lookups."""

import logging
from typing import Any

from src.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)


def get_profile(user_id: str) -> dict[str, Any] | None:
    """Return ``{"id", "user_type", "name", "email"}`` for a user, or None."""

    def _fetch(client):
        return (
            client.table("profiles")
            .select("id, user_type, name, email")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_fetch, operation_name="get_profile")
    return result.data[0] if result.data else None


def is_parent_linked(parent_id: str, student_id: str) -> bool:
    def _fetch(client):
        return (
            client.table("parent_student_links")
            .select("parent_id")
            .eq("parent_id", parent_id)
            .eq("student_id", student_id)
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_fetch, operation_name="is_parent_linked")
    return bool(result.data)


def get_stripe_customer_id(parent_id: str) -> str | None:
    def _fetch(client):
        return (
            client.table("parent_profiles")
            .select("stripe_customer_id")
            .eq("id", parent_id)
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_fetch, operation_name="get_stripe_customer_id")
    if not result.data:
        return None
    return result.data[0].get("stripe_customer_id")


def set_stripe_customer_id_if_missing(parent_id: str, stripe_customer_id: str) -> str | None:
    """
    Store the parent's Stripe customer id unless one is already stored.

    The update only matches a row whose ``stripe_customer_id`` is still null, so
    when two checkout requests race, the first writer wins and the other reads
    back the stored id.

    Returns:
        The customer id now stored for the parent
    """

    def _update(client):
        return (
            client.table("parent_profiles")
            .update({"stripe_customer_id": stripe_customer_id})
            .eq("id", parent_id)
            .is_("stripe_customer_id", "null")
            .execute()
        )

    result = execute_with_retry(_update, operation_name="set_stripe_customer_id")
    if result.data:
        logger.info(f"Saved Stripe customer {stripe_customer_id} for parent {parent_id}")
        return stripe_customer_id

    stored = get_stripe_customer_id(parent_id)
    if stored and stored != stripe_customer_id:
        logger.warning(
            f"Parent {parent_id} already mapped to Stripe customer {stored}; "
            f"discarding {stripe_customer_id}"
        )
    return stored
