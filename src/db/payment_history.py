"""
payment_history table access.

Append-only. Duplicate rows for the same invoice are prevented by the webhook
event ledger, not by a uniqueness constraint here.
"""

import logging
from typing import Any

from src.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

TABLE = "payment_history"


def record_payment(
    *,
    parent_id: str,
    student_id: str,
    stripe_invoice_id: str,
    stripe_payment_intent_id: str | None,
    stripe_subscription_id: str,
    amount_cents: int,
    currency: str,
    status: str,
    tier: str | None,
    description: str,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """
    Append one payment row.

    Args:
        status: "succeeded" or "failed"
        metadata: invoice number plus billing reason or attempt count

    Returns:
        The inserted row. Raises on database errors.
    """
    row = {
        "parent_id": parent_id,
        "student_id": student_id,
        "stripe_invoice_id": stripe_invoice_id,
        "stripe_payment_intent_id": stripe_payment_intent_id,
        "stripe_subscription_id": stripe_subscription_id,
        "amount_cents": amount_cents,
        "currency": currency,
        "status": status,
        "tier": tier,
        "description": description,
        "metadata": metadata or {},
    }

    def _insert(client):
        return client.table(TABLE).insert(row).execute()

    result = execute_with_retry(_insert, operation_name="record_payment")
    logger.info(
        f"Recorded {status} payment for invoice {stripe_invoice_id} "
        f"(student {student_id}, {amount_cents} {currency})"
    )
    return result.data[0] if result.data else None
