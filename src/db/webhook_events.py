#!/usr/bin/env python3
"""
Webhook Event Ledger Database Module
Handles storage and lookup of processed Stripe webhook events for idempotency
"""

import logging
from datetime import UTC, datetime

from src.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

TABLE = "processed_webhook_events"

# Postgres unique_violation
_UNIQUE_VIOLATION_CODE = "23505"

_missing_table_warning_logged = False


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the processed_webhook_events table
    is missing from the Supabase schema cache so operators know to run migrations.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if TABLE in message or "PGRST205" in message:
        logger.warning(
            f"{TABLE} table is unavailable in Supabase (likely migrations not applied "
            "or schema cache stale). Apply the webhook idempotency migration, then run "
            "NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


def _is_unique_violation(error: Exception) -> bool:
    code = getattr(error, "code", None)
    if code == _UNIQUE_VIOLATION_CODE:
        return True
    message = str(error).lower()
    return _UNIQUE_VIOLATION_CODE in message or "duplicate key" in message


def is_event_processed(event_id: str) -> bool:
    """
    Check if a webhook event has already been processed

    Args:
        event_id: Stripe event ID (evt_xxx)

    Returns:
        True if event was already processed, False otherwise

    Raises:
        Exception: when the ledger cannot be read. The caller must not apply
            the event, since it may already have been applied.
    """

    def _check_event(client):
        return client.table(TABLE).select("event_id").eq("event_id", event_id).execute()

    try:
        result = execute_with_retry(
            _check_event, max_retries=2, retry_delay=0.2, operation_name="is_event_processed"
        )
    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error checking if event is processed: {e}", exc_info=True)
        raise

    exists = bool(result.data)
    if exists:
        logger.info(f"Duplicate webhook event detected: {event_id}")

    return exists


def record_processed_event(event_id: str, event_type: str) -> bool:
    """
    Record that a webhook event has been processed

    A concurrent delivery of the same event that recorded it first is treated
    as success: the ledger only has to say the event was handled once.

    Args:
        event_id: Stripe event ID (evt_xxx)
        event_type: Stripe event type (e.g., invoice.paid)

    Returns:
        True if the event is recorded (by this call or a racing one), False otherwise
    """

    def _record_event(client):
        return (
            client.table(TABLE)
            .upsert(
                {
                    "event_id": event_id,
                    "event_type": event_type,
                    "processed_at": datetime.now(UTC).isoformat(),
                },
                on_conflict="event_id",
                ignore_duplicates=True,
            )
            .execute()
        )

    try:
        execute_with_retry(
            _record_event, max_retries=2, retry_delay=0.2, operation_name="record_processed_event"
        )
    except Exception as e:
        if _is_unique_violation(e):
            logger.info(f"Webhook event {event_id} already recorded by a concurrent delivery")
            return True
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error recording processed event: {e}", exc_info=True)
        return False

    logger.info(f"Recorded processed webhook event: {event_id} ({event_type})")
    return True

