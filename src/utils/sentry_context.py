"""
Sentry error context utilities for billing error tracking and reporting.

sentry_sdk calls are no-ops until ``sentry_sdk.init`` runs, so these helpers
are safe to call in tests and in environments with Sentry disabled.
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Args:
        exception: The exception to capture
        context_type: Type of context for the error
        context_data: Additional context information
        tags: Dictionary of tags for filtering

    Returns:
        Event ID if captured, None if Sentry is disabled
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            for key, value in (tags or {}).items():
                scope.set_tag(key, str(value))
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a payment-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Billing operation (e.g., 'checkout_session', 'webhook')
        provider: Payment provider (default: 'stripe')
        user_id: Parent ID if applicable
        details: Additional details (subscription ID, event ID, etc.)

    Returns:
        Event ID if captured, None if Sentry is disabled
    """
    context_data: dict[str, Any] = {
        "operation": operation,
        "provider": provider,
    }
    if user_id:
        context_data["user_id"] = user_id
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="payment",
        context_data=context_data,
        tags={"operation": operation, "provider": provider},
    )


def capture_data_integrity_issue(message: str, details: dict[str, Any] | None = None) -> str | None:
    """
    Report a condition that is not an exception but needs an operator, such as a
    Stripe price with no catalog entry or a subscription nobody owns.
    """
    try:
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("category", "billing_data_integrity")
            if details:
                scope.set_context("billing", details)
            return sentry_sdk.capture_message(message, level="warning")
    except Exception as e:
        logger.warning(f"Failed to capture message to Sentry: {e}")
        return None
