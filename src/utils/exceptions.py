"""
Billing error taxonomy.

Every error raised toward the HTTP boundary carries a fixed, client-safe
message and the status code it maps to. Stripe and database error text is
never placed in these messages; routes log the original exception and return
a generic message instead.

Usage:
    from src.utils.exceptions import AuthorizationError

    raise AuthorizationError("Student not linked to parent")
"""

from typing import Any


class BillingError(Exception):
    """Base class for errors that map onto an HTTP error response."""

    status_code = 500

    def __init__(self, message: str, *, extra: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_response_body(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class AuthenticationError(BillingError):
    """401 - missing bearer token or the token does not resolve to a user."""

    status_code = 401


class AuthorizationError(BillingError):
    """403 - authenticated, but the caller may not act on this student."""

    status_code = 403


class ValidationError(BillingError):
    """400 - malformed or semantically invalid request."""

    status_code = 400


class SubscriptionNotFoundError(BillingError):
    """404 - no Stripe-backed subscription or billing account to act on."""

    status_code = 404


class WebhookVerificationError(BillingError):
    """400 - webhook signature missing, invalid, or secret not configured."""

    status_code = 400


class IdentityUnresolvableError(Exception):
    """
    A Stripe object could not be tied to a parent/student pair, neither from its
    metadata nor from an existing child_subscriptions row.

    Never retried: redelivering the same event cannot succeed without an
    external fix.
    """

    def __init__(self, message: str, *, subscription_id: str | None = None):
        super().__init__(message)
        self.subscription_id = subscription_id
