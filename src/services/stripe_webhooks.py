#!/usr/bin/env python3
"""
Stripe Webhook Processor

Every delivery goes through the same pipeline:

    verify signature -> check ledger -> apply -> record in ledger

An event is only recorded after it has been applied, so a failure before that
point answers non-2xx and Stripe redelivers. Applying an event twice converges
on the same subscription row; the ledger is what keeps payment history from
gaining duplicate rows.
"""

import logging
from typing import Any

import stripe

from src.config.config import Config
from src.config.stripe_config import configure_stripe
from src.db import payment_history, subscription_plans
from src.db.webhook_events import is_event_processed, record_processed_event
from src.schemas.billing import WebhookOutcome
from src.services.subscription_sync import (
    PARENT_METADATA_KEY,
    STUDENT_METADATA_KEY,
    resolve_identity,
    sync_subscription_deletion,
    sync_subscription_to_database,
)
from src.utils.exceptions import IdentityUnresolvableError, WebhookVerificationError
from src.utils.sentry_context import capture_data_integrity_issue, capture_payment_error
from src.utils.stripe_objects import (
    get_id,
    get_value,
    metadata_to_dict,
    subscription_price_id,
)

logger = logging.getLogger(__name__)


class StripeWebhookProcessor:
    """Verifies, deduplicates and applies Stripe webhook events"""

    def __init__(self, webhook_secret: str | None = None):
        configure_stripe()
        self.webhook_secret = webhook_secret or Config.STRIPE_WEBHOOK_SECRET
        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

    def _construct_event(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            logger.error("Webhook secret not configured - rejecting webhook")
            raise WebhookVerificationError("Webhook secret not configured")
        if not signature:
            logger.error("Missing webhook signature")
            raise WebhookVerificationError("No signature")

        try:
            # Constant-time signature comparison happens inside the SDK
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise WebhookVerificationError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise WebhookVerificationError("Invalid signature") from e

    def process(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        """
        Handle one webhook delivery.

        Raises:
            WebhookVerificationError: missing/invalid signature or no secret configured

        Returns:
            WebhookOutcome whose ``status_code`` is 2xx when Stripe should stop
            redelivering and 5xx when it should retry.
        """
        event = self._construct_event(payload, signature)
        event_id = get_value(event, "id")
        event_type = get_value(event, "type")
        obj = get_value(get_value(event, "data"), "object")

        logger.info(f"Processing webhook: {event_type} (ID: {event_id})")

        try:
            if is_event_processed(event_id):
                return WebhookOutcome(
                    event_id=event_id, event_type=event_type, duplicate=True, message="duplicate"
                )
        except Exception:
            # Unknown whether it was applied; let Stripe retry once the ledger is reachable
            return WebhookOutcome(
                status_code=503,
                event_id=event_id,
                event_type=event_type,
                message="Event ledger unavailable",
            )

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
        else:
            try:
                handler(obj)
            except IdentityUnresolvableError as e:
                # Redelivery cannot fix missing ownership; record the event and move on
                logger.error(
                    f"Webhook {event_id} ({event_type}) skipped: {e}",
                    extra={"stripe_event_id": event_id, "stripe_subscription_id": e.subscription_id},
                )
            except Exception as e:
                logger.error(f"Webhook {event_id} ({event_type}) failed: {e}", exc_info=True)
                capture_payment_error(
                    e,
                    operation="webhook",
                    details={"event_id": event_id, "event_type": event_type},
                )
                return WebhookOutcome(
                    status_code=500,
                    event_id=event_id,
                    event_type=event_type,
                    message="Webhook processing failed",
                )

        if not record_processed_event(event_id, event_type):
            capture_data_integrity_issue(
                "Webhook applied but not recorded in the event ledger",
                {"event_id": event_id, "event_type": event_type},
            )

        return WebhookOutcome(event_id=event_id, event_type=event_type)

    # ==================== Checkout ====================

    def _handle_checkout_completed(self, session: Any) -> None:
        """Subscription state arrives through customer.subscription.created; only log here."""
        if get_value(session, "mode") != "subscription":
            return

        metadata = metadata_to_dict(get_value(session, "metadata"))
        parent_id = metadata.get(PARENT_METADATA_KEY)
        student_id = metadata.get(STUDENT_METADATA_KEY)
        if not parent_id or not student_id:
            logger.warning(f"Checkout session {get_value(session, 'id')} is missing identity metadata")
            return

        logger.info(f"Checkout completed for parent {parent_id}, student {student_id}")

    # ==================== Subscriptions ====================

    def _handle_subscription_changed(self, subscription: Any) -> None:
        result = sync_subscription_to_database(subscription)
        if result.identity_unresolved:
            raise IdentityUnresolvableError(
                result.error or "Subscription identity unresolved",
                subscription_id=get_value(subscription, "id"),
            )
        if not result.success:
            raise RuntimeError(f"Subscription sync failed: {result.error}")

    def _handle_subscription_deleted(self, subscription: Any) -> None:
        result = sync_subscription_deletion(get_value(subscription, "id"))
        if not result.success:
            raise RuntimeError(f"Subscription deletion sync failed: {result.error}")

    # ==================== Invoices ====================

    @staticmethod
    def _invoice_subscription_id(invoice: Any) -> str | None:
        subscription_id = get_id(get_value(invoice, "subscription"))
        if subscription_id:
            return subscription_id
        # Newer API versions nest the subscription under the invoice's parent
        details = get_value(get_value(invoice, "parent"), "subscription_details")
        return get_id(get_value(details, "subscription"))

    def _record_invoice(
        self,
        invoice: Any,
        *,
        status: str,
        amount_cents: int,
        description: str,
        metadata: dict[str, Any],
    ) -> None:
        invoice_id = get_value(invoice, "id")
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Invoice {invoice_id} has no subscription; ignoring")
            return

        # Identity and tier come from the subscription as it is now, not the invoice lines
        subscription = stripe.Subscription.retrieve(subscription_id)
        identity = resolve_identity(subscription)

        price_id = subscription_price_id(subscription)
        plan = subscription_plans.get_plan_by_price_id(price_id) if price_id else None

        try:
            payment_history.record_payment(
                parent_id=identity.parent_id,
                student_id=identity.student_id,
                stripe_invoice_id=invoice_id,
                stripe_payment_intent_id=get_id(get_value(invoice, "payment_intent")),
                stripe_subscription_id=subscription_id,
                amount_cents=amount_cents,
                currency=get_value(invoice, "currency"),
                status=status,
                tier=plan.get("id") if plan else None,
                description=description,
                metadata=metadata,
            )
        except Exception as e:
            logger.error(f"Error recording {status} payment for invoice {invoice_id}: {e}", exc_info=True)
            capture_payment_error(
                e,
                operation="record_payment",
                user_id=identity.parent_id,
                details={"invoice_id": invoice_id, "subscription_id": subscription_id},
            )

    def _handle_invoice_paid(self, invoice: Any) -> None:
        lines = get_value(get_value(invoice, "lines"), "data") or []
        description = get_value(lines[0], "description") if lines else None
        self._record_invoice(
            invoice,
            status="succeeded",
            amount_cents=get_value(invoice, "amount_paid", 0),
            description=description or "Subscription payment",
            metadata={
                "invoice_number": get_value(invoice, "number"),
                "billing_reason": get_value(invoice, "billing_reason"),
            },
        )

    def _handle_invoice_payment_failed(self, invoice: Any) -> None:
        self._record_invoice(
            invoice,
            status="failed",
            amount_cents=get_value(invoice, "amount_due", 0),
            description="Payment failed",
            metadata={
                "invoice_number": get_value(invoice, "number"),
                "attempt_count": get_value(invoice, "attempt_count"),
            },
        )
