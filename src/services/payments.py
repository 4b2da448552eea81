#!/usr/bin/env python3
"""
Stripe Service
Handles the user-initiated subscription commands: checkout, cancellation,
billing portal, plan changes and manual reconciliation.

Each command authorizes the parent against the student, performs one Stripe
operation and immediately re-syncs child_subscriptions from the object Stripe
returned, without waiting for the webhook.
"""

import logging
from typing import Any

import stripe

from src.config.config import Config
from src.config.stripe_config import configure_stripe
from src.db import child_subscriptions, parents
from src.schemas.billing import (
    CancelSubscriptionRequest,
    CheckoutSessionResponse,
    CreateCheckoutSessionRequest,
    PlanChangeRequest,
    PortalSessionResponse,
    SyncedSubscription,
    SyncSubscriptionRequest,
    SyncSubscriptionResponse,
)
from src.services import plan_changes
from src.services.subscription_sync import (
    PARENT_METADATA_KEY,
    STUDENT_METADATA_KEY,
    resync_after_command,
    sync_subscription_deletion,
    sync_subscription_to_database,
)
from src.utils.exceptions import (
    AuthorizationError,
    BillingError,
    SubscriptionNotFoundError,
    ValidationError,
)
from src.utils.stripe_objects import (
    get_id,
    get_value,
    metadata_to_dict,
    subscription_period,
    timestamp_to_iso,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_PAGE = "/parent/subscription"


class StripeService:
    """Service class for handling Stripe subscription commands"""

    def __init__(self):
        """Configure the Stripe SDK from Config"""
        configure_stripe()
        self.app_url = Config.APP_URL.rstrip("/")
        logger.info("Stripe service initialized")

    # ==================== Authorization ====================

    @staticmethod
    def _require_link(parent_id: str, student_id: str) -> None:
        if not parents.is_parent_linked(parent_id, student_id):
            logger.warning(f"Parent {parent_id} attempted to act on unlinked student {student_id}")
            raise AuthorizationError("Student not linked to parent")

    @staticmethod
    def _get_owned_record(parent_id: str, student_id: str) -> dict[str, Any] | None:
        record = child_subscriptions.get_for_student(student_id)
        if record and record.get("parent_id") == parent_id:
            return record
        return None

    # ==================== Checkout Sessions ====================

    def _get_or_create_customer(self, parent_id: str, profile: dict[str, Any]) -> str:
        """
        Return the parent's Stripe customer id, creating the customer on first checkout.

        Customer creation uses a per-parent idempotency key, and the id is only
        stored when none is stored yet, so concurrent checkouts share one customer.
        """
        stripe_customer_id = parents.get_stripe_customer_id(parent_id)
        if stripe_customer_id:
            return stripe_customer_id

        logger.info(f"Creating Stripe customer for parent {parent_id}")
        customer = stripe.Customer.create(
            email=profile.get("email") or None,
            name=profile.get("name") or None,
            metadata={PARENT_METADATA_KEY: parent_id},
            idempotency_key=f"parent-customer-{parent_id}",
        )

        stored = parents.set_stripe_customer_id_if_missing(parent_id, get_value(customer, "id"))
        return stored or get_value(customer, "id")

    def create_checkout_session(
        self, parent_id: str, request: CreateCheckoutSessionRequest
    ) -> CheckoutSessionResponse:
        """
        Create a Stripe Checkout session for a student's first paid subscription

        Args:
            parent_id: Authenticated parent (payer)
            request: Price and student to subscribe

        Returns:
            CheckoutSessionResponse with session id and hosted checkout URL
        """
        profile = parents.get_profile(parent_id)
        if not profile or profile.get("user_type") != "parent":
            raise AuthorizationError("Only parents can create subscriptions")

        self._require_link(parent_id, request.student_id)

        stripe_customer_id = self._get_or_create_customer(parent_id, profile)

        existing = child_subscriptions.get_for_student(request.student_id)
        if existing and existing.get("is_active") and existing.get("stripe_subscription_id"):
            raise ValidationError(
                "Student already has an active subscription. Use modify subscription instead.",
                extra={"hasActiveSubscription": True},
            )

        student = parents.get_profile(request.student_id) or {}
        identity = {
            PARENT_METADATA_KEY: parent_id,
            STUDENT_METADATA_KEY: request.student_id,
        }

        try:
            session = stripe.checkout.Session.create(
                customer=stripe_customer_id,
                line_items=[{"price": request.price_id, "quantity": 1}],
                mode="subscription",
                success_url=(
                    f"{self.app_url}{SUBSCRIPTION_PAGE}?success=true&session_id={{CHECKOUT_SESSION_ID}}"
                ),
                cancel_url=f"{self.app_url}{SUBSCRIPTION_PAGE}?canceled=true",
                subscription_data={
                    "metadata": {**identity, "student_name": student.get("name") or "Unknown"}
                },
                metadata=identity,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session for parent {parent_id}: {e}")
            raise

        logger.info(
            f"Checkout session created: {get_value(session, 'id')} for parent {parent_id}, "
            f"student {request.student_id}, price {request.price_id}"
        )
        return CheckoutSessionResponse(
            session_id=get_value(session, "id"), url=get_value(session, "url")
        )

    # ==================== Subscription Management ====================

    def cancel_subscription(
        self, parent_id: str, request: CancelSubscriptionRequest
    ) -> dict[str, Any]:
        """
        Cancel a student's subscription.
        By default, cancels at the end of the billing period (student keeps access until then).
        """
        self._require_link(parent_id, request.student_id)

        record = self._get_owned_record(parent_id, request.student_id)
        if not record or not record.get("stripe_subscription_id"):
            raise SubscriptionNotFoundError("No active subscription found")

        stripe_subscription_id = record["stripe_subscription_id"]
        logger.info(
            f"Canceling subscription {stripe_subscription_id} for student {request.student_id} "
            f"(immediately: {request.cancel_immediately})"
        )

        if request.cancel_immediately:
            stripe.Subscription.cancel(stripe_subscription_id)
            result = sync_subscription_deletion(stripe_subscription_id)
            if not result.success:
                logger.error(
                    f"Subscription {stripe_subscription_id} canceled in Stripe but local "
                    f"downgrade failed ({result.error}); awaiting webhook reconciliation"
                )
        else:
            updated = stripe.Subscription.modify(stripe_subscription_id, cancel_at_period_end=True)
            resync_after_command(updated, "cancel_subscription")

        return {"success": True}

    def create_portal_session(self, parent_id: str) -> PortalSessionResponse:
        """Open the Stripe billing portal for the parent's customer account"""
        stripe_customer_id = parents.get_stripe_customer_id(parent_id)
        if not stripe_customer_id:
            raise SubscriptionNotFoundError("No billing account found")

        session = stripe.billing_portal.Session.create(
            customer=stripe_customer_id,
            return_url=f"{self.app_url}{SUBSCRIPTION_PAGE}",
        )
        logger.info(f"Billing portal session created for parent {parent_id}")
        return PortalSessionResponse(url=get_value(session, "url"))

    def preview_upgrade(self, parent_id: str, request: PlanChangeRequest) -> dict[str, Any]:
        self._require_link(parent_id, request.student_id)
        return plan_changes.preview_change(request.student_id, parent_id, request.new_price_id)

    def modify_subscription(self, parent_id: str, request: PlanChangeRequest) -> dict[str, Any]:
        self._require_link(parent_id, request.student_id)
        return plan_changes.apply_change(request.student_id, parent_id, request.new_price_id)

    # ==================== Manual Reconciliation ====================

    def _subscription_id_from_checkout(
        self, parent_id: str, student_id: str, session_id: str
    ) -> str | None:
        session = stripe.checkout.Session.retrieve(session_id, expand=["subscription"])

        payment_status = get_value(session, "payment_status")
        if payment_status != "paid":
            raise ValidationError("Payment not completed", extra={"paymentStatus": payment_status})

        metadata = metadata_to_dict(get_value(session, "metadata"))
        if metadata.get(PARENT_METADATA_KEY) != parent_id:
            raise AuthorizationError("Checkout session does not belong to this account")

        session_student = metadata.get(STUDENT_METADATA_KEY)
        if session_student and session_student != student_id:
            raise AuthorizationError("Checkout session was created for a different student")

        return get_id(get_value(session, "subscription"))

    def sync_subscription(
        self, parent_id: str, request: SyncSubscriptionRequest
    ) -> SyncSubscriptionResponse:
        """
        Pull the student's subscription from Stripe and write it locally.

        Used after the checkout redirect (with the checkout session id) and as a
        manual repair when a webhook was missed. Identity metadata missing on the
        Stripe subscription is written back before syncing.
        """
        self._require_link(parent_id, request.student_id)

        stripe_subscription_id = None
        if request.session_id:
            stripe_subscription_id = self._subscription_id_from_checkout(
                parent_id, request.student_id, request.session_id
            )

        if not stripe_subscription_id:
            record = self._get_owned_record(parent_id, request.student_id)
            stripe_subscription_id = record.get("stripe_subscription_id") if record else None

        if not stripe_subscription_id:
            raise SubscriptionNotFoundError(
                "No subscription found for this student", extra={"synced": False}
            )

        subscription = stripe.Subscription.retrieve(stripe_subscription_id)

        metadata = metadata_to_dict(get_value(subscription, "metadata"))
        if not metadata.get(PARENT_METADATA_KEY) or not metadata.get(STUDENT_METADATA_KEY):
            logger.warning(
                f"Repairing identity metadata on subscription {stripe_subscription_id} "
                f"(parent {parent_id}, student {request.student_id})"
            )
            subscription = stripe.Subscription.modify(
                stripe_subscription_id,
                metadata={
                    PARENT_METADATA_KEY: parent_id,
                    STUDENT_METADATA_KEY: request.student_id,
                },
            )

        result = sync_subscription_to_database(subscription)
        if not result.success:
            logger.error(f"Manual sync of {stripe_subscription_id} failed: {result.error}")
            raise BillingError("Failed to sync subscription", extra={"synced": False})

        period_start, period_end = subscription_period(subscription)
        return SyncSubscriptionResponse(
            synced=True,
            subscription=SyncedSubscription(
                id=get_value(subscription, "id"),
                status=get_value(subscription, "status"),
                current_period_start=timestamp_to_iso(period_start),
                current_period_end=timestamp_to_iso(period_end),
                cancel_at_period_end=bool(get_value(subscription, "cancel_at_period_end", False)),
            ),
        )
