#!/usr/bin/env python3
"""
Billing Routes
Subscription commands and the Stripe webhook endpoint.

Paths mirror the function names the browser client already calls
(``/functions/v1/<name>``).
"""

import logging
from collections.abc import Callable
from typing import Any

import stripe
from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from src.schemas.billing import (
    CancelSubscriptionRequest,
    CheckoutSessionResponse,
    CreateCheckoutSessionRequest,
    PlanChangeRequest,
    PortalSessionResponse,
    SyncSubscriptionRequest,
    SyncSubscriptionResponse,
)
from src.security.deps import get_current_user
from src.services.payments import StripeService
from src.services.stripe_webhooks import StripeWebhookProcessor
from src.utils.exceptions import BillingError
from src.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions/v1", tags=["Billing"])

_stripe_service: StripeService | None = None
_webhook_processor: StripeWebhookProcessor | None = None


def get_stripe_service() -> StripeService:
    global _stripe_service
    if _stripe_service is None:
        _stripe_service = StripeService()
    return _stripe_service


def get_webhook_processor() -> StripeWebhookProcessor:
    global _webhook_processor
    if _webhook_processor is None:
        _webhook_processor = StripeWebhookProcessor()
    return _webhook_processor


async def _run_command(
    operation: str,
    failure_message: str,
    user_id: str,
    func: Callable[..., Any],
    *args: Any,
) -> Any:
    """
    Run a blocking service call off the event loop.

    BillingError passes through with its own status and message. Anything else
    (Stripe, database, bugs) is logged, reported to Sentry and replaced by
    ``failure_message`` so no upstream error text reaches the client.
    """
    try:
        return await run_in_threadpool(func, *args)
    except BillingError:
        raise
    except stripe.StripeError as e:
        logger.error(f"Stripe error in {operation} for user {user_id}: {e}", exc_info=True)
        capture_payment_error(e, operation=operation, user_id=user_id)
        raise BillingError(failure_message) from e
    except Exception as e:
        logger.error(f"Error in {operation} for user {user_id}: {e}", exc_info=True)
        capture_payment_error(e, operation=operation, user_id=user_id)
        raise BillingError(failure_message) from e


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    request: CreateCheckoutSessionRequest,
    current_user: dict = Depends(get_current_user),
    service: StripeService = Depends(get_stripe_service),
):
    """Start Stripe Checkout for a student's first paid plan."""
    return await _run_command(
        "checkout_session",
        "Failed to create checkout session",
        current_user["id"],
        service.create_checkout_session,
        current_user["id"],
        request,
    )


@router.post("/cancel-subscription")
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    current_user: dict = Depends(get_current_user),
    service: StripeService = Depends(get_stripe_service),
):
    return await _run_command(
        "cancel_subscription",
        "Failed to cancel subscription",
        current_user["id"],
        service.cancel_subscription,
        current_user["id"],
        request,
    )


@router.post("/create-portal-session", response_model=PortalSessionResponse)
async def create_portal_session(
    current_user: dict = Depends(get_current_user),
    service: StripeService = Depends(get_stripe_service),
):
    return await _run_command(
        "portal_session",
        "Failed to open billing portal",
        current_user["id"],
        service.create_portal_session,
        current_user["id"],
    )


@router.post("/preview-upgrade")
async def preview_upgrade(
    request: PlanChangeRequest,
    current_user: dict = Depends(get_current_user),
    service: StripeService = Depends(get_stripe_service),
):
    """Show what a plan change would charge today, or when a downgrade takes effect."""
    return await _run_command(
        "preview_upgrade",
        "Failed to preview plan change",
        current_user["id"],
        service.preview_upgrade,
        current_user["id"],
        request,
    )


@router.post("/modify-subscription")
async def modify_subscription(
    request: PlanChangeRequest,
    current_user: dict = Depends(get_current_user),
    service: StripeService = Depends(get_stripe_service),
):
    return await _run_command(
        "modify_subscription",
        "Failed to modify subscription",
        current_user["id"],
        service.modify_subscription,
        current_user["id"],
        request,
    )


@router.post("/sync-subscription", response_model=SyncSubscriptionResponse)
async def sync_subscription(
    request: SyncSubscriptionRequest,
    current_user: dict = Depends(get_current_user),
    service: StripeService = Depends(get_stripe_service),
):
    """Reconcile a student's subscription with Stripe on demand."""
    try:
        return await _run_command(
            "sync_subscription",
            "Failed to sync subscription",
            current_user["id"],
            service.sync_subscription,
            current_user["id"],
            request,
        )
    except BillingError as e:
        # Every failure body of this endpoint carries synced: false
        e.extra.setdefault("synced", False)
        raise


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    processor: StripeWebhookProcessor = Depends(get_webhook_processor),
):
    """
    Stripe webhook endpoint.

    200 tells Stripe the event is handled (or was already); any other status
    makes Stripe redeliver it later.
    """
    payload = await request.body()
    outcome = await run_in_threadpool(processor.process, payload, stripe_signature)
    return JSONResponse(status_code=outcome.status_code, content=outcome.response_body())
