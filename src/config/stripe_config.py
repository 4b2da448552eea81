"""
Stripe SDK configuration.

The SDK is configured through module-level settings, so this runs once per
process before any Stripe call is made.
"""

import logging

import stripe

from src.config.config import Config

logger = logging.getLogger(__name__)

_configured = False


def configure_stripe() -> None:
    """Set the Stripe API key and pinned API version from Config."""
    global _configured

    if not Config.STRIPE_SECRET_KEY:
        raise RuntimeError("STRIPE_SECRET_KEY not found in environment variables")

    if not Config.STRIPE_WEBHOOK_SECRET:
        logger.warning(
            "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
        )

    stripe.api_key = Config.STRIPE_SECRET_KEY
    stripe.api_version = Config.STRIPE_API_VERSION

    if not _configured:
        logger.info(f"Stripe configured (api_version={Config.STRIPE_API_VERSION})")
    _configured = True
