#!/usr/bin/env python3
"""
Tests for the billing HTTP surface

Tests cover:
- Bearer authentication
- Request validation and camelCase bodies
- Error mapping (client-safe messages, status codes)
- Webhook endpoint status codes
- CORS preflight
"""

import json
from unittest.mock import patch

import pytest
import stripe
from fastapi.testclient import TestClient

from src.main import create_app
from src.routes.billing import get_stripe_service, get_webhook_processor
from src.services.payments import StripeService
from src.services.stripe_webhooks import StripeWebhookProcessor
from tests.helpers.mocks import FakeStripe, make_event, make_subscription

AUTH = {"Authorization": "Bearer token-p1"}


@pytest.fixture
def client(family, fake_stripe):
    family.auth.tokens["token-p1"] = {"id": "p1", "email": "pat@example.com"}

    app = create_app()
    service = StripeService()
    processor = StripeWebhookProcessor()
    app.dependency_overrides[get_stripe_service] = lambda: service
    app.dependency_overrides[get_webhook_processor] = lambda: processor

    with TestClient(app) as test_client:
        yield test_client


def _with_subscription(db, fake_stripe, **subscription_kwargs):
    fake_stripe.add_subscription(make_subscription(**subscription_kwargs))
    db.add_test_data(
        "child_subscriptions",
        [
            {
                "parent_id": "p1",
                "student_id": "s1",
                "tier": "pro",
                "stripe_subscription_id": "sub_123",
                "stripe_price_id": "price_pro",
                "stripe_status": "active",
                "is_active": True,
            }
        ],
    )


# ============================================================
# TEST CLASS: Health
# ============================================================


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# ============================================================
# TEST CLASS: Authentication
# ============================================================


class TestAuthentication:
    def test_missing_header(self, client):
        response = client.post("/functions/v1/create-portal-session")

        assert response.status_code == 401
        assert response.json() == {"error": "No authorization header"}

    def test_unknown_token(self, client):
        response = client.post(
            "/functions/v1/create-portal-session",
            headers={"Authorization": "Bearer expired"},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_preflight(self, client):
        response = client.options(
            "/functions/v1/create-checkout-session",
            headers={
                "Origin": "https://app.example.test",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, content-type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"


# ============================================================
# TEST CLASS: Commands
# ============================================================


class TestCommandEndpoints:
    def test_checkout_session_camel_case(self, client):
        response = client.post(
            "/functions/v1/create-checkout-session",
            json={"priceId": "price_pro", "studentId": "s1"},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json() == {
            "sessionId": "cs_test_1",
            "url": "https://checkout.stripe.test/cs_test_1",
        }

    def test_missing_fields(self, client):
        response = client.post(
            "/functions/v1/create-checkout-session", json={"priceId": "price_pro"}, headers=AUTH
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields"}

    def test_unlinked_student(self, client):
        response = client.post(
            "/functions/v1/cancel-subscription", json={"studentId": "s9"}, headers=AUTH
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Student not linked to parent"}

    def test_already_subscribed(self, client, family, fake_stripe):
        _with_subscription(family, fake_stripe)

        response = client.post(
            "/functions/v1/create-checkout-session",
            json={"priceId": "price_plus", "studentId": "s1"},
            headers=AUTH,
        )

        assert response.status_code == 400
        assert response.json()["hasActiveSubscription"] is True

    def test_cancel(self, client, family, fake_stripe):
        _with_subscription(family, fake_stripe)

        response = client.post(
            "/functions/v1/cancel-subscription",
            json={"studentId": "s1", "cancelImmediately": False},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_portal_without_customer(self, client):
        response = client.post("/functions/v1/create-portal-session", headers=AUTH)

        assert response.status_code == 404
        assert response.json() == {"error": "No billing account found"}

    def test_modify_same_plan(self, client, family, fake_stripe):
        _with_subscription(family, fake_stripe)
        fake_stripe.add_price("price_pro", 1999)

        response = client.post(
            "/functions/v1/modify-subscription",
            json={"studentId": "s1", "newPriceId": "price_pro"},
            headers=AUTH,
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Already on this plan"}

    def test_preview_downgrade(self, client, family, fake_stripe):
        _with_subscription(family, fake_stripe)
        fake_stripe.add_price("price_plus", 999)
        fake_stripe.add_price("price_pro", 1999)

        response = client.post(
            "/functions/v1/preview-upgrade",
            json={"studentId": "s1", "newPriceId": "price_plus"},
            headers=AUTH,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["isUpgrade"] is False
        assert body["effectiveDate"] == "2025-03-01T00:00:00.000Z"

    @patch("src.routes.billing.capture_payment_error")
    def test_stripe_error_is_not_leaked(self, mock_capture, client, family, fake_stripe):
        _with_subscription(family, fake_stripe)
        fake_stripe.errors["Subscription.modify"] = stripe.StripeError(
            "No such subscription: 'sub_123'; secret detail"
        )

        response = client.post(
            "/functions/v1/cancel-subscription", json={"studentId": "s1"}, headers=AUTH
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to cancel subscription"}
        mock_capture.assert_called_once()

    def test_sync_subscription(self, client, family, fake_stripe):
        _with_subscription(family, fake_stripe)

        response = client.post(
            "/functions/v1/sync-subscription", json={"studentId": "s1"}, headers=AUTH
        )

        assert response.status_code == 200
        body = response.json()
        assert body["synced"] is True
        assert body["subscription"]["id"] == "sub_123"
        assert body["subscription"]["currentPeriodEnd"] == "2025-03-01T00:00:00.000Z"
        assert body["subscription"]["cancelAtPeriodEnd"] is False

    def test_sync_failure_bodies_carry_synced_false(self, client):
        response = client.post(
            "/functions/v1/sync-subscription", json={"studentId": "s9"}, headers=AUTH
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Student not linked to parent", "synced": False}


# ============================================================
# TEST CLASS: Webhook endpoint
# ============================================================


class TestWebhookEndpoint:
    def _post(self, client, event, signature=FakeStripe.VALID_SIGNATURE):
        headers = {"stripe-signature": signature} if signature else {}
        return client.post(
            "/functions/v1/stripe-webhook", content=json.dumps(event), headers=headers
        )

    def test_received(self, client, family):
        response = self._post(
            client, make_event("customer.subscription.created", make_subscription())
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert family.rows("child_subscriptions")[0]["tier"] == "pro"

    def test_no_signature(self, client):
        response = self._post(client, make_event("invoice.paid", {}), signature=None)

        assert response.status_code == 400
        assert response.json() == {"error": "No signature"}

    def test_bad_signature(self, client):
        response = self._post(client, make_event("invoice.paid", {}), signature="t=1,v1=bad")

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid signature"}

    def test_duplicate_is_acknowledged(self, client):
        event = make_event("customer.subscription.created", make_subscription())

        first = self._post(client, event)
        second = self._post(client, event)

        assert first.status_code == second.status_code == 200

    @patch("src.services.stripe_webhooks.capture_payment_error")
    def test_processing_failure_is_500(self, mock_capture, client, family):
        family.fail("child_subscriptions", "upsert")

        response = self._post(
            client, make_event("customer.subscription.updated", make_subscription())
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook processing failed"}
