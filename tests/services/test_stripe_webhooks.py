#!/usr/bin/env python3
"""
Tests for the Stripe webhook processor

Tests cover:
- Signature verification failures
- Ledger-based idempotency across redeliveries
- Subscription lifecycle events
- Invoice events and payment history
- Failure policy: which failures ask Stripe to retry
"""

import json
from unittest.mock import patch

import pytest

from src.services.stripe_webhooks import StripeWebhookProcessor
from src.utils.exceptions import WebhookVerificationError
from tests.helpers.mocks import FakeStripe, make_event, make_invoice, make_subscription

SIGNATURE = FakeStripe.VALID_SIGNATURE


def _payload(event: dict) -> bytes:
    return json.dumps(event).encode()


@pytest.fixture
def processor(family, fake_stripe):
    return StripeWebhookProcessor()


def _payments(db):
    return db.rows("payment_history")


# ============================================================
# TEST CLASS: Signature verification
# ============================================================


class TestSignatureVerification:
    def test_missing_signature(self, processor):
        with pytest.raises(WebhookVerificationError, match="No signature"):
            processor.process(b"{}", None)

    def test_invalid_signature(self, processor, family):
        event = make_event("customer.subscription.updated", make_subscription())

        with pytest.raises(WebhookVerificationError, match="Invalid signature"):
            processor.process(_payload(event), "t=1,v1=forged")

        assert family.rows("child_subscriptions") == []
        assert family.rows("processed_webhook_events") == []

    def test_malformed_payload(self, processor):
        with pytest.raises(WebhookVerificationError, match="Invalid payload"):
            processor.process(b"not json", SIGNATURE)

    def test_secret_not_configured(self, family, fake_stripe, monkeypatch):
        from src.config.config import Config

        monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", None)
        processor = StripeWebhookProcessor()

        with pytest.raises(WebhookVerificationError, match="Webhook secret not configured"):
            processor.process(b"{}", SIGNATURE)


# ============================================================
# TEST CLASS: Idempotency
# ============================================================


class TestIdempotency:
    def test_redelivered_invoice_records_one_payment(self, processor, family, fake_stripe):
        fake_stripe.add_subscription(make_subscription())
        payload = _payload(make_event("invoice.paid", make_invoice(), event_id="evt_paid"))

        outcomes = [processor.process(payload, SIGNATURE) for _ in range(3)]

        assert [o.status_code for o in outcomes] == [200, 200, 200]
        assert [o.duplicate for o in outcomes] == [False, True, True]
        assert len(_payments(family)) == 1
        assert len(family.rows("processed_webhook_events")) == 1

    def test_redelivered_subscription_update_converges(self, processor, family):
        event = make_event(
            "customer.subscription.updated",
            make_subscription(status="past_due", cancel_at_period_end=True),
            event_id="evt_upd",
        )
        payload = _payload(event)

        processor.process(payload, SIGNATURE)
        [once] = family.rows("child_subscriptions")
        once = {k: v for k, v in once.items() if k != "updated_at"}

        outcomes = [processor.process(payload, SIGNATURE) for _ in range(4)]

        assert all(o.status_code == 200 and o.duplicate for o in outcomes)
        [row] = family.rows("child_subscriptions")
        assert {k: v for k, v in row.items() if k != "updated_at"} == once
        assert row["stripe_status"] == "past_due"
        assert row["next_billing_date"] is None
        assert len(family.rows("processed_webhook_events")) == 1

    def test_reapplying_same_subscription_state_is_stable(self, processor, family):
        """Distinct events carrying the same state converge on one record"""
        subscription = make_subscription(price_id="price_plus")

        for n in range(3):
            processor.process(
                _payload(make_event("customer.subscription.updated", subscription, event_id=f"evt_{n}")),
                SIGNATURE,
            )

        [row] = family.rows("child_subscriptions")
        assert row["tier"] == "plus"
        assert row["stripe_price_id"] == "price_plus"
        assert len(family.rows("processed_webhook_events")) == 3

    def test_event_recorded_after_apply(self, processor, family, fake_stripe):
        event = make_event("customer.subscription.created", make_subscription(), event_id="evt_c")

        processor.process(_payload(event), SIGNATURE)

        operations = [(table, op) for table, op, _ in family.calls]
        assert operations.index(("child_subscriptions", "upsert")) < operations.index(
            ("processed_webhook_events", "upsert")
        )

    def test_ledger_unavailable_asks_for_retry(self, processor, family, fake_stripe):
        family.fail("processed_webhook_events", "select")
        event = make_event("customer.subscription.updated", make_subscription())

        outcome = processor.process(_payload(event), SIGNATURE)

        assert outcome.status_code == 503
        assert outcome.response_body() == {"error": "Event ledger unavailable"}
        assert family.rows("child_subscriptions") == []

    @patch("src.services.stripe_webhooks.capture_data_integrity_issue")
    def test_ledger_write_failure_still_acknowledges(self, mock_capture, processor, family):
        family.fail("processed_webhook_events", "upsert")
        event = make_event("customer.subscription.updated", make_subscription())

        outcome = processor.process(_payload(event), SIGNATURE)

        assert outcome.status_code == 200
        assert family.rows("child_subscriptions")[0]["tier"] == "pro"
        mock_capture.assert_called_once()


# ============================================================
# TEST CLASS: Subscription events
# ============================================================


class TestSubscriptionEvents:
    def test_created(self, processor, family):
        event = make_event("customer.subscription.created", make_subscription(price_id="price_plus"))

        outcome = processor.process(_payload(event), SIGNATURE)

        assert outcome.status_code == 200
        assert outcome.response_body() == {"received": True}
        row = family.rows("child_subscriptions")[0]
        assert row["tier"] == "plus"
        assert row["parent_id"] == "p1"

    def test_updated_past_due(self, processor, family):
        processor.process(
            _payload(make_event("customer.subscription.created", make_subscription(), event_id="evt_1")),
            SIGNATURE,
        )
        processor.process(
            _payload(
                make_event(
                    "customer.subscription.updated",
                    make_subscription(status="past_due"),
                    event_id="evt_2",
                )
            ),
            SIGNATURE,
        )

        row = family.rows("child_subscriptions")[0]
        assert row["stripe_status"] == "past_due"
        assert row["is_active"] is False

    def test_deleted_degrades_to_free_tier(self, processor, family):
        processor.process(
            _payload(make_event("customer.subscription.created", make_subscription(), event_id="evt_1")),
            SIGNATURE,
        )
        processor.process(
            _payload(
                make_event(
                    "customer.subscription.deleted",
                    make_subscription(status="canceled"),
                    event_id="evt_2",
                )
            ),
            SIGNATURE,
        )

        rows = family.rows("child_subscriptions")
        assert len(rows) == 1
        assert rows[0]["tier"] == "core"
        assert rows[0]["is_active"] is True

    @patch("src.services.subscription_sync.capture_data_integrity_issue")
    def test_unresolvable_identity_is_acknowledged(self, mock_capture, processor, family):
        event = make_event(
            "customer.subscription.updated", make_subscription(parent_id=None, student_id=None)
        )

        outcome = processor.process(_payload(event), SIGNATURE)

        assert outcome.status_code == 200
        assert family.rows("child_subscriptions") == []
        assert family.rows("processed_webhook_events")[0]["event_id"] == "evt_1"

    @patch("src.services.stripe_webhooks.capture_payment_error")
    def test_database_failure_asks_for_retry(self, mock_capture, processor, family):
        family.fail("child_subscriptions", "upsert")
        event = make_event("customer.subscription.updated", make_subscription())

        outcome = processor.process(_payload(event), SIGNATURE)

        assert outcome.status_code == 500
        assert outcome.response_body() == {"error": "Webhook processing failed"}
        assert family.rows("processed_webhook_events") == []
        mock_capture.assert_called_once()

    def test_retry_after_failure_is_applied(self, processor, family):
        family.fail("child_subscriptions", "upsert")
        payload = _payload(make_event("customer.subscription.updated", make_subscription()))

        assert processor.process(payload, SIGNATURE).status_code == 500
        family.recover("child_subscriptions", "upsert")
        assert processor.process(payload, SIGNATURE).status_code == 200

        assert family.rows("child_subscriptions")[0]["tier"] == "pro"

    def test_unhandled_event_type_is_acknowledged(self, processor, family):
        event = make_event("customer.created", {"id": "cus_1"})

        outcome = processor.process(_payload(event), SIGNATURE)

        assert outcome.status_code == 200
        assert family.rows("processed_webhook_events")[0]["event_type"] == "customer.created"

    def test_checkout_completed_only_logs(self, processor, family):
        session = {
            "id": "cs_1",
            "mode": "subscription",
            "metadata": {"supabase_parent_id": "p1", "supabase_student_id": "s1"},
        }

        outcome = processor.process(
            _payload(make_event("checkout.session.completed", session)), SIGNATURE
        )

        assert outcome.status_code == 200
        assert family.rows("child_subscriptions") == []


# ============================================================
# TEST CLASS: Invoice events
# ============================================================


class TestInvoiceEvents:
    def test_invoice_paid(self, processor, family, fake_stripe):
        fake_stripe.add_subscription(make_subscription())

        processor.process(_payload(make_event("invoice.paid", make_invoice())), SIGNATURE)

        [payment] = _payments(family)
        assert payment["status"] == "succeeded"
        assert payment["amount_cents"] == 1999
        assert payment["tier"] == "pro"
        assert payment["parent_id"] == "p1"
        assert payment["student_id"] == "s1"
        assert payment["stripe_payment_intent_id"] == "pi_1"
        assert payment["description"] == "1 x Pro (at $19.99 / month)"
        assert payment["metadata"] == {
            "invoice_number": "INV-0001",
            "billing_reason": "subscription_cycle",
        }

    def test_payment_failed_resolves_identity_from_record(self, processor, family, fake_stripe):
        """Subscription metadata was removed in the dashboard; the stored row still ties it to p1"""
        family.add_test_data(
            "child_subscriptions",
            [{"parent_id": "p1", "student_id": "s1", "stripe_subscription_id": "sub_123", "tier": "pro"}],
        )
        fake_stripe.add_subscription(make_subscription(parent_id=None, student_id=None))
        invoice = make_invoice(amount_paid=0, amount_due=1999, attempt_count=2)

        outcome = processor.process(
            _payload(make_event("invoice.payment_failed", invoice)), SIGNATURE
        )

        assert outcome.status_code == 200
        [payment] = _payments(family)
        assert payment["status"] == "failed"
        assert payment["parent_id"] == "p1"
        assert payment["stripe_subscription_id"] == "sub_123"
        assert payment["amount_cents"] == 1999
        assert payment["description"] == "Payment failed"
        assert payment["metadata"] == {"invoice_number": "INV-0001", "attempt_count": 2}

    def test_subscription_under_invoice_parent(self, processor, family, fake_stripe):
        fake_stripe.add_subscription(make_subscription())
        invoice = make_invoice(subscription_id=None)
        invoice["parent"] = {"subscription_details": {"subscription": "sub_123"}}

        processor.process(_payload(make_event("invoice.paid", invoice)), SIGNATURE)

        assert len(_payments(family)) == 1

    def test_invoice_without_subscription_is_ignored(self, processor, family, fake_stripe):
        outcome = processor.process(
            _payload(make_event("invoice.paid", make_invoice(subscription_id=None))), SIGNATURE
        )

        assert outcome.status_code == 200
        assert _payments(family) == []
        assert fake_stripe.called("Subscription.retrieve") == []

    def test_unmapped_price_records_no_tier(self, processor, family, fake_stripe):
        fake_stripe.add_subscription(make_subscription(price_id="price_legacy"))

        processor.process(_payload(make_event("invoice.paid", make_invoice())), SIGNATURE)

        assert _payments(family)[0]["tier"] is None

    @patch("src.services.stripe_webhooks.capture_payment_error")
    def test_payment_insert_failure_is_not_retried(self, mock_capture, processor, family, fake_stripe):
        fake_stripe.add_subscription(make_subscription())
        family.fail("payment_history", "insert")

        outcome = processor.process(_payload(make_event("invoice.paid", make_invoice())), SIGNATURE)

        assert outcome.status_code == 200
        assert family.rows("processed_webhook_events")[0]["event_id"] == "evt_1"
        mock_capture.assert_called_once()
