"""Webhook verification, deduplication and dispatch"""
import pytest

import stripe as real_stripe

from app.core.exceptions import WebhookSignatureError
from app.models.claim_token import AccountClaimToken
from app.models.membership import Membership
from app.models.notification import Notification
from app.models.order import Order
from app.models.stripe_event import StripeEvent
from app.models.user import User
from app.services import webhook_service
from app.services.order_service import create_pending_order
from app.services.webhook_service import (
    process_stripe_webhook, EventKind, WebhookEvent, HANDLERS, EVENT_TYPES
)


def event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def paid_session(product, session_id="cs_1", **overrides):
    session = {
        "id": session_id,
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": "pi_1",
        "amount_total": product.price_cents,
        "customer": "cus_guest",
        "customer_details": {"email": "guest@resend.dev"},
        "metadata": {
            "action": "purchase",
            "product_id": str(product.id),
            "creator_id": str(product.creator_id),
        },
    }
    session.update(overrides)
    return session


def deliver(auto_mock_stripe, db_session, payload_event):
    auto_mock_stripe.Webhook.construct_event.return_value = payload_event
    return process_stripe_webhook(b"{}", "t=1,v1=sig", db_session)


@pytest.mark.critical
class TestVerification:

    def test_bad_signature_rejected_before_ledger(self, db_session, auto_mock_stripe):
        auto_mock_stripe.Webhook.construct_event.side_effect = real_stripe.SignatureVerificationError("bad", "sig")

        with pytest.raises(WebhookSignatureError):
            process_stripe_webhook(b"{}", "t=1,v1=bad", db_session)
        assert db_session.query(StripeEvent).count() == 0

    def test_malformed_payload_rejected(self, db_session, auto_mock_stripe):
        auto_mock_stripe.Webhook.construct_event.side_effect = ValueError("not json")

        with pytest.raises(WebhookSignatureError):
            process_stripe_webhook(b"nope", "t=1,v1=sig", db_session)

    def test_unconfigured_secret_rejected(self, db_session, monkeypatch):
        monkeypatch.setattr("app.services.stripe_service.settings.STRIPE_WEBHOOK_SECRET", "")
        monkeypatch.setattr("app.services.stripe_service.settings.STRIPE_CONNECT_WEBHOOK_SECRET", "")

        with pytest.raises(WebhookSignatureError):
            process_stripe_webhook(b"{}", "t=1,v1=sig", db_session)


@pytest.mark.critical
class TestDeduplication:

    def test_redelivery_is_already_processed(self, db_session, auto_mock_stripe, download_product):
        payload = event("evt_1", "checkout.session.completed", paid_session(download_product))

        assert deliver(auto_mock_stripe, db_session, payload) == {"status": "success"}
        assert deliver(auto_mock_stripe, db_session, payload) == {"status": "already_processed"}
        assert db_session.query(Order).count() == 1

    def test_failure_releases_event_for_retry(self, db_session, auto_mock_stripe, download_product, monkeypatch):
        payload = event("evt_1", "checkout.session.completed", paid_session(download_product))

        def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setitem(HANDLERS, EventKind.CHECKOUT_SESSION_COMPLETED, broken)
        with pytest.raises(RuntimeError):
            deliver(auto_mock_stripe, db_session, payload)
        assert db_session.query(StripeEvent).count() == 0

        monkeypatch.undo()
        assert deliver(auto_mock_stripe, db_session, payload) == {"status": "success"}
        assert db_session.query(Order).count() == 1

    def test_ignored_type_still_recorded(self, db_session, auto_mock_stripe):
        assert deliver(auto_mock_stripe, db_session, event("evt_x", "charge.refunded", {})) == {"status": "success"}
        assert db_session.query(StripeEvent).filter(StripeEvent.stripe_event_id == "evt_x").count() == 1


@pytest.mark.critical
class TestCheckoutCompleted:

    def test_guest_purchase_creates_order_ghost_and_claim(
        self, db_session, auto_mock_stripe, creator, download_product, run_queued_tasks
    ):
        deliver(auto_mock_stripe, db_session, event("evt_1", "checkout.session.completed", paid_session(download_product)))
        run_queued_tasks()

        order = db_session.query(Order).one()
        assert order.status == "paid"
        assert order.stripe_checkout_session_id == "cs_1"
        ghost = db_session.query(User).filter(User.is_ghost.is_(True)).one()
        assert order.buyer_id == ghost.id
        assert ghost.stripe_customer_id == "cus_guest"
        assert db_session.query(AccountClaimToken).filter(AccountClaimToken.user_id == ghost.id).count() == 1
        sales = db_session.query(Notification).filter(
            Notification.user_id == creator.id, Notification.type == "creator_sale"
        ).count()
        assert sales == 1

    def test_pending_order_from_checkout_marked_paid(self, db_session, auto_mock_stripe, test_user, download_product):
        order = create_pending_order(db_session, test_user.id, download_product)
        session = paid_session(download_product)
        session["metadata"]["order_id"] = str(order.id)
        session["metadata"]["buyer_id"] = str(test_user.id)

        deliver(auto_mock_stripe, db_session, event("evt_1", "checkout.session.completed", session))

        db_session.refresh(order)
        assert order.status == "paid"
        assert db_session.query(Order).count() == 1

    def test_unpaid_session_waits_for_async_payment(self, db_session, auto_mock_stripe, download_product):
        deliver(auto_mock_stripe, db_session, event(
            "evt_1", "checkout.session.completed", paid_session(download_product, payment_status="unpaid")
        ))
        assert db_session.query(Order).count() == 0

        deliver(auto_mock_stripe, db_session, event(
            "evt_2", "checkout.session.async_payment_succeeded", paid_session(download_product)
        ))
        assert db_session.query(Order).count() == 1

    def test_subscription_checkout_applies_subscription(self, db_session, auto_mock_stripe, test_user, membership_product):
        auto_mock_stripe.Subscription.retrieve.return_value = {
            "id": "sub_1",
            "status": "active",
            "cancel_at_period_end": False,
            "current_period_end": 1893456000,
            "metadata": {
                "product_id": str(membership_product.id),
                "creator_id": str(membership_product.creator_id),
                "buyer_id": str(test_user.id),
            },
        }
        session = paid_session(membership_product, mode="subscription", subscription="sub_1", payment_intent=None)
        session["metadata"]["action"] = "membership"

        deliver(auto_mock_stripe, db_session, event("evt_1", "checkout.session.completed", session))

        auto_mock_stripe.Subscription.retrieve.assert_called_once_with("sub_1")
        assert db_session.query(Membership).one().buyer_id == test_user.id
        assert db_session.query(Order).count() == 0

    def test_setup_mode_session_records_nothing(self, db_session, auto_mock_stripe, download_product):
        session = paid_session(download_product, mode="setup", payment_status="no_payment_required",
                               payment_intent=None, amount_total=0)

        result = deliver(auto_mock_stripe, db_session, event("evt_1", "checkout.session.completed", session))

        assert result == {"status": "success"}
        assert db_session.query(Order).count() == 0
        assert db_session.query(StripeEvent).count() == 1

    def test_action_disagreeing_with_mode_is_skipped(self, db_session, auto_mock_stripe, membership_product):
        session = paid_session(membership_product)
        session["metadata"]["action"] = "membership"

        deliver(auto_mock_stripe, db_session, event("evt_1", "checkout.session.completed", session))

        assert db_session.query(Order).count() == 0
        assert db_session.query(Membership).count() == 0
        auto_mock_stripe.Subscription.retrieve.assert_not_called()


@pytest.mark.high
class TestOtherEvents:

    def _subscription(self, product, buyer, status="active"):
        return {
            "id": "sub_1",
            "status": status,
            "cancel_at_period_end": False,
            "current_period_end": 1893456000,
            "metadata": {
                "product_id": str(product.id),
                "creator_id": str(product.creator_id),
                "buyer_id": str(buyer.id),
            },
        }

    def test_subscription_lifecycle(self, db_session, auto_mock_stripe, test_user, membership_product):
        sub = self._subscription(membership_product, test_user)
        deliver(auto_mock_stripe, db_session, event("evt_1", "customer.subscription.created", sub))
        deliver(auto_mock_stripe, db_session, event("evt_2", "customer.subscription.updated", dict(sub, status="past_due")))
        deliver(auto_mock_stripe, db_session, event("evt_3", "customer.subscription.deleted", sub))

        membership = db_session.query(Membership).one()
        assert membership.status == "canceled"
        assert membership.canceled_at is not None

    def test_unknown_subscription_status_fails_delivery(self, db_session, auto_mock_stripe, test_user, membership_product):
        sub = self._subscription(membership_product, test_user, status="mystery")
        with pytest.raises(ValueError):
            deliver(auto_mock_stripe, db_session, event("evt_1", "customer.subscription.updated", sub))
        assert db_session.query(StripeEvent).count() == 0

    def test_payment_intent_marks_order_paid(self, db_session, auto_mock_stripe, test_user, download_product):
        order = create_pending_order(db_session, test_user.id, download_product)

        deliver(auto_mock_stripe, db_session, event(
            "evt_1", "payment_intent.succeeded", {"id": "pi_7", "metadata": {"order_id": str(order.id)}}
        ))

        db_session.refresh(order)
        assert order.status == "paid"
        assert order.stripe_payment_intent_id == "pi_7"

    def test_payment_intent_without_order_ignored(self, db_session, auto_mock_stripe):
        assert deliver(auto_mock_stripe, db_session, event("evt_1", "payment_intent.succeeded", {"id": "pi_7"})) == {
            "status": "success"
        }

    def test_account_updated_for_unknown_account(self, db_session, auto_mock_stripe):
        result = deliver(auto_mock_stripe, db_session, event(
            "evt_1", "account.updated", {"id": "acct_stranger", "details_submitted": True}
        ))
        assert result == {"status": "success"}

    def test_invoice_paid_refetches(self, db_session, auto_mock_stripe, test_user, membership_product):
        auto_mock_stripe.Subscription.retrieve.return_value = self._subscription(membership_product, test_user)

        deliver(auto_mock_stripe, db_session, event("evt_1", "invoice.paid", {"id": "in_1", "subscription": "sub_1"}))

        assert db_session.query(Membership).one().status == "active"


@pytest.mark.medium
class TestEventKinds:

    def test_every_kind_has_a_handler(self):
        assert set(HANDLERS) == set(EventKind)

    def test_unknown_type_is_ignored(self):
        parsed = WebhookEvent.from_stripe(event("evt_1", "charge.refunded", {}))
        assert parsed.kind is EventKind.IGNORED

    def test_known_types_map_to_kinds(self):
        assert EVENT_TYPES["checkout.session.completed"] is EventKind.CHECKOUT_SESSION_COMPLETED
        assert EventKind.from_type("invoice.payment_succeeded") is EventKind.INVOICE_PAID

    def test_event_without_id_rejected(self):
        with pytest.raises(ValueError):
            WebhookEvent.from_stripe({"type": "invoice.paid", "data": {"object": {}}})

    def test_dispatch_uses_handler_table(self, db_session, monkeypatch):
        seen = []
        monkeypatch.setitem(HANDLERS, EventKind.INVOICE_PAID, lambda db, obj: seen.append(obj))

        webhook_service.dispatch_event(db_session, WebhookEvent.from_stripe(event("evt_1", "invoice.paid", {"id": "in_1"})))

        assert seen == [{"id": "in_1"}]
