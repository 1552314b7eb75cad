from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest

from hacko_billing.app.billing import (
    ContentTarget,
    ProviderEventResult,
    PurchaseStatus,
    SubscriptionStatus,
)
from hacko_billing.app.billing.webhooks import external_event_id, subscription_duration_days
from hacko_billing.app.entitlements import AccessReason, GrantOrigin

USER = "user-1"
PERIOD_START = 1_700_000_000
PERIOD_END = PERIOD_START + 30 * 86400


def _captured(order_id: str, *, amount: int, payment_id: str = "pay_1", notes: Optional[Dict[str, str]] = None,
              event_id: str = "evt_captured_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": order_id,
                    "amount": amount,
                    "currency": "INR",
                    "status": "captured",
                    "notes": notes or [],
                }
            }
        },
    }


def _refunded(payment_id: str, *, order_id: Optional[str] = None, event_id: str = "evt_refund_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "event": "payment.refunded",
        "payload": {
            "payment": {"entity": {"id": payment_id, "order_id": order_id, "status": "refunded"}},
            "refund": {"entity": {"id": "rfnd_1", "payment_id": payment_id}},
        },
    }


def _subscription(event: str, status: str, *, event_id: str, notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "id": event_id,
        "event": event,
        "payload": {
            "subscription": {
                "entity": {
                    "id": "sub_1",
                    "plan_id": "plan_sify_monthly",
                    "status": status,
                    "current_start": PERIOD_START,
                    "current_end": PERIOD_END,
                    "notes": notes if notes is not None else {"user_id": USER, "plan": "sify"},
                }
            }
        },
    }


@pytest.fixture
def lab_order(billing_service, store):
    store.add_rule("lab", "web-101", required_plan="sify", individual_price=499)
    return billing_service.create_order(USER, ContentTarget(content_type="lab", content_id="web-101"))


def test_captured_payment_grants_access(billing_service, billing_repo, store, lab_order, signed_webhook):
    raw, signature = signed_webhook(_captured(lab_order.order_id, amount=49900))

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.received is True
    assert receipt.processed is True
    assert receipt.signature_valid is True
    assert receipt.error is None
    purchase = billing_repo.get_purchase(lab_order.purchase_id)
    assert purchase.status == PurchaseStatus.PAID
    assert purchase.price_paid == 499
    assert purchase.provider_payment_id == "pay_1"
    assert billing_service.decide(USER, "lab", "web-101").reason == AccessReason.PURCHASE_OK
    assert billing_repo.event_for("evt_captured_1").result == ProviderEventResult.SUCCESS


def test_duplicate_delivery_is_applied_once(billing_service, billing_repo, store, lab_order, signed_webhook):
    raw, signature = signed_webhook(_captured(lab_order.order_id, amount=49900))

    first = billing_service.handle_webhook(raw, signature)
    second = billing_service.handle_webhook(raw, signature)

    assert first.processed is True
    assert second.duplicate is True
    assert second.already_processed is True
    assert second.stored_id == first.stored_id
    assert billing_repo.paid_transitions == 1
    assert len(store.content_grants) == 1
    assert len(billing_repo.events) == 1


def test_tampered_amount_records_error_without_grant(
    billing_service, billing_repo, store, lab_order, signed_webhook, event_logger
):
    raw, signature = signed_webhook(_captured(lab_order.order_id, amount=500))

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.received is True
    assert receipt.processed is False
    assert "AMOUNT_MISMATCH" in receipt.error
    assert billing_repo.get_purchase(lab_order.purchase_id).status == PurchaseStatus.CREATED
    assert store.content_grants == {}
    event = billing_repo.event_for("evt_captured_1")
    assert event.result == ProviderEventResult.ERROR
    assert "AMOUNT_MISMATCH" in event.error_message
    assert "integrity_rejected" in event_logger.types()


def test_invalid_signature_is_recorded_then_redelivery_processed(
    billing_service, billing_repo, lab_order, signed_webhook
):
    raw, signature = signed_webhook(_captured(lab_order.order_id, amount=49900))

    rejected = billing_service.handle_webhook(raw, "0" * 64)

    assert rejected.received is True
    assert rejected.signature_valid is False
    assert rejected.error == "invalid signature"
    event = billing_repo.event_for("evt_captured_1")
    assert event.result == ProviderEventResult.ERROR
    assert event.signature_valid is False
    assert billing_repo.paid_transitions == 0

    accepted = billing_service.handle_webhook(raw, signature)

    assert accepted.duplicate is True
    assert accepted.processed is True
    assert billing_repo.event_for("evt_captured_1").signature_valid is True
    assert billing_repo.paid_transitions == 1


def test_missing_signature_is_rejected(billing_service, billing_repo, lab_order, signed_webhook):
    raw, _ = signed_webhook(_captured(lab_order.order_id, amount=49900))

    receipt = billing_service.handle_webhook(raw, None)

    assert receipt.signature_valid is False
    assert billing_repo.get_purchase(lab_order.purchase_id).status == PurchaseStatus.CREATED


def test_capture_for_unknown_order_synthesizes_purchase(billing_service, billing_repo, store, signed_webhook):
    notes = {"user_id": USER, "content_type": "course", "content_id": "intro", "amount_units": "49"}
    raw, signature = signed_webhook(_captured("order_external", amount=4900, notes=notes))

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is True
    purchase = billing_repo.get_purchase_by_order("razorpay", "order_external")
    assert purchase.status == PurchaseStatus.PAID
    assert store.content_grants[purchase.id].content_id == "intro"


def test_capture_without_purchase_or_notes_is_an_error(billing_service, signed_webhook):
    raw, signature = signed_webhook(_captured("order_unknown", amount=4900))

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is False
    assert "PURCHASE_STATE" in receipt.error


def test_refund_revokes_only_its_own_purchase(billing_service, billing_repo, store, signed_webhook, checkout_signature):
    store.add_rule("lab", "web-101", individual_price=99)
    store.add_rule("lab", "web-102", individual_price=99)
    first = billing_service.create_order(USER, ContentTarget(content_type="lab", content_id="web-101"))
    second = billing_service.create_order(USER, ContentTarget(content_type="lab", content_id="web-102"))
    for order, payment_id in ((first, "pay_a"), (second, "pay_b")):
        billing_service.verify_payment(
            USER,
            order_id=order.order_id,
            payment_id=payment_id,
            signature=checkout_signature(order.order_id, payment_id),
        )

    raw, signature = signed_webhook(_refunded("pay_a"))
    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is True
    assert billing_repo.get_purchase(first.purchase_id).status == PurchaseStatus.REFUNDED
    assert billing_repo.get_purchase(second.purchase_id).status == PurchaseStatus.PAID
    assert store.content_grants[first.purchase_id].revoked_at is not None
    assert store.content_grants[second.purchase_id].revoked_at is None
    assert billing_service.decide(USER, "lab", "web-101").reason == AccessReason.UPGRADE_OR_BUY
    assert billing_service.decide(USER, "lab", "web-102").reason == AccessReason.PURCHASE_OK


def test_refund_for_unknown_payment_is_an_error(billing_service, billing_repo, signed_webhook):
    raw, signature = signed_webhook(_refunded("pay_missing"))

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is False
    assert billing_repo.event_for("evt_refund_1").result == ProviderEventResult.ERROR


def test_refund_of_unpaid_purchase_is_ignored(billing_service, billing_repo, lab_order, signed_webhook):
    raw, signature = signed_webhook(_refunded("pay_x", order_id=lab_order.order_id))

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is True
    assert billing_repo.get_purchase(lab_order.purchase_id).status == PurchaseStatus.CREATED


def _fail_once(monkeypatch, target, name: str) -> None:
    original = getattr(target, name)
    calls = {"count": 0}

    def _flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("transient db error")
        return original(*args, **kwargs)

    monkeypatch.setattr(target, name, _flaky)


def test_redelivery_grants_access_when_paid_purchase_lacks_grant(
    billing_service, billing_repo, store, lab_order, signed_webhook, monkeypatch
):
    _fail_once(monkeypatch, store, "upsert_content_grant")
    raw, signature = signed_webhook(_captured(lab_order.order_id, amount=49900))

    first = billing_service.handle_webhook(raw, signature)

    assert first.processed is False
    assert first.error == "transient db error"
    assert billing_repo.get_purchase(lab_order.purchase_id).status == PurchaseStatus.PAID
    assert store.content_grants == {}

    second = billing_service.handle_webhook(raw, signature)

    assert second.processed is True
    assert billing_repo.paid_transitions == 1
    assert len(store.content_grants) == 1
    assert billing_service.decide(USER, "lab", "web-101").reason == AccessReason.PURCHASE_OK
    assert billing_repo.event_for("evt_captured_1").result == ProviderEventResult.SUCCESS


def test_redelivered_refund_revokes_grant_left_behind(
    billing_service, billing_repo, store, lab_order, signed_webhook, checkout_signature, monkeypatch
):
    billing_service.verify_payment(
        USER,
        order_id=lab_order.order_id,
        payment_id="pay_r",
        signature=checkout_signature(lab_order.order_id, "pay_r"),
    )
    _fail_once(monkeypatch, store, "revoke_content_grants")
    raw, signature = signed_webhook(_refunded("pay_r"))

    first = billing_service.handle_webhook(raw, signature)

    assert first.processed is False
    assert billing_repo.get_purchase(lab_order.purchase_id).status == PurchaseStatus.REFUNDED
    assert billing_service.decide(USER, "lab", "web-101").reason == AccessReason.PURCHASE_OK

    second = billing_service.handle_webhook(raw, signature)

    assert second.processed is True
    assert store.content_grants[lab_order.purchase_id].revoked_at is not None
    assert billing_service.decide(USER, "lab", "web-101").reason == AccessReason.UPGRADE_OR_BUY
    assert billing_repo.event_for("evt_refund_1").result == ProviderEventResult.SUCCESS


def test_forged_copy_racing_a_processed_delivery_keeps_success(
    billing_service, billing_repo, lab_order, signed_webhook, monkeypatch
):
    raw, signature = signed_webhook(_captured(lab_order.order_id, amount=49900))
    assert billing_service.handle_webhook(raw, signature).processed is True
    stored = billing_repo.event_for("evt_captured_1")
    stale = stored.model_copy(update={"result": ProviderEventResult.PENDING})
    monkeypatch.setattr(billing_repo, "record_provider_event", lambda event: (stale, False))

    receipt = billing_service.handle_webhook(raw, "0" * 64)

    assert receipt.error == "invalid signature"
    assert billing_repo.event_for("evt_captured_1").result == ProviderEventResult.SUCCESS
    assert billing_repo.event_for("evt_captured_1").error_message is None


def test_subscription_activation_grants_expiring_plan(billing_service, billing_repo, store, signed_webhook):
    store.add_rule("lab", "web-101", required_plan="sify")
    raw, signature = signed_webhook(_subscription("subscription.activated", "active", event_id="evt_sub_1"))

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is True
    subscription = billing_repo.get_subscription_by_provider_id("razorpay", "sub_1")
    assert subscription.user_id == USER
    assert subscription.product_id == "sify"
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.current_period_end == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)

    grant = store.plan_grants[(GrantOrigin.SUBSCRIPTION.value, subscription.id)]
    assert grant.tier == "sify"
    assert grant.expires_at is not None
    assert billing_service.decide(USER, "lab", "web-101").reason == AccessReason.PLAN_OK


def test_subscription_cancellation_revokes_plan(billing_service, billing_repo, store, signed_webhook):
    raw, signature = signed_webhook(_subscription("subscription.activated", "active", event_id="evt_sub_1"))
    billing_service.handle_webhook(raw, signature)
    raw, signature = signed_webhook(_subscription("subscription.cancelled", "cancelled", event_id="evt_sub_2"))

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is True
    subscription = billing_repo.get_subscription_by_provider_id("razorpay", "sub_1")
    assert subscription.status == SubscriptionStatus.CANCELED
    assert store.plan_grants[(GrantOrigin.SUBSCRIPTION.value, subscription.id)].revoked_at is not None
    assert billing_service.access.effective_plan(USER) == "free"


def test_halted_subscription_is_past_due_and_keeps_grant(billing_service, billing_repo, store, signed_webhook):
    raw, signature = signed_webhook(_subscription("subscription.activated", "active", event_id="evt_sub_1"))
    billing_service.handle_webhook(raw, signature)
    raw, signature = signed_webhook(_subscription("subscription.halted", "halted", event_id="evt_sub_2"))

    billing_service.handle_webhook(raw, signature)

    subscription = billing_repo.get_subscription_by_provider_id("razorpay", "sub_1")
    assert subscription.status == SubscriptionStatus.PAST_DUE
    assert store.plan_grants[(GrantOrigin.SUBSCRIPTION.value, subscription.id)].revoked_at is None


def test_unknown_subscription_without_notes_is_an_error(billing_service, billing_repo, signed_webhook):
    raw, signature = signed_webhook(
        _subscription("subscription.activated", "active", event_id="evt_sub_1", notes={})
    )

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is False
    assert billing_repo.subscriptions == {}


def test_unknown_event_is_recorded_as_success(billing_service, billing_repo, signed_webhook, event_logger):
    raw, signature = signed_webhook({"id": "evt_order_1", "event": "order.paid", "payload": {}})

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.event == "order.paid"
    assert receipt.processed is True
    assert billing_repo.event_for("evt_order_1").result == ProviderEventResult.SUCCESS
    assert event_logger.events == []


def test_malformed_known_event_is_an_error(billing_service, billing_repo, signed_webhook):
    raw, signature = signed_webhook(
        {"id": "evt_bad", "event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_1"}}}}
    )

    receipt = billing_service.handle_webhook(raw, signature)

    assert receipt.processed is False
    assert "missing amount" in receipt.error


def test_unparseable_body_is_still_recorded(billing_service, billing_repo):
    raw = b"not json"

    receipt = billing_service.handle_webhook(raw, "bogus")

    assert receipt.received is True
    assert receipt.event == "unknown"
    assert billing_repo.event_for(hashlib.sha256(raw).hexdigest()) is not None


def test_reprocess_pending_replays_failed_events(billing_service, billing_repo, signed_webhook):
    notes = {"user_id": USER, "content_type": "lab", "content_id": "web-101", "amount_units": "49"}
    raw, signature = signed_webhook(_captured("order_late", amount=4900, notes=notes))
    assert billing_service.handle_webhook(raw, signature).processed is True

    refund_raw, refund_signature = signed_webhook(_refunded("pay_unknown"))
    billing_service.handle_webhook(refund_raw, refund_signature)
    billing_service.handle_webhook(b"garbage", "bad")

    replayed = billing_service.reprocess_pending_events()

    assert [receipt.event for receipt in replayed] == ["payment.refunded"]
    assert replayed[0].processed is False
    assert billing_repo.event_for("evt_captured_1").result == ProviderEventResult.SUCCESS


def test_reprocess_succeeds_once_missing_state_arrives(
    billing_service, billing_repo, store, signed_webhook, checkout_signature
):
    store.add_rule("lab", "web-101", individual_price=99)
    raw, signature = signed_webhook(_refunded("pay_late"))
    assert billing_service.handle_webhook(raw, signature).processed is False

    order = billing_service.create_order(USER, ContentTarget(content_type="lab", content_id="web-101"))
    billing_service.verify_payment(
        USER,
        order_id=order.order_id,
        payment_id="pay_late",
        signature=checkout_signature(order.order_id, "pay_late"),
    )

    replayed = billing_service.reprocess_pending_events()

    assert len(replayed) == 1
    assert replayed[0].processed is True
    assert billing_repo.get_purchase(order.purchase_id).status == PurchaseStatus.REFUNDED
    assert billing_repo.event_for("evt_refund_1").result == ProviderEventResult.SUCCESS


def test_external_event_id_fallbacks():
    raw = json.dumps({"event": "payment.captured"}).encode("utf-8")
    with_entity = {"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_9"}}}}

    assert external_event_id({"id": "evt_1"}, raw, "payment.captured", "hdr") == "evt_1"
    assert external_event_id({}, raw, "payment.captured", " hdr_1 ") == "hdr_1"
    assert external_event_id(with_entity, raw, "payment.captured") == "payment.captured:pay_9"
    assert external_event_id({}, raw, "payment.captured") == hashlib.sha256(raw).hexdigest()


def test_header_event_id_deduplicates_bodies_without_id(billing_service, billing_repo, signed_webhook):
    raw, signature = signed_webhook({"event": "order.paid", "payload": {}})

    billing_service.handle_webhook(raw, signature, "hdr_evt_1")
    second = billing_service.handle_webhook(raw, signature, "hdr_evt_1")

    assert second.already_processed is True
    assert billing_repo.event_for("hdr_evt_1") is not None


def test_subscription_duration_days():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert subscription_duration_days(start, datetime(2024, 1, 31, tzinfo=timezone.utc)) == 30
    assert subscription_duration_days(start, datetime(2024, 1, 1, 2, tzinfo=timezone.utc)) == 1
    assert subscription_duration_days(None, start) == 30
    assert subscription_duration_days(start, start) == 30
