"""Razorpay webhook reconciliation and the checkout confirm path."""
import hashlib
import hmac
import json
from datetime import datetime
from types import SimpleNamespace

import pytest
import razorpay
from sqlalchemy import select

from apps.backend.clients.razorpay_client import RazorpayClient
from apps.backend.database import create_test_session
from apps.backend.models.billing import BillingWebhookEvent, PricingPlan, Subscription
from apps.backend.models.user import User
from apps.backend.services import billing
from apps.backend.utils.errors import AuthorizationError, NotFoundError, QuotaExceededError, ValidationError

SECRET = "whsec_test"
KEY_SECRET = "key_secret_test"
T0 = 1767225600  # 2026-01-01T00:00:00Z
DAY = 86400


@pytest.fixture
def db(monkeypatch):
    sess = create_test_session()
    monkeypatch.setattr(billing, "notify_payment_failed", lambda *a, **kw: None)
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture
def user(db):
    u = User(email="owner@example.com", name="Owner")
    db.add(u)
    db.add(PricingPlan(name="Pro", tier="pro", price=999, interval="month", razorpay_plan_id="plan_pro"))
    db.commit()
    return u


@pytest.fixture
def sub(db, user):
    s = Subscription(user_id=user.id, razorpay_subscription_id="sub_1", razorpay_plan_id="plan_pro", status="active", failed_payment_attempts=0)
    db.add(s)
    user.razorpay_subscription_id = "sub_1"
    db.commit()
    return s


def _sub_event(kind, event_created_at, sub_id="sub_1", **entity):
    return {"event": kind, "created_at": event_created_at, "payload": {"subscription": {"entity": {"id": sub_id, **entity}}}}


def _payment_event(kind, event_created_at, sub_id="sub_1", **entity):
    return {"event": kind, "created_at": event_created_at, "payload": {"payment": {"entity": {"subscription_id": sub_id, **entity}}}}


def _deliver(db, payload, event_id=None, secret=SECRET):
    raw = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return billing.process_razorpay_webhook(db, raw, sig, event_id=event_id, secret=SECRET)


def _snapshot(db, sub_id="sub_1"):
    s = db.execute(select(Subscription).where(Subscription.razorpay_subscription_id == sub_id)).scalar_one()
    db.refresh(s)
    return (s.status, s.current_period_start, s.current_period_end, s.failed_payment_attempts, s.last_event_at)


def test_charged_is_idempotent_per_event_id(db, sub):
    payload = _sub_event("subscription.charged", T0, current_start=T0, current_end=T0 + 30 * DAY, charge_at=T0 + 30 * DAY)
    first = _deliver(db, payload, event_id="evt_1")
    after_first = _snapshot(db)
    second = _deliver(db, payload, event_id="evt_1")
    assert first.outcome == billing.OUTCOME_APPLIED
    assert second.outcome == billing.OUTCOME_DUPLICATE
    assert _snapshot(db) == after_first
    assert after_first[0] == "active"
    assert db.execute(select(BillingWebhookEvent)).scalars().all()[0].event_key == "evt:evt_1"


def test_redelivery_without_event_id_is_deduped_by_body(db, sub):
    payload = _sub_event("subscription.charged", T0, current_end=T0 + DAY)
    assert _deliver(db, payload).outcome == billing.OUTCOME_APPLIED
    assert _deliver(db, payload).outcome == billing.OUTCOME_DUPLICATE


def test_payment_failed_increments_and_marks_past_due(db, sub, user):
    sub.failed_payment_attempts = 2
    db.commit()
    out = _deliver(db, _payment_event("payment.failed", T0, id="pay_1", amount=99900), event_id="evt_f1")
    assert out.outcome == billing.OUTCOME_APPLIED
    db.refresh(sub)
    db.refresh(user)
    assert sub.failed_payment_attempts == 3
    assert sub.status == "past_due"
    assert user.subscription_status == "past_due"


def test_charged_after_failure_resets_attempts(db, sub):
    _deliver(db, _payment_event("payment.failed", T0, id="pay_1"), event_id="evt_f1")
    _deliver(db, _sub_event("subscription.charged", T0 + 60, current_end=T0 + 30 * DAY), event_id="evt_c1")
    db.refresh(sub)
    assert sub.failed_payment_attempts == 0
    assert sub.status == "active"


def test_older_event_is_stale(db, sub):
    assert _deliver(db, _sub_event("subscription.activated", T0 + 100), event_id="e2").outcome == billing.OUTCOME_APPLIED
    late = _deliver(db, _sub_event("subscription.cancelled", T0), event_id="e1")
    assert late.outcome == billing.OUTCOME_STALE
    db.refresh(sub)
    assert sub.status == "active"


def test_unknown_event_kind_is_ignored_and_not_recorded(db, sub):
    out = _deliver(db, {"event": "invoice.paid", "created_at": T0, "payload": {}}, event_id="evt_x")
    assert out.outcome == billing.OUTCOME_IGNORED
    assert db.execute(select(BillingWebhookEvent)).scalars().all() == []


def test_payment_authorized_is_recorded_without_change(db, sub):
    before = _snapshot(db)
    out = _deliver(db, _payment_event("payment.authorized", T0, id="pay_a"), event_id="evt_a")
    assert out.outcome == billing.OUTCOME_IGNORED
    assert _snapshot(db) == before


def test_payment_captured_keeps_newest_payment(db, sub):
    _deliver(db, _payment_event("payment.captured", T0 + 50, id="pay_new", amount=99900, created_at=T0 + 50), event_id="c2")
    out = _deliver(db, _payment_event("payment.captured", T0, id="pay_old", amount=100, created_at=T0), event_id="c1")
    assert out.outcome == billing.OUTCOME_STALE
    db.refresh(sub)
    assert sub.razorpay_payment_id == "pay_new"
    assert sub.last_payment_amount == 99900


def test_unknown_subscription_is_not_found_then_reprocessable(db, user):
    payload = _sub_event("subscription.activated", T0, sub_id="sub_later")
    assert _deliver(db, payload, event_id="evt_l").outcome == billing.OUTCOME_NOT_FOUND
    db.add(Subscription(user_id=user.id, razorpay_subscription_id="sub_later", status="created", failed_payment_attempts=0))
    db.commit()
    assert _deliver(db, payload, event_id="evt_l").outcome == billing.OUTCOME_APPLIED
    assert _snapshot(db, "sub_later")[0] == "active"
    assert len(db.execute(select(BillingWebhookEvent)).scalars().all()) == 1


def test_bad_signature_and_body(db, sub):
    raw = json.dumps(_sub_event("subscription.cancelled", T0)).encode()
    with pytest.raises(AuthorizationError):
        billing.process_razorpay_webhook(db, raw, "deadbeef", secret=SECRET)
    with pytest.raises(AuthorizationError):
        billing.process_razorpay_webhook(db, raw, None, secret=SECRET)
    garbage = b"{not json"
    sig = hmac.new(SECRET.encode(), garbage, hashlib.sha256).hexdigest()
    with pytest.raises(ValidationError):
        billing.process_razorpay_webhook(db, garbage, sig, secret=SECRET)
    db.refresh(sub)
    assert sub.status == "active"


def _client(remote):
    sdk = SimpleNamespace(
        subscription=SimpleNamespace(fetch=lambda sid: dict(remote, id=sid), cancel=lambda sid, data: {"id": sid, "status": "cancelled"}),
        customer=SimpleNamespace(create=lambda data: {"id": "cust_1"}),
        utility=razorpay.Client(auth=("rzp_test", KEY_SECRET)).utility,
    )
    return RazorpayClient(key_id="rzp_test", key_secret=KEY_SECRET, client=sdk)


def _checkout_signature(payment_id, subscription_id):
    return hmac.new(KEY_SECRET.encode(), f"{payment_id}|{subscription_id}".encode(), hashlib.sha256).hexdigest()


REMOTE = {"plan_id": "plan_pro", "status": "active", "customer_id": "cust_1", "current_start": T0, "current_end": T0 + 30 * DAY}


def test_confirm_then_activated_matches_webhooks_alone(db, user):
    other = User(email="second@example.com", name="Second")
    db.add(other)
    db.commit()

    billing.confirm_subscription(
        db,
        user,
        payment_id="pay_1",
        subscription_id="sub_a",
        signature=_checkout_signature("pay_1", "sub_a"),
        client=_client(REMOTE),
    )
    _deliver(db, _sub_event("subscription.activated", T0 + 10, sub_id="sub_a", **REMOTE), event_id="a1")

    entity = dict(REMOTE, notes={"user_id": str(other.id)})
    _deliver(db, _sub_event("subscription.activated", T0 + 10, sub_id="sub_b", **entity), event_id="b1")

    db.refresh(user)
    db.refresh(other)
    a, b = _snapshot(db, "sub_a"), _snapshot(db, "sub_b")
    assert (user.tier, user.subscription_status) == (other.tier, other.subscription_status) == ("pro", "active")
    assert a[:4] == b[:4]
    assert user.current_period_end == other.current_period_end


def test_confirm_rejects_bad_signature_without_writes(db, user):
    with pytest.raises(AuthorizationError):
        billing.confirm_subscription(db, user, payment_id="pay_1", subscription_id="sub_a", signature="nope", client=_client(REMOTE))
    assert db.execute(select(Subscription)).scalars().all() == []
    db.refresh(user)
    assert user.tier == "free"


def test_confirm_requires_all_fields_and_known_plan(db, user):
    with pytest.raises(ValidationError):
        billing.confirm_subscription(db, user, payment_id="", subscription_id="sub_a", signature="x", client=_client(REMOTE))
    with pytest.raises(NotFoundError):
        billing.confirm_subscription(
            db,
            user,
            payment_id="pay_1",
            subscription_id="sub_a",
            signature=_checkout_signature("pay_1", "sub_a"),
            client=_client(dict(REMOTE, plan_id="plan_missing")),
        )


def test_confirm_refuses_subscription_of_another_account(db, user, sub):
    intruder = User(email="intruder@example.com", name="I")
    db.add(intruder)
    db.commit()
    with pytest.raises(AuthorizationError):
        billing.confirm_subscription(
            db,
            intruder,
            payment_id="pay_9",
            subscription_id="sub_1",
            signature=_checkout_signature("pay_9", "sub_1"),
            client=_client(REMOTE),
        )


def test_cancel_marks_cancel_at_period_end(db, user, sub):
    out = billing.cancel_subscription(db, user, "too expensive", client=_client(REMOTE))
    assert out.status == "cancelled"
    assert out.cancel_at_period_end is True
    assert out.cancel_reason == "too expensive"
    db.refresh(user)
    assert user.subscription_status == "cancelled"


def test_message_quota_for_free_tier(db, user):
    user.usage_monthly_messages = 99
    db.commit()
    billing.check_message_quota(user)
    billing.record_message_usage(db, user.id)
    db.refresh(user)
    with pytest.raises(QuotaExceededError):
        billing.check_message_quota(user)
    user.tier = "enterprise"
    billing.check_message_quota(user)


def test_late_payment_failure_after_newer_charge_is_stale(db, sub, monkeypatch):
    sent = []
    monkeypatch.setattr(billing, "notify_payment_failed", lambda *a, **kw: sent.append(a))
    _deliver(db, _sub_event("subscription.charged", T0 + 100, current_end=T0 + 30 * DAY), event_id="evt_c")
    out = _deliver(db, _payment_event("payment.failed", T0, id="pay_old"), event_id="evt_f")
    assert out.outcome == billing.OUTCOME_STALE
    db.refresh(sub)
    assert sub.status == "active"
    assert sub.failed_payment_attempts == 0
    assert sent == []


def test_payment_failure_notifies_owner(db, sub, monkeypatch):
    sent = []
    monkeypatch.setattr(billing, "notify_payment_failed", lambda *a, **kw: sent.append(a))
    _deliver(db, _payment_event("payment.failed", T0, id="pay_1"), event_id="evt_f")
    assert sent == [("owner@example.com", "Owner", 1)]


def test_charged_resets_monthly_usage_once_per_month(db, sub, user):
    user.usage_monthly_messages = 57
    user.usage_last_reset_at = datetime(2020, 1, 1)
    db.commit()
    _deliver(db, _sub_event("subscription.charged", T0, current_end=T0 + 30 * DAY), event_id="evt_c1")
    db.refresh(user)
    assert user.usage_monthly_messages == 0
    assert user.usage_last_reset_at.year > 2020

    user.usage_monthly_messages = 5
    db.commit()
    _deliver(db, _sub_event("subscription.charged", T0 + 60, current_end=T0 + 30 * DAY), event_id="evt_c2")
    db.refresh(user)
    assert user.usage_monthly_messages == 5


def test_updated_event_takes_status_and_period(db, sub, user):
    out = _deliver(
        db,
        _sub_event("subscription.updated", T0, status="halted", current_start=T0, current_end=T0 + 30 * DAY),
        event_id="evt_u",
    )
    assert out.outcome == billing.OUTCOME_APPLIED
    status, start, end, _, seen = _snapshot(db)
    assert status == "halted"
    assert (start, end) == (billing._ts(T0), billing._ts(T0 + 30 * DAY))
    assert seen == billing._ts(T0)
    db.refresh(user)
    assert user.subscription_status == "halted"


def test_updated_event_with_unknown_status_keeps_current(db, sub):
    _deliver(db, _sub_event("subscription.updated", T0, status="mystery"), event_id="evt_u")
    assert _snapshot(db)[0] == "active"


def test_pause_resume_and_complete(db, sub, user):
    _deliver(db, _sub_event("subscription.paused", T0), event_id="p")
    assert _snapshot(db)[0] == "paused"
    _deliver(db, _sub_event("subscription.resumed", T0 + 10), event_id="r")
    assert _snapshot(db)[0] == "active"
    _deliver(db, _sub_event("subscription.completed", T0 + 20), event_id="c")
    assert _snapshot(db)[0] == "completed"
    db.refresh(user)
    assert user.subscription_status == "completed"


def test_signatures_are_checked_by_the_sdk(db):
    client = _client(REMOTE)
    assert client.verify_payment_signature("sub_a", "pay_1", _checkout_signature("pay_1", "sub_a"))
    assert not client.verify_payment_signature("sub_a", "pay_1", _checkout_signature("pay_2", "sub_a"))
    assert not client.verify_payment_signature("sub_a", "pay_1", None)
    raw = b'{"event": "subscription.charged"}'
    good = hmac.new(SECRET.encode(), raw, hashlib.sha256).hexdigest()
    assert client.verify_webhook_signature(raw, good, SECRET)
    assert not client.verify_webhook_signature(raw, good, "other_secret")
    assert not client.verify_webhook_signature(b"\xff\xfe", good, SECRET)


def test_usage_is_counted_on_the_owner_not_the_subscription(db, sub, user):
    billing.record_message_usage(db, user.id)
    db.commit()
    db.refresh(user)
    assert (user.usage_messages, user.usage_monthly_messages) == (1, 1)
    assert not {"usage_messages", "usage_api_calls"} & set(Subscription.__table__.columns.keys())
