"""Subscription billing: Razorpay webhook reconciliation, checkout confirm, usage limits.

Webhooks arrive at least once and in no particular order. Every delivery is
recorded in ``billing_webhook_events`` under a stable key so a redelivery is a
no-op, and status/period writes are skipped when the event is older than the
newest one already applied to the subscription.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.backend.clients.razorpay_client import RazorpayClient, get_razorpay_client, verify_webhook_signature
from apps.backend.config import get_settings
from apps.backend.models.billing import BillingWebhookEvent, PricingPlan, Subscription
from apps.backend.models.user import User
from apps.backend.services.email import notify_payment_failed
from apps.backend.services.entity_lock import entity_locks, subscription_key
from apps.backend.utils.errors import (
    AuthorizationError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MONTHLY_MESSAGE_LIMITS = {"free": 100, "pro": 10000, "enterprise": -1}


class SubscriptionStatus(str, Enum):
    CREATED = "created"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    PENDING = "pending"
    HALTED = "halted"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


_KNOWN_STATUSES = {s.value for s in SubscriptionStatus}


class BillingEventKind(str, Enum):
    SUBSCRIPTION_AUTHENTICATED = "subscription.authenticated"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_COMPLETED = "subscription.completed"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"

    @classmethod
    def parse(cls, value: Any) -> "BillingEventKind | None":
        try:
            return cls(value)
        except ValueError:
            return None


OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_STALE = "stale"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_IGNORED = "ignored"


@dataclass
class BillingEvent:
    kind: BillingEventKind
    entity: dict[str, Any]
    created_at: datetime | None
    subscription_ref: str | None


@dataclass
class WebhookOutcome:
    event_key: str
    event_type: str | None
    outcome: str
    subscription_ref: str | None = None


def _ts(value: Any) -> datetime | None:
    """Provider epoch seconds -> naive UTC datetime."""
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    body = payload.get("payload") or {}
    wrapped = (body.get(name) or {}).get("entity") if isinstance(body, dict) else None
    if isinstance(wrapped, dict):
        return wrapped
    top = payload.get("entity")
    return top if isinstance(top, dict) else {}


def event_key_for(raw_body: bytes, event_id: str | None) -> str:
    if event_id:
        return f"evt:{event_id.strip()}"[:128]
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


def _sync_user(db: Session, sub: Subscription) -> None:
    user = db.get(User, sub.user_id)
    if not user:
        return
    user.subscription_status = sub.status
    if user.razorpay_subscription_id in (None, sub.razorpay_subscription_id):
        user.razorpay_subscription_id = sub.razorpay_subscription_id
        user.current_period_start = sub.current_period_start
        user.current_period_end = sub.current_period_end


def _is_stale(sub: Subscription, event: BillingEvent) -> bool:
    if event.created_at is None or sub.last_event_at is None:
        return False
    return event.created_at < sub.last_event_at


def _mark_seen(sub: Subscription, event: BillingEvent) -> None:
    if event.created_at and (sub.last_event_at is None or event.created_at > sub.last_event_at):
        sub.last_event_at = event.created_at


def reset_monthly_usage_if_due(user: User, now: datetime | None = None) -> bool:
    now = now or datetime.utcnow()
    last = user.usage_last_reset_at
    if last and (last.year, last.month) == (now.year, now.month):
        return False
    user.usage_monthly_messages = 0
    user.usage_monthly_api_calls = 0
    user.usage_last_reset_at = now
    return True


# ----- event handlers -----

def _status_handler(status: SubscriptionStatus) -> Callable[[Session, Subscription, BillingEvent], str]:
    def handle(db: Session, sub: Subscription, event: BillingEvent) -> str:
        if _is_stale(sub, event):
            return OUTCOME_STALE
        sub.status = status.value
        _mark_seen(sub, event)
        _sync_user(db, sub)
        return OUTCOME_APPLIED

    return handle


def _on_charged(db: Session, sub: Subscription, event: BillingEvent) -> str:
    if _is_stale(sub, event):
        return OUTCOME_STALE
    entity = event.entity
    sub.status = SubscriptionStatus.ACTIVE.value
    start, end = _ts(entity.get("current_start")), _ts(entity.get("current_end"))
    if start:
        sub.current_period_start = start
    if end:
        sub.current_period_end = end
    charge_at = _ts(entity.get("charge_at"))
    if charge_at:
        sub.next_payment_at = charge_at
    sub.failed_payment_attempts = 0
    _mark_seen(sub, event)
    _sync_user(db, sub)
    user = db.get(User, sub.user_id)
    if user and reset_monthly_usage_if_due(user):
        logger.info("billing_usage_reset user_id=%s subscription=%s", user.id, sub.razorpay_subscription_id)
    return OUTCOME_APPLIED


def _on_updated(db: Session, sub: Subscription, event: BillingEvent) -> str:
    if _is_stale(sub, event):
        return OUTCOME_STALE
    entity = event.entity
    status = entity.get("status")
    if status in _KNOWN_STATUSES:
        sub.status = status
    elif status:
        logger.warning("billing_unknown_status subscription=%s status=%s", sub.razorpay_subscription_id, status)
    start, end = _ts(entity.get("current_start")), _ts(entity.get("current_end"))
    if start:
        sub.current_period_start = start
    if end:
        sub.current_period_end = end
    _mark_seen(sub, event)
    _sync_user(db, sub)
    return OUTCOME_APPLIED


def _on_payment_authorized(db: Session, sub: Subscription, event: BillingEvent) -> str:
    logger.info("billing_payment_authorized payment_id=%s subscription=%s", event.entity.get("id"), sub.razorpay_subscription_id)
    return OUTCOME_IGNORED


def _on_payment_captured(db: Session, sub: Subscription, event: BillingEvent) -> str:
    entity = event.entity
    paid_at = _ts(entity.get("created_at")) or event.created_at or datetime.utcnow()
    if sub.last_payment_at and paid_at < sub.last_payment_at:
        return OUTCOME_STALE
    sub.last_payment_at = paid_at
    if entity.get("amount") is not None:
        sub.last_payment_amount = int(entity["amount"])
    if entity.get("id"):
        sub.razorpay_payment_id = entity["id"]
    return OUTCOME_APPLIED


def _on_payment_failed(db: Session, sub: Subscription, event: BillingEvent) -> str:
    # a failure older than the newest applied event (e.g. a later charge) is already settled
    if _is_stale(sub, event):
        return OUTCOME_STALE
    sub.failed_payment_attempts = (sub.failed_payment_attempts or 0) + 1
    sub.status = SubscriptionStatus.PAST_DUE.value
    _mark_seen(sub, event)
    _sync_user(db, sub)
    user = db.get(User, sub.user_id)
    if user and user.email:
        try:
            notify_payment_failed(user.email, user.name, sub.failed_payment_attempts)
        except Exception:
            logger.exception("payment_failed_email_error user_id=%s", user.id)
    return OUTCOME_APPLIED


_HANDLERS: dict[BillingEventKind, Callable[[Session, Subscription, BillingEvent], str]] = {
    BillingEventKind.SUBSCRIPTION_AUTHENTICATED: _status_handler(SubscriptionStatus.AUTHENTICATED),
    BillingEventKind.SUBSCRIPTION_ACTIVATED: _status_handler(SubscriptionStatus.ACTIVE),
    BillingEventKind.SUBSCRIPTION_CHARGED: _on_charged,
    BillingEventKind.SUBSCRIPTION_COMPLETED: _status_handler(SubscriptionStatus.COMPLETED),
    BillingEventKind.SUBSCRIPTION_UPDATED: _on_updated,
    BillingEventKind.SUBSCRIPTION_PAUSED: _status_handler(SubscriptionStatus.PAUSED),
    BillingEventKind.SUBSCRIPTION_RESUMED: _status_handler(SubscriptionStatus.ACTIVE),
    BillingEventKind.SUBSCRIPTION_CANCELLED: _status_handler(SubscriptionStatus.CANCELLED),
    BillingEventKind.PAYMENT_AUTHORIZED: _on_payment_authorized,
    BillingEventKind.PAYMENT_CAPTURED: _on_payment_captured,
    BillingEventKind.PAYMENT_FAILED: _on_payment_failed,
}

_missing_handlers = set(BillingEventKind) - set(_HANDLERS)
if _missing_handlers:
    raise RuntimeError(f"billing handlers missing for {sorted(k.value for k in _missing_handlers)}")


def _parse_event(payload: dict[str, Any], kind: BillingEventKind) -> BillingEvent:
    if kind.value.startswith("subscription."):
        entity = _entity(payload, "subscription")
        ref = entity.get("id")
    else:
        entity = _entity(payload, "payment")
        ref = entity.get("subscription_id")
    return BillingEvent(kind=kind, entity=entity, created_at=_ts(payload.get("created_at")), subscription_ref=ref or None)


def _plan_snapshot(plan: PricingPlan) -> dict[str, Any]:
    return {
        "name": plan.name,
        "tier": plan.tier,
        "price": float(plan.price or 0),
        "currency": plan.currency,
        "interval": plan.interval,
        "features": plan.features_json or [],
        "limits": plan.limits_json or {},
    }


def _adopt_subscription(db: Session, event: BillingEvent) -> Subscription | None:
    """Create the local record from a subscription event whose checkout never got confirmed."""
    entity = event.entity
    notes = entity.get("notes") or {}
    user_id = notes.get("user_id") or notes.get("userId") if isinstance(notes, dict) else None
    plan_ref = entity.get("plan_id")
    if not user_id or not plan_ref or not event.subscription_ref:
        return None
    try:
        user = db.get(User, int(user_id))
    except (TypeError, ValueError):
        return None
    plan = db.execute(select(PricingPlan).where(PricingPlan.razorpay_plan_id == plan_ref)).scalar_one_or_none()
    if not user or not plan:
        return None
    sub = Subscription(
        user_id=user.id,
        razorpay_subscription_id=event.subscription_ref,
        razorpay_customer_id=entity.get("customer_id"),
        razorpay_plan_id=plan_ref,
        plan_json=_plan_snapshot(plan),
        status=entity.get("status") if entity.get("status") in _KNOWN_STATUSES else SubscriptionStatus.CREATED.value,
        current_period_start=_ts(entity.get("current_start")),
        current_period_end=_ts(entity.get("current_end")),
        failed_payment_attempts=0,
    )
    db.add(sub)
    db.flush()
    user.tier = plan.tier
    user.razorpay_customer_id = user.razorpay_customer_id or entity.get("customer_id")
    user.razorpay_subscription_id = sub.razorpay_subscription_id
    logger.info("billing_subscription_adopted subscription=%s user_id=%s", sub.razorpay_subscription_id, user.id)
    return sub


def _record(db: Session, existing: BillingWebhookEvent | None, key: str, event_type: str | None, ref: str | None, outcome: str, created_at: datetime | None) -> None:
    if existing is not None:
        existing.outcome = outcome
        existing.received_at = datetime.utcnow()
        return
    db.add(
        BillingWebhookEvent(
            event_key=key,
            event_type=(event_type or "unknown")[:64],
            subscription_ref=ref,
            outcome=outcome,
            event_created_at=created_at,
        )
    )


def process_razorpay_webhook(
    db: Session,
    raw_body: bytes,
    signature: str | None,
    *,
    event_id: str | None = None,
    secret: str | None = None,
) -> WebhookOutcome:
    """Verify, dedupe and apply one webhook delivery."""
    if not signature:
        raise AuthorizationError("Missing signature")
    webhook_secret = secret if secret is not None else get_settings().razorpay_webhook_secret
    if not verify_webhook_signature(raw_body, signature, webhook_secret):
        logger.warning("billing_webhook_bad_signature bytes=%s", len(raw_body or b""))
        raise AuthorizationError("Invalid signature")
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Malformed webhook body")
    if not isinstance(payload, dict):
        raise ValidationError("Malformed webhook body")

    key = event_key_for(raw_body, event_id)
    event_type = payload.get("event")
    kind = BillingEventKind.parse(event_type)
    if kind is None:
        logger.info("billing_webhook_unhandled event=%s key=%s", event_type, key)
        return WebhookOutcome(event_key=key, event_type=event_type, outcome=OUTCOME_IGNORED)

    event = _parse_event(payload, kind)
    if not event.subscription_ref:
        logger.info("billing_webhook_no_subscription event=%s key=%s", kind.value, key)
        return WebhookOutcome(event_key=key, event_type=kind.value, outcome=OUTCOME_IGNORED)

    with entity_locks.hold(subscription_key(event.subscription_ref)):
        existing = db.execute(select(BillingWebhookEvent).where(BillingWebhookEvent.event_key == key)).scalar_one_or_none()
        if existing is not None and existing.outcome != OUTCOME_NOT_FOUND:
            logger.info("billing_webhook_duplicate event=%s key=%s", kind.value, key)
            return WebhookOutcome(key, kind.value, OUTCOME_DUPLICATE, event.subscription_ref)

        sub = db.execute(
            select(Subscription)
            .where(Subscription.razorpay_subscription_id == event.subscription_ref)
            .with_for_update()
        ).scalar_one_or_none()
        if sub is None and kind.value.startswith("subscription."):
            sub = _adopt_subscription(db, event)
        if sub is None:
            outcome = OUTCOME_NOT_FOUND
        else:
            outcome = _HANDLERS[kind](db, sub, event)
        _record(db, existing, key, kind.value, event.subscription_ref, outcome, event.created_at)
        try:
            db.commit()
        except IntegrityError:
            # a concurrent worker recorded the same key first
            db.rollback()
            return WebhookOutcome(key, kind.value, OUTCOME_DUPLICATE, event.subscription_ref)

    logger.info(
        "billing_webhook_processed event=%s subscription=%s outcome=%s key=%s",
        kind.value,
        event.subscription_ref,
        outcome,
        key,
    )
    return WebhookOutcome(key, kind.value, outcome, event.subscription_ref)


# ----- synchronous checkout paths -----

def create_checkout(db: Session, user: User, plan_id: int, client: RazorpayClient | None = None) -> dict[str, Any]:
    plan = db.get(PricingPlan, plan_id)
    if not plan or not plan.is_active:
        raise NotFoundError("Plan not found")
    if not plan.razorpay_plan_id:
        raise ValidationError("Plan is not purchasable")
    client = client or get_razorpay_client()
    customer_id = user.razorpay_customer_id
    if not customer_id:
        customer = client.create_customer(user.name, user.email, notes={"user_id": str(user.id)})
        customer_id = customer["id"]
        user.razorpay_customer_id = customer_id
        db.commit()
    remote = client.create_subscription(
        {
            "plan_id": plan.razorpay_plan_id,
            "customer_id": customer_id,
            "quantity": 1,
            "total_count": 12 if plan.interval == "year" else 120,
            "customer_notify": 1,
            "notes": {"user_id": str(user.id), "plan_tier": plan.tier},
        }
    )
    logger.info("billing_checkout_created user_id=%s subscription=%s plan=%s", user.id, remote.get("id"), plan.razorpay_plan_id)
    return {
        "subscription_id": remote.get("id"),
        "short_url": remote.get("short_url"),
        "status": remote.get("status"),
        "customer_id": customer_id,
        "key_id": client.key_id,
        "plan": _plan_snapshot(plan),
    }


def confirm_subscription(
    db: Session,
    user: User,
    *,
    payment_id: str,
    subscription_id: str,
    signature: str,
    client: RazorpayClient | None = None,
) -> Subscription:
    """Re-verify the checkout signature, then store the provider's own view of the subscription."""
    if not payment_id or not subscription_id or not signature:
        raise ValidationError("razorpay_payment_id, razorpay_subscription_id and razorpay_signature are required")
    client = client or get_razorpay_client()
    if not client.verify_payment_signature(subscription_id, payment_id, signature):
        logger.warning("billing_confirm_bad_signature user_id=%s subscription=%s", user.id, subscription_id)
        raise AuthorizationError("Invalid signature")
    remote = client.get_subscription(subscription_id)
    plan_ref = remote.get("plan_id")
    plan = db.execute(select(PricingPlan).where(PricingPlan.razorpay_plan_id == plan_ref)).scalar_one_or_none()
    if not plan:
        raise NotFoundError("Pricing plan not found")
    status = remote.get("status")
    if status not in _KNOWN_STATUSES:
        status = SubscriptionStatus.CREATED.value

    with entity_locks.hold(subscription_key(subscription_id)):
        sub = db.execute(
            select(Subscription).where(Subscription.razorpay_subscription_id == subscription_id).with_for_update()
        ).scalar_one_or_none()
        if sub and sub.user_id != user.id:
            raise AuthorizationError("Subscription belongs to another account")
        if not sub:
            sub = Subscription(user_id=user.id, razorpay_subscription_id=subscription_id, failed_payment_attempts=0)
            db.add(sub)
        sub.razorpay_customer_id = remote.get("customer_id") or sub.razorpay_customer_id
        sub.razorpay_plan_id = plan_ref
        sub.razorpay_payment_id = payment_id
        sub.plan_json = _plan_snapshot(plan)
        sub.status = status
        sub.current_period_start = _ts(remote.get("current_start")) or sub.current_period_start
        sub.current_period_end = _ts(remote.get("current_end")) or sub.current_period_end
        sub.next_payment_at = _ts(remote.get("charge_at")) or sub.next_payment_at

        user.tier = plan.tier
        user.subscription_status = status
        user.razorpay_customer_id = sub.razorpay_customer_id or user.razorpay_customer_id
        user.razorpay_subscription_id = subscription_id
        user.current_period_start = sub.current_period_start
        user.current_period_end = sub.current_period_end
        db.commit()
    logger.info("billing_confirmed user_id=%s subscription=%s status=%s", user.id, subscription_id, status)
    return sub


def cancel_subscription(db: Session, user: User, reason: str | None = None, client: RazorpayClient | None = None) -> Subscription:
    ref = user.razorpay_subscription_id
    if not ref:
        raise NotFoundError("No active subscription found")
    if not db.execute(select(Subscription.id).where(Subscription.razorpay_subscription_id == ref)).first():
        raise NotFoundError("No active subscription found")
    client = client or get_razorpay_client()
    client.cancel_subscription(ref, cancel_at_cycle_end=True)
    with entity_locks.hold(subscription_key(ref)):
        sub = db.execute(
            select(Subscription).where(Subscription.razorpay_subscription_id == ref).with_for_update()
        ).scalar_one()
        sub.status = SubscriptionStatus.CANCELLED.value
        sub.cancel_at_period_end = True
        sub.canceled_at = datetime.utcnow()
        sub.cancel_reason = (reason or "").strip() or None
        _sync_user(db, sub)
        db.commit()
    logger.info("billing_cancelled user_id=%s subscription=%s", user.id, ref)
    return sub


def get_subscription_status(db: Session, user: User, client: RazorpayClient | None = None) -> dict[str, Any]:
    sub = None
    if user.razorpay_subscription_id:
        sub = db.execute(
            select(Subscription).where(Subscription.razorpay_subscription_id == user.razorpay_subscription_id)
        ).scalar_one_or_none()
        client = client or get_razorpay_client()
        remote = client.get_subscription(user.razorpay_subscription_id)
        remote_status = remote.get("status")
        if sub and remote_status in _KNOWN_STATUSES and sub.status != remote_status:
            with entity_locks.hold(subscription_key(sub.razorpay_subscription_id)):
                sub.status = remote_status
                _sync_user(db, sub)
                db.commit()
    return {
        "user": {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "tier": user.tier,
            "subscription_status": user.subscription_status,
            "usage": usage_to_dict(user),
        },
        "subscription": subscription_to_dict(sub) if sub else None,
    }


# ----- usage -----

def check_message_quota(user: User) -> None:
    limit = MONTHLY_MESSAGE_LIMITS.get(user.tier or "free", MONTHLY_MESSAGE_LIMITS["free"])
    if limit != -1 and (user.usage_monthly_messages or 0) >= limit:
        raise QuotaExceededError(f"tier={user.tier} limit={limit}")


def record_message_usage(db: Session, user_id: int) -> None:
    """Count one message against the owner's quota; incremented in SQL so concurrent sessions do not lose counts."""
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            usage_messages=User.usage_messages + 1,
            usage_monthly_messages=User.usage_monthly_messages + 1,
        )
    )


def usage_to_dict(user: User) -> dict[str, Any]:
    return {
        "chatbots": user.usage_chatbots,
        "messages": user.usage_messages,
        "monthly_messages": user.usage_monthly_messages,
        "api_calls": user.usage_api_calls,
        "monthly_api_calls": user.usage_monthly_api_calls,
        "last_reset_at": user.usage_last_reset_at.isoformat() if user.usage_last_reset_at else None,
    }


def subscription_to_dict(sub: Subscription) -> dict[str, Any]:
    def iso(v: datetime | None) -> str | None:
        return v.isoformat() if v else None

    return {
        "id": sub.id,
        "razorpay_subscription_id": sub.razorpay_subscription_id,
        "razorpay_plan_id": sub.razorpay_plan_id,
        "status": sub.status,
        "plan": sub.plan_json or {},
        "current_period_start": iso(sub.current_period_start),
        "current_period_end": iso(sub.current_period_end),
        "cancel_at_period_end": sub.cancel_at_period_end,
        "canceled_at": iso(sub.canceled_at),
        "billing": {
            "last_payment_at": iso(sub.last_payment_at),
            "last_payment_amount": sub.last_payment_amount,
            "next_payment_at": iso(sub.next_payment_at),
            "failed_payment_attempts": sub.failed_payment_attempts,
        },
    }
