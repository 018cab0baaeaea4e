"""Signed outbound webhooks to chatbot-owner endpoints and their delivery log."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.models.chatbot import Chatbot
from apps.backend.models.webhook_delivery import WebhookDelivery
from apps.backend.utils.errors import ValidationError

logger = logging.getLogger(__name__)

USER_AGENT = "ChatBot-Builder-Webhook/1.0"
SIGNATURE_HEADER = "X-ChatBot-Signature"
EVENT_HEADER = "X-ChatBot-Event"
RESPONSE_BODY_LIMIT = 1000
TEST_TIMEOUT_SECONDS = 10.0


@dataclass
class DeliveryResult:
    url: str
    event: str
    success: bool
    status_code: int | None = None
    response_time_ms: int = 0
    attempts: int = 1
    error: str | None = None
    response_body: str | None = None


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def post_signed_webhook(
    url: str,
    payload: dict[str, Any],
    *,
    secret: str | None,
    event: str,
    timeout: float | None = None,
) -> DeliveryResult:
    """POST the payload once. Transport errors and timeouts come back as a failed result."""
    timeout_sec = timeout if timeout is not None else get_settings().outbound_webhook_timeout_seconds
    body = encode_payload(payload)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        EVENT_HEADER: event,
    }
    if secret:
        headers[SIGNATURE_HEADER] = sign_payload(body, secret)
    started = time.monotonic()
    try:
        with httpx.Client(timeout=timeout_sec) as c:
            r = c.post(url, content=body, headers=headers)
        elapsed = int((time.monotonic() - started) * 1000)
        ok = 200 <= r.status_code < 300
        if not ok:
            logger.warning("outbound_webhook_rejected event=%s status=%s", event, r.status_code)
        return DeliveryResult(
            url=url,
            event=event,
            success=ok,
            status_code=r.status_code,
            response_time_ms=elapsed,
            error=None if ok else f"HTTP {r.status_code}",
            response_body=(r.text or "")[:RESPONSE_BODY_LIMIT],
        )
    except httpx.TimeoutException:
        logger.warning("outbound_webhook_timeout event=%s timeout=%s", event, timeout_sec)
        return DeliveryResult(
            url=url,
            event=event,
            success=False,
            response_time_ms=int((time.monotonic() - started) * 1000),
            error="timeout",
        )
    except httpx.HTTPError as e:
        logger.warning("outbound_webhook_failed event=%s error=%s", event, type(e).__name__)
        return DeliveryResult(
            url=url,
            event=event,
            success=False,
            response_time_ms=int((time.monotonic() - started) * 1000),
            error=str(e)[:200] or type(e).__name__,
        )


def record_delivery(db: Session, chatbot_id: int, result: DeliveryResult) -> WebhookDelivery:
    row = WebhookDelivery(
        chatbot_id=chatbot_id,
        event=result.event,
        url=result.url,
        status="delivered" if result.success else "failed",
        status_code=result.status_code,
        response_time_ms=result.response_time_ms,
        attempts=result.attempts,
        error_message=result.error,
        response_body=result.response_body,
    )
    db.add(row)
    db.flush()
    return row


def send_test_webhook(db: Session, chatbot: Chatbot) -> DeliveryResult:
    if not chatbot.webhook_url:
        raise ValidationError("No webhook URL configured")
    payload = {
        "event": "webhook.test",
        "chatbot_id": chatbot.id,
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "data": {"message": "This is a test webhook from ChatBot Builder", "test": True},
    }
    result = post_signed_webhook(
        chatbot.webhook_url,
        payload,
        secret=chatbot.webhook_secret,
        event="webhook.test",
        timeout=TEST_TIMEOUT_SECONDS,
    )
    record_delivery(db, chatbot.id, result)
    db.commit()
    return result


def list_deliveries(
    db: Session,
    chatbot_id: int,
    *,
    page: int = 1,
    limit: int = 50,
    event: str | None = None,
) -> tuple[list[WebhookDelivery], int]:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    q = select(WebhookDelivery).where(WebhookDelivery.chatbot_id == chatbot_id)
    if event:
        q = q.where(WebhookDelivery.event == event)
    total = db.execute(select(func.count()).select_from(q.subquery())).scalar() or 0
    rows = db.execute(
        q.order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def delivery_to_dict(row: WebhookDelivery) -> dict[str, Any]:
    return {
        "id": row.id,
        "event": row.event,
        "status": row.status,
        "status_code": row.status_code,
        "response_time_ms": row.response_time_ms,
        "attempts": row.attempts,
        "error": row.error_message,
        "timestamp": row.created_at.isoformat() if row.created_at else None,
    }
