"""Conversation lifecycle: message log, analytics, status and feedback."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.backend.models.chatbot import Chatbot
from apps.backend.models.conversation import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    Conversation,
    ConversationMessage,
)
from apps.backend.services.delay_scheduler import cancel_delays
from apps.backend.services.entity_lock import conversation_key, entity_locks
from apps.backend.utils.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STATUSES = ("active",) + TERMINAL_STATUSES
SENDERS = ("user", "bot", "system")


def get_or_create_conversation(
    db: Session,
    chatbot: Chatbot,
    session_id: str,
    visitor_info: dict[str, Any] | None = None,
) -> tuple[Conversation, bool]:
    conv = db.execute(
        select(Conversation)
        .where(
            Conversation.chatbot_id == chatbot.id,
            Conversation.session_id == session_id,
            Conversation.status.in_(OPEN_STATUSES),
        )
        .order_by(Conversation.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if conv:
        return conv, False
    now = datetime.utcnow()
    conv = Conversation(
        chatbot_id=chatbot.id,
        session_id=session_id,
        status="active",
        visitor_json={**(visitor_info or {}), "is_returning": False, "previous_sessions": 0},
        lead_json={},
        flow_state_json={"flow_id": None, "awaiting": None, "vars": {}},
        started_at=now,
        last_activity_at=now,
    )
    db.add(conv)
    db.flush()
    logger.info("conversation_started chatbot_id=%s conversation_id=%s", chatbot.id, conv.id)
    return conv, True


def lock_conversation(db: Session, conversation_id: int) -> Conversation:
    """Re-read the conversation under a row lock (no-op on SQLite)."""
    conv = db.execute(
        select(Conversation).where(Conversation.id == conversation_id).with_for_update()
    ).scalar_one_or_none()
    if not conv:
        raise NotFoundError("Conversation not found")
    return conv


def recompute_analytics(conversation: Conversation) -> None:
    """Derive counters from the message log itself so they can never drift."""
    messages = list(conversation.messages)
    conversation.message_count = len(messages)
    conversation.user_message_count = sum(1 for m in messages if m.sender == "user")
    conversation.bot_message_count = sum(1 for m in messages if m.sender == "bot")
    gaps: list[float] = []
    last_user_at: datetime | None = None
    for m in messages:
        if m.sender == "user":
            last_user_at = m.created_at
        elif m.sender == "bot" and last_user_at is not None and m.created_at is not None:
            gaps.append(max(0.0, (m.created_at - last_user_at).total_seconds() * 1000))
            last_user_at = None
    conversation.avg_response_time_ms = sum(gaps) / len(gaps) if gaps else 0.0


def append_message(
    db: Session,
    conversation: Conversation,
    sender: str,
    content: str,
    metadata: dict[str, Any] | None = None,
) -> ConversationMessage:
    if sender not in SENDERS:
        raise ValidationError(f"Unknown sender {sender!r}")
    now = datetime.utcnow()
    msg = ConversationMessage(
        public_id=f"msg_{uuid.uuid4().hex[:16]}",
        sender=sender,
        content=content,
        metadata_json=metadata or {},
        created_at=now,
    )
    conversation.messages.append(msg)
    conversation.last_activity_at = now
    recompute_analytics(conversation)
    db.flush()
    return msg


def transition_status(db: Session, conversation: Conversation, status: str, *, queue: Any = None) -> bool:
    """Move to ``status``. Terminal states cancel pending delays. Returns False when nothing changed."""
    if status not in STATUSES:
        raise ValidationError(f"Unknown conversation status {status!r}")
    if conversation.status == status:
        return False
    previous = conversation.status
    conversation.status = status
    now = datetime.utcnow()
    if status in ("ended", "abandoned"):
        conversation.ended_at = now
        if conversation.started_at:
            conversation.duration_seconds = int((now - conversation.started_at).total_seconds())
    if status in TERMINAL_STATUSES:
        cancel_delays(db, conversation.id, queue=queue)
    db.flush()
    logger.info(
        "conversation_status conversation_id=%s from=%s to=%s",
        conversation.id,
        previous,
        status,
    )
    return True


def end_conversation(db: Session, conversation_id: int, *, queue: Any = None) -> Conversation:
    with entity_locks.hold(conversation_key(conversation_id)):
        conv = lock_conversation(db, conversation_id)
        if conv.status in ("ended", "abandoned"):
            return conv
        transition_status(db, conv, "ended", queue=queue)
        db.commit()
    return conv


def submit_feedback(
    db: Session,
    conversation_id: int,
    rating: int,
    feedback: str | None = None,
    categories: list[str] | None = None,
) -> Conversation:
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be an integer between 1 and 5")
    with entity_locks.hold(conversation_key(conversation_id)):
        conv = lock_conversation(db, conversation_id)
        conv.satisfaction_json = {
            "rating": rating,
            "feedback": (feedback or "").strip() or None,
            "categories": [c for c in (categories or []) if c],
            "submitted_at": datetime.utcnow().isoformat(),
        }
        db.commit()
    return conv


def message_to_dict(msg: ConversationMessage) -> dict[str, Any]:
    return {
        "id": msg.public_id,
        "type": msg.sender,
        "content": msg.content,
        "timestamp": msg.created_at.isoformat() if msg.created_at else None,
        "metadata": msg.metadata_json or {},
    }


def conversation_to_dict(conv: Conversation) -> dict[str, Any]:
    return {
        "id": conv.id,
        "session_id": conv.session_id,
        "status": conv.status,
        "lead": conv.lead_json or {},
        "satisfaction": conv.satisfaction_json,
        "analytics": {
            "message_count": conv.message_count,
            "user_message_count": conv.user_message_count,
            "bot_message_count": conv.bot_message_count,
            "avg_response_time_ms": conv.avg_response_time_ms,
            "handoff_requested": conv.handoff_requested,
            "goal_completed": conv.goal_completed,
            "goal_type": conv.goal_type,
        },
        "started_at": conv.started_at.isoformat() if conv.started_at else None,
        "ended_at": conv.ended_at.isoformat() if conv.ended_at else None,
        "duration_seconds": conv.duration_seconds,
    }
