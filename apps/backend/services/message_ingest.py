"""Visitor message ingestion: limits, conversation log, flow engine, knowledge base."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.models.chatbot import Chatbot
from apps.backend.models.conversation import TERMINAL_STATUSES, Conversation
from apps.backend.models.user import User
from apps.backend.services.billing import check_message_quota, record_message_usage
from apps.backend.services.bot_flow_engine import BotReply, EngineResult, FlowEngine, VisitorInput
from apps.backend.services.conversations import (
    append_message,
    get_or_create_conversation,
    lock_conversation,
    message_to_dict,
    transition_status,
)
from apps.backend.services.delay_scheduler import PendingDelay, enqueue_delays, schedule_delay
from apps.backend.services.entity_lock import conversation_key, entity_locks
from apps.backend.services.knowledge_base import match_knowledge_base
from apps.backend.services.outbound_webhooks import record_delivery
from apps.backend.services.rate_limit import check_chatbot_rate_limit
from apps.backend.utils.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


def _reply_metadata(reply: BotReply, result: EngineResult, processing_ms: int) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "confidence": reply.confidence,
        "flow_id": reply.flow_id,
        "node_id": reply.node_id,
        "processing_time_ms": processing_ms,
    }
    if reply.buttons:
        meta["buttons"] = reply.buttons
    if result.fallback:
        meta["fallback"] = True
    if result.fault:
        meta["engine_fault"] = result.fault
    return meta


def apply_engine_result(
    db: Session,
    conversation: Conversation,
    result: EngineResult,
    *,
    started: float | None = None,
    queue: Any = None,
) -> tuple[list, list[PendingDelay]]:
    """Persist what one engine pass produced: replies, deliveries, status change, delays.

    Nothing is committed here. Returns the bot messages and the delays whose jobs
    the caller enqueues with ``enqueue_delays`` after its commit.
    """
    processing_ms = int((time.monotonic() - started) * 1000) if started else 0
    bot_messages = []
    for reply in result.replies:
        meta = _reply_metadata(reply, result, processing_ms)
        bot_messages.append(append_message(db, conversation, "bot", reply.text, meta))
    for delivery in result.deliveries:
        chatbot_id = conversation.chatbot_id
        record_delivery(db, chatbot_id, delivery)
    if result.new_status:
        transition_status(db, conversation, result.new_status, queue=queue)
    pending: list[PendingDelay] = []
    if result.delays and conversation.status not in TERMINAL_STATUSES:
        for delay in result.delays:
            pending.append(schedule_delay(db, conversation.id, delay.flow_id, delay.node_id, delay.seconds))
    return bot_messages, pending


def _kb_fallback(chatbot: Chatbot, message: str, result: EngineResult) -> EngineResult:
    if not result.fallback or result.fault:
        return result
    match = match_knowledge_base(message, chatbot.knowledge_base_json)
    if not match:
        return result
    result.replies = [BotReply(text=match.answer, confidence=round(match.score, 4))]
    result.fallback = False
    return result


def _count_message(db: Session, chatbot: Chatbot, is_new: bool) -> None:
    values = {"total_messages": Chatbot.total_messages + 1}
    if is_new:
        values["total_conversations"] = Chatbot.total_conversations + 1
    db.execute(update(Chatbot).where(Chatbot.id == chatbot.id).values(**values))


def enqueue_message_webhook(chatbot: Chatbot, payload: dict[str, Any]) -> None:
    try:
        from redis import Redis
        from rq import Queue

        s = get_settings()
        r = Redis(host=s.redis_host, port=s.redis_port)
        q = Queue(s.rq_webhook_queue_name or "webhooks", connection=r)
        q.enqueue("apps.worker.jobs.send_message_webhook", chatbot.id, payload)
    except Exception as e:
        logger.warning("message_webhook_enqueue_failed chatbot_id=%s error=%s", chatbot.id, type(e).__name__)


def handle_visitor_message(
    db: Session,
    *,
    chatbot_id: int,
    session_id: str,
    message: str | None,
    button_value: str | None = None,
    visitor_info: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    engine: FlowEngine | None = None,
    queue: Any = None,
) -> dict[str, Any]:
    started = time.monotonic()
    text = (message or "").strip()
    if not chatbot_id or not session_id or not (text or button_value):
        raise ValidationError("Missing required fields: chatbot_id, session_id, message")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError("Message too long")

    chatbot = db.get(Chatbot, chatbot_id)
    if not chatbot or not chatbot.is_active:
        raise NotFoundError("Chatbot not found")
    check_chatbot_rate_limit(chatbot, session_id)
    owner = db.get(User, chatbot.user_id)
    if not owner:
        raise NotFoundError("Chatbot owner not found")
    check_message_quota(owner)

    conversation, is_new = get_or_create_conversation(db, chatbot, session_id, visitor_info)
    if is_new:
        db.commit()
    engine = engine or FlowEngine()

    with entity_locks.hold(conversation_key(conversation.id)):
        conversation = lock_conversation(db, conversation.id)
        user_meta = dict(metadata or {})
        if button_value is not None:
            user_meta["button_value"] = button_value
        user_msg = append_message(db, conversation, "user", text or button_value, user_meta)
        result = engine.handle_input(chatbot, conversation, VisitorInput(text=text or button_value, button_value=button_value))
        result = _kb_fallback(chatbot, text, result)
        bot_messages, pending = apply_engine_result(db, conversation, result, started=started, queue=queue)

        _count_message(db, chatbot, is_new)
        record_message_usage(db, owner.id)
        conversation.updated_at = datetime.utcnow()
        db.commit()
        enqueue_delays(db, pending, queue=queue)

    response = {
        "success": True,
        "message": message_to_dict(bot_messages[-1]) if bot_messages else None,
        "messages": [message_to_dict(m) for m in bot_messages],
        "conversation_id": conversation.id,
        "session_id": session_id,
        "status": conversation.status,
        "metadata": {
            "processing_time_ms": int((time.monotonic() - started) * 1000),
            "is_new_conversation": is_new,
            "message_count": conversation.message_count,
            "flow_id": result.flow_id,
        },
    }
    if chatbot.webhook_url:
        enqueue_message_webhook(
            chatbot,
            {
                "event": "message.received",
                "chatbot_id": chatbot.id,
                "conversation_id": conversation.id,
                "session_id": session_id,
                "message": message_to_dict(user_msg),
                "response": response["message"],
                "timestamp": datetime.utcnow().isoformat() + "Z",
            },
        )
    return response
