"""RQ jobs."""
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


def run_flow_delay(delay_id: int, engine=None, queue=None) -> bool:
    """Continue a flow after its delay node fired. Cancelled or stale delays are skipped."""
    from apps.backend.database import get_session_factory
    from apps.backend.models.chatbot import Chatbot
    from apps.backend.models.flow_delay import FlowDelay
    from apps.backend.services.bot_flow_engine import FlowEngine
    from apps.backend.services.conversations import lock_conversation
    from apps.backend.services.delay_scheduler import enqueue_delays
    from apps.backend.services.entity_lock import conversation_key, entity_locks
    from apps.backend.services.message_ingest import apply_engine_result

    factory = get_session_factory()
    with factory() as db:
        d = db.get(FlowDelay, delay_id)
        if not d or d.status != "scheduled":
            return False
        with entity_locks.hold(conversation_key(d.conversation_id)):
            conv = lock_conversation(db, d.conversation_id)
            db.refresh(d)
            if d.status != "scheduled":
                return False
            if conv.status != "active":
                d.status = "cancelled"
                db.commit()
                return False
            chatbot = db.get(Chatbot, conv.chatbot_id)
            if not chatbot or not chatbot.is_active:
                d.status = "cancelled"
                db.commit()
                return False
            try:
                result = (engine or FlowEngine()).resume_after_delay(chatbot, conv, d.flow_id, d.node_id)
                d.status = "done"
                _, pending = apply_engine_result(db, conv, result, queue=queue)
                conv.updated_at = datetime.utcnow()
                db.commit()
                enqueue_delays(db, pending, queue=queue)
            except Exception as e:
                logger.exception("flow_delay_failed delay_id=%s: %s", delay_id, e)
                db.rollback()
                d = db.get(FlowDelay, delay_id)
                if d:
                    d.status = "error"
                    d.error_message = str(e)[:200]
                    db.commit()
                return False
    return True


def send_message_webhook(chatbot_id: int, payload: dict) -> bool:
    """Deliver a ``message.received`` event to the chatbot owner's endpoint and log it."""
    from apps.backend.config import get_settings
    from apps.backend.database import get_session_factory
    from apps.backend.models.chatbot import Chatbot
    from apps.backend.services.outbound_webhooks import post_signed_webhook, record_delivery

    factory = get_session_factory()
    with factory() as db:
        chatbot = db.get(Chatbot, chatbot_id)
        if not chatbot or not chatbot.webhook_url:
            return False
        result = post_signed_webhook(
            chatbot.webhook_url,
            payload,
            secret=chatbot.webhook_secret,
            event=payload.get("event") or "message.received",
            timeout=get_settings().message_webhook_timeout_seconds,
        )
        record_delivery(db, chatbot.id, result)
        db.commit()
        return result.success
