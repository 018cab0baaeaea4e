"""Owner webhook tooling: test delivery and delivery history."""
import math

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from apps.backend.deps import get_current_user, get_db
from apps.backend.models.chatbot import Chatbot
from apps.backend.models.user import User
from apps.backend.services.outbound_webhooks import delivery_to_dict, list_deliveries, send_test_webhook
from apps.backend.utils.errors import NotFoundError

router = APIRouter()


def _owned_chatbot(db: Session, chatbot_id: int, user: User) -> Chatbot:
    bot = db.get(Chatbot, chatbot_id)
    if not bot or bot.user_id != user.id:
        raise NotFoundError("Chatbot not found")
    return bot


@router.post("/{chatbot_id}/webhook/test")
def test_chatbot_webhook(
    chatbot_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    bot = _owned_chatbot(db, chatbot_id, user)
    result = send_test_webhook(db, bot)
    return {
        "success": result.success,
        "status": result.status_code or 0,
        "response_time_ms": result.response_time_ms,
        "error": result.error,
        "response": {"body": result.response_body} if result.response_body is not None else None,
    }


@router.get("/{chatbot_id}/webhook/events")
def webhook_events(
    chatbot_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    event: str | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _owned_chatbot(db, chatbot_id, user)
    rows, total = list_deliveries(db, chatbot_id, page=page, limit=limit, event=event)
    return {
        "events": [delivery_to_dict(r) for r in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }
