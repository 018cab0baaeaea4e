"""Widget-facing conversation endpoints."""
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from apps.backend.deps import get_db
from apps.backend.services.conversations import conversation_to_dict, end_conversation, submit_feedback
from apps.backend.services.message_ingest import handle_visitor_message

router = APIRouter()


class MessageBody(BaseModel):
    chatbot_id: int
    session_id: str = Field(min_length=1, max_length=128)
    message: str = ""
    button_value: str | None = None
    visitor_info: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


class FeedbackBody(BaseModel):
    rating: int
    feedback: str | None = None
    categories: list[str] | None = None


@router.post("/message")
def post_message(body: MessageBody, db: Session = Depends(get_db)):
    return handle_visitor_message(
        db,
        chatbot_id=body.chatbot_id,
        session_id=body.session_id,
        message=body.message,
        button_value=body.button_value,
        visitor_info=body.visitor_info,
        metadata=body.metadata,
    )


@router.post("/{conversation_id}/end")
def post_end(conversation_id: int, db: Session = Depends(get_db)):
    conv = end_conversation(db, conversation_id)
    return {"success": True, "conversation": conversation_to_dict(conv)}


@router.post("/{conversation_id}/feedback")
def post_feedback(conversation_id: int, body: FeedbackBody, db: Session = Depends(get_db)):
    conv = submit_feedback(db, conversation_id, body.rating, body.feedback, body.categories)
    return {"success": True, "satisfaction": conv.satisfaction_json}
