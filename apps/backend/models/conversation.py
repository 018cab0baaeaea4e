"""Visitor conversations and their messages."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index, Boolean, Float
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from apps.backend.database import Base

TERMINAL_STATUSES = ("ended", "transferred", "abandoned")
OPEN_STATUSES = ("active", "transferred")


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    chatbot_id = Column(Integer, ForeignKey("chatbots.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String(128), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="active", index=True)  # active|ended|transferred|abandoned

    visitor_json = Column(JSONB, nullable=True)
    lead_json = Column(JSONB, nullable=True)
    satisfaction_json = Column(JSONB, nullable=True)
    flow_state_json = Column(JSONB, nullable=True)

    message_count = Column(Integer, nullable=False, default=0)
    user_message_count = Column(Integer, nullable=False, default=0)
    bot_message_count = Column(Integer, nullable=False, default=0)
    avg_response_time_ms = Column(Float, nullable=False, default=0.0)
    handoff_requested = Column(Boolean, nullable=False, default=False)
    goal_completed = Column(Boolean, nullable=False, default=False)
    goal_type = Column(String(64), nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        order_by="ConversationMessage.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_conversations_chatbot_session", "chatbot_id", "session_id"),
        Index("ix_conversations_chatbot_status", "chatbot_id", "status"),
    )


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    public_id = Column(String(64), nullable=False, index=True)
    sender = Column(String(8), nullable=False)  # user, bot, system
    content = Column(Text, nullable=False)
    metadata_json = Column(JSONB, nullable=True)  # flow_id, node_id, buttons, confidence, ...
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
