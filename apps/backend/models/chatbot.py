"""Chatbot configuration."""
import secrets
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base

DEFAULT_FALLBACK_MESSAGE = "I'm sorry, I didn't understand that. Could you please rephrase?"
DEFAULT_GREETING = "Hello! How can I help you today?"


def _api_key() -> str:
    return f"ak_{secrets.token_hex(16)}"


class Chatbot(Base):
    __tablename__ = "chatbots"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    greeting = Column(String(500), nullable=False, default=DEFAULT_GREETING)
    fallback_message = Column(String(500), nullable=False, default=DEFAULT_FALLBACK_MESSAGE)
    config_json = Column(JSONB, nullable=True)  # collect_email, business_hours, language, ...
    styling_json = Column(JSONB, nullable=True)
    flows_json = Column(JSONB, nullable=True)  # ordered list of flow definitions
    knowledge_base_json = Column(JSONB, nullable=True)

    api_key = Column(String(64), unique=True, nullable=False, default=_api_key)
    webhook_url = Column(String(1024), nullable=True)
    webhook_secret = Column(String(128), nullable=True)
    allowed_origins_json = Column(JSONB, nullable=True)
    rate_limit_enabled = Column(Boolean, nullable=False, default=True)
    requests_per_minute = Column(Integer, nullable=False, default=60)
    requests_per_hour = Column(Integer, nullable=False, default=1000)

    total_conversations = Column(Integer, nullable=False, default=0)
    total_messages = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_chatbots_user_active", "user_id", "is_active"),)
