"""Outbound webhook delivery log."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index

from apps.backend.database import Base


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    chatbot_id = Column(Integer, ForeignKey("chatbots.id", ondelete="CASCADE"), nullable=False, index=True)
    event = Column(String(64), nullable=False)
    url = Column(String(1024), nullable=False)
    status = Column(String(16), nullable=False)  # delivered|failed
    status_code = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    error_message = Column(Text, nullable=True)
    response_body = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_webhook_deliveries_chatbot_created", "chatbot_id", "created_at"),)
