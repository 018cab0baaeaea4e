"""Deferred flow continuations (delay nodes)."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index

from apps.backend.database import Base


class FlowDelay(Base):
    __tablename__ = "flow_delays"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    flow_id = Column(String(64), nullable=False)
    node_id = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="scheduled")  # scheduled|done|cancelled|error
    run_at = Column(DateTime, nullable=False)
    job_id = Column(String(128), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_flow_delays_conversation_node", "conversation_id", "node_id"),)
