"""Account owners (chatbot builders)."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime

from apps.backend.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False, default="")
    password_hash = Column(String(255), nullable=True)
    email_verified_at = Column(DateTime, nullable=True)
    role = Column(String(16), nullable=False, default="user")  # user|admin

    tier = Column(String(16), nullable=False, default="free")  # free|pro|enterprise
    subscription_status = Column(String(32), nullable=False, default="active")
    razorpay_customer_id = Column(String(64), nullable=True, index=True)
    razorpay_subscription_id = Column(String(64), nullable=True, index=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)

    usage_chatbots = Column(Integer, nullable=False, default=0)
    usage_messages = Column(Integer, nullable=False, default=0)
    usage_monthly_messages = Column(Integer, nullable=False, default=0)
    usage_api_calls = Column(Integer, nullable=False, default=0)
    usage_monthly_api_calls = Column(Integer, nullable=False, default=0)
    usage_last_reset_at = Column(DateTime, default=datetime.utcnow, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
