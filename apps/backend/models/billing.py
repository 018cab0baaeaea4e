"""Billing models."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Text, Boolean, Index
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base


class PricingPlan(Base):
    __tablename__ = "pricing_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(64), nullable=False)
    tier = Column(String(16), nullable=False)  # free|pro|enterprise
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="INR")
    interval = Column(String(8), nullable=False, default="month")  # month|year
    razorpay_plan_id = Column(String(64), unique=True, nullable=True, index=True)
    features_json = Column(JSONB, nullable=True)
    limits_json = Column(JSONB, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    razorpay_subscription_id = Column(String(64), unique=True, nullable=False, index=True)
    razorpay_customer_id = Column(String(64), nullable=True)
    razorpay_plan_id = Column(String(64), nullable=True)
    razorpay_payment_id = Column(String(64), nullable=True)
    plan_json = Column(JSONB, nullable=True)  # name, tier, price, currency, interval, features, limits

    status = Column(String(32), nullable=False, index=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)

    next_payment_at = Column(DateTime, nullable=True)
    last_payment_at = Column(DateTime, nullable=True)
    last_payment_amount = Column(Integer, nullable=True)  # minor units (paise)
    failed_payment_attempts = Column(Integer, nullable=False, default=0)

    # provider created_at of the newest status-bearing event applied
    last_event_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_subscriptions_user_status", "user_id", "status"),)


class BillingWebhookEvent(Base):
    __tablename__ = "billing_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_key = Column(String(128), unique=True, nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    subscription_ref = Column(String(64), nullable=True, index=True)
    outcome = Column(String(16), nullable=False)  # applied|stale|not_found|ignored
    event_created_at = Column(DateTime, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
