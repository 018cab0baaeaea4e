"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("name", sa.String(100), nullable=False, server_default=""),
        sa.Column("password_hash", sa.String(255)),
        sa.Column("email_verified_at", sa.DateTime()),
        sa.Column("role", sa.String(16), nullable=False, server_default="user"),
        sa.Column("tier", sa.String(16), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("razorpay_customer_id", sa.String(64), index=True),
        sa.Column("razorpay_subscription_id", sa.String(64), index=True),
        sa.Column("current_period_start", sa.DateTime()),
        sa.Column("current_period_end", sa.DateTime()),
        sa.Column("usage_chatbots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_monthly_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_api_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_monthly_api_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_last_reset_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "chatbots",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("greeting", sa.String(500), nullable=False),
        sa.Column("fallback_message", sa.String(500), nullable=False),
        sa.Column("config_json", postgresql.JSONB()),
        sa.Column("styling_json", postgresql.JSONB()),
        sa.Column("flows_json", postgresql.JSONB()),
        sa.Column("knowledge_base_json", postgresql.JSONB()),
        sa.Column("api_key", sa.String(64), unique=True, nullable=False),
        sa.Column("webhook_url", sa.String(1024)),
        sa.Column("webhook_secret", sa.String(128)),
        sa.Column("allowed_origins_json", postgresql.JSONB()),
        sa.Column("rate_limit_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("requests_per_minute", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("requests_per_hour", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("total_conversations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_chatbots_user_active", "chatbots", ["user_id", "is_active"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("chatbot_id", sa.Integer(), sa.ForeignKey("chatbots.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("session_id", sa.String(128), nullable=False, index=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active", index=True),
        sa.Column("visitor_json", postgresql.JSONB()),
        sa.Column("lead_json", postgresql.JSONB()),
        sa.Column("satisfaction_json", postgresql.JSONB()),
        sa.Column("flow_state_json", postgresql.JSONB()),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("user_message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bot_message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_response_time_ms", sa.Float(), nullable=False, server_default="0"),
        sa.Column("handoff_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("goal_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("goal_type", sa.String(64)),
        sa.Column("started_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("ended_at", sa.DateTime()),
        sa.Column("duration_seconds", sa.Integer()),
        sa.Column("last_activity_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_conversations_chatbot_session", "conversations", ["chatbot_id", "session_id"])
    op.create_index("ix_conversations_chatbot_status", "conversations", ["chatbot_id", "status"])

    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("conversation_id", sa.Integer(), sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("public_id", sa.String(64), nullable=False, index=True),
        sa.Column("sender", sa.String(8), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "flow_delays",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("conversation_id", sa.Integer(), sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("flow_id", sa.String(64), nullable=False),
        sa.Column("node_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="scheduled"),
        sa.Column("run_at", sa.DateTime(), nullable=False),
        sa.Column("job_id", sa.String(128)),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_flow_delays_conversation_node", "flow_delays", ["conversation_id", "node_id"])

    op.create_table(
        "pricing_plans",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("tier", sa.String(16), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="INR"),
        sa.Column("interval", sa.String(8), nullable=False, server_default="month"),
        sa.Column("razorpay_plan_id", sa.String(64), unique=True, index=True),
        sa.Column("features_json", postgresql.JSONB()),
        sa.Column("limits_json", postgresql.JSONB()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("razorpay_subscription_id", sa.String(64), unique=True, nullable=False, index=True),
        sa.Column("razorpay_customer_id", sa.String(64)),
        sa.Column("razorpay_plan_id", sa.String(64)),
        sa.Column("razorpay_payment_id", sa.String(64)),
        sa.Column("plan_json", postgresql.JSONB()),
        sa.Column("status", sa.String(32), nullable=False, index=True),
        sa.Column("current_period_start", sa.DateTime()),
        sa.Column("current_period_end", sa.DateTime(), index=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime()),
        sa.Column("cancel_reason", sa.Text()),
        sa.Column("next_payment_at", sa.DateTime()),
        sa.Column("last_payment_at", sa.DateTime()),
        sa.Column("last_payment_amount", sa.Integer()),
        sa.Column("failed_payment_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_event_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_user_status", "subscriptions", ["user_id", "status"])

    op.create_table(
        "billing_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("event_key", sa.String(128), unique=True, nullable=False, index=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("subscription_ref", sa.String(64), index=True),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("event_created_at", sa.DateTime()),
        sa.Column("received_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("chatbot_id", sa.Integer(), sa.ForeignKey("chatbots.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("url", sa.String(1024), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("status_code", sa.Integer()),
        sa.Column("response_time_ms", sa.Integer()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error_message", sa.Text()),
        sa.Column("response_body", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_deliveries_chatbot_created", "webhook_deliveries", ["chatbot_id", "created_at"])


def downgrade() -> None:
    op.drop_table("webhook_deliveries")
    op.drop_table("billing_webhook_events")
    op.drop_table("subscriptions")
    op.drop_table("pricing_plans")
    op.drop_table("flow_delays")
    op.drop_table("conversation_messages")
    op.drop_table("conversations")
    op.drop_table("chatbots")
    op.drop_table("users")
