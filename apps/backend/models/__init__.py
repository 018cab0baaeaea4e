"""SQLAlchemy models."""
from apps.backend.models.user import User
from apps.backend.models.chatbot import Chatbot
from apps.backend.models.conversation import Conversation, ConversationMessage
from apps.backend.models.flow_delay import FlowDelay
from apps.backend.models.billing import PricingPlan, Subscription, BillingWebhookEvent
from apps.backend.models.webhook_delivery import WebhookDelivery

__all__ = [
    "User",
    "Chatbot",
    "Conversation",
    "ConversationMessage",
    "FlowDelay",
    "PricingPlan",
    "Subscription",
    "BillingWebhookEvent",
    "WebhookDelivery",
]
