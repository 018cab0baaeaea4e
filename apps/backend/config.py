"""Application configuration."""
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")
    app_env: str = "development"
    secret_key: str = "dev-secret-change-in-production"
    debug: bool = True
    public_base_url: str | None = None
    widget_url: str = "https://cdn.example.com/chat-widget.js"

    database_url: str | None = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "chatbot_builder"
    postgres_user: str = "chatbot_builder"
    postgres_password: str = "changeme"

    redis_host: str = "localhost"
    redis_port: int = 6379
    rq_flow_queue_name: str = "flows"
    rq_webhook_queue_name: str = "webhooks"

    jwt_secret: str = "your-jwt-secret-min-32-chars"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""

    flow_max_hops: int = 50
    flow_webhook_max_attempts: int = 2
    outbound_webhook_timeout_seconds: float = 10.0
    message_webhook_timeout_seconds: float = 5.0

    rate_limit_cache_size: int = 10000

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_secure: str = "tls"  # tls|ssl|none
    smtp_from_email: str = ""
    smtp_from_name: str = "ChatBot Builder"


@lru_cache
def get_settings() -> Settings:
    return Settings()
