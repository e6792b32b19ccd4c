"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None

    # Redis & Job Queue
    redis_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # Square Webhooks
    # Signature covers notification_url + raw body, so the URL must match the
    # one registered in the Square developer dashboard exactly.
    square_webhook_signature_key: Optional[str] = None
    square_notification_url: Optional[str] = None
    square_api_base_url: str = "https://connect.squareup.com"
    square_api_version: str = "2024-01-18"
    square_api_timeout_seconds: float = 10.0

    # Shopify Webhooks
    shopify_api_secret: Optional[str] = None

    # Messaging Provider (Twilio)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_messaging_service_sid: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    twilio_api_base_url: str = "https://api.twilio.com"
    sms_send_timeout_seconds: float = 10.0

    # Send Queue
    sms_queue_name: str = "pos_sms"
    sms_dispatch_delay_ms: int = 30000  # 30s between purchase and SMS
    sms_max_retries: int = 2  # 3 attempts in total
    sms_retry_min_backoff_ms: int = 2000  # 2s, 4s, ...
    sms_retry_max_backoff_ms: int = 8000
    queue_stall_timeout_ms: int = 60000  # Redelivery after a worker stops heartbeating

    # Pipeline Policy
    recent_contact_window_days: int = 30
    webhook_event_retention_days: int = 7
    reservation_timeout_minutes: int = 60
    dead_letter_alert_threshold: int = 10

    # Email Notifications
    admin_email: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None

    # Admin API
    # Queue admin endpoints are disabled while unset
    admin_api_token: Optional[str] = None

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 60  # Seconds before auto-recovery attempt
    circuit_breaker_alert_email: Optional[str] = None  # Falls back to admin_email

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
