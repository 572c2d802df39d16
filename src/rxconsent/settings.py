"""Application settings via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]


class Settings(BaseSettings):
    """Central configuration, all values from environment."""

    model_config = SettingsConfigDict(env_prefix="RXC_")

    # Consent request lifecycle
    request_ttl_seconds: int = 300
    otp_length: int = 6
    otp_max_attempts: int = 5

    # Access token lifetime (one counter session)
    token_ttl_seconds: int = 600

    # Operator client polling
    poll_interval_seconds: float = 2.0

    # HMAC keys
    otp_secret: str = ""
    decision_secret: str = ""

    # Target environment
    environment: str = "dev"

    # PostgreSQL (audit log)
    pg_dsn: str = ""

    # Redis (request + token stores)
    redis_url: str = ""

    # Twilio SMS notifier
    twilio_enabled: bool = False
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
