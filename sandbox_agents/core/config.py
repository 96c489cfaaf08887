"""Application configuration."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Environment
    env: str = os.getenv("APP_ENV", "development")
    api_secret_key: str = os.getenv("API_SECRET_KEY", "dev-secret-key")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    # Default uses local socket connection with trust auth
    database_url: str = os.getenv(
        "DATABASE_URL", "postgresql:///sandboxagents?user=postgres"
    )

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379")

    # Sandbox
    sandbox_api_key: str | None = os.getenv("SANDBOX_API_KEY")
    sandbox_domain: str | None = os.getenv("SANDBOX_DOMAIN")
    sandbox_template: str = os.getenv("SANDBOX_TEMPLATE", "sandbox-agents-v1")

    # Credential store (Fernet key)
    encryption_key: str = os.getenv("ENCRYPTION_KEY", "")

    # Agent key fallbacks. Source control never falls back to a shared token.
    system_anthropic_api_key: str | None = os.getenv("SYSTEM_ANTHROPIC_API_KEY")
    system_openai_api_key: str | None = os.getenv("SYSTEM_OPENAI_API_KEY")
    system_gemini_api_key: str | None = os.getenv("SYSTEM_GEMINI_API_KEY")
    system_cursor_api_key: str | None = os.getenv("SYSTEM_CURSOR_API_KEY")

    # Durations
    max_sandbox_duration: int = int(os.getenv("MAX_SANDBOX_DURATION", "300"))  # minutes
    agent_timeout: int = int(os.getenv("AGENT_TIMEOUT", "3600"))  # seconds
    command_timeout: int = int(os.getenv("COMMAND_TIMEOUT", "120"))
    install_timeout: int = int(os.getenv("INSTALL_TIMEOUT", "600"))

    # Push retry policy
    push_retry_attempts: int = int(os.getenv("PUSH_RETRY_ATTEMPTS", "1"))
    push_retry_backoff: float = float(os.getenv("PUSH_RETRY_BACKOFF", "2.0"))

    # Lifecycle
    reaper_interval: int = int(os.getenv("REAPER_INTERVAL", "60"))
    teardown_lease: int = int(os.getenv("TEARDOWN_LEASE", "120"))

    # Rate limiting
    max_messages_per_day: int = int(os.getenv("MAX_MESSAGES_PER_DAY", "50"))

    # Task message streaming
    log_flush_interval: float = float(os.getenv("LOG_FLUSH_INTERVAL", "1.0"))
    log_flush_max_lines: int = int(os.getenv("LOG_FLUSH_MAX_LINES", "50"))


settings = Settings()
