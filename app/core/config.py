import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global configuration for environment variables."""

    APP_NAME: str = "Stream Chat Orchestrator"
    ENV: str = os.getenv("ENV", "development")

    # Server config
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", 8080))

    # Debug
    DEBUG: bool = os.getenv("DEBUG", "True").lower() in ("1", "true")

    # Postgres
    DATABASE_URL: str | None = os.getenv("DATABASE_URL")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "")
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "")

    # Resumable streams (disabled when REDIS_URL is empty)
    REDIS_URL: str | None = os.getenv("REDIS_URL")
    STREAM_TTL_SECONDS: int = int(os.getenv("STREAM_TTL_SECONDS", str(24 * 60 * 60)))
    STREAM_IDLE_TIMEOUT_SECONDS: float = float(os.getenv("STREAM_IDLE_TIMEOUT_SECONDS", "30"))

    # Auth
    JWT_SUPER_SECRET: str = os.getenv("JWT_SUPER_SECRET", "dev-secret")

    # API Keys
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
    XAI_API_KEY: str | None = os.getenv("XAI_API_KEY")
    XAI_BASE_URL: str = os.getenv("XAI_BASE_URL", "https://api.x.ai/v1")
    GEMINI_API_KEY: str | None = os.getenv("GEMINI_API_KEY")
    GEMINI_OPENAI_BASE_URL: str = os.getenv(
        "GEMINI_OPENAI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/"
    )

    # Models
    DEFAULT_CHAT_MODEL: str = os.getenv("DEFAULT_CHAT_MODEL", "openai/gpt-4.1-mini")
    TITLE_MODEL: str = os.getenv("TITLE_MODEL", "openai/gpt-4.1-mini")

    # Entitlements (messages per rolling window)
    MAX_MESSAGES_PER_DAY_GUEST: int = int(os.getenv("MAX_MESSAGES_PER_DAY_GUEST", "20"))
    MAX_MESSAGES_PER_DAY_REGULAR: int = int(os.getenv("MAX_MESSAGES_PER_DAY_REGULAR", "100"))
    RATE_LIMIT_WINDOW_HOURS: int = int(os.getenv("RATE_LIMIT_WINDOW_HOURS", "24"))

    # Orchestration
    MAX_TOOL_STEPS: int = int(os.getenv("MAX_TOOL_STEPS", "5"))
    SMOOTH_STREAM_DELAY_MS: int = int(os.getenv("SMOOTH_STREAM_DELAY_MS", "10"))
    USAGE_SIGNAL_GRACE_SECONDS: float = float(os.getenv("USAGE_SIGNAL_GRACE_SECONDS", "2"))
    REQUEST_TIMEOUT_MS: int = int(os.getenv("REQUEST_TIMEOUT_MS", "60000"))

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    def max_messages_per_day(self, tier: str) -> int:
        if tier == "guest":
            return self.MAX_MESSAGES_PER_DAY_GUEST
        return self.MAX_MESSAGES_PER_DAY_REGULAR


settings = Settings()
