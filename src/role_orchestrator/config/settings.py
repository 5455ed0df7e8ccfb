"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "role-orchestrator"
    log_level: str = "INFO"
    database_url: str = ""

    owner_agent_key: str = ""
    require_owner_approval: bool = False

    runner_enabled: bool = False
    runner_interval_s: float = Field(default=30.0, gt=0.0)
    claim_attempts: int = Field(default=3, ge=1)
    max_task_retries: int = Field(default=3, ge=0)
    query_limit: int = Field(default=100, ge=1)
    max_query_limit: int = Field(default=500, ge=1)

    idempotency_ttl_hours: float = Field(default=24.0, gt=0.0)
    recent_summary_capacity: int = Field(default=100, ge=1)

    planner_mode: str = "deterministic"
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=8.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    telegram_bot_token: str = ""
    admin_chat_id: str = ""
    telegram_webhook_secret: str = ""
    notification_timeout_s: float = Field(default=5.0, gt=0.0)

    model_config = SettingsConfigDict(
        env_prefix="ROLE_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_owner_agent_key(self) -> str:
        return self.owner_agent_key or os.getenv("OWNER_AGENT_KEY", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_telegram_bot_token(self) -> str:
        return self.telegram_bot_token or os.getenv("TELEGRAM_BOT_TOKEN", "")

    def resolved_admin_chat_id(self) -> str:
        return self.admin_chat_id or os.getenv("ADMIN_TELEGRAM_CHAT_ID", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
