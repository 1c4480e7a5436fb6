from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"
    SERVICE_VERSION: str = "0.1.0"

    # Public base URL the chat platform and calendar provider call back into
    PUBLIC_URL: str = "http://localhost:8000"

    # Shared secrets
    ADMIN_API_KEY: str | None = None
    ACTION_SECRET: str = "dev-action-secret"
    ENCRYPTION_KEY: str | None = None

    # Redis settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # Calendar provider settings
    CALENDAR_PROVIDER: Literal["msgraph", "google"] = "msgraph"
    MSGRAPH_TENANT_ID: str | None = None
    MSGRAPH_CLIENT_ID: str | None = None
    MSGRAPH_CLIENT_SECRET: str | None = None
    MSGRAPH_ENABLE_SUPERUSER: bool = False
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None

    # Chat platform settings
    CHAT_SITE_URL: str = "http://localhost:8065"
    CHAT_BOT_TOKEN: str | None = None
    CHAT_BOT_USER_ID: str | None = None

    # Notification worker
    NOTIFICATION_QUEUE_SIZE: int = 1024

    # Background jobs; "all" runs every scheduler in one process
    WORKER_JOB: str = "all"

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def notification_url(self) -> str:
        """Webhook URL registered with the calendar provider."""
        base = self.PUBLIC_URL.rstrip("/")
        return f"{base}/notifications/{self.CALENDAR_PROVIDER}"

    def action_url(self, path: str) -> str:
        """Absolute URL for an interactive message action handler."""
        base = self.PUBLIC_URL.rstrip("/")
        return f"{base}/actions/{path.lstrip('/')}"

    def superuser_configured(self) -> bool:
        """Whether application credentials for batched calendar reads are present."""
        return bool(
            self.MSGRAPH_ENABLE_SUPERUSER
            and self.MSGRAPH_TENANT_ID
            and self.MSGRAPH_CLIENT_ID
            and self.MSGRAPH_CLIENT_SECRET
        )

    def get_http_client_config(self) -> dict:
        """
        Get outbound HTTP client configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "timeout": 30.0,
            "max_connections": 50,
            "max_keepalive_connections": 20,
        }

        if self.environment == "development":
            config.update({"timeout": 15.0, "max_connections": 10})

        return config


settings = Settings()
