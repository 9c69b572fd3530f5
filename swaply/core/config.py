"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Swaply Messaging"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/swaply.db"
    DB_BUSY_TIMEOUT: int = 30  # seconds a writer waits for the SQLite lock
    STORAGE_READ_RETRIES: int = 3
    STORAGE_RETRY_DELAY: float = 0.05  # seconds, base for exponential backoff

    # Pagination
    CONVERSATIONS_PAGE_SIZE: int = 20
    MESSAGES_PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 100

    # Messages
    MAX_MESSAGE_LENGTH: int = 2000
    MESSAGE_EDIT_WINDOW_MINUTES: int = 15  # 0 disables the window
    MARK_READ_ON_FETCH: bool = True

    # Exchange proposals
    PROPOSAL_DEFAULT_EXPIRATION_HOURS: int = 48
    PROPOSAL_SWEEP_MINUTES: int = 0  # 0 disables the background sweep
    INACTIVE_ARCHIVE_DAYS: int = 90

    # Attachments
    UPLOAD_DIR: str = "./data/uploads/messages"
    ATTACHMENT_MAX_BYTES: int = 10 * 1024 * 1024
    ATTACHMENT_ALLOWED_EXTENSIONS: str = "jpeg,jpg,png,gif,pdf,doc,docx,txt"

    # Rate limiting (process-local)
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 900

    # Gateway
    SSE_HEARTBEAT_INTERVAL: int = 15  # seconds between heartbeat events
    CLIENT_MAX_RECONNECT_ATTEMPTS: int = 5
    CLIENT_RECONNECT_DELAY: float = 1.0  # seconds, multiplied by attempt number

    # CORS - accepts comma-separated string or list
    CORS_ORIGINS: str = "http://localhost:3000"

    @field_validator("CORS_ORIGINS", "ATTACHMENT_ALLOWED_EXTENSIONS", mode="before")
    @classmethod
    def join_list_values(cls, v):
        """Accept comma-separated strings or lists."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    def get_allowed_extensions(self) -> set[str]:
        """Get allowed attachment extensions, lowercase and without dots."""
        return {
            ext.strip().lower().lstrip(".")
            for ext in self.ATTACHMENT_ALLOWED_EXTENSIONS.split(",")
            if ext.strip()
        }

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"

    class Config:
        env_file = [
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True


# Singleton instance
settings = Settings()
