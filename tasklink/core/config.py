"""
App Configuration.

This module defines the global application settings using Pydantic Settings.
It loads configuration variables from environment variables and/or a .env file,
ensuring typed and validated settings for the service.

Attributes:
    settings: The global instance of the Settings class, ready to be imported and used.
"""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application Settings.

    Attributes:
        DATABASE_URL: Async SQLAlchemy URL (postgresql+asyncpg or sqlite+aiosqlite).
        VALKEY_URL: Valkey/Redis URL used for dedupe windows, OAuth nonces and activity.
        CREDENTIAL_ENCRYPTION_KEY: Fernet key used to encrypt stored access tokens.
        OAUTH_STATE_SECRET: HMAC secret used to sign OAuth state tokens.
    """

    # Core
    PROJECT_NAME: str = "TaskLink GitHub Engine"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str
    VALKEY_URL: str = "valkey://localhost:6379/0"

    # Secrets
    CREDENTIAL_ENCRYPTION_KEY: str
    OAUTH_STATE_SECRET: str

    # GitHub REST API
    GITHUB_API_BASE_URL: str = "https://api.github.com"
    GITHUB_API_VERSION: str = "2022-11-28"
    GITHUB_USER_AGENT: str = "TaskLink-GitHub-Engine/1.0"
    GITHUB_API_TIMEOUT_SECONDS: float = 30.0
    GITHUB_API_MAX_RETRIES: int = 3
    GITHUB_API_RETRY_BASE_DELAY: float = 1.0
    GITHUB_API_RETRY_MAX_DELAY: float = 60.0
    GITHUB_RATE_LIMIT_BUFFER: int = 100
    GITHUB_RATE_LIMIT_MAX_WAIT_SECONDS: float = 900.0

    # OAuth
    GITHUB_CLIENT_ID: str = ""
    GITHUB_CLIENT_SECRET: str = ""
    GITHUB_OAUTH_AUTHORIZE_URL: str = "https://github.com/login/oauth/authorize"
    GITHUB_OAUTH_TOKEN_URL: str = "https://github.com/login/oauth/access_token"
    GITHUB_OAUTH_REDIRECT_URI: Optional[str] = None
    GITHUB_OAUTH_SCOPE: str = "repo,user:email"
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Webhooks
    WEBHOOK_CALLBACK_URL: Optional[str] = None
    WEBHOOK_EVENTS: List[str] = ["push", "pull_request", "pull_request_review"]
    WEBHOOK_DEDUPE_TTL_SECONDS: int = 600
    WEBHOOK_SYNC_BUDGET_SECONDS: float = 5.0
    SYNC_WORKER_COUNT: int = 8

    # Connection health
    CONNECTION_ERROR_THRESHOLD: int = 5
    STALE_WEBHOOK_HOURS: int = 24
    TOKEN_EXPIRY_WARNING_DAYS: int = 7
    MAINTENANCE_INTERVAL_SECONDS: float = 1800.0

    # Collaborators
    TASK_SERVICE_URL: str = "http://localhost:8080/api"
    TASK_SERVICE_TOKEN: Optional[str] = None
    TASK_SERVICE_TIMEOUT_SECONDS: float = 10.0
    ACTIVITY_CHANNEL: str = "github_activity"

    model_config = SettingsConfigDict(
        env_file=".env", env_ignore_empty=True, extra="ignore"
    )


settings = Settings()
