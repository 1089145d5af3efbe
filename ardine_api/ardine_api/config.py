"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEV_JWT_SECRET = "ardine-dev-secret-change-in-production"


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``ARDINE_`` (e.g. ``ARDINE_DATABASE_URL=...``) or through a ``.env``
    file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="ARDINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    platform_env: PlatformEnv = PlatformEnv.DEV

    # asyncpg for PostgreSQL, aiosqlite for local runs.
    database_url: str = "sqlite+aiosqlite:///.ardine/ardine.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Session tokens are issued elsewhere; this service only verifies them.
    jwt_secret: SecretStr = SecretStr(_DEV_JWT_SECRET)
    jwt_algorithm: str = "HS256"
    auth_cookie_name: str = "auth_token"

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    # Structured JSON logging.
    structured_logging: bool = False

    # List pagination.
    default_page_limit: int = 25
    max_page_limit: int = 100

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled."""
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    @model_validator(mode="after")
    def _validate_jwt_secret(self) -> Self:
        """Refuse the built-in development secret outside dev."""
        if self.platform_env != PlatformEnv.DEV and self.jwt_secret.get_secret_value() == _DEV_JWT_SECRET:
            raise ValueError(
                f"ARDINE_JWT_SECRET must be set when platform_env={self.platform_env.value}. "
                "Refusing to start with the development secret."
            )
        return self

    @model_validator(mode="after")
    def _validate_page_limits(self) -> Self:
        if not 1 <= self.default_page_limit <= self.max_page_limit:
            raise ValueError("default_page_limit must be between 1 and max_page_limit")
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
