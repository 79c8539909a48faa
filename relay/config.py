from functools import lru_cache
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./relay.db"
    STORE_TIMEOUT_SECONDS: float = 10.0
    RECONNECT_INTERVAL_SECONDS: float = 10.0

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Session cookie - secret is required
    SESSION_SECRET: str
    SESSION_MAX_AGE: int = 24 * 60 * 60
    SESSION_SAME_SITE: str = "lax"
    SESSION_HTTPS_ONLY: bool = False

    # Origins are reflected so credentials work cross-site
    CORS_ALLOW_ORIGIN_REGEX: str = ".*"

    # Tenants ("servers") selectable through the passcode
    TENANTS: list[str] = ["1234", "5678", "9999"]
    TENANT_ID_LENGTH: int = 4

    # Message limits
    MESSAGE_LIST_LIMIT: int = 100
    MAX_CONTENT_LENGTH: int = 4096
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    # Unset means the offline queue is bounded only by memory
    QUEUE_MAX_PER_TENANT: Optional[int] = None

    @field_validator("SESSION_SAME_SITE")
    @classmethod
    def validate_same_site(cls, v: str) -> str:
        v = v.lower()
        if v not in ("lax", "strict", "none"):
            raise ValueError("SESSION_SAME_SITE must be one of lax, strict, none")
        return v

    @model_validator(mode="after")
    def validate_tenants(self) -> "Settings":
        """Every tenant must be a numeric id of TENANT_ID_LENGTH digits."""
        if not self.TENANTS:
            raise ValueError("TENANTS must list at least one tenant")
        for tenant in self.TENANTS:
            if len(tenant) != self.TENANT_ID_LENGTH or not tenant.isdigit():
                raise ValueError(
                    f"tenant {tenant!r} must be {self.TENANT_ID_LENGTH} digits"
                )
        if len(set(self.TENANTS)) != len(self.TENANTS):
            raise ValueError("TENANTS must not contain duplicates")
        return self


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
