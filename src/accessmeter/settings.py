"""
Configuration for the access-control and metering core.

Values come from environment variables (and an optional .env file); nested
sections use a double underscore, e.g. QUOTA__RETRY_ATTEMPTS=5.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StoreBackend(str, Enum):
    """Persistence backends for usage counters and tenant state."""

    MEMORY = "memory"
    DATABASE = "database"
    REDIS = "redis"


class Settings(BaseSettings):
    """Root settings object; one nested model per concern."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")

    # ============================================================
    # Database
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Tenant and counter database; pool options apply to PostgreSQL only."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("accessmeter", description="Database name")
        username: str = Field("accessmeter", description="Database username")
        password: str = Field("", description="Database password")

        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

        @property
        def sqlalchemy_url(self) -> str:
            """Build SQLAlchemy async database URL."""
            if self.url:
                return str(self.url)
            return f"postgresql+asyncpg://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Redis
    # ============================================================

    class RedisSettings(BaseModel):
        """Redis server backing the Redis usage store."""

        url: str | None = Field(None, description="Full Redis URL")
        host: str = Field("localhost", description="Redis host")
        port: int = Field(6379, description="Redis port")
        password: str = Field("", description="Redis password")
        db: int = Field(0, description="Redis database number")

        max_connections: int = Field(50, description="Max connections in pool")
        socket_timeout: float = Field(2.0, description="Socket timeout in seconds")

        @property
        def redis_url(self) -> str:
            if self.url:
                return str(self.url)
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
            return f"redis://{self.host}:{self.port}/{self.db}"

    redis: RedisSettings = RedisSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Quota metering
    # ============================================================

    class QuotaSettings(BaseModel):
        """Usage counter storage and failure handling."""

        backend: StoreBackend = Field(StoreBackend.DATABASE, description="Usage counter store")
        key_prefix: str = Field("quota", description="Key prefix for Redis counters")

        # Every store call is bounded; a timeout on the quota path denies
        storage_timeout_seconds: float = Field(2.0, description="Timeout per store call")
        retry_attempts: int = Field(3, ge=1, description="Attempts before StorageUnavailable")
        retry_min_wait: float = Field(0.05, description="Minimum backoff in seconds")
        retry_max_wait: float = Field(1.0, description="Maximum backoff in seconds")

    quota: QuotaSettings = QuotaSettings()  # type: ignore[call-arg]

    # ============================================================
    # Tenancy & invitations
    # ============================================================

    class TenantSettings(BaseModel):
        """Tenant state storage."""

        backend: StoreBackend = Field(StoreBackend.DATABASE, description="Tenant repository")

    tenant: TenantSettings = TenantSettings()  # type: ignore[call-arg]

    class InvitationSettings(BaseModel):
        """Organization invitation lifecycle."""

        ttl_days: int = Field(7, ge=1, description="Days before a pending invitation expires")
        token_bytes: int = Field(32, ge=16, description="Random bytes per invitation token")

    invitations: InvitationSettings = InvitationSettings()  # type: ignore[call-arg]

    class AccessSettings(BaseModel):
        """Request authorization behaviour."""

        require_verified_email: bool = Field(
            True, description="Treat principals with unverified email as unauthenticated"
        )

    access: AccessSettings = AccessSettings()  # type: ignore[call-arg]

    # ============================================================
    # Admin analytics
    # ============================================================

    class AnalyticsSettings(BaseModel):
        """Quota analytics thresholds (fractions of the plan limit)."""

        near_limit_threshold: float = Field(0.8, gt=0, le=1, description="Near-limit utilization")
        high_utilization_threshold: float = Field(
            0.9, gt=0, le=1, description="Plan average that triggers an upgrade recommendation"
        )
        conversion_threshold: float = Field(
            0.7, gt=0, le=1, description="Starter plan average that signals conversion potential"
        )
        engagement_min_users: int = Field(
            10, ge=0, description="Near-limit users before suggesting an upgrade campaign"
        )
        max_users_near_limit: int = Field(20, ge=1, description="Near-limit users listed")

    analytics: AnalyticsSettings = AnalyticsSettings()  # type: ignore[call-arg]

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT


_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, loaded from the environment on first call."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None

