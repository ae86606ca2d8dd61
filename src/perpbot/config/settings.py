"""
Configuration settings for the perpbot trading engine.

Process-wide settings come from environment variables and the .env file via
pydantic-settings. Per-bot settings live in the ``bot_configurations`` table and are
loaded once at startup into the immutable ``BotConfig`` model defined here.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from perpbot.config import constants


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    url: Optional[str] = Field(
        default=None, description="Full async SQLAlchemy URL, overrides the parts below"
    )
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    name: str = Field(default="perpbot", alias="database", description="Database name")
    user: str = Field(default="postgres", alias="username", description="Database username")
    password: SecretStr = Field(default=SecretStr(""), description="Database password")
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Maximum connection overflow")

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    def get_async_url(self) -> str:
        """
        Generate async database connection URL.

        Returns:
            Async PostgreSQL connection string
        """
        if self.url:
            return self.url
        password = self.password.get_secret_value()
        return (
            f"postgresql+asyncpg://{self.user}:{password}"
            f"@{self.host}:{self.port}/{self.name}"
        )


class SecuritySettings(BaseSettings):
    """Secrets needed to decrypt stored exchange and oracle credentials."""

    encryption_key: SecretStr = Field(
        default=SecretStr(""), description="Key used to encrypt user API credentials"
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class OracleSettings(BaseSettings):
    """Decision oracle (Gemini) settings."""

    model_name: str = Field(
        default="gemini-2.5-flash", description="generateContent model identifier"
    )
    base_url: str = Field(default=constants.ORACLE_BASE_URL, description="Oracle API root")
    timeout_seconds: float = Field(default=120.0, description="Oracle request timeout")

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )


class EngineSettings(BaseSettings):
    """Timing, retry and connection settings shared by every bot process."""

    recv_window_ms: int = Field(default=constants.RECV_WINDOW_MS, description="Signed request receive window")
    max_attempts: int = Field(
        default=constants.DEFAULT_MAX_ATTEMPTS, description="Attempt cap for temporary failures"
    )
    retry_unit_seconds: float = Field(
        default=constants.DEFAULT_RETRY_UNIT_SECONDS, description="Linear backoff unit"
    )
    http_timeout_seconds: float = Field(default=10.0, description="Exchange REST timeout")
    heartbeat_interval_seconds: float = Field(default=constants.HEARTBEAT_INTERVAL_SECONDS)
    listen_key_refresh_seconds: float = Field(default=constants.LISTEN_KEY_REFRESH_SECONDS)
    max_runtime_seconds: float = Field(
        default=constants.MAX_RUNTIME_SECONDS, description="0 disables the runtime limit"
    )
    initial_decision_delay_seconds: float = Field(default=constants.INITIAL_DECISION_DELAY_SECONDS)
    post_close_decision_delay_seconds: float = Field(
        default=constants.POST_CLOSE_DECISION_DELAY_SECONDS
    )
    ws_ping_interval: float = Field(default=20.0, description="Websocket ping interval")
    ws_ping_timeout: float = Field(default=10.0, description="Websocket ping timeout")

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Logging level")
    format: Literal["json", "pretty"] = Field(default="pretty", description="Log renderer")
    file_path: Optional[str] = Field(
        default=None, description="Optional log file path"
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class Settings(BaseSettings):
    """
    Main settings class combining all configuration domains.

    Loads configuration from environment variables and .env file.
    """

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    oracle: OracleSettings = Field(default_factory=OracleSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance (singleton pattern).

    Returns:
        Singleton Settings instance
    """
    return Settings()


# =============================================================================
# Per-bot configuration
# =============================================================================


class BotConfig(BaseModel):
    """
    Immutable configuration of one bot, read from ``bot_configurations``.

    Validation failures surface as pydantic ``ValidationError`` and are turned into
    ``ConfigurationError`` by the persistence layer.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    name: str = ""
    symbol: str
    kline_interval: str = "1m"
    margin_asset: str = "USDT"
    default_leverage: int = 10
    order_check_interval_seconds: float = 45
    ai_update_interval_seconds: float = 60
    use_testnet: bool = False
    pending_entry_order_cancel_timeout_seconds: float = 180
    initial_margin_target_usdt: float = 10.0
    take_profit_target_usdt: float = 0.0
    profit_check_interval_seconds: float = 60
    user_api_key_id: Optional[int] = None

    @field_validator("symbol", "margin_asset")
    @classmethod
    def normalize_asset(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("kline_interval")
    @classmethod
    def validate_interval(cls, value: str) -> str:
        value = value.strip()
        if value not in constants.KLINE_INTERVALS:
            raise ValueError(f"kline_interval {value!r} is not a venue interval")
        return value

    @field_validator("default_leverage")
    @classmethod
    def validate_leverage(cls, value: int) -> int:
        if not constants.MIN_LEVERAGE <= value <= constants.MAX_LEVERAGE:
            raise ValueError(
                f"default_leverage must be between {constants.MIN_LEVERAGE} "
                f"and {constants.MAX_LEVERAGE}"
            )
        return value

    @field_validator(
        "order_check_interval_seconds",
        "ai_update_interval_seconds",
        "pending_entry_order_cancel_timeout_seconds",
        "profit_check_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval must be positive")
        return value

    @model_validator(mode="after")
    def validate_targets(self) -> "BotConfig":
        if self.initial_margin_target_usdt < 0 or self.take_profit_target_usdt < 0:
            raise ValueError("USDT targets must not be negative")
        return self
