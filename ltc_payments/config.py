"""
Configuration for the payment gateway.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .address import decode_p2wpkh_address
from .electrum import ElectrumConfig
from .errors import ConfigurationError, InvalidAddressError
from .logs import LOG_LEVELS
from .retry import RetryPolicy


class Settings(BaseSettings):
    """
    Gateway configuration settings.

    All settings can be overridden via environment variables.
    KEY_ENCRYPTION_KEY and MAIN_ADDRESS have no defaults: the process
    refuses to start without them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Server
    host: str = Field(default="0.0.0.0", description="API bind host")
    port: int = Field(default=3000, description="API port")
    log_level: str = Field(default="INFO", description="Minimum log level")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")
    api_token: Optional[str] = Field(
        default=None,
        description="If set, payment endpoints require it via X-API-Key",
    )
    allowed_origins: list[str] = Field(default=["*"], description="CORS allowed origins")

    # Database
    database_url: str = Field(default="sqlite:///./payments.db")

    # Electrum
    electrum_host: str = Field(default="electrum.ltc.xurious.com")
    electrum_port: int = Field(default=50001)
    electrum_ssl: bool = Field(default=False)
    electrum_validate_tls: bool = Field(default=False)
    electrum_timeout: float = Field(default=15.0, gt=0, description="Per-connection timeout (seconds)")
    electrum_pool_size: int = Field(default=4, ge=1)
    electrum_client_name: str = Field(default="ltc-payments/1.0")
    electrum_protocol_version: str = Field(default="1.4")
    rpc_max_attempts: int = Field(default=3, ge=1)
    rpc_backoff_seconds: float = Field(default=0.5, ge=0)
    fee_target_blocks: int = Field(default=6, ge=1)

    # Keys and addresses
    address_hrp: str = Field(default="ltc", description="Bech32 human-readable prefix")
    key_encryption_key: str = Field(..., description="AES-256-GCM key for receiving keys (64 hex chars)")
    main_address: str = Field(..., description="Cold-storage P2WPKH address receiving all sweeps")

    # Sweeper
    confirmations_required: int = Field(default=2, ge=1)
    sweep_interval_seconds: float = Field(default=10.0, gt=0)
    secondary_sweep_interval: int = Field(
        default=360,
        ge=1,
        description="Re-check completed/expired payments every N sweep ticks",
    )
    payment_ttl_seconds: int = Field(default=0, ge=0, description="Default expiry (0 = never)")

    # Webhook
    webhook_url: str = Field(default="")
    webhook_secret: str = Field(default="")

    @field_validator("key_encryption_key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        value = value.strip()
        try:
            key = bytes.fromhex(value)
        except ValueError as e:
            raise ValueError("KEY_ENCRYPTION_KEY must be hex") from e
        if len(key) != 32:
            raise ValueError("KEY_ENCRYPTION_KEY must be 32 bytes (64 hex chars)")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.strip().upper()
        if value == "WARN":
            value = "WARNING"
        if value not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return value

    @field_validator("address_hrp")
    @classmethod
    def _check_hrp(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("ADDRESS_HRP must not be empty")
        return value

    @model_validator(mode="after")
    def _check_main_address(self) -> "Settings":
        try:
            decode_p2wpkh_address(self.main_address, self.address_hrp)
        except InvalidAddressError as e:
            raise ValueError(f"MAIN_ADDRESS: {e}") from e
        if self.webhook_url and not self.webhook_secret:
            raise ValueError("WEBHOOK_SECRET is required when WEBHOOK_URL is set")
        return self

    def electrum_config(self) -> ElectrumConfig:
        return ElectrumConfig(
            host=self.electrum_host,
            port=self.electrum_port,
            use_ssl=self.electrum_ssl,
            validate_tls=self.electrum_validate_tls,
            timeout=self.electrum_timeout,
            client_name=self.electrum_client_name,
            protocol_version=self.electrum_protocol_version,
            pool_size=self.electrum_pool_size,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.rpc_max_attempts,
            backoff_seconds=self.rpc_backoff_seconds,
        )


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Load settings from the environment (and `env_file`, if given).

    Raises:
        ConfigurationError: a required setting is missing or malformed
    """
    try:
        return Settings(_env_file=env_file) if env_file else Settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
