"""Application settings and configuration.

This module defines all configuration options for the LedgerPin service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LAMPORTS_PER_SOL = 1_000_000_000


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="LedgerPin", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    challenge_ttl_seconds: int = Field(default=300, alias="CHALLENGE_TTL_SECONDS")

    # Database configuration
    database_url: str = Field(default="sqlite:///./ledgerpin.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Redis for replay protection; in-process cache when unset
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    # Solana ledger access (read-only JSON-RPC)
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
    )
    ledger_timeout_seconds: float = Field(default=5.0, alias="LEDGER_TIMEOUT_SECONDS")
    ledger_retry_base_delay_seconds: float = Field(
        default=0.5, alias="LEDGER_RETRY_BASE_DELAY_SECONDS"
    )
    ledger_retry_factor: float = Field(default=2.0, alias="LEDGER_RETRY_FACTOR")
    ledger_retry_max_delay_seconds: float = Field(
        default=4.0, alias="LEDGER_RETRY_MAX_DELAY_SECONDS"
    )
    ledger_retry_max_attempts: int = Field(default=4, alias="LEDGER_RETRY_MAX_ATTEMPTS")
    ledger_retry_max_wait_seconds: float = Field(
        default=10.0, alias="LEDGER_RETRY_MAX_WAIT_SECONDS"
    )

    # Payment rules (amounts in lamports)
    min_balance_lamports: int = Field(default=10_000_000, alias="MIN_BALANCE_LAMPORTS")
    publish_price_lamports: int = Field(default=1_000_000, alias="PUBLISH_PRICE_LAMPORTS")
    payment_recipient: str = Field(
        default="11111111111111111111111111111111",
        alias="PAYMENT_RECIPIENT",
    )
    require_payment_memo: bool = Field(default=True, alias="REQUIRE_PAYMENT_MEMO")

    # Staging lifecycle
    staging_ttl_seconds: int = Field(default=3600, alias="STAGING_TTL_SECONDS")
    sweep_interval_seconds: float = Field(default=60.0, alias="SWEEP_INTERVAL_SECONDS")
    sweep_enabled: bool = Field(default=True, alias="SWEEP_ENABLED")
    max_archive_bytes: int = Field(default=256 * 1024 * 1024, alias="MAX_ARCHIVE_BYTES")

    # Content-addressable store
    store_backend: str = Field(default="ipfs", alias="STORE_BACKEND")
    ipfs_api_url: str = Field(default="http://127.0.0.1:5001", alias="IPFS_API_URL")
    ipfs_gateway_url: str = Field(default="https://ipfs.io", alias="IPFS_GATEWAY_URL")
    ipfs_timeout_seconds: float = Field(default=30.0, alias="IPFS_TIMEOUT_SECONDS")
    store_root: str = Field(default="./ledgerpin-store", alias="STORE_ROOT")

    # Where published repositories live on disk
    repository_root: str = Field(default="./repositories", alias="REPOSITORY_ROOT")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def min_balance_sol(self) -> float:
        """Return the admission threshold in SOL for user-facing messages."""
        return self.min_balance_lamports / LAMPORTS_PER_SOL

    @property
    def publish_price_sol(self) -> float:
        """Return the publish price in SOL for user-facing messages."""
        return self.publish_price_lamports / LAMPORTS_PER_SOL


settings = Settings()  # type: ignore[call-arg]
