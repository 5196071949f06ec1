"""Shared configuration management for the reconciliation service.

Reference:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Mainnet USDC mint
DEFAULT_ASSET_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_WEBHOOK_SECRET=changeme
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-reconciliation-service",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Invoice store configuration
    store_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Invoice store backend: memory (single process), redis (shared)",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (for store_backend='redis')",
    )
    redis_key_prefix: str = Field(
        default="",
        description="Prefix prepended to every Redis key (namespacing for shared instances)",
    )

    # Boundary secrets
    webhook_secret: str = Field(
        default="",
        description="Shared bearer secret for the indexer webhook (APP_WEBHOOK_SECRET)",
    )
    debug_secret: str = Field(
        default="",
        description="Bearer secret for debug routes; debug routes are disabled when empty",
    )

    # Ledger configuration
    ledger_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana JSON-RPC endpoint",
    )
    asset_mint: str = Field(
        default=DEFAULT_ASSET_MINT,
        description="Mint address of the payment asset",
    )
    asset_decimals: int = Field(
        default=6,
        ge=0,
        le=18,
        description="Decimal places of the payment asset (smallest unit = 10^-decimals)",
    )

    # Invoice lifecycle
    invoice_ttl_seconds: int = Field(
        default=600,
        gt=0,
        description="Default invoice validity window",
    )
    invoice_extend_seconds: int = Field(
        default=120,
        gt=0,
        description="Seconds added to an invoice's expiry by the extend operation",
    )
    key_generation_attempts: int = Field(
        default=3,
        ge=1,
        description="Matching key generation attempts before creation fails with a conflict",
    )

    # Matching
    clock_skew_guard_seconds: int = Field(
        default=30,
        ge=0,
        description="Slack before invoice creation accepted for fallback-matched events",
    )
    amount_tolerance_units: int = Field(
        default=1,
        ge=0,
        description="Allowed difference in smallest asset units for fallback matching",
    )

    # Ingestion budgets
    poll_budget_seconds: float = Field(
        default=4.0,
        gt=0,
        description="Hard wall-clock budget for one poll request",
    )
    poll_signature_limit: int = Field(
        default=10,
        ge=1,
        description="Recent destination signatures inspected per poll",
    )
    verify_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Wall-clock budget for one verify request",
    )

    # Status stream
    stream_timeout_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Longest a status stream stays open waiting for a transition",
    )
    stream_keepalive_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Interval between keepalive comments on an idle status stream",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
