#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LiquidationSettings(BaseModel):
    """Parameters of the liquidation bot."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    health_factor_threshold: Decimal = Decimal("1")
    profitable_threshold_usd: Decimal = Decimal("1")
    health_factor_batch_size: int = Field(default=10, gt=0)
    liquidating_batch_size: int = Field(default=2, gt=0)
    slippage_bps: int = Field(default=50, ge=0, le=10_000)
    flash_fee_bps: int = Field(default=9, ge=0, le=10_000)
    close_factor_bps: int = Field(default=5_000, gt=0, le=10_000)
    borrowers: List[str] = Field(default_factory=list)


class CompoundingSettings(BaseModel):
    """Parameters of the reward-compounding bot."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    vaults: List[str] = Field(default_factory=list)
    reward_tokens: List[str] = Field(default_factory=list)
    slippage_bps: int = Field(default=50, ge=0, le=10_000)
    flash_fee_bps: int = Field(default=9, ge=0, le=10_000)
    treasury_fee_bps: int = Field(default=0, ge=0, le=10_000)
    # Minimum surplus in settlement-asset base units.
    min_profit_amount: int = Field(default=10**17, ge=1)


class AggregatorSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str = "https://api.odos.xyz"
    api_key: Optional[SecretStr] = None
    timeout_seconds: float = Field(default=10.0, gt=0)
    quote_ttl_seconds: float = Field(default=30.0, gt=0)
    rate_limit_per_minute: int = Field(default=60, gt=0)
    disable_rfqs: bool = True
    compact: bool = True


class RetrySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    jitter: bool = True


class NotificationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    channels: List[str] = Field(default_factory=list)
    min_level: str = "INFO"
    slack_webhook_url: Optional[SecretStr] = None
    discord_webhook_url: Optional[SecretStr] = None
    telegram_bot_token: Optional[SecretStr] = None
    telegram_chat_id: Optional[str] = None
    webhook_url: Optional[SecretStr] = None
    timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("channels", mode="before")
    @classmethod
    def _split_channels(cls, value):
        if isinstance(value, str):
            return [part.strip().lower() for part in value.split(",") if part.strip()]
        return value


class DatabaseSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = "sqlite+aiosqlite:///flashkeeper.db"


class GlobalSettings(BaseSettings):
    """Process configuration, read once at startup from the environment and ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    network: str = "localhost"
    rpc_url: str = "http://127.0.0.1:8545"
    wallet_key: Optional[SecretStr] = None
    wallet_address: Optional[str] = None
    dry_run: bool = False
    debug: bool = False

    poll_interval_seconds: float = Field(default=5.0, gt=0)
    cycle_timeout_seconds: float = Field(default=300.0, gt=0)
    rpc_timeout_seconds: float = Field(default=10.0, gt=0)
    receipt_timeout_seconds: float = Field(default=120.0, gt=0)
    receipt_poll_interval: float = Field(default=2.0, gt=0)
    evaluation_concurrency: int = Field(default=4, gt=0)
    ignore_ttl_seconds: float = Field(default=180.0, ge=0)
    state_dir: Path = Path("state")

    max_gas_price_gwei: int = Field(default=500, gt=0)
    default_gas_limit: int = Field(default=2_000_000, gt=21_000)
    gas_limit_multiplier: float = Field(default=1.2, ge=1.0)

    liquidation: LiquidationSettings = Field(default_factory=LiquidationSettings)
    compounding: CompoundingSettings = Field(default_factory=CompoundingSettings)
    aggregator: AggregatorSettings = Field(default_factory=AggregatorSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    # Per-field overrides of the network address book, e.g. ADDRESSES__POOL=0x...
    addresses: Dict[str, str] = Field(default_factory=dict)
