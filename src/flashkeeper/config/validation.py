#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import re
from decimal import Decimal
from typing import Iterable, List, Optional

from ..utils.custom_exceptions import ConfigurationError, ValidationError
from ..utils.logging_config import get_logger
from .networks import ZERO_ADDRESS, NetworkAddresses

logger = get_logger(__name__)


class ConfigValidator:
    """Validates the settlement bot configuration before any component is built."""

    ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

    # Private key pattern (64 hex chars, optionally prefixed with 0x)
    PRIVATE_KEY_PATTERN = re.compile(r"^(0x)?[a-fA-F0-9]{64}$")

    VALID_CHANNELS = ("slack", "discord", "telegram", "webhook")
    VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

    @classmethod
    def validate_address(cls, address: Optional[str], field: str, allow_zero: bool = False) -> str:
        """Validate an EVM address; the zero address is rejected unless ``allow_zero``."""
        if not address:
            raise ValidationError(f"{field} cannot be empty", field=field)

        if not cls.ADDRESS_PATTERN.match(address):
            raise ValidationError(
                f"Invalid address for {field}",
                field=field,
                value=address,
                expected_type="EVM address (0x + 40 hex chars)",
            )

        if not allow_zero and address.lower() == ZERO_ADDRESS:
            raise ValidationError(f"{field} is not configured (zero address)", field=field)

        return address

    @classmethod
    def validate_private_key(cls, private_key: Optional[str]) -> str:
        """Validate private key format. The key itself never appears in the error."""
        if not private_key:
            raise ValidationError("Private key cannot be empty", field="wallet_key")

        if not cls.PRIVATE_KEY_PATTERN.match(private_key):
            raise ValidationError(
                "Invalid private key format. Must be 64 hex characters",
                field="wallet_key",
                expected_type="64 hex characters (optionally prefixed with 0x)",
            )

        return private_key if private_key.startswith("0x") else f"0x{private_key}"

    @classmethod
    def validate_rpc_url(cls, url: str) -> str:
        if not url or not url.startswith(("http://", "https://", "ws://", "wss://")):
            raise ValidationError(
                "RPC URL must start with http(s):// or ws(s)://",
                field="rpc_url",
                value=url,
            )
        return url

    @classmethod
    def validate_bps(cls, value: int, field: str, maximum: int = 10_000) -> int:
        if not 0 <= value <= maximum:
            raise ValidationError(
                f"{field} must be between 0 and {maximum} basis points",
                field=field,
                value=value,
            )
        if value > 1_000:
            logger.warning(f"Very wide {field}: {value} bps")
        return value

    @classmethod
    def validate_health_factor_threshold(cls, threshold: Decimal) -> Decimal:
        if threshold <= 0:
            raise ValidationError(
                "Health factor threshold must be positive",
                field="liquidation.health_factor_threshold",
                value=str(threshold),
            )
        if threshold > 1:
            logger.warning(
                f"Health factor threshold {threshold} is above 1; healthy positions may be targeted"
            )
        return threshold

    @classmethod
    def validate_notification_settings(cls, channels: Iterable[str], min_level: str) -> None:
        if min_level.upper() not in cls.VALID_LEVELS:
            raise ValidationError(
                f"Invalid notification level: {min_level}. Must be one of {list(cls.VALID_LEVELS)}",
                field="notifications.min_level",
                value=min_level,
            )
        invalid = [ch for ch in channels if ch.lower() not in cls.VALID_CHANNELS]
        if invalid:
            raise ValidationError(
                f"Invalid notification channels: {invalid}. Valid channels: {list(cls.VALID_CHANNELS)}",
                field="notifications.channels",
                value=invalid,
            )

    @classmethod
    def required_addresses(cls, mode: str) -> List[str]:
        if mode == "liquidation":
            return ["pool", "price_oracle", "liquidator_executor", "flash_lender", "settlement_asset"]
        if mode == "compounding":
            return ["compounder_executor", "flash_lender", "settlement_asset"]
        raise ConfigurationError(f"Unknown bot mode: {mode}", key="mode", value=mode)

    @classmethod
    def validate_for_mode(cls, settings, addresses: NetworkAddresses, mode: str) -> None:
        """Check everything a ``run`` of the given bot mode needs, raising on the first problem."""
        try:
            cls.validate_rpc_url(settings.rpc_url)
            cls.validate_notification_settings(
                settings.notifications.channels, settings.notifications.min_level
            )
            for field in cls.required_addresses(mode):
                cls.validate_address(getattr(addresses, field), field=field)

            if mode == "liquidation":
                cls.validate_health_factor_threshold(settings.liquidation.health_factor_threshold)
                cls.validate_bps(settings.liquidation.slippage_bps, "liquidation.slippage_bps")
                if settings.liquidation.profitable_threshold_usd < 0:
                    raise ValidationError(
                        "profitable_threshold_usd cannot be negative",
                        field="liquidation.profitable_threshold_usd",
                    )
                for borrower in settings.liquidation.borrowers:
                    cls.validate_address(borrower, field="liquidation.borrowers")
            else:
                cls.validate_bps(settings.compounding.slippage_bps, "compounding.slippage_bps")
                cls.validate_bps(settings.compounding.treasury_fee_bps, "compounding.treasury_fee_bps")
                if not settings.compounding.vaults:
                    raise ValidationError(
                        "At least one vault must be configured", field="compounding.vaults"
                    )
                for vault in settings.compounding.vaults:
                    cls.validate_address(vault, field="compounding.vaults")
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigurationError(e.message, details=e.details, cause=e) from e
