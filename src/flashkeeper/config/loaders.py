#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Configuration loading
===================================
Builds the single immutable ``AppConfig`` that every component receives
at construction time. Nothing in the pipeline looks configuration up by
network name after this point.
License: MIT
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ..utils.custom_exceptions import ConfigurationError
from .networks import NETWORKS, NetworkAddresses
from .settings import GlobalSettings

_settings_cache: Optional[GlobalSettings] = None


class AppConfig(BaseModel):
    """Settings plus the resolved address book of the selected network."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    settings: GlobalSettings
    network: NetworkAddresses

    @property
    def chain_id(self) -> int:
        return self.network.chain_id

    @property
    def state_dir(self) -> Path:
        return Path(self.settings.state_dir) / self.network.name


def get_settings() -> GlobalSettings:
    """Settings from the environment, read once. Only used for logging bootstrap."""
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = GlobalSettings()
    return _settings_cache


def resolve_network(name: str, overrides: Optional[dict] = None) -> NetworkAddresses:
    """Look up a network's address book and apply per-field overrides."""
    base = NETWORKS.get(name)
    if base is None:
        raise ConfigurationError(
            f"Unknown network '{name}'. Known networks: {sorted(NETWORKS)}",
            key="network",
            value=name,
        )
    if not overrides:
        return base

    unknown = set(overrides) - set(NetworkAddresses.model_fields)
    if unknown:
        raise ConfigurationError(
            f"Unknown address override(s): {sorted(unknown)}",
            key="addresses",
            value=sorted(unknown),
        )
    return base.model_copy(update=dict(overrides))


def load_settings(
    network: Optional[str] = None,
    env_file: Optional[Union[str, Path]] = None,
    **overrides: Any,
) -> AppConfig:
    """Load settings once at startup and bind them to a network.

    ``overrides`` take precedence over the environment (the CLI passes
    ``dry_run`` this way).
    """
    if env_file is not None:
        env_path = Path(env_file)
        if not env_path.exists():
            raise ConfigurationError(f"Env file not found: {env_path}", key="env_file", value=str(env_path))
        load_dotenv(env_path, override=False)

    if network is not None:
        overrides["network"] = network

    try:
        if env_file is not None:
            settings = GlobalSettings(_env_file=env_file, **overrides)
        else:
            settings = GlobalSettings(**overrides)
    except PydanticValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ConfigurationError(
            f"Invalid configuration: {', '.join(fields)}",
            details={"errors": fields},
            cause=e,
        ) from e

    addresses = resolve_network(settings.network, settings.addresses)
    return AppConfig(settings=settings, network=addresses)
