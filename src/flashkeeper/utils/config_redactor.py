#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""Scrubs secrets out of configuration dumps and outbound messages."""

from __future__ import annotations

import re
from typing import Any, Iterable, List

from pydantic import SecretStr

REDACTED = "***REDACTED***"

SENSITIVE_KEY_TOKENS = ("key", "secret", "token", "password", "webhook", "mnemonic")

# 32-byte hex blobs look like private keys.
_PRIVATE_KEY_RE = re.compile(r"\b(0x)?[a-fA-F0-9]{64}\b")


class ConfigRedactor:
    @staticmethod
    def is_sensitive_key(key: str) -> bool:
        lowered = key.lower()
        # Public addresses are fine to print.
        if lowered.endswith("address") or lowered.endswith("_id"):
            return False
        return any(token in lowered for token in SENSITIVE_KEY_TOKENS)

    @classmethod
    def redact_config(cls, config: Any, show_sensitive: bool = False) -> Any:
        """Return a copy of ``config`` with every sensitive value replaced."""
        if isinstance(config, SecretStr):
            return config.get_secret_value() if show_sensitive else REDACTED
        if isinstance(config, dict):
            redacted = {}
            for key, value in config.items():
                if not show_sensitive and cls.is_sensitive_key(str(key)) and value not in (None, "", [], {}):
                    if isinstance(value, (dict, list)):
                        redacted[key] = cls.redact_config(value, show_sensitive)
                    else:
                        redacted[key] = REDACTED
                else:
                    redacted[key] = cls.redact_config(value, show_sensitive)
            return redacted
        if isinstance(config, list):
            return [cls.redact_config(item, show_sensitive) for item in config]
        return config

    @staticmethod
    def collect_secrets(settings: Any) -> List[str]:
        """Every ``SecretStr`` value reachable from a pydantic settings object."""
        found: List[str] = []

        def _walk(obj: Any) -> None:
            if isinstance(obj, SecretStr):
                value = obj.get_secret_value()
                if value:
                    found.append(value)
                return
            fields = getattr(type(obj), "model_fields", None)
            if fields:
                for name in fields:
                    _walk(getattr(obj, name, None))

        _walk(settings)
        return found

    @staticmethod
    def scrub_text(text: str, secrets: Iterable[str] = (), mask_key_shaped: bool = True) -> str:
        """Remove known secret values and, unless disabled, anything shaped like a private key.

        Transaction hashes have the same shape as a private key, so messages
        that must keep them pass ``mask_key_shaped=False``.
        """
        for secret in secrets:
            if not secret:
                continue
            text = text.replace(secret, REDACTED)
            bare = secret[2:] if secret.startswith("0x") else None
            if bare:
                text = text.replace(bare, REDACTED)
        if not mask_key_shaped:
            return text
        return _PRIVATE_KEY_RE.sub(REDACTED, text)
