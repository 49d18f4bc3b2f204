#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, Optional

import aiohttp

from ..config.settings import NotificationSettings
from .config_redactor import ConfigRedactor
from .logging_config import get_logger

logger = get_logger(__name__)

# Outcome status -> alert level.
OUTCOME_LEVELS = {
    "confirmed": "INFO",
    "skipped": "INFO",
    "submitted": "INFO",
    "reverted": "WARNING",
    "timed_out": "WARNING",
    "transient_failure": "ERROR",
}

OUTCOME_TITLES = {
    "confirmed": "Settlement confirmed",
    "skipped": "Candidate skipped",
    "submitted": "Settlement submitted",
    "reverted": "Settlement reverted",
    "timed_out": "Settlement not confirmed in time",
    "transient_failure": "Settlement failed after retries",
}


def _coerce_notification_settings(raw: Any) -> NotificationSettings:
    """Normalize arbitrary settings input into a ``NotificationSettings`` instance."""
    if raw is None:
        return NotificationSettings()
    if isinstance(raw, NotificationSettings):
        return raw
    if isinstance(raw, dict):
        return NotificationSettings(**raw)
    attribs = {key: getattr(raw, key, None) for key in NotificationSettings.model_fields}
    return NotificationSettings(**{k: v for k, v in attribs.items() if v is not None})


def _secret(value) -> Optional[str]:
    if value is None:
        return None
    getter = getattr(value, "get_secret_value", None)
    return getter() if getter else str(value)


class NotificationService:
    """Best-effort operator alerts over Slack, Discord, Telegram or a plain webhook.

    Nothing in here raises to the caller: a broken channel is logged and the
    pipeline carries on. Every outbound text is scrubbed of the configured
    secrets first.
    """

    def __init__(
        self,
        settings: Optional[Any] = None,
        secrets: Iterable[str] = (),
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = _coerce_notification_settings(settings)
        self._configured_channels = [
            ch.strip().lower() for ch in (self._config.channels or []) if isinstance(ch, str) and ch.strip()
        ]
        self._min_level_value = self._level_to_int(self._config.min_level)
        self._secrets = [s for s in secrets if s]
        self._session = session
        self._owns_session = session is None
        if self._configured_channels:
            logger.info(f"NotificationService configured. Active channels: {self._configured_channels}")
        else:
            logger.debug("NotificationService configured with no active channels.")

    @classmethod
    def from_config(cls, config) -> "NotificationService":
        return cls(config.settings.notifications, secrets=ConfigRedactor.collect_secrets(config.settings))

    @property
    def config(self) -> NotificationSettings:
        return self._config

    @property
    def channels(self) -> list:
        return list(self._configured_channels)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Lazily creates and returns an aiohttp ClientSession."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    @staticmethod
    def _level_to_int(level: str) -> int:
        return {"DEBUG": 0, "INFO": 1, "WARNING": 2, "ERROR": 3, "CRITICAL": 4}.get(str(level).upper(), 1)

    def _should_send(self, level: str) -> bool:
        if not self._configured_channels:
            return False
        return self._level_to_int(level) >= self._min_level_value

    def _scrub(self, value: Any) -> str:
        return ConfigRedactor.scrub_text(str(value), self._secrets, mask_key_shaped=False)

    async def send_alert(
        self,
        title: str,
        message: str,
        level: str = "ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Sends a notification if its level is at or above the configured minimum.

        Args:
            title: The main title of the alert.
            message: The detailed message body.
            level: The severity level ('INFO', 'WARNING', 'ERROR', 'CRITICAL').
            details: An optional dictionary of key-value pairs to include.

        Returns:
            True when the alert was handed to at least one channel.
        """
        if not self._should_send(level):
            logger.debug(f"Not sending alert '{title}' ({level})")
            return False

        title = self._scrub(title)
        message = self._scrub(message)
        clean_details = {k: self._scrub(v) for k, v in (details or {}).items()}

        tasks = []
        for channel in self._configured_channels:
            if channel == "slack" and self._config.slack_webhook_url:
                tasks.append(self._send_slack(title, message, level, clean_details))
            elif channel == "discord" and self._config.discord_webhook_url:
                tasks.append(self._send_discord(title, message, level, clean_details))
            elif channel == "telegram" and self._config.telegram_bot_token and self._config.telegram_chat_id:
                tasks.append(self._send_telegram(title, message, level, clean_details))
            elif channel == "webhook" and self._config.webhook_url:
                tasks.append(self._send_webhook(title, message, level, clean_details))

        if not tasks:
            return False
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Notification channel failed: {self._scrub(result)}")
        return True

    async def notify_outcome(self, outcome, context: Optional[Dict[str, Any]] = None) -> bool:
        """One message for one terminal outcome. Never raises."""
        try:
            if not outcome.is_terminal:
                return False
            data = outcome.to_dict()
            status = data["status"]
            level = OUTCOME_LEVELS.get(status, "INFO")
            title = f"{OUTCOME_TITLES.get(status, status)}: {outcome.candidate_key}"
            if outcome.tx_hash and outcome.reason:
                message = f"tx {outcome.tx_hash}: {outcome.reason}"
            elif outcome.tx_hash:
                message = f"tx {outcome.tx_hash}"
            else:
                message = outcome.reason or status
            details = dict(context or {})
            details.update(data)
            return await self.send_alert(title, message, level=level, details=details)
        except Exception as e:
            logger.error(f"Failed to notify outcome for {getattr(outcome, 'candidate_key', '?')}: {self._scrub(e)}")
            return False

    def _format_details(self, details: Optional[Dict[str, Any]]) -> str:
        if not details:
            return ""
        return "\n".join(f"**{key.replace('_', ' ').title()}:** `{value}`" for key, value in details.items())

    async def _post(self, channel: str, url: str, payload: Dict[str, Any]) -> None:
        try:
            session = await self._get_session()
            async with session.post(url, json=payload) as response:
                if not response.ok:
                    body = await response.text()
                    logger.error(f"{channel} notification failed: {response.status} {self._scrub(body)}")
        except Exception as e:
            logger.error(f"Error sending {channel} notification: {self._scrub(e)}")

    async def _send_slack(self, title: str, message: str, level: str, details: Dict[str, Any]):
        color_map = {"INFO": "#439FE0", "WARNING": "#FFA500", "ERROR": "#D00000", "CRITICAL": "#D00000"}
        blocks = [
            {"type": "header", "text": {"type": "plain_text", "text": f"{level.upper()}: {title}"}},
            {"type": "section", "text": {"type": "mrkdwn", "text": message}},
        ]
        if details:
            blocks.append({"type": "divider"})
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": self._format_details(details)}})
        payload = {"attachments": [{"color": color_map.get(level.upper(), "#808080"), "blocks": blocks}]}
        await self._post("Slack", _secret(self._config.slack_webhook_url), payload)

    async def _send_discord(self, title: str, message: str, level: str, details: Dict[str, Any]):
        color_map = {"INFO": 3447003, "WARNING": 16753920, "ERROR": 13632027, "CRITICAL": 13632027}
        fields = [
            {"name": key.replace("_", " ").title(), "value": f"`{value}`", "inline": True}
            for key, value in details.items()
        ]
        payload = {
            "embeds": [
                {
                    "title": f"[{level.upper()}] {title}",
                    "description": message,
                    "color": color_map.get(level.upper(), 8421504),
                    "fields": fields,
                }
            ]
        }
        await self._post("Discord", _secret(self._config.discord_webhook_url), payload)

    async def _send_telegram(self, title: str, message: str, level: str, details: Dict[str, Any]):
        text = f"*{level.upper()}: {title}*\n\n{message}\n\n{self._format_details(details)}"
        url = f"https://api.telegram.org/bot{_secret(self._config.telegram_bot_token)}/sendMessage"
        payload = {"chat_id": self._config.telegram_chat_id, "text": text, "parse_mode": "Markdown"}
        await self._post("Telegram", url, payload)

    async def _send_webhook(self, title: str, message: str, level: str, details: Dict[str, Any]):
        payload = {"level": level.upper(), "title": title, "message": message, **details}
        await self._post("Webhook", _secret(self._config.webhook_url), payload)

    async def close(self) -> None:
        """Closes the aiohttp session."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("NotificationService session closed.")
        self._session = None
