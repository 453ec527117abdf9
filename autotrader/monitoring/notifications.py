from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict
from typing import Any, Iterable, Protocol

import requests

from autotrader.config import NotificationsConfig
from autotrader.storage.models import AccountInfo, Position

LOGGER = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def publish_position_update(self, owner_id: str | None, positions: list[Position]) -> None:
        ...

    def publish_balance_update(self, owner_id: str | None, info: AccountInfo) -> None:
        ...

    def publish_trade_event(
        self,
        owner_id: str | None,
        event: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        ...


def _position_payload(position: Position) -> dict[str, Any]:
    payload = asdict(position)
    payload["direction"] = position.direction.value
    payload["opened_at"] = position.opened_at.isoformat() if position.opened_at else None
    return payload


def _format_event(event: str, message: str, context: dict[str, Any] | None) -> str:
    details = f"[{event.upper()}] {message}"
    if context:
        details += " | " + " ".join(f"{k}={v}" for k, v in context.items())
    return details


class LoggingNotificationSink:
    def publish_position_update(self, owner_id: str | None, positions: list[Position]) -> None:
        LOGGER.debug("Positions owner=%s count=%d", owner_id, len(positions))

    def publish_balance_update(self, owner_id: str | None, info: AccountInfo) -> None:
        LOGGER.debug("Balance owner=%s balance=%.2f equity=%.2f", owner_id, info.balance, info.equity)

    def publish_trade_event(
        self,
        owner_id: str | None,
        event: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        LOGGER.info("owner=%s %s", owner_id, _format_event(event, message, context))


class WebhookNotificationSink:
    """Posts live updates as JSON and trade events as text to a webhook / Telegram.

    Live updates are throttled per (owner, kind) with ``cooldown_seconds``.
    """

    def __init__(self, config: NotificationsConfig):
        self.config = config
        self._last_sent_ts: dict[str, float] = {}
        self._lock = threading.Lock()

    def _should_send(self, key: str) -> bool:
        now = time.monotonic()
        with self._lock:
            prev = self._last_sent_ts.get(key)
            if prev is not None and (now - prev) < self.config.cooldown_seconds:
                return False
            self._last_sent_ts[key] = now
            return True

    def _post_json(self, payload: dict[str, Any]) -> None:
        webhook = (self.config.webhook_url or "").strip()
        if not webhook:
            return
        try:
            response = requests.post(webhook, json=payload, timeout=self.config.timeout_seconds)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Webhook notification failed: %s", exc)

    def _send_telegram(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        try:
            response = requests.post(url, json={"chat_id": chat_id, "text": text}, timeout=self.config.timeout_seconds)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Telegram notification failed: %s", exc)

    def publish_position_update(self, owner_id: str | None, positions: list[Position]) -> None:
        if not self.config.publish_live_updates or not self._should_send(f"positions:{owner_id}"):
            return
        self._post_json(
            {
                "type": "positions",
                "owner_id": owner_id,
                "positions": [_position_payload(position) for position in positions],
            }
        )

    def publish_balance_update(self, owner_id: str | None, info: AccountInfo) -> None:
        if not self.config.publish_live_updates or not self._should_send(f"balance:{owner_id}"):
            return
        self._post_json({"type": "balance", "owner_id": owner_id, "account": asdict(info)})

    def publish_trade_event(
        self,
        owner_id: str | None,
        event: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        text = _format_event(event, message, context)
        self._post_json({"type": "trade_event", "owner_id": owner_id, "event": event, "content": text})
        self._send_telegram(text)


class CompositeNotificationSink:
    def __init__(self, sinks: Iterable[NotificationSink]):
        self.sinks = list(sinks)

    def publish_position_update(self, owner_id: str | None, positions: list[Position]) -> None:
        for sink in self.sinks:
            sink.publish_position_update(owner_id, positions)

    def publish_balance_update(self, owner_id: str | None, info: AccountInfo) -> None:
        for sink in self.sinks:
            sink.publish_balance_update(owner_id, info)

    def publish_trade_event(
        self,
        owner_id: str | None,
        event: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        for sink in self.sinks:
            sink.publish_trade_event(owner_id, event, message, context)
