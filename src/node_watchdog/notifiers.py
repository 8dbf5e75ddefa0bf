"""Notification plugins for Node Watchdog."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import requests

from .config import NotifierConfig
from .monitor import HealthSignal

REQUEST_TIMEOUT = 10


class NotificationEvent:
    """Represents a notification event."""

    RESTART = "restart"
    EXITED = "exited"
    SPAWN_FAILED = "spawn_failed"

    def __init__(
        self,
        event_type: str,
        node_name: str,
        message: str,
        signal: Optional[HealthSignal] = None,
        timestamp: Optional[datetime] = None,
    ):
        self.event_type = event_type
        self.node_name = node_name
        self.message = message
        self.signal = signal
        self.timestamp = timestamp or datetime.now()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "event_type": self.event_type,
            "node_name": self.node_name,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "signal": {
                "reason": self.signal.reason,
                "detail": self.signal.detail,
            }
            if self.signal
            else None,
        }


class BaseNotifier(ABC):
    """Base class for notification plugins."""

    def __init__(self, config: NotifierConfig):
        self.config = config

    def should_notify(self, event: NotificationEvent) -> bool:
        """Check if notification should be sent for this event."""
        if not self.config.enabled:
            return False

        if event.event_type == NotificationEvent.RESTART:
            return self.config.on_restart
        elif event.event_type == NotificationEvent.EXITED:
            return self.config.on_exit
        elif event.event_type == NotificationEvent.SPAWN_FAILED:
            return self.config.on_spawn_failure

        return True

    @abstractmethod
    def send(self, event: NotificationEvent) -> tuple[bool, str]:
        """Send notification. Returns (success, message)."""
        pass


class TelegramNotifier(BaseNotifier):
    """Telegram notification plugin."""

    def send(self, event: NotificationEvent) -> tuple[bool, str]:
        if not self.should_notify(event):
            return True, "Notification skipped (disabled for this event type)"

        if not self.config.bot_token or not self.config.chat_id:
            return False, "Telegram bot_token and chat_id required"

        text = "*Node Watchdog*\n\n"
        text += f"*Node:* `{event.node_name}`\n"
        text += f"*Event:* {event.event_type.upper()}\n"
        text += f"*Time:* {event.timestamp.strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        text += event.message

        if event.signal:
            text += f"\n\n*Reason:* {event.signal.detail}"

        try:
            response = requests.post(
                f"https://api.telegram.org/bot{self.config.bot_token}/sendMessage",
                data={
                    "chat_id": self.config.chat_id,
                    "text": text,
                    "parse_mode": "Markdown",
                },
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            return True, "Telegram notification sent"
        except requests.RequestException as e:
            return False, f"Telegram error: {e}"


class SlackNotifier(BaseNotifier):
    """Slack notification plugin."""

    def send(self, event: NotificationEvent) -> tuple[bool, str]:
        if not self.should_notify(event):
            return True, "Notification skipped (disabled for this event type)"

        if not self.config.webhook_url:
            return False, "Slack webhook_url required"

        color_map = {
            NotificationEvent.RESTART: "warning",
            NotificationEvent.EXITED: "warning",
            NotificationEvent.SPAWN_FAILED: "danger",
        }

        attachment = {
            "color": color_map.get(event.event_type, "#808080"),
            "title": f"Node Watchdog: {event.node_name}",
            "text": event.message,
            "fields": [
                {"title": "Event", "value": event.event_type.upper(), "short": True},
                {
                    "title": "Time",
                    "value": event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                    "short": True,
                },
            ],
            "footer": "Node Watchdog",
        }
        if event.signal:
            attachment["fields"].append(
                {"title": "Reason", "value": event.signal.detail, "short": False}
            )

        try:
            response = requests.post(
                self.config.webhook_url,
                json={"attachments": [attachment]},
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            return True, "Slack notification sent"
        except requests.RequestException as e:
            return False, f"Slack error: {e}"


class WebhookNotifier(BaseNotifier):
    """Generic webhook notification plugin."""

    def send(self, event: NotificationEvent) -> tuple[bool, str]:
        if not self.should_notify(event):
            return True, "Notification skipped (disabled for this event type)"

        if not self.config.url:
            return False, "Webhook url required"

        try:
            response = requests.request(
                method=self.config.method,
                url=self.config.url,
                json=event.to_dict(),
                headers=self.config.headers,
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            return True, f"Webhook notification sent ({response.status_code})"
        except requests.RequestException as e:
            return False, f"Webhook error: {e}"


class NotifierFactory:
    """Factory for creating notifier instances."""

    _notifiers = {
        "telegram": TelegramNotifier,
        "slack": SlackNotifier,
        "webhook": WebhookNotifier,
    }

    @classmethod
    def create(cls, config: NotifierConfig) -> BaseNotifier:
        """Create a notifier instance from config."""
        notifier_class = cls._notifiers.get(config.type.lower())
        if not notifier_class:
            raise ValueError(f"Unknown notifier type: {config.type}")
        return notifier_class(config)

    @classmethod
    def register(cls, name: str, notifier_class: type):
        """Register a custom notifier type."""
        cls._notifiers[name.lower()] = notifier_class
