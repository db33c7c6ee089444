from __future__ import annotations

import logging
from typing import Optional, Protocol

import requests

from .config import NotificationsConfig

LOG = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, subject: str, detail: str) -> None:
        ...


class LogNotifier:
    """Fallback notifier used when no webhook is configured."""

    def notify(self, subject: str, detail: str) -> None:
        LOG.warning("%s: %s", subject, detail)


class SlackNotifier:
    def __init__(self, webhook_url: str, *, timeout: int = 10, session: Optional[requests.Session] = None) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._session = session or requests.Session()

    def notify(self, subject: str, detail: str) -> None:
        payload = {"text": f"*{subject}*\n{detail}"}
        try:
            response = self._session.post(self._webhook_url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOG.error("Failed to deliver Slack notification '%s': %s", subject, exc)


def build_notifier(config: NotificationsConfig) -> Notifier:
    webhook = config.resolve_slack_webhook()
    if webhook:
        return SlackNotifier(webhook)
    return LogNotifier()
