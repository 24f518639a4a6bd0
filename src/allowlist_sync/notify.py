"""Operator notifications for IP changes and failed cleanup."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import requests

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def notify(self, summary: str, body: str, urgent: bool = False) -> None:
        pass


class NullNotifier(Notifier):
    def notify(self, summary: str, body: str, urgent: bool = False) -> None:
        logger.debug(f"Notification suppressed: {summary} - {body}")


class WebhookNotifier(Notifier):
    """Posts notifications as JSON to a webhook URL.

    Delivery is best-effort: failures are logged, never raised.
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self._url = url
        self._timeout = timeout_seconds
        self._session = requests.Session()

    def notify(self, summary: str, body: str, urgent: bool = False) -> None:
        data = {
            "summary": summary,
            "body": body,
            "urgency": "critical" if urgent else "low",
        }
        try:
            response = self._session.post(self._url, json=data, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Failed to send notification '{summary}': {e}")


def create_notifier(url: str) -> Notifier:
    return WebhookNotifier(url) if url else NullNotifier()
