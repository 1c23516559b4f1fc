"""Outbound notification sinks.

Delivery is outside the durability boundary of the lottery: a notifier is
called only after the selection has been committed and its failures are
logged and swallowed by :func:`dispatch_safely`.
"""

import logging
import os
from typing import Any, Mapping, Optional

import requests
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

AUTO_SELECTION_TEMPLATE = "lottery_auto_selection"


class NotificationDispatcher:
    """Interface of a fire-and-forget notification sink."""

    def notify(
        self, target_user_id: int, template_type: str, payload: Mapping[str, Any]
    ) -> None:
        raise NotImplementedError


class LoggingNotifier(NotificationDispatcher):
    """Default sink that only writes the notice to the log."""

    def notify(
        self, target_user_id: int, template_type: str, payload: Mapping[str, Any]
    ) -> None:
        logger.info(
            "Notification %s for user %s: %s", template_type, target_user_id, dict(payload)
        )


class WebhookNotifier(NotificationDispatcher):
    """POST notices as JSON to an HTTP endpoint.

    The endpoint defaults to the ``NOTIFY_WEBHOOK_URL`` environment variable.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        load_dotenv()
        endpoint = url or os.getenv("NOTIFY_WEBHOOK_URL")
        if not endpoint:
            raise ValueError("Environment variable 'NOTIFY_WEBHOOK_URL' is not set")
        self.url = endpoint
        self.timeout = (
            timeout
            if timeout is not None
            else float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10"))
        )
        self.session = session or requests.Session()

    @property
    def headers(self) -> Mapping[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    def notify(
        self, target_user_id: int, template_type: str, payload: Mapping[str, Any]
    ) -> None:
        r = self.session.request(
            method="POST",
            url=self.url,
            headers=self.headers,
            json={
                "target_user_id": target_user_id,
                "type": template_type,
                "payload": dict(payload),
            },
            timeout=self.timeout,
        )
        r.raise_for_status()


def dispatch_safely(
    notifier: Optional[NotificationDispatcher],
    target_user_id: int,
    template_type: str,
    payload: Mapping[str, Any],
) -> bool:
    """Send a notice and report whether it went out. Never raises."""

    if notifier is None:
        return False
    try:
        notifier.notify(target_user_id, template_type, payload)
    except Exception:
        logger.exception(
            "Failed to deliver %s notification to user %s", template_type, target_user_id
        )
        return False
    return True


__all__ = [
    "AUTO_SELECTION_TEMPLATE",
    "LoggingNotifier",
    "NotificationDispatcher",
    "WebhookNotifier",
    "dispatch_safely",
]
