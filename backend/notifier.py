"""
Push notification side channel.

The pass core only needs ``notify(channel, title, body, data)``. Delivery is
best-effort: ``NotificationDispatcher`` runs notifiers off the request path
and logs failures instead of raising them.
"""
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

WARDEN_CHANNEL = "warden_alerts"
ADMIN_SOS_CHANNEL = "admin_sos_alerts"
ADMIN_GEOFENCE_CHANNEL = "admin_geofence_violations"


def parent_channel(parent_id: str) -> str:
    return f"parent_{parent_id}_alerts"


def user_channel(user) -> str:
    """Device channel when the user registered a token, else their topic."""
    if getattr(user, "fcm_token", None):
        return f"device:{user.fcm_token}"
    return f"user_{user.id}"


class Notifier:
    """Base notifier. Implementations may raise; callers never see it."""

    def notify(self, channel: str, title: str, body: str, data: Optional[Dict] = None) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes notifications to the log. Used when no push gateway is configured."""

    def notify(self, channel, title, body, data=None):
        logger.info(f"[notify] channel={channel} | {title} | {body} | data={data or {}}")


class WebhookNotifier(Notifier):
    """
    Posts notifications as JSON to a push gateway (e.g. an FCM relay).

    Payload: {"channel", "notification": {"title", "body"}, "data"}.
    ``data`` values are stringified since FCM data maps only carry strings.
    """

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def notify(self, channel, title, body, data=None):
        payload = {
            "channel": channel,
            "notification": {"title": title, "body": body},
            "data": {k: str(v) for k, v in (data or {}).items() if v is not None},
        }
        response = self.client.post(self.url, json=payload)
        response.raise_for_status()

    def close(self):
        self.client.close()


class NotificationDispatcher:
    """
    Fire-and-forget wrapper around a Notifier.

    With an executor, notifications run on worker threads. Without one they
    run inline, which keeps tests deterministic; failures are swallowed and
    logged either way.
    """

    def __init__(self, notifier: Notifier, executor: Optional[Executor] = None):
        self.notifier = notifier
        self.executor = executor

    @classmethod
    def threaded(cls, notifier: Notifier, workers: int = 4) -> "NotificationDispatcher":
        return cls(notifier, ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify"))

    def send(self, channel: str, title: str, body: str, data: Optional[Dict] = None) -> None:
        if self.executor is None:
            self._deliver(channel, title, body, data)
            return
        try:
            self.executor.submit(self._deliver, channel, title, body, data)
        except RuntimeError as e:
            # Executor already shut down
            logger.error(f"Failed to queue notification for {channel}: {e}")

    def _deliver(self, channel, title, body, data):
        try:
            self.notifier.notify(channel, title, body, data)
        except Exception as e:
            logger.error(f"Failed to notify {channel}: {e}")

    def shutdown(self):
        """Drain queued notifications, then release the notifier."""
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        self.notifier.close()
