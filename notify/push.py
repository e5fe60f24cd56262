"""
notify/push.py -- Best-effort push notifications through an HTTP gateway.

send_push_notification() only enqueues: delivery runs on a small thread pool
so the caller (e.g. sign-in) never waits on the gateway. Delivery failures
are logged and dropped -- push is a courtesy, not part of any auth outcome.

Dev mode: with no PUSH_GATEWAY_URL the notification is logged only.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

import requests

logger = logging.getLogger("campus.notify.push")


@dataclass
class PushMessage:
    title: str
    message: str


class PushNotifier:
    def __init__(self, gateway_url: str = "", api_key: str = "", timeout: float = 5.0, max_workers: int = 2) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="push")

    def send_push_notification(self, user_id: str, message: PushMessage) -> Future:
        """Queue a notification for user_id and return immediately."""
        return self._executor.submit(self._deliver, user_id, message)

    def _deliver(self, user_id: str, message: PushMessage) -> bool:
        if not self.gateway_url:
            logger.info("Push (dev mode, not sent) user=%s title=%r", user_id, message.title)
            return True
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = self._session.post(
                self.gateway_url,
                json={"user_id": user_id, "title": message.title, "body": message.message},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Push delivery failed user=%s: %s", user_id, exc)
            return False
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._session.close()
