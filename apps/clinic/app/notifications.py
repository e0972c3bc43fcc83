from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

import httpx
import redis

from . import config

_log = logging.getLogger("clinic.notify")

REDIS_CHANNEL = "notifications:clinic"
BACKENDS = ("log", "http", "redis")


def queue_topic(doctor_id: str, dispensary_id: str) -> str:
    return f"queue_{dispensary_id}_{doctor_id}"


class NotificationDispatcher:
    """
    Fire-and-forget delivery of booking notifications.

    ``log`` writes a structured line, ``http`` POSTs to the notification
    service, ``redis`` publishes on a Pub/Sub channel. Delivery errors are
    logged and never reach the caller; a booking is already committed when
    its notification goes out.
    """

    def __init__(
        self,
        backend: str = "log",
        base_url: str = "",
        redis_url: str = "",
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
        redis_client: Any = None,
    ) -> None:
        backend = (backend or "log").lower()
        if backend not in BACKENDS:
            _log.warning("notify: unknown backend %r, using log", backend)
            backend = "log"
        if backend == "http" and not base_url and client is None:
            _log.warning("notify: http backend without NOTIFY_BASE_URL, using log")
            backend = "log"
        self.backend = backend
        self._base_url = base_url.rstrip("/")
        self._redis_url = redis_url
        self._timeout = timeout
        self._client = client
        self._redis = redis_client

    def _http_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self._timeout,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
            )
        return self._client

    def _redis_client(self):
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url)
        return self._redis

    def send(self, recipient: str, template: str, data: Dict[str, Any]) -> bool:
        payload = {
            "recipient": recipient,
            "template": template,
            "data": data,
            "ts_ms": int(time.time() * 1000),
        }
        try:
            if self.backend == "http":
                r = self._http_client().post(f"{self._base_url}/notify", json=payload)
                r.raise_for_status()
            elif self.backend == "redis":
                self._redis_client().publish(REDIS_CHANNEL, json.dumps(payload, default=str))
            else:
                _log.info("notification", extra={"recipient": recipient, "template": template})
            return True
        except Exception:
            _log.warning(
                "notify: delivery failed",
                exc_info=True,
                extra={"recipient": recipient, "template": template},
            )
            return False


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(
            backend=config.NOTIFY_BACKEND,
            base_url=config.NOTIFY_BASE_URL,
            redis_url=config.NOTIFY_REDIS_URL,
            timeout=config.NOTIFY_TIMEOUT_SECS,
        )
    return _dispatcher
