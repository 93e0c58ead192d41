"""
core/notifier.py -- Best-effort outbound event delivery (webhook sink).

Signup and login events are posted to a Discord-compatible webhook. Delivery
must never affect the latency or outcome of the request that produced the
event, so:

  - notify() only gates and submits; the HTTP POST runs on a single
    background worker thread (ThreadPoolExecutor, max_workers=1).
  - Every failure -- transport error, non-2xx response, serialization
    problem -- is logged at WARNING and swallowed. Nothing propagates to
    the caller or out of the worker.
  - Sends are throttled by their own FixedWindowRateLimiter under a single
    shared key. Over quota, the event is dropped, not queued.

An empty webhook URL disables delivery entirely.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone

import requests

from core.ratelimit import FixedWindowRateLimiter

logger = logging.getLogger("outr.notifier")

_WEBHOOK_KEY = "webhook"
_SIGNUP_COLOR = 0x00FF00
_LOGIN_COLOR = 0x0099FF
_USER_AGENT_MAX = 1024


@dataclass(frozen=True)
class NotificationEvent:
    type: str  # "signup" | "login"
    email: str
    username: str
    ip: str
    user_agent: str = ""


def build_payload(event: NotificationEvent, now: datetime | None = None) -> dict:
    """Render an event as a Discord webhook embed."""
    is_signup = event.type == "signup"
    title = "New signup" if is_signup else "Login"
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    return {
        "embeds": [
            {
                "title": f"outr.club -- {title}",
                "color": _SIGNUP_COLOR if is_signup else _LOGIN_COLOR,
                "fields": [
                    {"name": "Type", "value": event.type, "inline": True},
                    {"name": "Username", "value": event.username or "-", "inline": True},
                    {"name": "Email", "value": event.email or "-", "inline": True},
                    {"name": "IP", "value": event.ip or "-", "inline": True},
                    {"name": "User-Agent", "value": (event.user_agent or "-")[:_USER_AGENT_MAX], "inline": False},
                    {"name": "Time", "value": timestamp, "inline": False},
                ],
                "footer": {"text": "outr.club"},
            }
        ]
    }


class Notifier:
    """Fire-and-forget webhook sink with its own rate limiter.

    Usage:
        notifier = Notifier("https://discord.com/api/webhooks/...")
        notifier.notify(NotificationEvent(type="signup", email=..., username=..., ip=...))
        notifier.close()
    """

    def __init__(
        self,
        webhook_url: str,
        limiter: FixedWindowRateLimiter | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.limiter = limiter or FixedWindowRateLimiter()
        self.timeout = timeout
        # Module-local session for connection pooling. Redirects are not
        # expected from a webhook endpoint; keep the chain short.
        self._session = session or requests.Session()
        self._session.max_redirects = 3
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="outr-notifier")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def notify(self, event: NotificationEvent) -> None:
        """Submit an event for background delivery. Never raises, never blocks on I/O."""
        if not self.enabled:
            return
        try:
            if not self.limiter.hit(_WEBHOOK_KEY).allowed:
                logger.debug("Webhook throttled; dropping %s event", event.type)
                return
            self._executor.submit(self._deliver, event)
        except Exception as e:  # executor already shut down, limiter bug, ...
            logger.warning("Could not dispatch %s notification: %s", event.type, e)

    def _deliver(self, event: NotificationEvent) -> None:
        try:
            resp = self._session.post(self.webhook_url, json=build_payload(event), timeout=self.timeout)
            if not resp.ok:
                logger.warning("Webhook delivery failed: %s %s", resp.status_code, resp.text[:200])
        except requests.RequestException as e:
            logger.warning("Webhook delivery error: %s", e)
        except Exception:
            logger.exception("Unexpected error delivering %s notification", event.type)

    def close(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self._session.close()
