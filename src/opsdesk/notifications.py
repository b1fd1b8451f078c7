# notifications.py
# Best-effort side tasks triggered by operations (customer emails, staff
# notifications). Delivery runs on a background pool and every failure is
# logged and dropped: a side task never changes an operation's Outcome.

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class Notifier:
    """
    Posts JSON payloads to the configured email / notification webhooks.

    A webhook left unset turns that channel into a logged no-op.
    """

    def __init__(
        self,
        email_webhook_url: str | None = None,
        notify_webhook_url: str | None = None,
        timeout: float = 10.0,
        max_workers: int = 2,
    ) -> None:
        self._email_url = email_webhook_url
        self._notify_url = notify_webhook_url
        self._timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="opsdesk-notify")

    # ------------------------------------------------------------------
    # Public channels
    # ------------------------------------------------------------------

    def send_email(self, to: str, subject: str, body: str) -> Future | None:
        if not to:
            logger.warning("Email %r skipped: no recipient", subject)
            return None
        payload = {"to": to, "subject": subject, "body": body}
        return self._dispatch("email", self._email_url, payload)

    def notify(self, user_id: int, title: str, body: str) -> Future | None:
        payload = {"user_id": user_id, "title": title, "body": body}
        return self._dispatch("notification", self._notify_url, payload)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _dispatch(self, channel: str, url: str | None, payload: dict[str, Any]) -> Future | None:
        if not url:
            logger.info("No %s webhook configured; dropping %s", channel, payload.get("subject") or payload.get("title"))
            return None
        try:
            return self._pool.submit(self._post, channel, url, payload)
        except RuntimeError:
            logger.exception("Could not schedule %s delivery", channel)
            return None

    def _post(self, channel: str, url: str, payload: dict[str, Any]) -> bool:
        try:
            response = httpx.post(url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("%s delivery to %s failed: %s", channel.capitalize(), url, exc)
            return False
        logger.info("%s delivered (%d)", channel.capitalize(), response.status_code)
        return True
