from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol
import httpx

from .config import settings
from .exceptions import NotificationFailure
from .logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    async def notify(
        self, recipients: List[str], template: str, data: Dict[str, Any]
    ) -> None: ...


class LoggingNotifier:
    """Default notifier when no delivery service is configured."""

    async def notify(
        self, recipients: List[str], template: str, data: Dict[str, Any]
    ) -> None:
        logger.info("Notification {} queued for {} recipient(s)", template, len(recipients))


class WebhookNotifier:
    """Hands notifications to an external delivery service over HTTP."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url
        self._client = client

    async def notify(
        self, recipients: List[str], template: str, data: Dict[str, Any]
    ) -> None:
        payload = {"recipients": recipients, "template": template, "data": data}
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    resp = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise NotificationFailure(f"delivery failed: {exc}") from exc
        if resp.status_code >= 400:
            raise NotificationFailure(f"delivery rejected with {resp.status_code}")


def get_notifier() -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return LoggingNotifier()


async def dispatch(
    notifier: Notifier, recipients: List[str], template: str, data: Dict[str, Any]
) -> bool:
    """Fire-and-forget delivery: failures are logged and reported as False, never raised."""
    if not recipients:
        return False
    try:
        await notifier.notify(recipients, template, data)
        return True
    except Exception:
        logger.exception("Notification {} failed for {} recipient(s)", template, len(recipients))
        return False
