"""
Outbound notifications for badge mints, check-ins and reward events.

Sinks are fire-and-forget: a failed delivery is logged and never reaches the
processor that triggered it.
"""

import hashlib
import hmac
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

import aiohttp
import structlog

from gmtea.utils.formatters import utc_now

logger = structlog.get_logger(__name__)

Subscriber = Callable[[str, List[str], Dict[str, Any]], Awaitable[None]]


class NotificationSink(Protocol):
    async def send(self, event_type: str, addresses: Sequence[str], payload: Dict[str, Any]) -> None: ...


class NullNotificationSink:
    """Drops every notification."""
    
    async def send(self, event_type: str, addresses: Sequence[str], payload: Dict[str, Any]) -> None:
        return None


def sign_payload(secret: str, body: str) -> str:
    """HMAC-SHA256 hex digest of a request body."""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


class WebhookNotificationSink:
    """Posts signed JSON to a webhook endpoint."""
    
    def __init__(self, url: str, secret: str = "", timeout_seconds: float = 5.0):
        self.url = url
        self.secret = secret
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.logger = logger.bind(service="webhook_notifications")
        self.sent = 0
        self.failed = 0
    
    def build_body(self, event_type: str, addresses: Sequence[str], payload: Dict[str, Any]) -> str:
        return json.dumps(
            {
                "type": event_type,
                "addresses": list(addresses),
                "data": payload,
                "timestamp": utc_now().isoformat(),
            },
            default=str,
        )
    
    async def send(self, event_type: str, addresses: Sequence[str], payload: Dict[str, Any]) -> None:
        body = self.build_body(event_type, addresses, payload)
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Signature"] = sign_payload(self.secret, body)
        
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.url, data=body, headers=headers) as response:
                    if response.status >= 400:
                        self.failed += 1
                        self.logger.warning(
                            "Webhook rejected notification",
                            event_type=event_type,
                            status=response.status
                        )
                        return
            self.sent += 1
        except Exception as e:
            self.failed += 1
            self.logger.warning("Webhook delivery failed", event_type=event_type, error=str(e))


class EventBus:
    """In-process observers, owned by whoever builds the scheduler."""
    
    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self.logger = logger.bind(service="event_bus")
    
    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)
    
    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
    
    async def send(self, event_type: str, addresses: Sequence[str], payload: Dict[str, Any]) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event_type, list(addresses), payload)
            except Exception as e:
                self.logger.warning(
                    "Notification subscriber failed",
                    event_type=event_type,
                    subscriber=getattr(subscriber, "__name__", repr(subscriber)),
                    error=str(e)
                )


def create_notification_sink(
    webhook_url: Optional[str],
    webhook_secret: str = "",
    timeout_seconds: float = 5.0,
) -> NotificationSink:
    if webhook_url:
        return WebhookNotificationSink(webhook_url, webhook_secret, timeout_seconds)
    return NullNotificationSink()
