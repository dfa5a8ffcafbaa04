"""Best-effort realtime notifications over Supabase Realtime broadcast.

Channels are identity-scoped:
- wallet:{user_id}    → the purchaser's devices
- kitchen:{vendor_id} → the dining vendor's kitchen display

Publishing never fails the caller: delivery errors are logged and dropped.
Clients refetch state on reconnect, so a lost message only delays a refresh.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx

from resort_api.supabase_client import get_supabase_secret_key, get_supabase_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    topic: str
    event: str
    entity_id: str
    type: str

    def to_message(self) -> dict:
        return {
            "topic": self.topic,
            "event": self.event,
            "payload": {"type": self.type, "entityId": self.entity_id},
        }


def wallet_topic(user_id: str) -> str:
    return f"wallet:{user_id}"


def kitchen_topic(vendor_id: str) -> str:
    return f"kitchen:{vendor_id}"


class NotificationBroadcaster:
    """Publish broadcast messages via POST {SUPABASE_URL}/realtime/v1/api/broadcast."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = (base_url or get_supabase_url()).rstrip("/")
        self.api_key = api_key or get_supabase_secret_key()

    async def publish(self, notifications: Iterable[Notification]) -> None:
        messages = [n.to_message() for n in notifications]
        if not messages:
            return

        url = f"{self.base_url}/realtime/v1/api/broadcast"
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    url, headers=headers, json={"messages": messages}, timeout=10.0
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "NOTIFICATION_BROADCAST_FAILED",
                extra={
                    "topics": [m["topic"] for m in messages],
                    "error_type": type(e).__name__,
                },
            )
            return

        logger.info(
            "NOTIFICATION_BROADCAST_SENT",
            extra={"topics": [m["topic"] for m in messages]},
        )


# Global broadcaster instance (singleton)
_broadcaster: Optional[NotificationBroadcaster] = None


def get_broadcaster() -> NotificationBroadcaster:
    """Get global broadcaster instance (singleton).

    Raises:
        RuntimeError: If Supabase configuration is missing
    """
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = NotificationBroadcaster()
    return _broadcaster


async def broadcast(notifications: Iterable[Notification]) -> None:
    """Publish with the global broadcaster; missing Supabase config is logged, not raised."""
    notifications = tuple(notifications)
    if not notifications:
        return
    try:
        broadcaster = get_broadcaster()
    except RuntimeError:
        logger.warning(
            "NOTIFICATION_BROADCASTER_UNCONFIGURED",
            extra={"topics": [n.topic for n in notifications]},
        )
        return
    await broadcaster.publish(notifications)
