import redis.asyncio as redis
from typing import Any, Dict, List, Optional, Protocol
from pydantic import BaseModel, Field
from datetime import datetime
import logging

from config.settings import settings
from helpdesk_ai.models.schemas import utc_now

logger = logging.getLogger(__name__)

CLASSIFICATION_COMPLETED = "classification.completed"
DRAFT_READY = "draft.ready"
DRAFT_STATUS_CHANGED = "draft.status_changed"


class Event(BaseModel):
    name: str
    account_id: str
    conversation_id: str
    recipient_id: Optional[str] = None
    payload: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)


class EventTransport(Protocol):
    async def send(self, event: Event) -> None: ...


class InMemoryTransport:
    """Collects events in a list; used in development and tests"""

    def __init__(self):
        self.events: List[Event] = []

    async def send(self, event: Event) -> None:
        self.events.append(event)

    def named(self, name: str) -> List[Event]:
        return [e for e in self.events if e.name == name]


class RedisTransport:
    """Publishes events as JSON on a Redis pub/sub channel"""

    def __init__(self,
                 redis_url: Optional[str] = None,
                 channel: Optional[str] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.channel = channel or settings.NOTIFICATION_CHANNEL
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        self.client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True
        )

    async def send(self, event: Event) -> None:
        if not self.client:
            await self.connect()
        await self.client.publish(self.channel, event.model_dump_json())

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()


class NotificationService:
    """
    Fire-and-forget event publishing.

    Delivery failures are logged and swallowed: a broken broadcast channel
    must never fail the classification or draft that produced the event.
    """

    def __init__(self, transport: EventTransport):
        self.transport = transport

    async def publish(self,
                      name: str,
                      account_id: str,
                      conversation_id: str,
                      payload: Dict[str, Any],
                      recipient_id: Optional[str] = None) -> bool:
        event = Event(
            name=name,
            account_id=account_id,
            conversation_id=conversation_id,
            recipient_id=recipient_id,
            payload=payload
        )
        try:
            await self.transport.send(event)
            logger.debug("Published %s for conversation %s",
                         name, conversation_id)
            return True
        except Exception:
            logger.warning("Failed to publish %s for conversation %s",
                           name, conversation_id, exc_info=True)
            return False
