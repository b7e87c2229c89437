"""
Topic bus for domain events — Redis pub/sub.

The channel name is the event topic (``batch.fefo.update``,
``threshold.critical.low_stock`` ...), so consumers can PSUBSCRIBE to
families such as ``batch.expiry.*``. Payloads are the JSON form of the
models in events.models.
"""

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.errors import TransientStoreError
from events.models import DomainEvent

logger = structlog.get_logger()


class EventBus:
    """Publishing contract used by the engines."""

    async def publish(self, event: DomainEvent) -> int:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class RedisEventBus(EventBus):
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisEventBus":
        return cls(aioredis.from_url(redis_url))

    async def publish(self, event: DomainEvent) -> int:
        """Publish an event on its topic. Returns the number of subscribers reached."""
        try:
            subscribers = await self.redis.publish(event.topic, event.model_dump_json())
        except RedisError as exc:
            raise TransientStoreError(f"Event bus unavailable publishing {event.topic}") from exc
        logger.debug("events.published", topic=event.topic, event_id=event.event_id, subscribers=subscribers)
        return subscribers

    async def aclose(self) -> None:
        await self.redis.aclose()


async def publish_quietly(bus: EventBus, event: DomainEvent) -> bool:
    """
    Publish an event whose underlying state change is already committed.

    The committed state is the durable fact, so a bus failure here is logged
    and reported as False rather than raised.
    """
    try:
        await bus.publish(event)
    except TransientStoreError as exc:
        logger.error(
            "events.publish_failed",
            topic=event.topic,
            event_id=event.event_id,
            tenant_id=str(event.tenant_id),
            error=str(exc),
        )
        return False
    return True
