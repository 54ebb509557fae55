"""Topic-based fan-out of position and ETA events to connected clients."""

import asyncio
import logging
from collections import Counter

import orjson
import redis.asyncio as aioredis

from eta_engine.config import settings
from eta_engine.core.errors import SubscriberDeliveryFailure

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "eta:"
TOPIC_KINDS = ("route", "stop")

# Enqueued in place of data when a client is cut off for falling behind
CLOSE_SENTINEL = None


def encode_event(event_type: str, topic: str | None, payload) -> bytes:
    return orjson.dumps({"type": event_type, "topic": topic, "payload": payload})


def route_topic(route_id: str) -> str:
    return f"route:{route_id}"


def stop_topic(stop_id: str) -> str:
    return f"stop:{stop_id}"


def parse_topic(topic: str) -> tuple[str, str]:
    """Split ``route:<id>`` / ``stop:<id>`` into (kind, id)."""
    kind, sep, ident = topic.partition(":")
    if not sep or kind not in TOPIC_KINDS or not ident:
        raise ValueError(f"Invalid topic {topic!r}: expected route:<id> or stop:<id>")
    return kind, ident


class Broadcaster:
    """Maintains client subscriptions and delivers events to their queues.

    Each topic maps to a frozenset of client IDs that is replaced on every
    subscribe/unsubscribe, so publishing never takes a lock.
    """

    def __init__(self, queue_size: int | None = None) -> None:
        self._redis: aioredis.Redis | None = None
        self._queue_size = queue_size or settings.subscriber_queue_size
        self._queues: dict[str, asyncio.Queue] = {}
        self._topics: dict[str, frozenset[str]] = {}
        self._client_topics: dict[str, set[str]] = {}
        self.published = 0
        self.delivery_failures: Counter[str] = Counter()

    async def connect(self) -> None:
        self._redis = aioredis.from_url(settings.redis_url, decode_responses=False)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    def register(self, client_id: str) -> asyncio.Queue:
        """Create the outgoing queue for a newly connected client."""
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues[client_id] = q
        self._client_topics[client_id] = set()
        return q

    def disconnect(self, client_id: str) -> None:
        for topic in list(self._client_topics.get(client_id, ())):
            self.unsubscribe(client_id, topic)
        self._client_topics.pop(client_id, None)
        self._queues.pop(client_id, None)

    def subscribe(self, client_id: str, topic: str) -> None:
        parse_topic(topic)
        if client_id not in self._queues:
            raise KeyError(f"Client {client_id} is not registered")
        self._topics[topic] = self._topics.get(topic, frozenset()) | {client_id}
        self._client_topics[client_id].add(topic)

    def unsubscribe(self, client_id: str, topic: str) -> None:
        members = self._topics.get(topic)
        if members and client_id in members:
            remaining = members - {client_id}
            if remaining:
                self._topics[topic] = remaining
            else:
                del self._topics[topic]
        topics = self._client_topics.get(client_id)
        if topics is not None:
            topics.discard(topic)

    def subscriptions(self, client_id: str) -> set[str]:
        return set(self._client_topics.get(client_id, ()))

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    async def publish(self, topic: str, event_type: str, payload: dict) -> int:
        """Deliver an event to every client subscribed to ``topic``.

        Returns the number of clients the event was queued for.
        """
        data = encode_event(event_type, topic, payload)
        self.published += 1

        if self._redis:
            try:
                await self._redis.publish(CHANNEL_PREFIX + topic, data)
            except Exception:
                logger.exception("Failed to publish %s to Redis", topic)

        delivered = 0
        for client_id in self._topics.get(topic, frozenset()):
            try:
                self._deliver(client_id, topic, data)
                delivered += 1
            except SubscriberDeliveryFailure as e:
                self.delivery_failures[topic] += 1
                logger.warning("%s; disconnecting slow client", e)
                self._cut_off(client_id)
        return delivered

    def send(self, client_id: str, event_type: str, topic: str | None, payload) -> bool:
        """Queue an event for one client only, behind anything already queued for it."""
        try:
            self._deliver(client_id, topic or "", encode_event(event_type, topic, payload))
        except SubscriberDeliveryFailure as e:
            self.delivery_failures[topic or ""] += 1
            logger.warning("%s; disconnecting slow client", e)
            self._cut_off(client_id)
            return False
        return True

    def _deliver(self, client_id: str, topic: str, data: bytes) -> None:
        q = self._queues.get(client_id)
        if q is None:
            raise SubscriberDeliveryFailure(client_id, topic)
        try:
            q.put_nowait(data)
        except asyncio.QueueFull:
            raise SubscriberDeliveryFailure(client_id, topic) from None

    def _cut_off(self, client_id: str) -> None:
        """Drop a client that cannot keep up and tell its transport to close."""
        q = self._queues.get(client_id)
        self.disconnect(client_id)
        if q is None:
            return
        while not q.empty():
            q.get_nowait()
        q.put_nowait(CLOSE_SENTINEL)

    def stats(self) -> dict:
        return {
            "clients": len(self._queues),
            "topics": {t: len(m) for t, m in self._topics.items()},
            "published": self.published,
            "delivery_failures": dict(self.delivery_failures),
        }
