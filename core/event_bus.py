"""EventBus — asyncio.Queue fan-out for authorizer audit events.

The bus only carries the authorizer's audit topics.  Publishing or
subscribing to anything else is a programming error and raises
``ValueError`` instead of silently creating a dead topic.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable
from uuid import uuid4

import structlog

from config.settings import settings

logger = structlog.get_logger("core.event_bus")

TOPIC_EXECUTED = "metatx.executed"
TOPIC_REJECTED = "metatx.rejected"
AUDIT_TOPICS = frozenset({TOPIC_EXECUTED, TOPIC_REJECTED})


@dataclass(frozen=True, slots=True)
class Event:
    """One audit record as delivered to subscribers."""

    topic: str
    payload: dict[str, Any]
    trace_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Bounded per-subscriber fan-out of audit events.

    A slow auditor drops events (counted in ``stats``) instead of
    stalling the authorizer that publishes them.  Queue size defaults to
    ``settings.EVENT_BUS_MAXSIZE``.

    Usage::

        bus = EventBus()
        authorizer = Authorizer(owner, event_bus=bus)
        async for event in bus.subscribe(TOPIC_EXECUTED):
            archive(event.payload)
    """

    def __init__(
        self,
        maxsize: int | None = None,
        topics: Iterable[str] = AUDIT_TOPICS,
    ) -> None:
        self._maxsize = settings.EVENT_BUS_MAXSIZE if maxsize is None else maxsize
        self._allowed = frozenset(topics)
        self._subscribers: dict[str, list[asyncio.Queue[Event]]] = {}
        self._lock = asyncio.Lock()
        self._published: Counter[str] = Counter()
        self._dropped: Counter[str] = Counter()

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def allowed_topics(self) -> frozenset[str]:
        return self._allowed

    def _check_topic(self, topic: str) -> None:
        if topic not in self._allowed:
            raise ValueError(
                f"Unknown topic {topic!r}; expected one of {sorted(self._allowed)}"
            )

    # ── Publish ──────────────────────────────────────────────────

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        trace_id: str | None = None,
    ) -> Event:
        """Deliver *payload* to every subscriber of *topic* and return the event.

        Never blocks: a full subscriber queue drops the event for that
        subscriber only.
        """
        self._check_topic(topic)
        event = Event(topic=topic, payload=payload, trace_id=trace_id or str(uuid4()))

        for q in self._subscribers.get(topic, []):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                self._dropped[topic] += 1
                logger.warning(
                    "event_bus.queue_full",
                    topic=topic,
                    trace_id=event.trace_id,
                    signer=payload.get("signer"),
                )

        self._published[topic] += 1
        return event

    # ── Subscribe ────────────────────────────────────────────────

    async def subscribe(self, topic: str) -> AsyncIterator[Event]:
        """Yield events for *topic* until the consumer stops iterating."""
        self._check_topic(topic)
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._maxsize)

        async with self._lock:
            self._subscribers.setdefault(topic, []).append(queue)

        try:
            while True:
                yield await queue.get()
        finally:
            async with self._lock:
                subs = self._subscribers.get(topic, [])
                if queue in subs:
                    subs.remove(queue)
                if not subs:
                    self._subscribers.pop(topic, None)

    # ── Introspection ────────────────────────────────────────────

    @property
    def topics(self) -> list[str]:
        """Topics with at least one live subscriber."""
        return list(self._subscribers.keys())

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    @property
    def stats(self) -> dict[str, int]:
        return {
            "published": sum(self._published.values()),
            "dropped": sum(self._dropped.values()),
            "executed": self._published[TOPIC_EXECUTED],
            "rejected": self._published[TOPIC_REJECTED],
        }
