"""In-process topic pub/sub used to chain work between workers.

Delivery is synchronous, in subscription order, at most once per subscriber.
A failing handler is logged and skipped; the publisher and the remaining
handlers never see its exception.  Handlers must not block: anything long
goes through :meth:`Conductor.spawn`.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List

from .models import BusMessage

logger = logging.getLogger(__name__)

Handler = Callable[[BusMessage], Any]

INDEX_COMPLETED = "index:completed"
INDEX_FILE_FAILED = "index:file:failed"
GRAPH_RESET = "graph:reset"
SEMANTIC_WARMUP_ENTITIES = "semantic:warmup:entities"
SEMANTIC_EMBEDDINGS_UPDATED = "semantic:embeddings:updated"


class Subscription:
    def __init__(self, bus: "KnowledgeBus", topic: str, handler: Handler) -> None:
        self.bus = bus
        self.topic = topic
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.bus._remove(self)
            self.active = False


class KnowledgeBus:
    def __init__(self, retained_messages: int = 100) -> None:
        self.retained_messages = retained_messages
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._buffers: Dict[str, Deque[BusMessage]] = {}
        self._counts: Dict[str, int] = {}
        self.handler_errors = 0

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        sub = Subscription(self, topic, handler)
        self._subscribers.setdefault(topic, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic, [])
        if sub in subs:
            subs.remove(sub)

    def publish(self, topic: str, payload: Any) -> BusMessage:
        message = BusMessage(topic=topic, payload=payload)
        buffer = self._buffers.get(topic)
        if buffer is None:
            buffer = self._buffers[topic] = deque(maxlen=self.retained_messages)
        buffer.append(message)
        self._counts[topic] = self._counts.get(topic, 0) + 1

        # Snapshot so handlers may (un)subscribe while we deliver.
        for sub in list(self._subscribers.get(topic, [])):
            if not sub.active:
                continue
            try:
                sub.handler(message)
            except Exception:
                self.handler_errors += 1
                logger.exception("Bus handler for '%s' failed", topic)
        return message

    def recent(self, topic: str, limit: int = 10) -> List[BusMessage]:
        buffer = self._buffers.get(topic)
        if not buffer:
            return []
        return list(buffer)[-limit:]

    def clear_topic(self, topic: str) -> bool:
        """Forget retained messages and counters; subscribers stay."""
        existed = topic in self._buffers or topic in self._counts
        self._buffers.pop(topic, None)
        self._counts.pop(topic, None)
        return existed

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        topics = sorted(set(self._subscribers) | set(self._counts))
        return {
            topic: {
                "subscriberCount": len(self._subscribers.get(topic, [])),
                "messageCount": self._counts.get(topic, 0),
            }
            for topic in topics
        }
