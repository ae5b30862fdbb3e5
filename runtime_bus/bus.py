from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .messages import MessageEnvelope

logger = logging.getLogger(__name__)

Handler = Callable[[MessageEnvelope], None]


def _iso_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class RuntimeBus:
    """In-process pub/sub bus.

    Delivery is synchronous and in subscription order. A failing subscriber is
    logged and skipped so one listener can never break a publisher.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._subscribers: Dict[str, tuple[str, Handler]] = {}
        self._topic_index: Dict[str, List[str]] = {}

    def subscribe(self, topic: str, handler: Handler) -> str:
        sub_id = str(uuid.uuid4())
        with self._lock:
            self._subscribers[sub_id] = (topic, handler)
            self._topic_index.setdefault(topic, []).append(sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        with self._lock:
            topic, _ = self._subscribers.pop(sub_id, (None, None))
            if topic and topic in self._topic_index:
                ids = self._topic_index[topic]
                if sub_id in ids:
                    ids.remove(sub_id)
                if not ids:
                    self._topic_index.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topic_index.get(topic, ()))

    def publish(
        self,
        topic: str,
        payload: Optional[Dict[str, object]],
        source: str,
    ) -> MessageEnvelope:
        envelope = MessageEnvelope(
            msg_id=str(uuid.uuid4()),
            topic=topic,
            timestamp=_iso_timestamp(),
            source=source,
            payload=dict(payload) if isinstance(payload, dict) else {},
        )
        for handler in self._copy_handlers(topic):
            try:
                handler(envelope)
            except Exception as exc:
                logger.error("runtime_bus handler error on %s: %s", topic, exc)
        return envelope

    def _copy_handlers(self, topic: str) -> list[Handler]:
        with self._lock:
            sub_ids = list(self._topic_index.get(topic, ()))
            return [self._subscribers[sid][1] for sid in sub_ids if sid in self._subscribers]
