from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(slots=True)
class MessageEnvelope:
    """Envelope handed to every bus subscriber."""

    msg_id: str
    topic: str
    timestamp: str
    source: str
    payload: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "msg_id": self.msg_id,
            "topic": self.topic,
            "timestamp": self.timestamp,
            "source": self.source,
            "payload": dict(self.payload),
        }
