from enum import Enum
from dataclasses import dataclass
from datetime import datetime
import json


class EventType(str, Enum):
    # Record changes. Signals only, observers re-read the mix.
    MIX_CHANGED = "mix.changed"
    ROSTER_CHANGED = "roster.changed"

    # Stream control
    CONNECTED = "stream.connected"


@dataclass
class Event:
    """
    A change signal for one mix.

    Deliberately carries no mix state: the record store is the only source
    of truth, so consumers react by re-reading the mix.
    """
    type: EventType
    mix_id: str
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "mix_id": self.mix_id,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            mix_id=data["mix_id"],
            timestamp=data.get("timestamp"),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def mix_changed_event(mix_id: str) -> Event:
    return Event(type=EventType.MIX_CHANGED, mix_id=mix_id)


def roster_changed_event(mix_id: str) -> Event:
    return Event(type=EventType.ROSTER_CHANGED, mix_id=mix_id)


def mix_channel(mix_id: str) -> str:
    return f"mix:{mix_id}:changes"
