from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict

MEMBER_EVENT = "m.room.member"
CREATE_EVENT = "m.room.create"
NAME_EVENT = "m.room.name"


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_event_id() -> str:
    return f"${uuid.uuid4()}"


@dataclass(frozen=True)
class Event:
    """An immutable room event.

    ``state_key`` is ``None`` for timeline events. State events always carry a
    string key, which is empty for room-level state such as the room name.
    """

    type: str
    content: Dict[str, Any]
    sender: str
    room_id: str
    origin_server_ts: int
    event_id: str = field(default_factory=new_event_id)
    state_key: str | None = None

    @property
    def is_state(self) -> bool:
        return self.state_key is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "content": dict(self.content),
            "sender": self.sender,
            "room_id": self.room_id,
            "origin_server_ts": self.origin_server_ts,
            "event_id": self.event_id,
        }
        if self.state_key is not None:
            data["state_key"] = self.state_key
        return data
