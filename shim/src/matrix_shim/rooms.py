from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

from .errors import BadRequest, RoomNotFound
from .events import CREATE_EVENT, MEMBER_EVENT, NAME_EVENT, Event, _now_ms

FORWARD = "f"
BACKWARD = "b"


@dataclass
class Room:
    room_id: str
    # Insertion-ordered; replacing a key keeps its original slot.
    state: Dict[Tuple[str, str], Event] = field(default_factory=dict)
    timeline: List[Event] = field(default_factory=list)

    def latest_ts(self) -> int:
        return self.timeline[-1].origin_server_ts if self.timeline else 0

    def to_sync(self, since_ts: int | None) -> dict[str, Any]:
        if since_ts is None:
            events = self.timeline
        else:
            events = [event for event in self.timeline if event.origin_server_ts > since_ts]
        return {
            "ephemeral": {"events": []},
            "account_data": {"events": []},
            "state": {"events": [event.to_dict() for event in self.state.values()]},
            "timeline": {
                "events": [event.to_dict() for event in events],
                "prev_batch": "0",
                "limited": False,
            },
            "unread_notifications": {"notification_count": 0, "highlight_count": 0},
            "summary": {"m.heroes": []},
        }


class RoomStore:
    """In-memory room state and timelines shared by every request.

    Timeline timestamps are assigned here and are strictly increasing per
    room. They are also kept above every sync cursor already handed out, so a
    client polling with ``since=<cursor>`` can never miss an event appended in
    the same millisecond the cursor was issued.
    """

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._rooms: Dict[str, Room] = {}
        self._cursor_floor = 0
        self.lock = threading.Lock()

    @classmethod
    def with_default_room(
        cls,
        room_id: str,
        creator: str,
        name: str,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> "RoomStore":
        store = cls(now_func=now_func)
        store.create_room(room_id)
        store.put_state_event(room_id, CREATE_EVENT, "", {"creator": creator, "room_version": "10"}, creator)
        store.put_state_event(room_id, MEMBER_EVENT, creator, {"membership": "join"}, creator)
        store.put_state_event(room_id, NAME_EVENT, "", {"name": name}, creator)
        return store

    def create_room(self, room_id: str) -> Room:
        with self.lock:
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id)
                self._rooms[room_id] = room
            return room

    def _room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    def append_timeline_event(self, room_id: str, event_type: str, content: dict, sender: str) -> Event:
        """Append a timeline event with a server-assigned timestamp."""

        with self.lock:
            room = self._room(room_id)
            ts = max(self._now(), room.latest_ts() + 1, self._cursor_floor + 1)
            event = Event(
                type=event_type,
                content=dict(content),
                sender=sender,
                room_id=room_id,
                origin_server_ts=ts,
            )
            room.timeline.append(event)
            return event

    def put_state_event(
        self,
        room_id: str,
        event_type: str,
        state_key: str,
        content: dict,
        sender: str,
    ) -> Event:
        """Insert or replace the state entry for ``(event_type, state_key)``."""

        with self.lock:
            room = self._room(room_id)
            event = Event(
                type=event_type,
                content=dict(content),
                sender=sender,
                room_id=room_id,
                origin_server_ts=self._now(),
                state_key=state_key,
            )
            room.state[(event_type, state_key)] = event
            return event

    def list_members(self, room_id: str) -> list[Event]:
        with self.lock:
            room = self._room(room_id)
            return [event for event in room.state.values() if event.type == MEMBER_EVENT]

    def list_timeline_since(
        self,
        room_id: str,
        since_ts: int,
        direction: str = FORWARD,
        limit: int | None = None,
    ) -> list[Event]:
        """Return timeline events newer than ``since_ts``.

        Events come back in chronological order for ``"f"`` and newest first
        for ``"b"``; ``limit`` is applied after ordering.
        """

        if direction not in (FORWARD, BACKWARD):
            raise BadRequest(f"unknown direction {direction!r}", errcode="M_INVALID_PARAM")
        with self.lock:
            room = self._room(room_id)
            events = [event for event in room.timeline if event.origin_server_ts > since_ts]
        if direction == BACKWARD:
            events.reverse()
        if limit is not None:
            events = events[: max(limit, 0)]
        return events

    def has_events_since(self, since_ts: int) -> bool:
        with self.lock:
            return any(room.latest_ts() > since_ts for room in self._rooms.values())

    def issue_cursor(self) -> int:
        with self.lock:
            return self._issue_cursor_locked()

    def _issue_cursor_locked(self) -> int:
        newest = max((room.latest_ts() for room in self._rooms.values()), default=0)
        cursor = max(self._now(), newest, self._cursor_floor)
        self._cursor_floor = cursor
        return cursor

    def snapshot(self, since_ts: int | None = None) -> tuple[dict[str, Any], int]:
        """Render the sync ``rooms`` object and a cursor from one consistent view."""

        with self.lock:
            joined = {room_id: room.to_sync(since_ts) for room_id, room in self._rooms.items()}
            cursor = self._issue_cursor_locked()
        rooms = {"invite": {}, "knock": {}, "leave": {}, "join": joined}
        return rooms, cursor
