from __future__ import annotations

import logging
from typing import Any

from .errors import BadRequest
from .notifier import ChangeNotifier
from .rooms import RoomStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
MAX_TIMEOUT_MS = 120_000


def parse_since(since: str | None) -> int | None:
    if since is None or since == "":
        return None
    try:
        value = int(since)
    except ValueError:
        raise BadRequest(f"invalid since token {since!r}", errcode="M_INVALID_PARAM") from None
    if value < 0:
        raise BadRequest(f"invalid since token {since!r}", errcode="M_INVALID_PARAM")
    return value


def parse_timeout(timeout: str | None, default_ms: int = DEFAULT_TIMEOUT_MS, max_ms: int = MAX_TIMEOUT_MS) -> int:
    """Interpret the ``timeout`` query parameter in milliseconds.

    Missing or non-numeric values use the default, mirroring clients that send
    nothing at all. ``"0"`` stays zero and never blocks.
    """

    if timeout is None:
        return default_ms
    try:
        value = int(timeout)
    except ValueError:
        return default_ms
    return max(0, min(value, max_ms))


class SyncEndpoint:
    """Incremental sync over the room store with long-poll blocking."""

    def __init__(
        self,
        store: RoomStore,
        notifier: ChangeNotifier,
        *,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_timeout_ms: int = MAX_TIMEOUT_MS,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.default_timeout_ms = default_timeout_ms
        self.max_timeout_ms = max_timeout_ms

    async def sync(self, since: str | None = None, timeout: str | None = None) -> dict[str, Any]:
        since_ts = parse_since(since)
        if since_ts is None:
            return self._response(None)

        timeout_ms = parse_timeout(timeout, self.default_timeout_ms, self.max_timeout_ms)
        # Register before checking so an append between the check and the
        # await still wakes this request.
        waiter = self.notifier.wait()
        if timeout_ms > 0 and not self.store.has_events_since(since_ts):
            if await self.notifier.wait_for_change(timeout_ms / 1000, waiter):
                logger.debug("sync since=%s woken by change", since_ts)
            else:
                logger.debug("sync since=%s timed out after %dms", since_ts, timeout_ms)
        else:
            waiter.cancel()
        return self._response(since_ts)

    def _response(self, since_ts: int | None) -> dict[str, Any]:
        rooms, cursor = self.store.snapshot(since_ts)
        return {
            "next_batch": str(cursor),
            "rooms": rooms,
            "presence": {"events": []},
            "account_data": {"events": []},
            "to_device": {"events": []},
            "device_lists": {"changed": [], "left": []},
        }
