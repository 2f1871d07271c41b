from __future__ import annotations

from typing import Any


class ShimError(Exception):
    """Base error rendered to clients as a Matrix error body."""

    status = 500
    errcode = "M_UNKNOWN"

    def __init__(self, message: str, *, errcode: str | None = None, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        if errcode is not None:
            self.errcode = errcode
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"errcode": self.errcode, "error": self.message}
        body.update(self.extra)
        return body


class BadRequest(ShimError):
    status = 400
    errcode = "M_BAD_JSON"


class Unauthenticated(ShimError):
    """No usable session; the client must log in again rather than retry."""

    status = 401
    errcode = "M_UNKNOWN_TOKEN"

    def __init__(self, message: str = "AtProto session expired") -> None:
        super().__init__(message, soft_logout=True)


class Forbidden(ShimError):
    status = 403
    errcode = "M_FORBIDDEN"


class NotFound(ShimError):
    status = 404
    errcode = "M_NOT_FOUND"


class RoomNotFound(NotFound):
    def __init__(self, room_id: str) -> None:
        super().__init__(f"unknown room {room_id}")
        self.room_id = room_id


class UpstreamError(ShimError):
    """An external identity or directory service returned something unusable."""

    status = 502
    errcode = "M_UNKNOWN"
