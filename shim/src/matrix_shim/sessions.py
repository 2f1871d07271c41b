from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, replace
from typing import Callable

from .errors import Forbidden, Unauthenticated
from .events import _now_ms

logger = logging.getLogger(__name__)

TOKEN_LOGIN = "m.login.token"
LOGIN_STATE_TTL_MS = 10 * 60 * 1000
MAX_PENDING_LOGINS = 64


@dataclass(frozen=True)
class Session:
    user_id: str
    handle: str
    login_token: str
    created_at_ms: int
    access_token: str | None = None
    device_id: str | None = None


class SessionState:
    """Holds the single active session; each new login replaces the last."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._session: Session | None = None
        # state -> (redirect url, created at), oldest first
        self._pending_redirects: dict[str, tuple[str, int]] = {}
        self._lock = threading.Lock()

    @property
    def current(self) -> Session | None:
        return self._session

    @property
    def pending_logins(self) -> int:
        return len(self._pending_redirects)

    def begin_login(self, redirect_url: str) -> str:
        """Remember where to send the client after the OAuth round trip.

        States expire after ``LOGIN_STATE_TTL_MS`` and at most
        ``MAX_PENDING_LOGINS`` are kept; the oldest is dropped first.
        """

        state = secrets.token_urlsafe(16)
        now = self._now()
        with self._lock:
            self._drop_expired(now)
            while len(self._pending_redirects) >= MAX_PENDING_LOGINS:
                dropped = next(iter(self._pending_redirects))
                del self._pending_redirects[dropped]
                logger.debug("dropped oldest pending login state")
            self._pending_redirects[state] = (redirect_url, now)
        return state

    def take_redirect(self, state: str | None) -> str | None:
        if state is None:
            return None
        with self._lock:
            self._drop_expired(self._now())
            entry = self._pending_redirects.pop(state, None)
        return entry[0] if entry is not None else None

    def _drop_expired(self, now: int) -> None:
        expired = [
            state
            for state, (_, created_ms) in self._pending_redirects.items()
            if now - created_ms >= LOGIN_STATE_TTL_MS
        ]
        for state in expired:
            del self._pending_redirects[state]
        if expired:
            logger.debug("expired %d pending login state(s)", len(expired))

    def establish(self, user_id: str, handle: str) -> Session:
        session = Session(
            user_id=user_id,
            handle=handle,
            login_token=f"lt_{secrets.token_urlsafe(16)}",
            created_at_ms=self._now(),
        )
        with self._lock:
            self._session = session
        logger.info("session established for %s (%s)", user_id, handle)
        return session

    def login(self, login_type: str | None, token: str | None, device_id: str | None = None) -> Session:
        """Exchange the login token from the SSO redirect for a bearer token."""

        with self._lock:
            session = self._session
            if session is None:
                raise Forbidden("no AtProto session; complete SSO login first")
            if login_type != TOKEN_LOGIN:
                raise Forbidden(f"unsupported login type {login_type!r}")
            if not token or not secrets.compare_digest(token, session.login_token):
                raise Forbidden("invalid login token")
            session = replace(
                session,
                access_token=f"syt_{secrets.token_urlsafe(24)}",
                device_id=device_id or session.device_id or secrets.token_hex(5).upper(),
            )
            self._session = session
        return session

    def authenticate(self, access_token: str | None) -> Session:
        """Return the session a request may act as, or raise soft logout.

        Requests without a token are allowed as long as a session exists; a
        token that does not match the minted one is rejected.
        """

        session = self._session
        if session is None:
            raise Unauthenticated()
        if (
            access_token is not None
            and session.access_token is not None
            and not secrets.compare_digest(access_token, session.access_token)
        ):
            raise Unauthenticated("unknown access token")
        return session
