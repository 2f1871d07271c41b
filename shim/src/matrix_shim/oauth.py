"""OAuth collaborator contract and an HTTP broker client.

The shim never speaks the AT Protocol OAuth flow itself. It hands the
authorize/callback/restore steps to a broker service and only keeps the DID
that comes back.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

import aiohttp

from .errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuthSession:
    did: str


class OAuthClient(Protocol):
    async def authorize(self, provider: str, state: str) -> str: ...

    async def callback(self, params: Mapping[str, str]) -> OAuthSession: ...

    async def restore(self, provider: str) -> Optional[OAuthSession]: ...


def _session_from_payload(payload: Any) -> OAuthSession:
    if not isinstance(payload, dict) or not isinstance(payload.get("did"), str) or not payload["did"]:
        raise UpstreamError("OAuth broker reply has no did")
    return OAuthSession(did=payload["did"])


class HttpOAuthBroker:
    """Talks to an OAuth broker exposing ``/authorize``, ``/callback`` and ``/restore``."""

    def __init__(
        self,
        base_url: str,
        *,
        redirect_uri: str,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.redirect_uri = redirect_uri
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _request(self, method: str, path: str, **kwargs: Any) -> tuple[int, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with self._client().request(method, url, **kwargs) as resp:
                if resp.status == 404:
                    return resp.status, None
                if resp.status >= 400:
                    raise UpstreamError(f"OAuth broker {path} failed with HTTP {resp.status}")
                return resp.status, await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("OAuth broker %s failed: %s", path, exc)
            raise UpstreamError(f"OAuth broker {path} unreachable") from exc
        except ValueError as exc:
            raise UpstreamError(f"OAuth broker {path} returned malformed JSON") from exc

    async def authorize(self, provider: str, state: str) -> str:
        status, payload = await self._request(
            "GET",
            "/authorize",
            params={"provider": provider, "state": state, "redirect_uri": self.redirect_uri},
        )
        if status == 404 or not isinstance(payload, dict) or not isinstance(payload.get("url"), str):
            raise UpstreamError("OAuth broker did not return an authorization url")
        return payload["url"]

    async def callback(self, params: Mapping[str, str]) -> OAuthSession:
        status, payload = await self._request("POST", "/callback", json=dict(params))
        if status == 404:
            raise UpstreamError("OAuth broker does not know this authorization response")
        return _session_from_payload(payload)

    async def restore(self, provider: str) -> Optional[OAuthSession]:
        status, payload = await self._request("GET", "/restore", params={"provider": provider})
        if status == 404 or payload is None:
            return None
        return _session_from_payload(payload)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
