from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import aiohttp

from .errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_PLC_DIRECTORY = "https://plc.directory"
HANDLE_PREFIX = "at://"


def handle_from_document(document: Any) -> str:
    """Extract the primary handle from a DID document's ``alsoKnownAs``."""

    if not isinstance(document, dict):
        raise UpstreamError("DID document is not an object")
    aliases = document.get("alsoKnownAs")
    if not isinstance(aliases, list) or not aliases or not isinstance(aliases[0], str):
        raise UpstreamError("DID document has no alsoKnownAs handle")
    alias = aliases[0]
    if not alias.startswith(HANDLE_PREFIX) or len(alias) == len(HANDLE_PREFIX):
        raise UpstreamError(f"unexpected handle alias {alias!r}")
    return alias[len(HANDLE_PREFIX) :]


class DirectoryResolver:
    """Resolves DIDs to handles through a PLC directory."""

    def __init__(
        self,
        base_url: str = DEFAULT_PLC_DIRECTORY,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def resolve_handle(self, did: str) -> str:
        url = f"{self.base_url}/{quote(did, safe=':')}"
        try:
            async with self._client().get(url) as resp:
                if resp.status != 200:
                    raise UpstreamError(f"directory lookup for {did} failed with HTTP {resp.status}")
                document = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("directory lookup for %s failed: %s", did, exc)
            raise UpstreamError(f"directory lookup for {did} failed") from exc
        except ValueError as exc:
            raise UpstreamError(f"directory returned malformed JSON for {did}") from exc
        return handle_from_document(document)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
