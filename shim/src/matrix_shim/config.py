from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping

ENV_PREFIX = "MATRIX_SHIM_"
CALLBACK_PATH = "/_matrix/custom/oauth/callback"


@dataclass
class ShimConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    public_base_url: str = "http://127.0.0.1:8080"
    room_id: str = "!OEOSqbsIkqLoDShXXD:matrix.org"
    room_name: str = "test-matrix-room"
    room_creator: str = "did:plc:ulg2bzgrgs7ddjjlmhtegk3v"
    oauth_provider: str = "https://bsky.social"
    oauth_broker_url: str = "http://127.0.0.1:8081"
    plc_directory_url: str = "https://plc.directory"
    default_sync_timeout_ms: int = 30_000
    max_sync_timeout_ms: int = 120_000
    upload_size_limit: int = 10 * 1024 * 1024
    restore_session_on_startup: bool = True

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.public_base_url.rstrip('/')}{CALLBACK_PATH}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ShimConfig":
        """Build a config from ``MATRIX_SHIM_<FIELD>`` variables."""

        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            default = f.default
            if isinstance(default, bool):
                values[f.name] = raw.strip().lower() in {"1", "true", "yes", "on"}
            elif isinstance(default, int):
                try:
                    values[f.name] = int(raw)
                except ValueError:
                    raise ValueError(f"{ENV_PREFIX}{f.name.upper()} must be an integer, got {raw!r}") from None
            else:
                values[f.name] = raw
        return cls(**values)
