"""Matrix shim CLI: serve the HTTP API or replay frames through the room store."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Iterable, TextIO

from aiohttp import web

from .config import ShimConfig
from .events import _now_ms
from .http_api import create_app
from .rooms import FORWARD, RoomStore
from .sync import parse_since

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class _FrameClock:
    """Wall clock that frames may pin with an explicit ``now`` field."""

    def __init__(self) -> None:
        self.pinned: int | None = None

    def __call__(self) -> int:
        return self.pinned if self.pinned is not None else _now_ms()


def simulate(frames: Iterable[dict], output: TextIO, config: ShimConfig | None = None) -> None:
    """Process JSON frames through a fresh room store and emit results."""

    config = config or ShimConfig()
    clock = _FrameClock()
    store = RoomStore.with_default_room(config.room_id, config.room_creator, config.room_name, now_func=clock)

    def emit(message: dict) -> None:
        output.write(json.dumps(message) + "\n")

    for frame in frames:
        if "now" in frame:
            clock.pinned = int(frame["now"])
        frame_type = frame.get("t")
        room_id = frame.get("room_id", config.room_id)
        if frame_type == "send":
            event = store.append_timeline_event(
                room_id,
                frame.get("type", "m.room.message"),
                frame.get("content") or {},
                frame.get("sender", config.room_creator),
            )
            emit({"t": "sent", "event_id": event.event_id, "origin_server_ts": event.origin_server_ts})
        elif frame_type == "sync":
            since = frame.get("since")
            rooms, cursor = store.snapshot(parse_since(None if since is None else str(since)))
            timeline = rooms["join"].get(room_id, {}).get("timeline", {}).get("events", [])
            emit(
                {
                    "t": "sync",
                    "next_batch": str(cursor),
                    "timeline": [event["origin_server_ts"] for event in timeline],
                }
            )
        elif frame_type == "messages":
            events = store.list_timeline_since(room_id, int(frame.get("since", 0)), frame.get("dir", FORWARD))
            emit({"t": "messages", "chunk": [event.origin_server_ts for event in events]})
        elif frame_type == "members":
            emit({"t": "members", "members": [event.state_key for event in store.list_members(room_id)]})
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _config_from_args(args: argparse.Namespace) -> ShimConfig:
    config = ShimConfig.from_env()
    for name in (
        "host",
        "port",
        "public_base_url",
        "room_id",
        "oauth_broker_url",
        "plc_directory_url",
        "default_sync_timeout_ms",
    ):
        value = getattr(args, name, None)
        if value is not None:
            setattr(config, name, value)
    return config


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, _config_from_args(args))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    app = create_app(config)
    logging.getLogger(__name__).info("serving room %s on %s:%d", config.room_id, config.host, config.port)
    # Client disconnects must cancel blocked long-poll handlers.
    web.run_app(app, host=config.host, port=config.port, handler_cancellation=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Matrix client API shim backed by AT Protocol OAuth")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp shim server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--public-base-url", default=None, help="Externally visible base URL")
    serve_parser.add_argument("--room-id", default=None, help="Identifier of the single served room")
    serve_parser.add_argument("--oauth-broker-url", default=None, help="Base URL of the OAuth broker service")
    serve_parser.add_argument("--plc-directory-url", default=None, help="PLC directory used for handle lookups")
    serve_parser.add_argument(
        "--default-sync-timeout-ms",
        type=int,
        default=None,
        help="Long-poll timeout when clients send none",
    )

    simulate_parser = subparsers.add_parser("simulate", help="Replay frames through the room store")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--room-id", default=None, help="Identifier of the simulated room")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
