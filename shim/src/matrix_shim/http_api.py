from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from aiohttp import web
from yarl import URL

from .config import CALLBACK_PATH, ShimConfig
from .directory import DirectoryResolver
from .errors import BadRequest, ShimError
from .events import MEMBER_EVENT, _now_ms
from .notifier import ChangeNotifier
from .oauth import HttpOAuthBroker, OAuthClient
from .rooms import FORWARD, RoomStore
from .sessions import Session, SessionState
from .sync import SyncEndpoint

logger = logging.getLogger(__name__)

CLIENT_V3 = "/_matrix/client/v3"
SUPPORTED_VERSIONS = ["v1.13"]
IDENTITY_PROVIDER = {"id": "oauth-atproto", "name": "BlueSky", "brand": "bluesky"}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "X-Requested-With, Content-Type, Authorization",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class Runtime:
    def __init__(
        self,
        *,
        config: ShimConfig,
        rooms: RoomStore,
        notifier: ChangeNotifier,
        sessions: SessionState,
        oauth: OAuthClient,
        directory: DirectoryResolver,
    ) -> None:
        self.config = config
        self.rooms = rooms
        self.notifier = notifier
        self.sessions = sessions
        self.oauth = oauth
        self.directory = directory
        self.sync = SyncEndpoint(
            rooms,
            notifier,
            default_timeout_ms=config.default_sync_timeout_ms,
            max_timeout_ms=config.max_sync_timeout_ms,
        )

    async def establish_session(self, did: str) -> Session:
        handle = await self.directory.resolve_handle(did)
        session = self.sessions.establish(did, handle)
        self.rooms.put_state_event(self.config.room_id, MEMBER_EVENT, did, {"membership": "join"}, did)
        self.notifier.notify()
        return session

    async def restore_session(self) -> Session | None:
        try:
            restored = await self.oauth.restore(self.config.oauth_provider)
            if restored is None:
                logger.info("no stored OAuth session to restore")
                return None
            return await self.establish_session(restored.did)
        except ShimError as exc:
            logger.warning("could not restore OAuth session: %s", exc.message)
            return None


RUNTIME_KEY = web.AppKey("runtime", Runtime)
# Reachable without a session; everything else goes through the auth gate.
PUBLIC_ROUTES = frozenset({"versions", "sso_redirect", "sso_redirect_v3", "oauth_callback", "login_flows", "login"})


def _runtime(request: web.Request) -> Runtime:
    return request.app[RUNTIME_KEY]


def _access_token(request: web.Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[len("Bearer ") :].strip()
    return request.query.get("access_token")


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _error_response(errcode: str, message: str, status: int) -> web.Response:
    return web.json_response({"errcode": errcode, "error": message}, status=status)


async def _json_object(request: web.Request, message: str) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise BadRequest(message, errcode="M_NOT_JSON") from None
    if not isinstance(body, dict):
        raise BadRequest(message, errcode="M_BAD_JSON")
    return body


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.json_response({})
    else:
        response = await handler(request)
    response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except ShimError as exc:
        if exc.status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, exc.message)
        return web.json_response(exc.to_body(), status=exc.status)
    except web.HTTPNotFound:
        return _error_response("M_UNRECOGNIZED", "Unrecognized request", 404)
    except web.HTTPMethodNotAllowed:
        return _error_response("M_UNRECOGNIZED", "Unrecognized request", 405)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("unhandled error in %s %s", request.method, request.path)
        raise


@web.middleware
async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.match_info.route.name in PUBLIC_ROUTES:
        return await handler(request)
    request["session"] = _runtime(request).sessions.authenticate(_access_token(request))
    return await handler(request)


def _static(payload: Any) -> Handler:
    async def handler(_: web.Request) -> web.Response:
        return web.json_response(payload)

    return handler


# Public routes.


async def handle_versions(_: web.Request) -> web.Response:
    return web.json_response({"versions": SUPPORTED_VERSIONS})


async def handle_sso_redirect(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    redirect_url = request.query.get("redirectUrl")
    if not redirect_url:
        raise BadRequest("missing required `redirectUrl` query parameter.", errcode="M_MISSING_PARAM")
    state = runtime.sessions.begin_login(redirect_url)
    location = await runtime.oauth.authorize(runtime.config.oauth_provider, state)
    raise web.HTTPFound(location)


async def handle_oauth_callback(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    redirect_url = runtime.sessions.take_redirect(request.query.get("state"))
    if redirect_url is None:
        raise BadRequest("unknown or expired login state", errcode="M_INVALID_PARAM")
    oauth_session = await runtime.oauth.callback(dict(request.query))
    session = await runtime.establish_session(oauth_session.did)
    location = URL(redirect_url).update_query(loginToken=session.login_token)
    raise web.HTTPFound(str(location))


async def handle_login_flows(_: web.Request) -> web.Response:
    return web.json_response(
        {
            "flows": [
                {"type": "m.login.sso", "identity_providers": [IDENTITY_PROVIDER]},
                {"type": "m.login.token"},
            ]
        }
    )


async def handle_login(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _json_object(request, "Invalid login request")
    session = runtime.sessions.login(body.get("type"), body.get("token"), body.get("device_id"))
    logger.info("issued access token for %s on device %s", session.user_id, session.device_id)
    return web.json_response(
        {
            "access_token": session.access_token,
            "device_id": session.device_id,
            "user_id": session.user_id,
        }
    )


# Authenticated routes.


async def handle_whoami(request: web.Request) -> web.Response:
    session: Session = request["session"]
    return web.json_response({"user_id": session.user_id, "device_id": session.device_id})


async def handle_media_config(request: web.Request) -> web.Response:
    return web.json_response({"m.upload.size": _runtime(request).config.upload_size_limit})


async def handle_profile(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    session: Session = request["session"]
    user_id = request.match_info["user_id"]
    if user_id == session.user_id:
        return web.json_response({"displayname": session.handle})
    return web.json_response({"displayname": await runtime.directory.resolve_handle(user_id)})


async def handle_members(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    members = runtime.rooms.list_members(request.match_info["room_id"])
    return web.json_response({"chunk": [event.to_dict() for event in members]})


async def handle_messages(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    direction = request.query.get("dir", FORWARD)
    limit = request.query.get("limit")
    try:
        limit_value = int(limit) if limit is not None else None
    except ValueError:
        raise BadRequest("limit must be an integer", errcode="M_INVALID_PARAM") from None
    events = runtime.rooms.list_timeline_since(request.match_info["room_id"], 0, direction, limit_value)
    return web.json_response(
        {
            "chunk": [event.to_dict() for event in events],
            "start": request.query.get("from") or "0",
        }
    )


async def handle_send(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    session: Session = request["session"]
    room_id = request.match_info["room_id"]
    content = await _json_object(request, "event content must be a JSON object")
    event = runtime.rooms.append_timeline_event(room_id, request.match_info["event_type"], content, session.user_id)
    runtime.notifier.notify()
    logger.info("appended %s to %s (txn %s)", event.event_id, room_id, request.match_info["txn_id"])
    return web.json_response({"event_id": event.event_id})


async def handle_sync(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await runtime.sync.sync(request.query.get("since"), request.query.get("timeout"))
    return _with_no_store(web.json_response(body))


def create_app(
    config: ShimConfig | None = None,
    *,
    oauth: OAuthClient | None = None,
    directory: DirectoryResolver | None = None,
    now_func: Callable[[], int] = _now_ms,
) -> web.Application:
    config = config or ShimConfig()
    owned: list[Any] = []
    if oauth is None:
        oauth = HttpOAuthBroker(config.oauth_broker_url, redirect_uri=config.oauth_redirect_uri)
        owned.append(oauth)
    if directory is None:
        directory = DirectoryResolver(config.plc_directory_url)
        owned.append(directory)

    runtime = Runtime(
        config=config,
        rooms=RoomStore.with_default_room(config.room_id, config.room_creator, config.room_name, now_func=now_func),
        notifier=ChangeNotifier(),
        sessions=SessionState(now_func=now_func),
        oauth=oauth,
        directory=directory,
    )
    app = web.Application(middlewares=[cors_middleware, error_middleware, auth_middleware])
    app[RUNTIME_KEY] = runtime

    router = app.router
    router.add_get("/_matrix/client/versions", handle_versions, name="versions")
    router.add_get("/_matrix/login/sso/redirect", handle_sso_redirect, name="sso_redirect")
    router.add_get(f"{CLIENT_V3}/login/sso/redirect", handle_sso_redirect, name="sso_redirect_v3")
    router.add_get(CALLBACK_PATH, handle_oauth_callback, name="oauth_callback")
    router.add_get(f"{CLIENT_V3}/login", handle_login_flows, name="login_flows")
    router.add_post(f"{CLIENT_V3}/login", handle_login, name="login")

    router.add_get(f"{CLIENT_V3}/account/whoami", handle_whoami)
    router.add_get(f"{CLIENT_V3}/pushrules/", _static([]))
    router.add_get(f"{CLIENT_V3}/voip/turnServer", _static([]))
    router.add_get(f"{CLIENT_V3}/devices", _static([]))
    router.add_get(f"{CLIENT_V3}/room_keys/version", _static({}))
    router.add_get("/_matrix/media/v3/config", handle_media_config)
    router.add_get(f"{CLIENT_V3}/capabilities", _static({"capabilities": {}}))
    router.add_post(f"{CLIENT_V3}/keys/query", _static({}))
    router.add_post(f"{CLIENT_V3}/keys/upload", _static({}))
    router.add_post(f"{CLIENT_V3}/user/{{user_id}}/filter", _static({"filter_id": "1"}))
    router.add_get(f"{CLIENT_V3}/user/{{user_id}}/filter/{{filter_id}}", _static({}))
    router.add_get(f"{CLIENT_V3}/profile/{{user_id}}", handle_profile)
    router.add_get(f"{CLIENT_V3}/rooms/{{room_id}}/members", handle_members)
    router.add_get(f"{CLIENT_V3}/rooms/{{room_id}}/messages", handle_messages)
    router.add_put(f"{CLIENT_V3}/rooms/{{room_id}}/typing/{{user_id}}", _static({}))
    router.add_put(f"{CLIENT_V3}/rooms/{{room_id}}/send/{{event_type}}/{{txn_id}}", handle_send)
    router.add_get(f"{CLIENT_V3}/sync", handle_sync)

    async def restore_session(_: web.Application) -> None:
        if config.restore_session_on_startup:
            await runtime.restore_session()

    async def close_clients(_: web.Application) -> None:
        for client in owned:
            await client.close()

    app.on_startup.append(restore_session)
    app.on_cleanup.append(close_clients)
    return app
