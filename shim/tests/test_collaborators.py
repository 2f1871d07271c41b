import asyncio
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from matrix_shim.config import ShimConfig
from matrix_shim.directory import DirectoryResolver, handle_from_document
from matrix_shim.errors import UpstreamError
from matrix_shim.http_api import RUNTIME_KEY, create_app
from matrix_shim.oauth import HttpOAuthBroker, OAuthSession

from tests.fakes import ALICE, ALICE_HANDLE, FakeDirectory


class HandleFromDocumentTests(unittest.TestCase):
    def test_strips_at_uri_prefix(self):
        document = {"id": ALICE, "alsoKnownAs": [f"at://{ALICE_HANDLE}", "at://other"]}
        self.assertEqual(handle_from_document(document), ALICE_HANDLE)

    def test_malformed_documents_raise_upstream_error(self):
        for document in (None, [], {}, {"alsoKnownAs": []}, {"alsoKnownAs": [7]}, {"alsoKnownAs": ["alice"]}):
            with self.subTest(document=document):
                with self.assertRaises(UpstreamError):
                    handle_from_document(document)


class DirectoryResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.requested: list[str] = []

        async def did_document(request: web.Request) -> web.Response:
            did = request.match_info["did"]
            self.requested.append(did)
            if did == ALICE:
                return web.json_response({"id": did, "alsoKnownAs": [f"at://{ALICE_HANDLE}"]})
            if did == "did:plc:garbled":
                return web.Response(text="<html>", content_type="text/html")
            return web.json_response({"message": "DID not registered"}, status=404)

        app = web.Application()
        app.router.add_get("/{did}", did_document)
        self.server = TestServer(app)
        await self.server.start_server()
        self.resolver = DirectoryResolver(str(self.server.make_url("/")))

    async def asyncTearDown(self):
        await self.resolver.close()
        await self.server.close()

    async def test_resolves_handle(self):
        self.assertEqual(await self.resolver.resolve_handle(ALICE), ALICE_HANDLE)
        self.assertEqual(self.requested, [ALICE])

    async def test_missing_did_is_upstream_error(self):
        with self.assertRaises(UpstreamError):
            await self.resolver.resolve_handle("did:plc:missing")

    async def test_non_json_reply_is_upstream_error(self):
        with self.assertRaises(UpstreamError):
            await self.resolver.resolve_handle("did:plc:garbled")


class HttpOAuthBrokerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.seen: dict[str, object] = {}
        self.stored_did: str | None = None

        async def authorize(request: web.Request) -> web.Response:
            self.seen["authorize"] = dict(request.query)
            return web.json_response({"url": f"https://auth.example/?state={request.query['state']}"})

        async def callback(request: web.Request) -> web.Response:
            params = await request.json()
            self.seen["callback"] = params
            if params.get("code") != "good":
                return web.json_response({"error": "invalid_grant"}, status=400)
            self.stored_did = ALICE
            return web.json_response({"did": ALICE})

        async def restore(_: web.Request) -> web.Response:
            if self.stored_did is None:
                return web.json_response({}, status=404)
            return web.json_response({"did": self.stored_did})

        app = web.Application()
        app.router.add_get("/authorize", authorize)
        app.router.add_post("/callback", callback)
        app.router.add_get("/restore", restore)
        self.server = TestServer(app)
        await self.server.start_server()
        self.broker = HttpOAuthBroker(
            str(self.server.make_url("/")), redirect_uri="http://127.0.0.1:8080/_matrix/custom/oauth/callback"
        )

    async def asyncTearDown(self):
        await self.broker.close()
        await self.server.close()

    async def test_authorize_forwards_state_and_redirect_uri(self):
        url = await self.broker.authorize("https://bsky.social", "s1")

        self.assertEqual(url, "https://auth.example/?state=s1")
        self.assertEqual(self.seen["authorize"]["provider"], "https://bsky.social")
        self.assertTrue(self.seen["authorize"]["redirect_uri"].endswith("/_matrix/custom/oauth/callback"))

    async def test_callback_then_restore(self):
        self.assertIsNone(await self.broker.restore("https://bsky.social"))

        session = await self.broker.callback({"code": "good", "state": "s1"})

        self.assertEqual(session, OAuthSession(did=ALICE))
        self.assertEqual(await self.broker.restore("https://bsky.social"), OAuthSession(did=ALICE))

    async def test_rejected_callback_is_upstream_error(self):
        with self.assertRaises(UpstreamError):
            await self.broker.callback({"code": "bad"})


class SlowUpstreamTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.release = asyncio.Event()
        self.hits: list[str] = []

        async def stall(request: web.Request) -> web.Response:
            self.hits.append(request.path)
            await self.release.wait()
            return web.json_response({})

        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", stall)
        self.server = TestServer(app)
        await self.server.start_server()
        self.base_url = str(self.server.make_url("/"))
        self.broker = HttpOAuthBroker(self.base_url, redirect_uri="http://127.0.0.1:8080/cb", timeout_s=0.1)
        self.resolver = DirectoryResolver(self.base_url, timeout_s=0.1)

    async def asyncTearDown(self):
        self.release.set()
        await self.broker.close()
        await self.resolver.close()
        await self.server.close()

    async def test_directory_timeout_is_upstream_error(self):
        with self.assertRaises(UpstreamError):
            await self.resolver.resolve_handle(ALICE)
        self.assertEqual(self.hits, [f"/{ALICE}"])

    async def test_broker_timeout_is_upstream_error(self):
        with self.assertRaises(UpstreamError):
            await self.broker.restore("https://bsky.social")
        with self.assertRaises(UpstreamError):
            await self.broker.authorize("https://bsky.social", "s1")

    async def test_startup_restore_survives_stalled_broker(self):
        app = create_app(ShimConfig(restore_session_on_startup=True), oauth=self.broker, directory=FakeDirectory())
        shim = TestServer(app)
        await shim.start_server()
        try:
            self.assertEqual(self.hits, ["/restore"])
            self.assertIsNone(app[RUNTIME_KEY].sessions.current)
            self.assertIsNone(await app[RUNTIME_KEY].restore_session())
        finally:
            await shim.close()


if __name__ == "__main__":
    unittest.main()
