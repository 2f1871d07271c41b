import asyncio
import unittest

from matrix_shim.errors import BadRequest
from matrix_shim.notifier import ChangeNotifier
from matrix_shim.rooms import RoomStore
from matrix_shim.sync import DEFAULT_TIMEOUT_MS, SyncEndpoint, parse_timeout

ROOM = "!room:example.org"
CREATOR = "did:plc:creator"


def timeline(body: dict) -> list[dict]:
    return body["rooms"]["join"][ROOM]["timeline"]["events"]


class ParseTimeoutTests(unittest.TestCase):
    def test_defaults_and_clamping(self):
        self.assertEqual(parse_timeout(None), DEFAULT_TIMEOUT_MS)
        self.assertEqual(parse_timeout("soon"), DEFAULT_TIMEOUT_MS)
        self.assertEqual(parse_timeout("0"), 0)
        self.assertEqual(parse_timeout("-5"), 0)
        self.assertEqual(parse_timeout("1500"), 1500)
        self.assertEqual(parse_timeout("999999", max_ms=60_000), 60_000)


class SyncEndpointTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = RoomStore.with_default_room(ROOM, CREATOR, "test-room")
        self.notifier = ChangeNotifier()
        self.endpoint = SyncEndpoint(self.store, self.notifier)
        self.loop = asyncio.get_running_loop()

    def _send(self, body: str):
        event = self.store.append_timeline_event(ROOM, "m.room.message", {"body": body}, CREATOR)
        self.notifier.notify()
        return event

    async def test_initial_sync_returns_immediately_with_everything(self):
        self._send("hello")

        started = self.loop.time()
        body = await self.endpoint.sync(None, "30000")

        self.assertLess(self.loop.time() - started, 0.5)
        self.assertEqual([e["content"]["body"] for e in timeline(body)], ["hello"])
        self.assertEqual(len(body["rooms"]["join"][ROOM]["state"]["events"]), 3)
        self.assertTrue(body["next_batch"].isdigit())

    async def test_quiet_poll_blocks_for_timeout_then_returns_empty(self):
        initial = await self.endpoint.sync()

        started = self.loop.time()
        body = await self.endpoint.sync(initial["next_batch"], "200")
        elapsed = self.loop.time() - started

        self.assertGreaterEqual(elapsed, 0.18)
        self.assertLess(elapsed, 2)
        self.assertEqual(timeline(body), [])
        self.assertGreaterEqual(int(body["next_batch"]), int(initial["next_batch"]))

    async def test_append_during_poll_wakes_it_early(self):
        initial = await self.endpoint.sync()
        self.loop.call_later(0.05, self._send, "wake up")

        started = self.loop.time()
        body = await self.endpoint.sync(initial["next_batch"], "30000")

        self.assertLess(self.loop.time() - started, 1)
        self.assertEqual([e["content"]["body"] for e in timeline(body)], ["wake up"])

    async def test_zero_timeout_never_blocks(self):
        initial = await self.endpoint.sync()

        started = self.loop.time()
        body = await self.endpoint.sync(initial["next_batch"], "0")

        self.assertLess(self.loop.time() - started, 0.5)
        self.assertEqual(timeline(body), [])

    async def test_pending_events_skip_the_wait(self):
        initial = await self.endpoint.sync()
        event = self._send("already here")

        started = self.loop.time()
        body = await self.endpoint.sync(initial["next_batch"], "30000")

        self.assertLess(self.loop.time() - started, 0.5)
        self.assertEqual([e["event_id"] for e in timeline(body)], [event.event_id])

    async def test_consecutive_polls_see_each_event_once(self):
        cursor = (await self.endpoint.sync())["next_batch"]
        seen = []
        for i in range(3):
            self._send(str(i))
            body = await self.endpoint.sync(cursor, "0")
            seen.extend(e["content"]["body"] for e in timeline(body))
            cursor = body["next_batch"]

        body = await self.endpoint.sync(cursor, "0")
        self.assertEqual(seen, ["0", "1", "2"])
        self.assertEqual(timeline(body), [])

    async def test_invalid_since_is_bad_request(self):
        with self.assertRaises(BadRequest):
            await self.endpoint.sync("yesterday", "0")

    async def test_cancelled_poll_releases_its_waiter(self):
        initial = await self.endpoint.sync()
        task = asyncio.create_task(self.endpoint.sync(initial["next_batch"], "30000"))
        await asyncio.sleep(0.02)
        self.assertEqual(self.notifier.pending, 1)

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)

        self.assertEqual(self.notifier.pending, 0)

    async def test_notify_between_register_and_check_still_wakes(self):
        initial = await self.endpoint.sync()
        original_check = self.store.has_events_since

        def check_then_notify(since_ts):
            # Another writer lands after the waiter exists but the store looked empty.
            pending = original_check(since_ts)
            self.notifier.notify()
            return pending

        self.store.has_events_since = check_then_notify

        started = self.loop.time()
        await self.endpoint.sync(initial["next_batch"], "30000")

        self.assertLess(self.loop.time() - started, 1)
        self.assertEqual(self.notifier.pending, 0)

    async def test_many_pollers_all_wake_on_one_append(self):
        initial = await self.endpoint.sync()
        polls = [asyncio.create_task(self.endpoint.sync(initial["next_batch"], "30000")) for _ in range(4)]
        await asyncio.sleep(0.02)

        self._send("broadcast")
        bodies = await asyncio.wait_for(asyncio.gather(*polls), timeout=2)

        for body in bodies:
            self.assertEqual([e["content"]["body"] for e in timeline(body)], ["broadcast"])


if __name__ == "__main__":
    unittest.main()
