import asyncio
import json
import tempfile
import unittest
from pathlib import Path

import httpx

from huddle_client import (
    FAILED, FLUSH, INFLIGHT, PENDING, QUEUE_CHANGE,
    HttpResponseTransport, JsonlQueueStore, MemoryQueueStore, PermanentDeliveryError,
    QueueEvents, QueueItem, ResponseQueue, TransientDeliveryError, backoff_delay,
)


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class ScriptedTransport:
    """Fails per local_id according to `script`; everything else is accepted."""

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.delivered = []
        self.calls = []

    async def deliver(self, item):
        self.calls.append(item.local_id)
        outcome = self.script.get(item.local_id)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else None
        if outcome is not None:
            raise outcome
        self.delivered.append(item.local_id)
        return {"id": len(self.delivered), "local_id": item.local_id}


class SlowTransport(ScriptedTransport):
    async def deliver(self, item):
        await asyncio.sleep(0.01)
        return await super().deliver(item)


class FlakyStore(MemoryQueueStore):
    """Raises OSError for the next write matching `fail_puts` status or `fail_deletes`."""

    def __init__(self, items=()):
        super().__init__(items)
        self.fail_puts = set()
        self.fail_deletes = 0

    def put(self, item):
        if item.status in self.fail_puts:
            self.fail_puts.discard(item.status)
            raise OSError("disk full")
        super().put(item)

    def delete(self, local_id):
        if self.fail_deletes:
            self.fail_deletes -= 1
            raise OSError("disk full")
        super().delete(local_id)


class ResponseQueueTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = MemoryQueueStore()
        self.transport = ScriptedTransport()
        self.events = QueueEvents()
        self.flushes = []
        self.changes = []
        self.events.subscribe(FLUSH, self.flushes.append)
        self.events.subscribe(QUEUE_CHANGE, self.changes.append)

    def make_queue(self, **kw):
        kw.setdefault("online", True)
        return ResponseQueue(self.store, self.transport, events=self.events, clock=self.clock, **kw)

    async def test_offline_submissions_flush_when_connectivity_returns(self):
        queue = self.make_queue(online=False)
        for n in range(3):
            queue.enqueue(1, 10, {"q1": f"answer {n}"}, local_id=f"l-{n}")
        self.assertEqual(len(queue.get_queue_snapshot()), 3)

        task = queue.set_online(True)
        self.assertIsNotNone(task)
        report = await task

        self.assertEqual(queue.get_queue_snapshot(), [])
        self.assertEqual(report.flushed, 3)
        self.assertEqual(report.remaining, 0)
        self.assertEqual(len(self.flushes), 1)
        self.assertEqual(self.transport.delivered, ["l-0", "l-1", "l-2"])

    async def test_flush_while_offline_sends_nothing_but_reports(self):
        queue = self.make_queue(online=False)
        queue.enqueue(1, 10, {"q1": "a"})
        report = await queue.flush_now()
        self.assertEqual(report.attempted, 0)
        self.assertEqual(report.remaining, 1)
        self.assertEqual(self.transport.calls, [])
        self.assertEqual(len(self.flushes), 1)

    async def test_transient_failure_backs_off(self):
        self.transport.script["a"] = [TransientDeliveryError("boom")]
        queue = self.make_queue(backoff_base=2.0, backoff_cap=60.0)
        queue.enqueue(1, 10, {"q1": "x"}, local_id="a")

        report = await queue.flush_now()
        self.assertEqual(report.retried, 1)
        item = queue.get_queue_snapshot()[0]
        self.assertEqual(item.status, PENDING)
        self.assertEqual(item.attempt_count, 1)
        self.assertEqual(item.next_attempt_at, self.clock.now + 4.0)

        # not due yet
        report = await queue.flush_due()
        self.assertEqual(report.attempted, 0)

        self.clock.now += 4.0
        report = await queue.flush_due()
        self.assertEqual(report.flushed, 1)
        self.assertEqual(queue.get_queue_snapshot(), [])

    def test_backoff_is_capped(self):
        self.assertEqual(backoff_delay(0, 2.0, 60.0), 2.0)
        self.assertEqual(backoff_delay(3, 2.0, 60.0), 16.0)
        self.assertEqual(backoff_delay(10, 2.0, 60.0), 60.0)

    async def test_permanent_failure_does_not_block_others(self):
        self.transport.script["b"] = PermanentDeliveryError("invalid answers", status_code=400)
        queue = self.make_queue()
        for lid in ("a", "b", "c"):
            queue.enqueue(1, 10, {"q1": lid}, local_id=lid)

        report = await queue.flush_now()
        self.assertEqual((report.flushed, report.failed), (2, 1))
        snapshot = queue.get_queue_snapshot()
        self.assertEqual([i.local_id for i in snapshot], ["b"])
        self.assertEqual(snapshot[0].status, FAILED)
        self.assertEqual(snapshot[0].last_error, "invalid answers")

        # failed items are not retried automatically
        self.transport.script.pop("b")
        await queue.flush_now()
        self.assertEqual(queue.status()["failed"], 1)

        self.assertEqual(queue.retry_failed("b"), 1)
        await queue.flush_now()
        self.assertEqual(queue.get_queue_snapshot(), [])

    async def test_transient_failure_after_window_closes_is_terminal(self):
        self.transport.script["a"] = TransientDeliveryError("still down")
        queue = self.make_queue()
        queue.enqueue(1, 10, {"q1": "x"}, local_id="a", expires_at=self.clock.now - 1)
        report = await queue.flush_now()
        self.assertEqual(report.failed, 1)
        item = queue.get_queue_snapshot()[0]
        self.assertEqual(item.status, FAILED)
        self.assertEqual(item.last_error, "window_closed")

    async def test_snapshot_is_a_copy(self):
        queue = self.make_queue(online=False)
        queue.enqueue(1, 10, {"q1": ["a", "b"]}, local_id="a")
        snap = queue.get_queue_snapshot()
        snap[0].answers["q1"].append("c")
        snap[0].status = FAILED
        snap.clear()

        fresh = queue.get_queue_snapshot()
        self.assertEqual(fresh[0].answers, {"q1": ["a", "b"]})
        self.assertEqual(fresh[0].status, PENDING)

    async def test_enqueue_same_local_id_is_ignored(self):
        queue = self.make_queue(online=False)
        queue.enqueue(1, 10, {"q1": "a"}, local_id="dup")
        queue.enqueue(1, 10, {"q1": "b"}, local_id="dup")
        snap = queue.get_queue_snapshot()
        self.assertEqual(len(snap), 1)
        self.assertEqual(snap[0].answers, {"q1": "a"})

    async def test_remove_pending_item(self):
        queue = self.make_queue(online=False)
        queue.enqueue(1, 10, {"q1": "a"}, local_id="a")
        self.assertTrue(queue.remove("a"))
        self.assertFalse(queue.remove("a"))
        self.assertEqual([c.kind for c in self.changes], ["added", "removed"])

    async def test_inflight_item_cannot_be_removed(self):
        queue = self.make_queue()
        queue.enqueue(1, 10, {"q1": "a"}, local_id="a")
        seen = []

        class RemovingTransport(ScriptedTransport):
            async def deliver(inner, item):
                with self.assertRaises(ValueError):
                    queue.remove(item.local_id)
                seen.append(queue.status()["inflight"])
                return await super().deliver(item)

        queue.transport = RemovingTransport()
        await queue.flush_now()
        self.assertEqual(seen, [1])

    async def test_inflight_items_recover_as_pending(self):
        stale = QueueItem(survey_id=1, assignment_id=10, answers={"q1": "a"}, created_at=1.0, local_id="a", status=INFLIGHT)
        self.store = MemoryQueueStore([stale])
        queue = self.make_queue()
        self.assertEqual(queue.get_queue_snapshot()[0].status, PENDING)
        await queue.flush_now()
        self.assertEqual(self.transport.delivered, ["a"])

    async def test_listener_errors_are_isolated(self):
        def broken(_):
            raise RuntimeError("listener bug")

        self.events.subscribe(QUEUE_CHANGE, broken)
        queue = self.make_queue()
        with self.assertLogs("huddle_client.events", level="ERROR"):
            queue.enqueue(1, 10, {"q1": "a"}, local_id="a")
        self.assertEqual(self.changes[-1].local_id, "a")
        report = await queue.flush_now()
        self.assertEqual(report.flushed, 1)

    def test_unknown_event_is_rejected(self):
        with self.assertRaises(ValueError):
            self.events.subscribe("queue-change", lambda _: None)

    async def test_unsubscribe_stops_notifications(self):
        sub = self.events.subscribe(FLUSH, lambda r: self.fail("should not be called"))
        sub.unsubscribe()
        sub.unsubscribe()
        queue = self.make_queue()
        await queue.flush_now()
        self.assertEqual(len(self.flushes), 1)

    async def test_periodic_timer_flushes_while_online(self):
        queue = self.make_queue(flush_interval=0.01)
        queue.enqueue(1, 10, {"q1": "a"}, local_id="a")
        queue.start()
        try:
            for _ in range(100):
                if not queue.get_queue_snapshot():
                    break
                await asyncio.sleep(0.01)
        finally:
            await queue.stop()
        self.assertEqual(self.transport.delivered, ["a"])

    async def test_concurrent_flushes_deliver_each_item_once(self):
        self.transport = SlowTransport()
        queue = self.make_queue()
        for n in range(5):
            queue.enqueue(1, 10, {"q1": n}, local_id=f"l{n}")

        reports = await asyncio.gather(queue.flush_now(), queue.flush_due(), queue.flush_now())

        self.assertEqual(self.transport.calls, [f"l{n}" for n in range(5)])
        self.assertEqual(sum(r.flushed for r in reports), 5)
        self.assertEqual(queue.get_queue_snapshot(), [])

    async def test_store_failure_before_delivery_keeps_item_pending(self):
        self.store = FlakyStore()
        queue = self.make_queue()
        queue.enqueue(1, 10, {"q1": "a"}, local_id="a")
        self.store.fail_puts.add(INFLIGHT)

        with self.assertLogs("huddle_client.queue", level="ERROR"):
            report = await queue.flush_now()
        self.assertEqual((report.attempted, report.retried), (1, 1))
        self.assertEqual(self.transport.calls, [])
        self.assertEqual(queue.get_queue_snapshot()[0].status, PENDING)

        await queue.flush_now()
        self.assertEqual(self.transport.delivered, ["a"])
        self.assertEqual(queue.get_queue_snapshot(), [])

    async def test_store_failure_after_delivery_sends_again(self):
        self.store = FlakyStore()
        queue = self.make_queue()
        queue.enqueue(1, 10, {"q1": "a"}, local_id="a")
        self.store.fail_deletes = 1

        with self.assertLogs("huddle_client.queue", level="ERROR"):
            report = await queue.flush_now()
        self.assertEqual(report.retried, 1)
        self.assertEqual(queue.status()["pending"], 1)

        await queue.flush_now()
        self.assertEqual(self.transport.calls, ["a", "a"])
        self.assertEqual(queue.get_queue_snapshot(), [])


class JsonlQueueStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.clock = FakeClock()

    def tearDown(self):
        self._tmp.cleanup()

    async def test_queue_survives_restart(self):
        store = JsonlQueueStore(self.dir, "assignment-10", fsync=False)
        queue = ResponseQueue(store, ScriptedTransport(), online=False, clock=self.clock)
        queue.enqueue(1, 10, {"q1": "a"}, local_id="a")
        queue.enqueue(1, 10, {"q1": "b"}, local_id="b")
        queue.remove("a")

        reopened = ResponseQueue(JsonlQueueStore(self.dir, "assignment-10", fsync=False), ScriptedTransport(), clock=self.clock)
        self.assertEqual([i.local_id for i in reopened.get_queue_snapshot()], ["b"])

    def test_torn_last_line_is_dropped(self):
        store = JsonlQueueStore(self.dir, "q", fsync=False)
        store.put(QueueItem(survey_id=1, assignment_id=10, answers={}, created_at=1.0, local_id="a"))
        with open(store.path, "a", encoding="utf-8") as fh:
            fh.write('{"op":"put","item":{"local_id":"b","surv')

        items = store.load()
        self.assertEqual([i.local_id for i in items], ["a"])

        # later appends land on a clean line
        store.put(QueueItem(survey_id=1, assignment_id=10, answers={}, created_at=2.0, local_id="c"))
        self.assertEqual([i.local_id for i in store.load()], ["a", "c"])

    def test_compact_rewrites_live_items_only(self):
        store = JsonlQueueStore(self.dir, "q", fsync=False)
        a = QueueItem(survey_id=1, assignment_id=10, answers={}, created_at=1.0, local_id="a")
        b = QueueItem(survey_id=1, assignment_id=10, answers={}, created_at=1.0, local_id="b")
        store.put(a)
        store.put(b)
        store.delete("a")
        store.compact(store.load())

        lines = store.path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 1)
        self.assertEqual(json.loads(lines[0])["item"]["local_id"], "b")
        self.assertEqual(list(self.dir.glob("*.tmp")), [])

    async def test_flush_passes_compact_the_log(self):
        store = JsonlQueueStore(self.dir, "q", fsync=False)
        transport = ScriptedTransport({"keep": PermanentDeliveryError("invalid", status_code=400)})
        queue = ResponseQueue(store, transport, clock=self.clock, compact_every=10)
        queue.enqueue(1, 10, {"q1": "x"}, local_id="keep")
        for n in range(50):
            queue.enqueue(1, 10, {"q1": n}, local_id=f"l{n}")
            await queue.flush_now()

        self.assertEqual([i.local_id for i in queue.get_queue_snapshot()], ["keep"])
        lines = store.path.read_text(encoding="utf-8").splitlines()
        self.assertLess(len(lines), 12)
        self.assertEqual([i.local_id for i in store.load()], ["keep"])

    def test_namespace_is_sanitised(self):
        store = JsonlQueueStore(self.dir, "../survey 1/assignment 2", fsync=False)
        self.assertEqual(store.path.parent, self.dir)


class HttpResponseTransportTests(unittest.IsolatedAsyncioTestCase):
    def item(self):
        return QueueItem(survey_id=3, assignment_id=7, answers={"q1": "yes"}, created_at=1.0, local_id="abc")

    def transport_for(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.aclose)
        return HttpResponseTransport("http://api.test/", client=client, timeout=1.0)

    async def test_success_posts_payload(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 1, "local_id": "abc"})

        body = await self.transport_for(handler).deliver(self.item())
        self.assertEqual(body["local_id"], "abc")
        self.assertEqual(seen["url"], "http://api.test/api/surveys/7/responses/")
        self.assertEqual(seen["body"]["local_id"], "abc")
        self.assertEqual(seen["body"]["survey_id"], 3)

    async def test_duplicate_acknowledgement_is_success(self):
        transport = self.transport_for(lambda r: httpx.Response(200, json={"id": 1}))
        self.assertEqual(await transport.deliver(self.item()), {"id": 1})

    async def test_status_codes_map_to_error_kinds(self):
        cases = {500: TransientDeliveryError, 503: TransientDeliveryError, 401: TransientDeliveryError,
                 408: TransientDeliveryError, 429: TransientDeliveryError, 400: PermanentDeliveryError,
                 403: PermanentDeliveryError, 410: PermanentDeliveryError}
        for code, error in cases.items():
            with self.subTest(code=code):
                transport = self.transport_for(lambda r, c=code: httpx.Response(c, json={"detail": "no", "reason": "x"}))
                with self.assertRaises(error) as ctx:
                    await transport.deliver(self.item())
                self.assertEqual(ctx.exception.status_code, code)

    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with self.assertRaises(TransientDeliveryError):
            await self.transport_for(handler).deliver(self.item())

    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with self.assertRaises(TransientDeliveryError):
            await self.transport_for(handler).deliver(self.item())
