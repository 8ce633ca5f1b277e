import asyncio
import threading
import time

from huginn_core.events import EventKind, StatusBroadcaster
from huginn_core.models import AgentStatus


def test_subscriber_receives_only_requested_kinds():
    async def scenario():
        bus = StatusBroadcaster()
        sub = bus.subscribe({EventKind.TASK_FAILED})
        bus.publish(EventKind.TASK_COMPLETED, task_id="t1")
        bus.publish(EventKind.TASK_FAILED, task_id="t2")
        return sub.drain()

    events = asyncio.run(scenario())
    assert [e.data["task_id"] for e in events] == ["t2"]
    assert events[0].kind == EventKind.TASK_FAILED


def test_full_queue_drops_oldest_without_blocking():
    async def scenario():
        bus = StatusBroadcaster()
        sub = bus.subscribe(maxsize=3)
        for i in range(10):
            bus.publish(EventKind.TELEMETRY_SENT, n=i)
        return sub

    sub = asyncio.run(scenario())
    assert sub.dropped == 7
    assert [e.data["n"] for e in sub.drain()] == [7, 8, 9]


def test_failing_handler_does_not_stop_delivery():
    seen = []

    def handler(event):
        if event.data.get("boom"):
            raise RuntimeError("subscriber bug")
        seen.append(event.data["n"])

    async def scenario():
        bus = StatusBroadcaster()
        bus.subscribe(handler=handler)
        bus.publish(EventKind.STARTED, n=1, boom=True)
        bus.publish(EventKind.STARTED, n=2)
        await asyncio.sleep(0.2)
        bus.close()

    asyncio.run(scenario())
    assert seen == [2]


def test_async_handler():
    seen = []

    async def handler(event):
        await asyncio.sleep(0)
        seen.append(event.kind)

    async def scenario():
        bus = StatusBroadcaster()
        bus.subscribe({EventKind.ENROLLED}, handler=handler)
        bus.publish(EventKind.ENROLLED)
        await asyncio.sleep(0.05)
        bus.close()

    asyncio.run(scenario())
    assert seen == [EventKind.ENROLLED]


def test_blocking_handler_does_not_hold_the_loop():
    seen = []

    def handler(event):
        time.sleep(0.5)
        seen.append(threading.current_thread() is threading.main_thread())

    async def scenario():
        bus = StatusBroadcaster()
        bus.subscribe(handler=handler)
        bus.publish(EventKind.STARTED)
        began = time.monotonic()
        for _ in range(5):
            await asyncio.sleep(0.02)
        ticked = time.monotonic() - began
        await asyncio.sleep(0.7)
        bus.close()
        return ticked

    assert asyncio.run(scenario()) < 0.4
    assert seen == [False]


def test_unsubscribe_stops_delivery():
    async def scenario():
        bus = StatusBroadcaster()
        sub = bus.subscribe()
        sub.unsubscribe()
        bus.publish(EventKind.STOPPED)
        return bus, sub

    bus, sub = asyncio.run(scenario())
    assert bus.subscriber_count == 0
    assert sub.drain() == []


def test_get_status_defaults_and_provider():
    bus = StatusBroadcaster()
    s = bus.get_status()
    assert (s.enrolled, s.credential_valid, s.running) == (False, False, False)
    bus.set_status_provider(lambda: AgentStatus(enrolled=True, credential_valid=True, running=True))
    assert bus.get_status().running is True
