"""
Status broadcaster: in-process publish/subscribe of agent lifecycle events.

Every subscriber owns a bounded queue. ``publish`` only ever does
``put_nowait`` and drops the subscriber's oldest event when its queue is full,
so a slow or failing consumer cannot stall the scheduler loops. Callback
subscribers are drained by their own asyncio task; plain function callbacks
run in a worker thread so a blocking one does not hold the event loop.
"""

from __future__ import annotations
import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from .models import AgentStatus, utcnow
from .obs.logging import get_logger

logger = get_logger("huginn.events")


class EventKind(str, Enum):
    ENROLLED = "enrolled"
    UNENROLLED = "unenrolled"
    ENROLLMENT_FAILED = "enrollmentFailed"
    TOKEN_REFRESHED = "tokenRefreshed"
    TASK_COMPLETED = "taskCompleted"
    TASK_FAILED = "taskFailed"
    TELEMETRY_SENT = "telemetrySent"
    TELEMETRY_FAILED = "telemetryFailed"
    UNHEALTHY = "unhealthy"
    STARTED = "started"
    STOPPED = "stopped"


@dataclass(frozen=True)
class AgentEvent:
    kind: EventKind
    data: Dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=utcnow)


Handler = Callable[[AgentEvent], Union[None, Awaitable[None]]]


class Subscription:
    """A subscriber's bounded mailbox. Iterate it with ``async for``."""

    def __init__(
        self,
        broadcaster: "StatusBroadcaster",
        kinds: Optional[Set[EventKind]],
        maxsize: int,
        handler: Optional[Handler] = None,
    ):
        self._broadcaster = broadcaster
        self.kinds = kinds
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.handler = handler
        self.dropped = 0
        self.closed = False
        self._pump: Optional[asyncio.Task] = None

    def wants(self, kind: EventKind) -> bool:
        return not self.closed and (self.kinds is None or kind in self.kinds)

    def offer(self, event: AgentEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # Keep the newest events
            self.queue.get_nowait()
            self.queue.put_nowait(event)
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("Subscriber queue full, dropping oldest events", extra={"context": {"dropped": self.dropped}})

    async def get(self) -> AgentEvent:
        return await self.queue.get()

    def drain(self) -> List[AgentEvent]:
        """Return every queued event without waiting."""
        out: List[AgentEvent] = []
        while True:
            try:
                out.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return out

    def __aiter__(self):
        return self

    async def __anext__(self) -> AgentEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        return await self.queue.get()

    def _ensure_pump(self) -> None:
        if self.handler is None or self._pump is not None or self.closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._pump = loop.create_task(self._run_handler())

    async def _run_handler(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                if inspect.iscoroutinefunction(self.handler):
                    await self.handler(event)
                else:
                    res = await asyncio.to_thread(self.handler, event)
                    if inspect.isawaitable(res):
                        await res
            except Exception:
                logger.exception("Event subscriber failed", extra={"event": event.kind.value})

    def close(self) -> None:
        self.closed = True
        if self._pump is not None:
            self._pump.cancel()
            self._pump = None

    def unsubscribe(self) -> None:
        self._broadcaster.unsubscribe(self)


class StatusBroadcaster:
    """
    Fan-out of lifecycle events plus the synchronous status snapshot.

    Usage:
        bus = StatusBroadcaster()
        sub = bus.subscribe({EventKind.TASK_FAILED})
        bus.publish(EventKind.TASK_FAILED, task_id="t1")
        event = await sub.get()
    """

    def __init__(self, status_provider: Optional[Callable[[], AgentStatus]] = None):
        self._subs: List[Subscription] = []
        self._status_provider = status_provider

    def set_status_provider(self, provider: Callable[[], AgentStatus]) -> None:
        self._status_provider = provider

    def subscribe(
        self,
        kinds: Optional[Iterable[EventKind]] = None,
        handler: Optional[Handler] = None,
        maxsize: int = 100,
    ) -> Subscription:
        sub = Subscription(self, set(kinds) if kinds is not None else None, maxsize, handler)
        self._subs.append(sub)
        sub._ensure_pump()
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        if sub in self._subs:
            self._subs.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def publish(self, kind: EventKind, **data: Any) -> AgentEvent:
        event = AgentEvent(kind=kind, data=data)
        logger.debug(f"event {kind.value}", extra={"event": kind.value})
        for sub in list(self._subs):
            if sub.wants(kind):
                sub.offer(event)
                sub._ensure_pump()
        return event

    def get_status(self) -> AgentStatus:
        if self._status_provider is None:
            return AgentStatus(enrolled=False, credential_valid=False, running=False)
        return self._status_provider()

    def close(self) -> None:
        for sub in list(self._subs):
            self.unsubscribe(sub)
