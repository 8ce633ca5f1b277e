"""
Agent scheduler: the check-in, telemetry and health loops.

Each loop runs as its own asyncio task and parks on a cancellable sleep
between iterations. A failed iteration moves the loop into backoff; the delay
before the next attempt comes from ``RetryPolicy.next_delay`` and depends
only on the loop's consecutive failures. While the agent is not enrolled the
loops wait on the auth manager's enrollment event instead of polling.

Usage:
    scheduler = AgentScheduler(auth, client, executor, assembler, broadcaster, config)
    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations
import asyncio
import functools
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..auth.manager import AuthManager
from ..config import AgentConfig
from ..errors import AuthError, Expired, Http4xx, InvalidToken, NotEnrolled, TransportError, Unreachable
from ..events import EventKind, StatusBroadcaster
from ..models import AgentStatus, Credential, Task, TaskResult
from ..obs.logging import get_logger
from ..tasks.executor import TaskExecutor
from ..telemetry import TelemetryAssembler
from ..transport import PlatformClient
from ..utils.retry import RetryPolicy
from .state import LoopPhase, ScheduleState

logger = get_logger("huginn.scheduler")

T = TypeVar("T")

CHECKIN = "checkin"
TELEMETRY = "telemetry"
HEALTH = "health"

DEDUPE_WINDOW = 1000


class AgentScheduler:
    def __init__(
        self,
        auth: AuthManager,
        client: PlatformClient,
        executor: TaskExecutor,
        assembler: TelemetryAssembler,
        broadcaster: StatusBroadcaster,
        config: AgentConfig,
        dedupe_window: int = DEDUPE_WINDOW,
    ):
        self.auth = auth
        self.client = client
        self.executor = executor
        self.assembler = assembler
        self.broadcaster = broadcaster
        self.config = config
        self.retry = RetryPolicy(
            max_attempts=config.max_retries + 1,
            base_delay=config.backoff_base_s,
            max_delay=config.backoff_ceiling_s,
            jitter_ratio=config.backoff_jitter,
        )
        self.states: Dict[str, ScheduleState] = {
            CHECKIN: ScheduleState(CHECKIN, config.checkin_interval_s),
            TELEMETRY: ScheduleState(TELEMETRY, config.telemetry_interval_s),
            HEALTH: ScheduleState(HEALTH, config.health_interval_s),
        }
        self._ops: Dict[str, Callable[[], Awaitable[Any]]] = {
            CHECKIN: self.checkin_once,
            TELEMETRY: self.telemetry_once,
            HEALTH: self.health_once,
        }
        self._stop_event = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._pending = 0
        self._executed: "OrderedDict[str, None]" = OrderedDict()
        self._dedupe_window = dedupe_window

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_task_count(self) -> int:
        return self._pending

    # ==========================================
    # Lifecycle
    # ==========================================

    async def start(self) -> None:
        if self._running:
            return
        self._stop_event = asyncio.Event()
        self._running = True
        for name in (CHECKIN, TELEMETRY, HEALTH):
            # Health was validated at initialization; it first runs after one interval
            run_first = name != HEALTH
            self._tasks[name] = asyncio.create_task(self._loop(name, run_first), name=f"huginn-{name}")
        logger.info("Scheduler started", extra={"context": {s.name: s.interval for s in self.states.values()}})
        self.broadcaster.publish(EventKind.STARTED)

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop all loops. Sleeping loops wake immediately; an iteration in
        progress gets ``grace`` seconds to finish before it is cancelled.
        """
        if not self._running:
            return
        grace = self.config.shutdown_grace_s if grace is None else grace
        self._stop_event.set()
        tasks = list(self._tasks.values())
        pending: set = set()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace)
        for t in pending:
            logger.warning("Cancelling in-flight iteration after grace period", extra={"loop": t.get_name()})
            t.cancel()
        if pending:
            await asyncio.wait(pending)
        for t in tasks:
            if not t.cancelled() and t.exception() is not None:
                logger.error("Loop ended with error", extra={"loop": t.get_name(), "context": {"error": repr(t.exception())}})
        self._tasks.clear()
        for state in self.states.values():
            state.stop()
        self._running = False
        self._pending = 0
        logger.info("Scheduler stopped")
        self.broadcaster.publish(EventKind.STOPPED)

    def status(self) -> AgentStatus:
        cred = self.auth.credential
        return AgentStatus(
            enrolled=cred is not None,
            credential_valid=cred is not None and not cred.is_expired(),
            running=self._running,
            last_checkin=self.states[CHECKIN].last_success_at,
            last_telemetry=self.states[TELEMETRY].last_success_at,
            pending_task_count=self._pending,
            agent_id=cred.identity if cred else None,
        )

    def next_delay(self, name: str, jitter: bool = True) -> float:
        state = self.states[name]
        return self.retry.next_delay(state.consecutive_failures, state.interval, jitter=jitter)

    # ==========================================
    # Loop machinery
    # ==========================================

    async def _sleep(self, delay: float) -> None:
        """Sleep up to ``delay`` seconds; returns early on shutdown."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), delay)
        except asyncio.TimeoutError:
            return

    async def _wait_enrolled(self) -> None:
        waiters = [
            asyncio.ensure_future(self.auth.enrolled_event.wait()),
            asyncio.ensure_future(self._stop_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()

    async def _loop(self, name: str, run_first: bool) -> None:
        state = self.states[name]
        if not run_first:
            state.schedule(state.interval)
            await self._sleep(state.interval)
        while not self._stop_event.is_set():
            if not self.auth.is_enrolled():
                state.pause()
                logger.info("Loop paused until enrollment", extra={"loop": name})
                await self._wait_enrolled()
                continue
            try:
                await self.run_once(name)
            except NotEnrolled:
                continue
            except (AuthError, TransportError) as e:
                logger.warning(
                    f"{name} iteration failed: {e}",
                    extra={"loop": name, "attempt": state.consecutive_failures},
                )
            except Exception:
                logger.exception(f"{name} iteration crashed", extra={"loop": name})
            if self._stop_event.is_set():
                break
            delay = self.next_delay(name)
            state.schedule(delay)
            if state.phase == LoopPhase.BACKOFF:
                logger.info("Backing off", extra={"loop": name, "delay_s": round(delay, 2)})
            await self._sleep(delay)

    async def run_once(self, name: str) -> Any:
        """Run one iteration of loop ``name`` with its state bookkeeping."""
        state = self.states[name]
        state.begin()
        try:
            result = await self._ops[name]()
        except NotEnrolled:
            state.pause()
            raise
        except Exception as e:
            state.fail(e)
            raise
        state.succeed()
        return result

    async def _authorized(
        self,
        call: Callable[[Credential], Awaitable[T]],
        invalidate_on_404: bool = False,
    ) -> T:
        """
        Run ``call`` with a valid credential. A 401 triggers exactly one
        refresh and one retry; a 404 with ``invalidate_on_404`` clears the
        credential and surfaces NotEnrolled.
        """
        cred = await self.auth.ensure_valid()
        try:
            return await self._call_checked(call, cred, invalidate_on_404)
        except Http4xx as e:
            if e.status != 401:
                raise
            logger.warning("Unauthorized, refreshing credential once", extra={"agent_id": cred.identity, "endpoint": e.endpoint})
        cred = await self.auth.refresh()
        return await self._call_checked(call, cred, invalidate_on_404)

    async def _call_checked(
        self,
        call: Callable[[Credential], Awaitable[T]],
        cred: Credential,
        invalidate_on_404: bool,
    ) -> T:
        try:
            return await call(cred)
        except Http4xx as e:
            if e.status == 404 and invalidate_on_404:
                logger.error("Platform does not recognize this agent", extra={"agent_id": cred.identity, "endpoint": e.endpoint})
                await self.auth.invalidate("agent_not_found")
                raise NotEnrolled("agent not found on platform") from e
            raise

    # ==========================================
    # Iterations
    # ==========================================

    def _seen(self, task_id: str) -> bool:
        return task_id in self._executed

    def _remember(self, task_id: str) -> None:
        self._executed[task_id] = None
        while len(self._executed) > self._dedupe_window:
            self._executed.popitem(last=False)

    async def checkin_once(self) -> List[TaskResult]:
        """
        Fetch tasks, execute them sequentially by descending priority and
        report each result. A failed report is logged, not re-queued, and
        fails the iteration once all tasks are done.
        """
        snapshot = await self.assembler.snapshot()
        tasks = await self._authorized(
            functools.partial(self.client.checkin, snapshot=snapshot), invalidate_on_404=True
        )
        # sorted() is stable: equal priorities keep delivery order
        ordered: List[Task] = []
        for task in sorted(tasks, key=lambda t: -t.priority):
            if self._seen(task.id):
                logger.warning("Skipping redelivered task", extra={"task_id": task.id})
                continue
            ordered.append(task)
        if ordered:
            logger.info(f"Fetched {len(ordered)} task(s)", extra={"loop": CHECKIN})

        results: List[TaskResult] = []
        report_error: Optional[BaseException] = None
        self._pending = len(ordered)
        try:
            for task in ordered:
                if self._stop_event.is_set():
                    logger.info("Shutdown requested, leaving remaining tasks", extra={"context": {"left": self._pending}})
                    break
                result = await self.executor.execute(task)
                self._remember(task.id)
                self._pending -= 1
                results.append(result)
                kind = EventKind.TASK_COMPLETED if result.success else EventKind.TASK_FAILED
                self.broadcaster.publish(
                    kind, task_id=task.id, task_kind=task.kind, success=result.success,
                    duration_ms=result.duration_ms, error_code=result.error_code,
                )
                try:
                    await self._authorized(
                        functools.partial(self.client.report_task_result, task_id=task.id, result=result)
                    )
                except (TransportError, AuthError) as e:
                    report_error = e
                    logger.error(
                        f"Failed to report task result: {e}",
                        extra={"task_id": task.id, "error_code": type(e).__name__},
                    )
        finally:
            self._pending = 0
        if report_error is not None:
            raise report_error
        return results

    async def telemetry_once(self) -> None:
        payload = await self.assembler.collect()
        try:
            await self._authorized(functools.partial(self.client.send_telemetry, payload=payload))
        except (TransportError, AuthError) as e:
            self.broadcaster.publish(EventKind.TELEMETRY_FAILED, error=str(e))
            raise
        logger.info("Telemetry sent", extra={"loop": TELEMETRY})
        self.broadcaster.publish(EventKind.TELEMETRY_SENT)

    async def health_once(self) -> Credential:
        """Re-validate the credential; emits ``unhealthy`` once retries are exhausted."""

        @self.retry.async_retry(exceptions=(Unreachable, Expired, InvalidToken))
        async def validate() -> Credential:
            return await self.auth.ensure_valid()

        try:
            return await validate()
        except NotEnrolled:
            raise
        except AuthError as e:
            logger.error("Credential cannot be validated", extra={"loop": HEALTH, "error_code": type(e).__name__})
            self.broadcaster.publish(EventKind.UNHEALTHY, reason=str(e), error=type(e).__name__)
            raise
