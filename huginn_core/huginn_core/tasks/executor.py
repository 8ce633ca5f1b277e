"""
Task execution engine.

``execute(task)`` dispatches on the task kind, bounds the whole execution by
the task timeout and always returns a TaskResult: every TaskError is captured
into it with its ``code``. Nothing is retried here; the engine holds no
durable state.
"""

from __future__ import annotations
import asyncio
import shlex
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import ExecutionFailed, InvalidPayload, TaskError, TaskTimeout, UnsupportedKind
from ..models import DEFAULT_TASK_TIMEOUT_S, Task, TaskKind, TaskResult
from ..obs.audit import write_task_audit
from ..obs.logging import get_logger
from ..transport import Transport
from .install import SoftwareInstaller
from .payloads import CommandPayload, InstallPayload, PolicyPayload, ScriptPayload, parse_payload
from .policy import PolicyEngine
from .process import MIB, Deadline, ProcessOutput, ProcessRunner
from .safety import CommandFilter
from .script import run_script

logger = get_logger("huginn.tasks.executor")

Strategy = Callable[[Dict[str, Any], Deadline], Awaitable[TaskResult]]


def _failure(res: ProcessOutput, what: str) -> ExecutionFailed:
    detail = (res.stderr or "").strip()
    msg = f"{what} exited with code {res.exit_code}"
    if detail:
        msg += f": {detail[:1000]}"
    return ExecutionFailed(msg, exit_code=res.exit_code, output=res.stdout or None)


def _process_metadata(res: ProcessOutput) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    if res.stderr:
        meta["stderr"] = res.stderr
    if res.truncated:
        meta["truncated"] = True
    return meta


class TaskExecutor:
    """
    Example:
        executor = TaskExecutor()
        result = await executor.execute(Task(id="t1", kind="command", payload={"command": "echo", "args": ["hi"]}))
        assert result.output == "hi\\n"
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        transport: Optional[Transport] = None,
        command_filter: Optional[CommandFilter] = None,
        default_timeout_s: float = DEFAULT_TASK_TIMEOUT_S,
        max_output_bytes: int = MIB,
        applications_dir: str = "/Applications",
        audit: bool = True,
    ):
        self.runner = runner or ProcessRunner(max_output_bytes=max_output_bytes)
        self.command_filter = command_filter or CommandFilter()
        self.default_timeout_s = default_timeout_s
        self.audit = audit
        self.installer = SoftwareInstaller(self.runner, transport, applications_dir)
        self.policies = PolicyEngine(self.runner)
        self._strategies: Dict[str, Strategy] = {
            TaskKind.COMMAND.value: self._run_command,
            TaskKind.SCRIPT.value: self._run_script,
            TaskKind.INSTALL.value: self._run_install,
            TaskKind.POLICY.value: self._run_policy,
        }

    async def execute(self, task: Task) -> TaskResult:
        timeout = task.timeout_s(self.default_timeout_s)
        started = time.monotonic()
        logger.info("Executing task", extra={"task_id": task.id, "kind": task.kind, "context": {"timeout_s": timeout}})

        try:
            strategy = self._strategies.get(task.kind)
            if strategy is None:
                raise UnsupportedKind(f"Unsupported task type: {task.kind}")
            result = await asyncio.wait_for(strategy(task.payload, Deadline(timeout)), timeout)
        except asyncio.TimeoutError:
            result = TaskResult(
                success=False,
                error=f"Task exceeded timeout of {timeout:.1f}s",
                error_code=TaskTimeout.code,
            )
        except TaskError as e:
            result = TaskResult(
                success=False,
                output=e.output,
                error=str(e),
                exit_code=e.exit_code,
                error_code=e.code,
                metadata=dict(e.metadata),
            )
        except Exception as e:
            logger.exception("Unexpected error while executing task", extra={"task_id": task.id})
            result = TaskResult(success=False, error=f"{type(e).__name__}: {e}", error_code=ExecutionFailed.code)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        log = logger.info if result.success else logger.error
        log(
            "Task execution completed" if result.success else "Task execution failed",
            extra={
                "task_id": task.id,
                "kind": task.kind,
                "duration_ms": result.duration_ms,
                "error_code": result.error_code,
            },
        )
        self._audit(task, result)
        return result

    def _audit(self, task: Task, result: TaskResult) -> None:
        if not self.audit:
            return
        try:
            write_task_audit(
                task.id,
                task.kind,
                result.success,
                result.duration_ms,
                error_code=result.error_code,
                exit_code=result.exit_code,
                output_bytes=len(result.output or ""),
            )
        except OSError as e:
            logger.warning("Audit write failed", extra={"task_id": task.id, "context": {"error": str(e)}})

    # ==========================================
    # Strategies
    # ==========================================

    async def _run_command(self, payload: Dict[str, Any], deadline: Deadline) -> TaskResult:
        p = parse_payload(CommandPayload, payload)
        line = p.command_line()
        self.command_filter.check(line)
        if p.shell:
            argv = [line]
        else:
            try:
                argv = shlex.split(p.command) + list(p.args)
            except ValueError as e:
                raise InvalidPayload(f"cannot parse command: {e}") from e
            # Quoting can hide an operand from the raw line
            self.command_filter.check(" ".join(argv))
        res = await self.runner.run(argv, deadline.budget(), cwd=p.cwd, env=p.env, shell=p.shell)
        if not res.ok:
            raise _failure(res, "Command")
        return TaskResult(success=True, output=res.stdout, exit_code=0, metadata=_process_metadata(res))

    async def _run_script(self, payload: Dict[str, Any], deadline: Deadline) -> TaskResult:
        p = parse_payload(ScriptPayload, payload)
        res = await run_script(self.runner, p, deadline.budget())
        if not res.ok:
            err = _failure(res, "Script")
            err.metadata = {"interpreter": p.interpreter}
            raise err
        meta = _process_metadata(res)
        meta["interpreter"] = p.interpreter
        return TaskResult(success=True, output=res.stdout, exit_code=0, metadata=meta)

    async def _run_install(self, payload: Dict[str, Any], deadline: Deadline) -> TaskResult:
        return await self.installer.install(parse_payload(InstallPayload, payload), deadline)

    async def _run_policy(self, payload: Dict[str, Any], deadline: Deadline) -> TaskResult:
        return await self.policies.apply(parse_payload(PolicyPayload, payload), deadline)
