"""
Child process execution with bounded output and a hard deadline.

Every child is started in its own session, so its process group id is its
pid. On timeout or cancellation the group is killed along with every psutil
descendant, so grandchildren spawned by a shell or an installer do not
outlive the task even after the shell itself has exited.
"""

from __future__ import annotations
import asyncio
import os
import signal
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import psutil

from ..errors import ExecutionFailed, TaskTimeout
from ..obs.logging import get_logger

logger = get_logger("huginn.tasks.process")

MIB = 1024 * 1024
READ_CHUNK = 64 * 1024
TRUNCATION_MARKER = "\n[output truncated]"


@dataclass
class ProcessOutput:
    exit_code: int
    stdout: str
    stderr: str
    truncated: bool = False
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Deadline:
    """Wall-clock budget shared by the steps of one task."""

    def __init__(self, seconds: float):
        self.total = float(seconds)
        self.expires = time.monotonic() + self.total

    def remaining(self) -> float:
        return max(0.0, self.expires - time.monotonic())

    def budget(self, fraction: float = 1.0) -> float:
        """Time for one step: ``fraction`` of the total, capped by what is left."""
        left = self.remaining()
        if left <= 0:
            raise TaskTimeout(f"task deadline of {self.total:.1f}s exceeded")
        return min(left, self.total * fraction)


def kill_process_tree(pid: int) -> List[psutil.Process]:
    """
    SIGKILL the session leader ``pid``, its descendants and its process group.

    Does not wait. Returns the descendants that were signalled so the caller
    can wait for them; the leader itself is reaped by its asyncio transport.
    """
    try:
        parent = psutil.Process(pid)
        descendants = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        parent, descendants = None, []

    signalled = []
    for p in descendants + ([parent] if parent else []):
        try:
            p.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Cannot kill child process", extra={"context": {"pid": p.pid}})
            continue
        if p is not parent:
            signalled.append(p)

    # Background jobs of an exited shell are reparented but keep its group
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug("Process group already gone", extra={"context": {"pgid": pid}})
    except PermissionError:
        logger.warning("Cannot kill process group", extra={"context": {"pgid": pid}})
    return signalled


async def terminate_tree(pid: int, timeout: float = 3.0) -> int:
    """Kill the tree of ``pid`` and wait off-loop for its descendants. Returns how many were killed."""
    signalled = kill_process_tree(pid)
    if signalled:
        await asyncio.to_thread(psutil.wait_procs, signalled, timeout=timeout)
    return len(signalled)


async def _read_capped(stream: Optional[asyncio.StreamReader], limit: int) -> tuple[bytes, bool]:
    """Keep the first ``limit`` bytes and keep draining the rest."""
    if stream is None:
        return b"", False
    buf = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        room = limit - len(buf)
        if room > 0:
            buf.extend(chunk[:room])
        if len(chunk) > room:
            truncated = True
    return bytes(buf), truncated


def _decode(data: bytes, truncated: bool) -> str:
    text = data.decode("utf-8", errors="replace")
    return text + TRUNCATION_MARKER if truncated else text


class ProcessRunner:
    """
    Spawns child processes for the task strategies.

    ``spawn_count`` counts every process actually started; the executor's
    safety tests rely on it staying at zero for rejected commands.
    """

    def __init__(self, max_output_bytes: int = MIB):
        self.max_output_bytes = max_output_bytes
        self.spawn_count = 0

    async def run(
        self,
        argv: Sequence[str],
        timeout: float,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        shell: bool = False,
    ) -> ProcessOutput:
        """
        Run ``argv`` (or, with ``shell``, the single command line ``argv[0]``).

        Returns the exit code and capped output; a non-zero exit is returned,
        not raised.

        Raises:
            TaskTimeout: the process outlived ``timeout``; its tree was killed
            ExecutionFailed: the executable or working directory is unusable
        """
        if timeout <= 0:
            raise TaskTimeout("no time left to start process")
        full_env = dict(os.environ)
        if env:
            full_env.update({str(k): str(v) for k, v in env.items()})

        started = time.monotonic()
        try:
            if shell:
                proc = await asyncio.create_subprocess_shell(
                    argv[0],
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=full_env,
                    start_new_session=True,
                )
            else:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=full_env,
                    start_new_session=True,
                )
        except FileNotFoundError as e:
            if cwd and not os.path.isdir(cwd):
                raise ExecutionFailed(f"working directory not found: {cwd}") from e
            raise ExecutionFailed(f"executable not found: {argv[0]}", exit_code=127) from e
        except PermissionError as e:
            raise ExecutionFailed(f"permission denied: {argv[0]}", exit_code=126) from e
        self.spawn_count += 1
        logger.debug("Spawned process", extra={"context": {"pid": proc.pid, "argv0": argv[0]}})

        try:
            (out, out_trunc), (err, err_trunc), code = await asyncio.wait_for(
                asyncio.gather(
                    _read_capped(proc.stdout, self.max_output_bytes),
                    _read_capped(proc.stderr, self.max_output_bytes),
                    proc.wait(),
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            killed = await terminate_tree(proc.pid)
            await proc.wait()
            logger.warning(
                "Process timed out, tree killed",
                extra={"context": {"pid": proc.pid, "killed": killed, "timeout_s": timeout}},
            )
            raise TaskTimeout(f"process exceeded {timeout:.1f}s and was killed")
        except asyncio.CancelledError:
            kill_process_tree(proc.pid)
            await proc.wait()
            logger.info("Process killed on cancellation", extra={"context": {"pid": proc.pid}})
            raise

        return ProcessOutput(
            exit_code=code,
            stdout=_decode(out, out_trunc),
            stderr=_decode(err, err_trunc),
            truncated=out_trunc or err_trunc,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def check(self, argv: List[str], timeout: float, **kwargs) -> ProcessOutput:
        """Like ``run`` but raises ExecutionFailed on a non-zero exit."""
        res = await self.run(argv, timeout, **kwargs)
        if not res.ok:
            detail = (res.stderr or res.stdout).strip()
            raise ExecutionFailed(
                f"{argv[0]} exited with {res.exit_code}" + (f": {detail[:500]}" if detail else ""),
                exit_code=res.exit_code,
                output=res.stdout,
            )
        return res
