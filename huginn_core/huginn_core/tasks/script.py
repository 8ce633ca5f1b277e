from __future__ import annotations
import os
import shutil
import tempfile

from ..errors import DependencyMissing
from ..obs.logging import get_logger
from .payloads import ScriptPayload
from .process import ProcessOutput, ProcessRunner

logger = get_logger("huginn.tasks.script")


async def run_script(runner: ProcessRunner, payload: ScriptPayload, timeout: float) -> ProcessOutput:
    """
    Write the script body into a private temporary directory and run it.

    The directory is created with mode 0700 under a unique name and removed on
    every exit path, including timeout and cancellation.
    """
    interpreter = shutil.which(payload.interpreter)
    if interpreter is None:
        raise DependencyMissing(f"interpreter not found: {payload.interpreter}")
    with tempfile.TemporaryDirectory(prefix="huginn-script-") as tmp:
        path = os.path.join(tmp, f"task{payload.extension}")
        with open(path, "w", encoding="utf-8") as f:
            f.write(payload.content)
        os.chmod(path, 0o700)
        logger.debug("Running script", extra={"context": {"interpreter": interpreter, "dir": tmp}})
        return await runner.run(
            [interpreter, path, *payload.args],
            timeout,
            cwd=payload.cwd,
            env=payload.env,
        )
