"""
Software installation strategy.

Sources:
- homebrew: ``brew install <name>[@version]``
- mas: ``mas install <app id>``
- dmg / pkg: download into a private temporary directory, verify the optional
  SHA-256 checksum, then mount (dmg) and install. The directory is removed
  regardless of outcome.

A failing pre-install script aborts the install. A failing post-install
script is logged and recorded in the result metadata only.
"""

from __future__ import annotations
import asyncio
import hashlib
import os
import shutil
import tempfile
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from ..errors import DependencyMissing, ExecutionFailed, TaskError, TransportError
from ..models import TaskResult
from ..obs.logging import get_logger
from ..transport import Transport
from .payloads import InstallPayload, InstallSource, ScriptPayload
from .process import Deadline, ProcessRunner
from .script import run_script

logger = get_logger("huginn.tasks.install")

SCRIPT_SHARE = 1 / 3
DOWNLOAD_SHARE = 0.5
DETACH_TIMEOUT_S = 5.0


def _require(tool: str, hint: str = "") -> str:
    path = shutil.which(tool)
    if path is None:
        raise DependencyMissing(f"{tool} is not installed or not in PATH" + (f" ({hint})" if hint else ""))
    return path


def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            h.update(block)
    return h.hexdigest()


class SoftwareInstaller:
    def __init__(
        self,
        runner: ProcessRunner,
        transport: Optional[Transport] = None,
        applications_dir: str = "/Applications",
    ):
        self.runner = runner
        self.transport = transport
        self.applications_dir = applications_dir

    async def install(self, p: InstallPayload, deadline: Deadline) -> TaskResult:
        metadata: Dict[str, Any] = {"name": p.name, "version": p.version, "source": p.source.value}

        if p.pre_install_script:
            logger.debug("Running pre-install script")
            pre = await run_script(self.runner, ScriptPayload(content=p.pre_install_script), deadline.budget(SCRIPT_SHARE))
            if not pre.ok:
                raise ExecutionFailed(
                    f"Pre-install script failed with exit code {pre.exit_code}: {pre.stderr.strip()[:500]}",
                    exit_code=pre.exit_code,
                    output=pre.stdout,
                    metadata=metadata,
                )

        if p.source == InstallSource.HOMEBREW:
            output = await self._install_homebrew(p, deadline)
        elif p.source == InstallSource.MAS:
            output = await self._install_mas(p, deadline)
        else:
            output = await self._install_from_url(p, deadline)

        if p.post_install_script:
            logger.debug("Running post-install script")
            try:
                post = await run_script(
                    self.runner, ScriptPayload(content=p.post_install_script), deadline.budget(SCRIPT_SHARE)
                )
                metadata["post_install_ok"] = post.ok
                if not post.ok:
                    logger.warning(
                        "Post-install script failed",
                        extra={"context": {"exit_code": post.exit_code, "stderr": post.stderr[:500]}},
                    )
            except TaskError as e:
                metadata["post_install_ok"] = False
                logger.warning("Post-install script failed", extra={"error_code": e.code, "context": {"error": str(e)}})

        label = f"{p.name or os.path.basename(urlparse(p.url or '').path)}"
        if p.version:
            label += f" ({p.version})"
        return TaskResult(success=True, output=f"Successfully installed {label}\n{output}".rstrip(), metadata=metadata)

    async def _install_homebrew(self, p: InstallPayload, deadline: Deadline) -> str:
        brew = _require("brew")
        package = f"{p.name}@{p.version}" if p.version else str(p.name)
        res = await self.runner.check([brew, "install", package, *p.install_args], deadline.budget())
        return res.stdout

    async def _install_mas(self, p: InstallPayload, deadline: Deadline) -> str:
        mas = _require("mas", "install with: brew install mas")
        res = await self.runner.check([mas, "install", str(p.name), *p.install_args], deadline.budget())
        return res.stdout

    async def _install_from_url(self, p: InstallPayload, deadline: Deadline) -> str:
        if self.transport is None:
            raise DependencyMissing("no transport configured for installer downloads")
        url = str(p.url)
        filename = os.path.basename(urlparse(url).path) or f"installer.{p.source.value}"
        with tempfile.TemporaryDirectory(prefix="huginn-install-") as tmp:
            dest = os.path.join(tmp, filename)
            logger.info("Downloading installer", extra={"endpoint": url})
            try:
                size = await self.transport.download(url, dest, deadline.budget(DOWNLOAD_SHARE))
            except TransportError as e:
                raise ExecutionFailed(f"download of {url} failed: {e}") from e
            logger.debug("Installer downloaded", extra={"context": {"bytes": size}})

            if p.checksum:
                digest = await asyncio.to_thread(sha256_file, dest)
                if digest != p.checksum:
                    raise ExecutionFailed(f"checksum mismatch for {filename}: expected {p.checksum}, got {digest}")

            if p.source == InstallSource.DMG:
                return await self._install_dmg(dest, tmp, p.install_args, deadline)
            return await self._install_pkg(dest, p.install_args, deadline)

    async def _install_pkg(self, pkg_path: str, args: List[str], deadline: Deadline) -> str:
        installer = _require("installer")
        res = await self.runner.check([installer, "-pkg", pkg_path, "-target", "/", *args], deadline.budget())
        return res.stdout

    async def _install_dmg(self, dmg_path: str, workdir: str, args: List[str], deadline: Deadline) -> str:
        hdiutil = _require("hdiutil")
        mount = os.path.join(workdir, "mnt")
        os.makedirs(mount, mode=0o700, exist_ok=True)
        await self.runner.check(
            [hdiutil, "attach", dmg_path, "-nobrowse", "-readonly", "-mountpoint", mount],
            deadline.budget(),
        )
        try:
            entries = sorted(os.listdir(mount))
            app = next((e for e in entries if e.endswith(".app")), None)
            pkg = next((e for e in entries if e.endswith(".pkg")), None)
            if app is not None:
                target = os.path.join(self.applications_dir, app)
                await asyncio.to_thread(shutil.copytree, os.path.join(mount, app), target, symlinks=True, dirs_exist_ok=True)
                return f"Installed {app} to {self.applications_dir}"
            if pkg is not None:
                return await self._install_pkg(os.path.join(mount, pkg), args, deadline)
            raise ExecutionFailed("No .app or .pkg file found in disk image")
        finally:
            await self._detach(hdiutil, mount)

    async def _detach(self, hdiutil: str, mount: str) -> None:
        """Force-detach ``mount`` within DETACH_TIMEOUT_S; failures are logged so the install error is kept."""
        try:
            detach = await self.runner.run([hdiutil, "detach", mount, "-force"], DETACH_TIMEOUT_S)
        except TaskError as e:
            logger.warning("Failed to detach disk image", extra={"error_code": e.code, "context": {"mount": mount, "error": str(e)}})
            return
        if not detach.ok:
            logger.warning("Failed to detach disk image", extra={"context": {"mount": mount, "stderr": detach.stderr[:300]}})
