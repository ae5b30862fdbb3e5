"""One coroutine per job operation kind."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import (
    ERR_PACKAGE_START_FAILED,
    ERR_PACKAGE_STOP_FAILED,
    AgentError,
    InvalidManifestError,
    InvalidPackageNameError,
    UnexpectedJobStateError,
    UnnamedPackageError,
)
from .installer import PackageInstaller, document_package_id
from .jobs import STEP_INITIATED, JobContext, JobHandler, JobStatus, Operation
from .package_store import PackageStore
from .shell import Shell
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

# operation -> JobHandlers method name
HANDLER_METHODS: Dict[Operation, str] = {
    Operation.SYSTEM_SHUTDOWN: "system_shutdown",
    Operation.SYSTEM_REBOOT: "system_reboot",
    Operation.SYSTEM_UPDATE: "system_update",
    Operation.PACKAGE_INSTALL: "package_install",
    Operation.PACKAGE_UNINSTALL: "package_uninstall",
    Operation.PACKAGE_UPDATE: "package_update",
    Operation.PACKAGE_START: "package_start",
    Operation.PACKAGE_STOP: "package_stop",
    Operation.PACKAGE_RESTART: "package_restart",
}

_missing = [operation.value for operation in Operation if operation not in HANDLER_METHODS]
if _missing:
    raise RuntimeError(f"no job handler bound for: {', '.join(_missing)}")


def _exit_process() -> None:
    logging.shutdown()
    os._exit(0)


def _parse_delay(document: Dict[str, Any]) -> int:
    raw = document.get("delay", 0)
    try:
        delay = int(raw if raw not in (None, "") else 0)
    except (TypeError, ValueError) as exc:
        raise InvalidManifestError(f"delay must be a number of minutes, got {raw!r}") from exc
    if delay < 0:
        raise InvalidManifestError("delay must not be negative")
    return delay


class JobHandlers:
    def __init__(
        self,
        store: PackageStore,
        supervisor: ProcessSupervisor,
        installer: PackageInstaller,
        shell: Optional[Shell] = None,
        *,
        shutdown_command: str = "/sbin/shutdown",
        agent_root: Path = Path("."),
        update_commands: Sequence[str] = (),
        terminate: Callable[[], None] = _exit_process,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._installer = installer
        self._shell = shell or Shell()
        self.shutdown_command = shutdown_command
        self.agent_root = Path(agent_root)
        self.update_commands: List[str] = list(update_commands)
        self._terminate = terminate

    def table(self) -> Dict[Operation, JobHandler]:
        return {operation: getattr(self, name) for operation, name in HANDLER_METHODS.items()}

    # system ---------------------------------------------------------------

    async def system_shutdown(self, ctx: JobContext) -> None:
        if ctx.step == STEP_INITIATED:
            await ctx.succeed(step="shut down")
            return
        if ctx.status is not JobStatus.QUEUED:
            raise UnexpectedJobStateError("shutdown job execution in unexpected state")
        delay = _parse_delay(ctx.document)
        logger.info("system shutdown requested (+%s min)", delay)
        await ctx.progress(STEP_INITIATED)
        await self._shell.run(f"{self.shutdown_command} +{delay}")
        await ctx.succeed(step="shutdown scheduled")

    async def system_reboot(self, ctx: JobContext) -> None:
        if ctx.step == STEP_INITIATED:
            await ctx.succeed(step="rebooted")
            return
        if ctx.status is not JobStatus.QUEUED or ctx.step is not None:
            raise UnexpectedJobStateError("reboot job execution in unexpected state")
        delay = _parse_delay(ctx.document)
        logger.info("system reboot requested (+%s min)", delay)
        await ctx.progress(STEP_INITIATED)
        await self._shell.run(f"{self.shutdown_command} -r +{delay}")
        await ctx.succeed(step="reboot scheduled")

    async def system_update(self, ctx: JobContext) -> None:
        """Update the agent in place and exit; success is reported on redelivery."""
        if ctx.step == STEP_INITIATED:
            await ctx.succeed(step="control plane has been updated")
            return
        if ctx.status is not JobStatus.QUEUED:
            raise UnexpectedJobStateError("update job execution in unexpected state")
        logger.info("system update requested")
        await ctx.progress(STEP_INITIATED)
        for command in self.update_commands:
            await self._shell.run(command, cwd=str(self.agent_root))
        logger.info("system update completed, exiting to be restarted by the host supervisor")
        self._terminate()

    # package lifecycle ----------------------------------------------------

    async def package_install(self, ctx: JobContext) -> None:
        await self._installer.install(ctx)

    async def package_uninstall(self, ctx: JobContext) -> None:
        await self._installer.uninstall(ctx)

    async def package_update(self, ctx: JobContext) -> None:
        await self._installer.update(ctx)

    def _package_id(self, ctx: JobContext) -> str:
        package_id = document_package_id(ctx.document)
        if not package_id:
            raise UnnamedPackageError("job does not name a package")
        if self._store.packages.get(package_id) is None:
            raise InvalidPackageNameError(f"package {package_id} is not installed")
        return package_id

    async def package_start(self, ctx: JobContext) -> None:
        package_id = self._package_id(ctx)
        await ctx.progress(STEP_INITIATED)
        try:
            pid = await self._supervisor.start(package_id)
        except AgentError as exc:
            await ctx.fail(ERR_PACKAGE_START_FAILED, "unable to start package", error=exc, cause=exc.code)
            return
        await ctx.succeed(step="started package", pid=pid)

    async def package_stop(self, ctx: JobContext) -> None:
        package_id = self._package_id(ctx)
        await ctx.progress(STEP_INITIATED)
        try:
            await self._supervisor.stop(package_id)
        except AgentError as exc:
            await ctx.fail(ERR_PACKAGE_STOP_FAILED, "unable to stop package", error=exc, cause=exc.code)
            return
        await ctx.succeed(step="stopped package")

    async def package_restart(self, ctx: JobContext) -> None:
        package_id = self._package_id(ctx)
        await ctx.progress(STEP_INITIATED)
        try:
            await self._supervisor.stop(package_id)
        except AgentError as exc:
            logger.error("expected to stop package %s before restart, but was unable: %s", package_id, exc)
        else:
            await ctx.progress("stopped package")
        try:
            pid = await self._supervisor.start(package_id)
        except AgentError as exc:
            await ctx.fail(ERR_PACKAGE_START_FAILED, "unable to restart package", error=exc, cause=exc.code)
            return
        await ctx.succeed(step="restarted package", pid=pid)
