"""Package process supervision.

Per package the runtime moves Stopped -> Starting -> Running -> Stopping ->
Stopped. Starting and Stopping are each bounded by a timer; the observed exit
of the process always wins over a pending timer.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional, Set

from .errors import (
    AlreadyStartingError,
    AlreadyStoppingError,
    NotInstalledError,
    UnableToStartError,
    UnableToStopError,
    UnexpectedExitError,
)
from .package_store import PackageRecord, PackageStore, RuntimeEntry
from .shell import Shell

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_TIMEOUT = 20.0
DEFAULT_KILL_TIMEOUT = 20.0


def _package_env(record: PackageRecord) -> dict:
    env = {
        "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
        "EDGE_PACKAGE_ID": record.id,
        "EDGE_PACKAGE_INSTALLED_AT": str(record.installed_at),
    }
    if record.sys.dir:
        env["HOME"] = record.sys.dir
    return env


class ProcessSupervisor:
    def __init__(
        self,
        store: PackageStore,
        shell: Optional[Shell] = None,
        *,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self._store = store
        self._shell = shell or Shell()
        self.startup_timeout = startup_timeout
        self.kill_timeout = kill_timeout
        self._starting: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def is_running(self, package_id: str) -> bool:
        return self._store.runtime.get(package_id) is not None

    async def start(self, package_id: str) -> int:
        """Start ``package_id`` and return its pid once it is considered up."""
        record = self._store.packages.get(package_id)
        if record is None:
            raise NotInstalledError(f"package {package_id} is not installed")
        if package_id in self._starting:
            raise AlreadyStartingError(f"package {package_id} is already starting")

        self._starting.add(package_id)
        try:
            if self._store.runtime.get(package_id) is not None:
                logger.info("package %s is running, stopping it before start", package_id)
                await self.stop(package_id)
            entry = await self._spawn(record)
            await entry.startup_future
        finally:
            self._starting.discard(package_id)
        logger.info("package %s started (pid %s)", package_id, entry.pid)
        return entry.pid

    async def _spawn(self, record: PackageRecord) -> RuntimeEntry:
        identity = record.sys
        logger.debug("spawning %s %s for %s", identity.command, identity.args, record.id)
        try:
            process = await self._shell.spawn(
                identity.command,
                identity.args,
                cwd=identity.dir or None,
                uid=identity.uid,
                gid=identity.gid,
                env=_package_env(record),
            )
        except (OSError, ValueError) as exc:
            raise UnableToStartError(f"unable to spawn package {record.id}: {exc}") from exc

        loop = asyncio.get_running_loop()
        entry = RuntimeEntry(package_id=record.id, process=process)
        entry.startup_future = loop.create_future()
        entry.startup_timer = loop.call_later(self.startup_timeout, self._on_startup_timeout, entry)
        self._store.runtime.set(record.id, entry)

        self._track(self._watch(entry))
        for stream, level in ((process.stdout, logging.DEBUG), (process.stderr, logging.WARNING)):
            if stream is not None:
                self._track(self._drain(record.id, stream, level))
        return entry

    def _on_startup_timeout(self, entry: RuntimeEntry) -> None:
        entry.startup_timer = None
        if entry.startup_future is not None and not entry.startup_future.done():
            entry.startup_future.set_result(entry.pid)

    async def stop(self, package_id: str) -> None:
        entry = self._store.runtime.get(package_id)
        if entry is None:
            return
        if entry.stopping:
            raise AlreadyStoppingError(f"already attempting to stop package {package_id}")

        if entry.startup_timer is not None:
            entry.startup_timer.cancel()
            entry.startup_timer = None
        if entry.startup_future is not None and not entry.startup_future.done():
            entry.startup_future.set_exception(
                UnableToStartError(f"start of package {package_id} interrupted by stop")
            )

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        entry.kill_future = future
        entry.kill_timer = loop.call_later(self.kill_timeout, self._on_kill_timeout, entry)
        logger.info("stopping package %s (pid %s)", package_id, entry.pid)
        try:
            entry.process.terminate()
        except ProcessLookupError:
            # already gone; the exit watcher settles the future
            pass
        await future

    def _on_kill_timeout(self, entry: RuntimeEntry) -> None:
        future = entry.kill_future
        entry.kill_timer = None
        entry.kill_future = None
        if future is not None and not future.done():
            logger.warning("package %s did not exit within %ss", entry.package_id, self.kill_timeout)
            future.set_exception(UnableToStopError(f"unable to stop package {entry.package_id}"))

    async def _watch(self, entry: RuntimeEntry) -> None:
        returncode = await entry.process.wait()
        logger.info("package %s (pid %s) exited with code %s", entry.package_id, entry.pid, returncode)
        self._store.runtime.remove(entry.package_id, entry)

        if entry.startup_timer is not None:
            entry.startup_timer.cancel()
            entry.startup_timer = None
        if entry.startup_future is not None and not entry.startup_future.done():
            entry.startup_future.set_exception(
                UnexpectedExitError(
                    f"package {entry.package_id} exited with code {returncode} during startup",
                    returncode=returncode,
                )
            )

        if entry.kill_timer is not None:
            entry.kill_timer.cancel()
            entry.kill_timer = None
        future = entry.kill_future
        entry.kill_future = None
        if future is not None and not future.done():
            future.set_result(returncode)

    async def _drain(self, package_id: str, stream: asyncio.StreamReader, level: int) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.log(level, "package %s: %s", package_id, line.decode("utf-8", errors="replace").rstrip())

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop_all(self) -> None:
        """Stop every running package; failures are logged."""
        for package_id in list(self._store.runtime.list()):
            try:
                await self.stop(package_id)
            except UnableToStopError as exc:
                logger.error("unable to stop package %s: %s", package_id, exc)
