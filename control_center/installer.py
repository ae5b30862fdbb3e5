"""Package install / uninstall / update workflows.

Every step reports a progress marker before it runs. Install failures roll
back the working directory and the package user; update failures restore
the previous version from its failover directory, and an update cut short
by a restart is settled when the agent boots.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from diagnostics.fs_ops import failover_path, make_exclusive_dir, safe_rmtree, swap_back, swap_out

from .downloads import DownloadEntry, Downloader, parse_download_list
from .errors import (
    ERR_PACKAGE_INSTALL_FAILED,
    ERR_PACKAGE_UNINSTALL_FAILED,
    ERR_PACKAGE_UPDATE_FAILED,
    AgentError,
    InvalidManifestError,
    PackageAlreadyInstalledError,
    PackageNotInstalledError,
    SystemCallFailedError,
    UnexpectedJobStateError,
    error_code,
)
from .jobs import STEP_INITIATED, JobContext, JobStatus
from .package_store import PackageRecord, PackageStore, SystemIdentity, now_ms
from .shell import Shell, validate_package_id
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class PackageManifest:
    id: str
    name: str
    version: Optional[str]
    install: str
    command: str
    args: List[str]
    downloads: List[DownloadEntry] = field(default_factory=list)
    pre_hook: Optional[str] = None
    post_hook: Optional[str] = None
    autostart: bool = False
    privileged: bool = False


def _parse_start(raw: Any) -> Tuple[str, List[str]]:
    if isinstance(raw, str):
        try:
            parts = shlex.split(raw)
        except ValueError as exc:
            raise InvalidManifestError(f"start command is not parseable: {exc}") from exc
    elif isinstance(raw, (list, tuple)) and raw:
        if len(raw) == 2 and isinstance(raw[1], (list, tuple)):
            parts = [raw[0], *raw[1]]
        else:
            parts = list(raw)
    else:
        parts = []
    parts = [str(part) for part in parts if part is not None and str(part) != ""]
    if not parts:
        raise InvalidManifestError("job has invalid manifest: empty start command")
    return parts[0], parts[1:]


@dataclass
class _Created:
    """What an install attempt created, so rollback touches nothing else."""

    user: Optional[str] = None
    directory: Optional[Path] = None


def update_marker(directory: Path) -> Path:
    """Marker present while an update of ``directory`` is not yet committed to the store."""
    directory = Path(directory)
    return directory.with_name(directory.name + ".updating")


def parse_manifest(document: Dict[str, Any]) -> PackageManifest:
    """Validate an install/update job document."""
    package = document.get("package")
    if not isinstance(package, dict) or not package.get("id") or not package.get("install") or not package.get("start"):
        raise InvalidManifestError("job has invalid manifest")
    package_id = validate_package_id(package.get("id"))
    command, args = _parse_start(package.get("start"))
    hooks = package.get("hooks") or {}
    if not isinstance(hooks, dict):
        raise InvalidManifestError("job has invalid manifest: hooks must be an object")
    version = package.get("version")
    return PackageManifest(
        id=package_id,
        name=str(package.get("name") or package_id),
        version=str(version) if version is not None else None,
        install=str(package["install"]),
        command=command,
        args=args,
        downloads=parse_download_list(package.get("download")),
        pre_hook=hooks.get("pre") or None,
        post_hook=hooks.get("post") or None,
        autostart=bool(document.get("autostart", package.get("autostart", False))),
        privileged=bool(document.get("privileged", document.get("priviledged", False))),
    )


def document_package_id(document: Dict[str, Any]) -> Optional[str]:
    package = document.get("package")
    if isinstance(package, dict) and package.get("id"):
        return str(package["id"])
    if document.get("packageName"):
        return str(document["packageName"])
    return None


class PackageInstaller:
    def __init__(
        self,
        store: PackageStore,
        supervisor: ProcessSupervisor,
        shell: Optional[Shell] = None,
        downloader: Optional[Downloader] = None,
        *,
        packages_root: Path = Path("../packages"),
        dir_prefix: str = "pck-",
        user_prefix: str = "edge-pck-",
        agent_uid: Optional[int] = None,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._shell = shell or Shell()
        self._downloader = downloader or Downloader()
        self.packages_root = Path(packages_root).resolve()
        self.dir_prefix = dir_prefix
        self.user_prefix = user_prefix
        self.agent_uid = os.geteuid() if agent_uid is None else agent_uid
        self._installing: Set[str] = set()

    def package_dir(self, package_id: str) -> Path:
        return self.packages_root / f"{self.dir_prefix}{package_id}"

    def package_user(self, package_id: str) -> str:
        return f"{self.user_prefix}{package_id}"

    # install --------------------------------------------------------------

    async def install(self, ctx: JobContext) -> None:
        manifest = self._validate_install(ctx)
        if manifest is None:
            await ctx.succeed(state="package installation completed")
            return
        if manifest.id in self._installing:
            raise PackageAlreadyInstalledError(f"package {manifest.id} is already being installed")
        self._installing.add(manifest.id)
        try:
            await self._install(ctx, manifest)
        finally:
            self._installing.discard(manifest.id)

    async def _install(self, ctx: JobContext, manifest: PackageManifest) -> None:
        directory = self.package_dir(manifest.id)
        user = self.package_user(manifest.id)
        logger.info("installing package %s as %s to %s", manifest.id, user, directory)
        created = _Created()
        try:
            identity = await self._install_steps(ctx, manifest, directory, user, created)
        except Exception as exc:
            logger.error("installing package %s failed: %s", manifest.id, exc)
            await self._rollback_install(created)
            await ctx.fail(
                ERR_PACKAGE_INSTALL_FAILED,
                "package installation failed",
                error=exc,
                cause=error_code(exc),
            )
            return

        record = PackageRecord(
            id=manifest.id,
            name=manifest.name,
            version=manifest.version,
            autostart=manifest.autostart,
            installed_at=now_ms(),
            sys=identity,
            manifest=ctx.document,
        )
        self._store.packages.set(manifest.id, record)
        logger.info("package %s successfully installed", manifest.id)
        await ctx.succeed(state="package installation completed")

        if manifest.autostart:
            try:
                await self._supervisor.start(manifest.id)
            except AgentError as exc:
                logger.warning("installed package %s did not autostart: %s", manifest.id, exc)

    def _validate_install(self, ctx: JobContext) -> Optional[PackageManifest]:
        """Return the manifest, or ``None`` when a redelivered job already completed."""
        if ctx.status is JobStatus.IN_PROGRESS:
            package_id = document_package_id(ctx.document)
            record = self._store.packages.get(package_id) if package_id else None
            if record is not None and record.manifest == ctx.document:
                logger.info("install job for %s was already completed before restart", package_id)
                return None
        if ctx.status is not JobStatus.QUEUED:
            raise UnexpectedJobStateError("job in unexpected state")
        manifest = parse_manifest(ctx.document)
        if self._store.packages.get(manifest.id) is not None:
            raise PackageAlreadyInstalledError("selected package already installed")
        return manifest

    async def _install_steps(
        self,
        ctx: JobContext,
        manifest: PackageManifest,
        directory: Path,
        user: str,
        created: _Created,
    ) -> SystemIdentity:
        await ctx.progress("creating package user")
        quoted_user = shlex.quote(user)
        await self._shell.run(f"useradd -m -s /usr/sbin/nologin {quoted_user}")
        created.user = user
        await self._shell.run(f"usermod -L {quoted_user}")
        make_exclusive_dir(directory)
        created.directory = directory

        await ctx.progress("resolving package identity")
        uid, gid = await self._resolve_identity(user)
        logger.debug("created user %s (%s:%s) and directory %s", user, uid, gid, directory)

        await self._provision(ctx, manifest, directory, uid, gid)
        return SystemIdentity(
            user=user,
            uid=uid,
            gid=gid,
            dir=str(directory),
            command=manifest.command,
            args=list(manifest.args),
        )

    async def _resolve_identity(self, user: str) -> Tuple[int, int]:
        quoted_user = shlex.quote(user)
        try:
            uid = int((await self._shell.run(f"id -u {quoted_user}")).stdout.strip())
            gid = int((await self._shell.run(f"id -g {quoted_user}")).stdout.strip())
        except ValueError as exc:
            raise SystemCallFailedError(f"unable to resolve identity of {user}") from exc
        if uid == self.agent_uid or uid == 0:
            raise SystemCallFailedError(f"package user {user} resolved to a privileged identity ({uid})")
        return uid, gid

    async def _provision(
        self,
        ctx: JobContext,
        manifest: PackageManifest,
        directory: Path,
        uid: Optional[int],
        gid: Optional[int],
    ) -> None:
        if manifest.downloads:
            await ctx.progress("downloading files")
            for entry in manifest.downloads:
                await self._downloader.download(entry, directory)

        if uid is not None:
            await ctx.progress("setting ownership")
            await self._shell.run(f"chown -R {uid}:{gid if gid is not None else uid} {shlex.quote(str(directory))}")

        run_uid, run_gid = (None, None) if manifest.privileged else (uid, gid)
        steps = (
            ("running pre-install hook", manifest.pre_hook),
            ("running package install", manifest.install),
            ("running post-install hook", manifest.post_hook),
        )
        for label, command in steps:
            if not command:
                continue
            await ctx.progress(label)
            await self._shell.run(command, cwd=str(directory), uid=run_uid, gid=run_gid)

    async def _rollback_install(self, created: _Created) -> None:
        if created.directory is not None:
            try:
                safe_rmtree(created.directory)
            except OSError as exc:
                logger.warning("rollback: unable to remove %s: %s", created.directory, exc)
        if created.user is not None:
            await self._remove_user(created.user)

    async def _remove_user(self, user: str) -> None:
        if not user:
            return
        try:
            await self._shell.run(f"userdel -r {shlex.quote(user)}")
        except AgentError as exc:
            logger.warning("unable to remove user %s: %s", user, exc)

    # uninstall ------------------------------------------------------------

    async def uninstall(self, ctx: JobContext) -> None:
        package_id = document_package_id(ctx.document)
        if ctx.status is JobStatus.IN_PROGRESS and package_id and self._store.packages.get(package_id) is None:
            logger.info("uninstall job for %s was already completed before restart", package_id)
            await ctx.succeed(step="uninstalled package")
            return
        if ctx.status is not JobStatus.QUEUED:
            raise UnexpectedJobStateError("job in unexpected state")
        if not package_id:
            raise InvalidManifestError("job has invalid manifest")
        record = self._store.packages.get(package_id)
        if record is None:
            raise PackageNotInstalledError(f"package {package_id} is not installed")

        hooks = ctx.document.get("hooks") or {}
        await ctx.progress(STEP_INITIATED)
        try:
            if hooks.get("pre"):
                await ctx.progress("running pre-uninstall hook")
                await self._run_as_package(record, hooks["pre"])
            await ctx.progress("stopping package")
            await self._supervisor.stop(package_id)
            if hooks.get("post"):
                await ctx.progress("running post-uninstall hook")
                await self._run_as_package(record, hooks["post"])
        except Exception as exc:
            logger.error("uninstalling package %s failed: %s", package_id, exc)
            await ctx.fail(
                ERR_PACKAGE_UNINSTALL_FAILED,
                "unable to uninstall package",
                error=exc,
                cause=error_code(exc),
            )
            return

        try:
            safe_rmtree(Path(record.sys.dir))
        except OSError as exc:
            logger.warning("unable to remove %s: %s", record.sys.dir, exc)
        await self._remove_user(record.sys.user)
        self._store.packages.remove(package_id)
        logger.info("package %s uninstalled", package_id)
        await ctx.succeed(step="uninstalled package")

    async def _run_as_package(self, record: PackageRecord, command: str) -> None:
        cwd = record.sys.dir if record.sys.dir and Path(record.sys.dir).is_dir() else None
        await self._shell.run(command, cwd=cwd, uid=record.sys.uid, gid=record.sys.gid)

    # update ---------------------------------------------------------------

    async def update(self, ctx: JobContext) -> None:
        if ctx.status is not JobStatus.QUEUED:
            raise UnexpectedJobStateError("job in unexpected state")
        manifest = parse_manifest(ctx.document)
        record = self._store.packages.get(manifest.id)
        if record is None:
            raise PackageNotInstalledError(f"package {manifest.id} is not installed")

        directory = Path(record.sys.dir) if record.sys.dir else self.package_dir(manifest.id)
        was_running = self._supervisor.is_running(manifest.id)
        swapped = False
        await ctx.progress(STEP_INITIATED)
        try:
            if was_running:
                await ctx.progress("stopping package")
                await self._supervisor.stop(manifest.id)
            await ctx.progress("moving current version aside")
            update_marker(directory).touch()
            swap_out(directory)
            swapped = True
            make_exclusive_dir(directory)
            await self._provision(ctx, manifest, directory, record.sys.uid, record.sys.gid)
        except Exception as exc:
            logger.error("updating package %s failed, restoring previous version: %s", manifest.id, exc)
            await self._restore(record, directory, swapped, was_running)
            await ctx.fail(
                ERR_PACKAGE_UPDATE_FAILED,
                "unable to update package",
                error=exc,
                cause=error_code(exc),
            )
            return

        updated = PackageRecord(
            id=manifest.id,
            name=manifest.name,
            version=manifest.version,
            autostart=manifest.autostart,
            installed_at=record.installed_at,
            updated_at=now_ms(),
            sys=SystemIdentity(
                user=record.sys.user,
                uid=record.sys.uid,
                gid=record.sys.gid,
                dir=str(directory),
                command=manifest.command,
                args=list(manifest.args),
            ),
            manifest=ctx.document,
        )
        self._store.packages.set(manifest.id, updated)
        update_marker(directory).unlink(missing_ok=True)
        try:
            safe_rmtree(failover_path(directory))
        except OSError as exc:
            logger.warning("unable to remove failover copy of %s: %s", manifest.id, exc)
        logger.info("package %s updated to %s", manifest.id, manifest.version)
        await ctx.succeed(step="updated package")

        if was_running or manifest.autostart:
            try:
                await self._supervisor.start(manifest.id)
            except AgentError as exc:
                logger.warning("updated package %s did not start: %s", manifest.id, exc)

    async def _restore(self, record: PackageRecord, directory: Path, swapped: bool, was_running: bool) -> None:
        if swapped:
            try:
                swap_back(directory)
            except OSError as exc:
                logger.error("unable to restore %s from failover: %s", directory, exc)
                return
        update_marker(directory).unlink(missing_ok=True)
        if was_running and not self._supervisor.is_running(record.id):
            try:
                await self._supervisor.start(record.id)
            except AgentError as exc:
                logger.warning("restored package %s did not start: %s", record.id, exc)

    def recover_interrupted_updates(self) -> List[str]:
        """Settle updates cut short by an agent restart.

        An uncommitted update gets its previous version back from the failover
        directory. A committed one only loses its leftover failover copy.
        Returns the ids whose previous version was restored.
        """
        restored: List[str] = []
        for package_id, record in self._store.packages.list().items():
            if not record.sys.dir:
                continue
            directory = Path(record.sys.dir)
            marker = update_marker(directory)
            failover = failover_path(directory)
            try:
                if marker.exists():
                    if failover.exists():
                        logger.warning("restoring %s after an interrupted update", package_id)
                        swap_back(directory)
                        restored.append(package_id)
                    marker.unlink()
                elif failover.exists():
                    safe_rmtree(failover)
            except OSError as exc:
                logger.error("unable to recover %s from an interrupted update: %s", package_id, exc)
        return restored
