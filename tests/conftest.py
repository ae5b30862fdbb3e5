from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from control_center.downloads import validate_checksum  # noqa: E402
from control_center.errors import DownloadFailedError, SystemCallFailedError  # noqa: E402
from control_center.package_store import PackageRecord, PackageStore, SystemIdentity  # noqa: E402
from control_center.shell import Shell, ShellResult  # noqa: E402
from runtime_bus import RuntimeBus  # noqa: E402


class FakeJob:
    """Transport job double recording every status report."""

    def __init__(
        self,
        operation: str,
        document: Optional[Dict[str, Any]] = None,
        status: str = "QUEUED",
        details: Optional[Dict[str, Any]] = None,
        report_failures: int = 0,
    ) -> None:
        self.operation = operation
        self.document = document or {}
        self.status = {"status": status}
        if details is not None:
            self.status["statusDetails"] = details
        self.report_failures = report_failures
        self.reports: List[Tuple[str, Dict[str, Any]]] = []

    async def _record(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.report_failures > 0:
            self.report_failures -= 1
            raise ConnectionError("transport unavailable")
        self.reports.append((kind, dict(payload)))

    async def in_progress(self, payload: Dict[str, Any]) -> None:
        await self._record("in_progress", payload)

    async def succeeded(self, payload: Dict[str, Any]) -> None:
        await self._record("succeeded", payload)

    async def failed(self, payload: Dict[str, Any]) -> None:
        await self._record("failed", payload)

    def terminal(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [report for report in self.reports if report[0] != "in_progress"]

    def steps(self) -> List[str]:
        return [payload.get("step") for kind, payload in self.reports if kind == "in_progress"]


class FakeShell(Shell):
    """Records shell commands instead of running them; ``spawn`` stays real."""

    def __init__(self, outputs: Optional[Dict[str, str]] = None, fail_on: Tuple[str, ...] = ()) -> None:
        self.outputs = {"id -u": "1500\n", "id -g": "1500\n"}
        self.outputs.update(outputs or {})
        self.fail_on = fail_on
        self.calls: List[Dict[str, Any]] = []

    async def run(self, command, *, cwd=None, uid=None, gid=None) -> ShellResult:
        self.calls.append({"command": command, "cwd": cwd, "uid": uid, "gid": gid})
        if any(command.startswith(prefix) for prefix in self.fail_on):
            raise SystemCallFailedError(f"command failed: {command}", command=command, returncode=1)
        stdout = next((out for prefix, out in self.outputs.items() if command.startswith(prefix)), "")
        return ShellResult(command=command, returncode=0, stdout=stdout, stderr="")

    def commands(self) -> List[str]:
        return [call["command"] for call in self.calls]


class FakeDownloader:
    """Writes canned bytes instead of fetching, then checks the checksum."""

    def __init__(self, content: Optional[Dict[str, bytes]] = None) -> None:
        self.content = content or {}
        self.fetched: List[str] = []

    async def download(self, entry, directory: Path) -> Path:
        self.fetched.append(entry.url)
        if entry.url not in self.content:
            raise DownloadFailedError(f"download of {entry.url} failed: 404")
        target = Path(directory) / entry.name
        target.write_bytes(self.content[entry.url])
        validate_checksum(target, entry.algorithm, entry.checksum)
        return target


class FakeTransport:
    def __init__(self) -> None:
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.notifications_started: List[str] = []
        self.on_publish = None

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self.published.append((topic, payload))
        if self.on_publish is not None:
            self.on_publish(topic, payload)

    async def start_job_notifications(self, thing_name: str) -> None:
        self.notifications_started.append(thing_name)

    async def subscribe_jobs(self, thing_name: str, operation: str):
        return
        yield  # pragma: no cover

    def topics(self) -> List[str]:
        return [topic for topic, _ in self.published]


def make_record(
    package_id: str,
    directory: Path,
    *,
    command: str = sys.executable,
    args: Optional[List[str]] = None,
    autostart: bool = False,
    uid: Optional[int] = None,
) -> PackageRecord:
    return PackageRecord(
        id=package_id,
        name=package_id,
        version="1.0.0",
        autostart=autostart,
        installed_at=1700000000000,
        sys=SystemIdentity(
            user=f"edge-pck-{package_id}",
            uid=uid,
            gid=uid,
            dir=str(directory),
            command=command,
            args=list(args or []),
        ),
        manifest={"package": {"id": package_id}},
    )


@pytest.fixture()
def bus() -> RuntimeBus:
    return RuntimeBus()


@pytest.fixture()
def store(tmp_path: Path, bus: RuntimeBus) -> PackageStore:
    return PackageStore(tmp_path / "data" / "packages.json", bus)


@pytest.fixture()
def shell() -> FakeShell:
    return FakeShell()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()
