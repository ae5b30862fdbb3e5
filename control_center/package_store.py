"""Installed-package registry and running-process registry.

The persisted side is a single JSON object keyed by package id. Every change
is published on the runtime bus; the store never talks to the shadow directly.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from runtime_bus import RuntimeBus, topics

logger = logging.getLogger(__name__)

SOURCE = "package_store"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SystemIdentity:
    user: str
    uid: Optional[int]
    gid: Optional[int]
    dir: str
    command: str
    args: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "uid": self.uid,
            "gid": self.gid,
            "dir": self.dir,
            "run": [self.command, list(self.args)],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemIdentity":
        run = data.get("run") or ["", []]
        return cls(
            user=str(data.get("user") or ""),
            uid=_optional_int(data.get("uid")),
            gid=_optional_int(data.get("gid")),
            dir=str(data.get("dir") or ""),
            command=str(run[0]) if run else "",
            args=[str(arg) for arg in (run[1] if len(run) > 1 and run[1] else [])],
        )


@dataclass
class PackageRecord:
    id: str
    name: str
    version: Optional[str]
    autostart: bool
    installed_at: int
    sys: SystemIdentity
    manifest: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "autostart": self.autostart,
            "installed_at": self.installed_at,
            "sys": self.sys.to_dict(),
            "manifest": self.manifest,
        }
        if self.updated_at is not None:
            data["updated_at"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, package_id: str, data: Dict[str, Any]) -> "PackageRecord":
        return cls(
            id=package_id,
            name=str(data.get("name") or package_id),
            version=data.get("version"),
            autostart=bool(data.get("autostart", False)),
            installed_at=int(data.get("installed_at") or 0),
            sys=SystemIdentity.from_dict(data.get("sys") or {}),
            manifest=dict(data.get("manifest") or {}),
            updated_at=_optional_int(data.get("updated_at")),
        )


@dataclass
class RuntimeEntry:
    """Handle to a spawned package process; lives until the process exits."""

    package_id: str
    process: Any
    started_at: int = field(default_factory=now_ms)
    startup_timer: Any = None
    startup_future: Any = None
    kill_timer: Any = None
    kill_future: Any = None

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def stopping(self) -> bool:
        return self.kill_future is not None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def load_registry(path: Path) -> Dict[str, PackageRecord]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("package registry %s unreadable, starting empty: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    records: Dict[str, PackageRecord] = {}
    for package_id, raw in data.items():
        if not isinstance(raw, dict):
            continue
        try:
            records[str(package_id)] = PackageRecord.from_dict(str(package_id), raw)
        except (TypeError, ValueError) as exc:
            logger.warning("skipping malformed registry entry %s: %s", package_id, exc)
    return records


def save_registry(path: Path, records: Dict[str, PackageRecord]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {package_id: record.to_dict() for package_id, record in records.items()}
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, sort_keys=True)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp_path, path)


class _PackageRegistry:
    def __init__(self, path: Path, bus: RuntimeBus) -> None:
        self._path = path
        self._bus = bus
        self._records = load_registry(path)

    def get(self, package_id: str) -> Optional[PackageRecord]:
        return self._records.get(package_id)

    def list(self) -> Dict[str, PackageRecord]:
        return dict(self._records)

    def set(self, package_id: str, record: PackageRecord) -> None:
        self._records[package_id] = record
        save_registry(self._path, self._records)
        self._bus.publish(
            topics.PACKAGE_INSTALLED,
            {"id": package_id, "installed_at": record.installed_at},
            source=SOURCE,
        )

    def remove(self, package_id: str) -> None:
        if self._records.pop(package_id, None) is None:
            return
        save_registry(self._path, self._records)
        self._bus.publish(topics.PACKAGE_REMOVED, {"id": package_id}, source=SOURCE)


class _RuntimeRegistry:
    def __init__(self, bus: RuntimeBus) -> None:
        self._bus = bus
        self._entries: Dict[str, RuntimeEntry] = {}

    def get(self, package_id: str) -> Optional[RuntimeEntry]:
        return self._entries.get(package_id)

    def list(self) -> Dict[str, RuntimeEntry]:
        return dict(self._entries)

    def set(self, package_id: str, entry: RuntimeEntry) -> None:
        self._entries[package_id] = entry
        self._bus.publish(
            topics.PACKAGE_STARTED,
            {"id": package_id, "pid": entry.pid, "ts": entry.started_at},
            source=SOURCE,
        )

    def remove(self, package_id: str, entry: Optional[RuntimeEntry] = None) -> bool:
        """Drop the entry; with ``entry`` given, only if it is still the current one."""
        current = self._entries.get(package_id)
        if current is None or (entry is not None and current is not entry):
            return False
        del self._entries[package_id]
        self._bus.publish(topics.PACKAGE_STOPPED, {"id": package_id}, source=SOURCE)
        return True


class PackageStore:
    """Single owner of the package and runtime registries."""

    def __init__(self, path: Path, bus: RuntimeBus) -> None:
        self.path = Path(path)
        self.bus = bus
        self.packages = _PackageRegistry(self.path, bus)
        self.runtime = _RuntimeRegistry(bus)
