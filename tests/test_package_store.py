from __future__ import annotations

import json
from pathlib import Path

from control_center.package_store import PackageStore, RuntimeEntry, load_registry
from runtime_bus import topics

from conftest import make_record


class _Proc:
    pid = 4242


def _collect(bus, topic):
    seen = []
    bus.subscribe(topic, lambda env: seen.append(env.payload))
    return seen


def test_set_persists_before_notifying(tmp_path: Path, bus) -> None:
    path = tmp_path / "packages.json"
    store = PackageStore(path, bus)
    on_disk = []
    bus.subscribe(topics.PACKAGE_INSTALLED, lambda env: on_disk.append(json.loads(path.read_text())))

    store.packages.set("demo", make_record("demo", tmp_path))

    assert list(on_disk[0]) == ["demo"]
    assert on_disk[0]["demo"]["sys"]["run"][0]
    reloaded = PackageStore(path, bus)
    assert reloaded.packages.get("demo").installed_at == 1700000000000


def test_remove_persists_and_notifies(tmp_path: Path, store) -> None:
    removed = _collect(store.bus, topics.PACKAGE_REMOVED)
    store.packages.set("demo", make_record("demo", tmp_path))
    store.packages.remove("demo")
    store.packages.remove("demo")

    assert removed == [{"id": "demo"}]
    assert json.loads(store.path.read_text()) == {}


def test_missing_or_corrupt_registry_is_empty(tmp_path: Path) -> None:
    path = tmp_path / "packages.json"
    assert load_registry(path) == {}
    path.write_text("{not json", encoding="utf-8")
    assert load_registry(path) == {}
    path.write_text("[1, 2]", encoding="utf-8")
    assert load_registry(path) == {}


def test_registry_skips_malformed_entries(tmp_path: Path) -> None:
    path = tmp_path / "packages.json"
    path.write_text(json.dumps({"ok": {"installed_at": 5, "sys": {"run": ["/bin/true", []]}}, "bad": 3}))
    records = load_registry(path)
    assert list(records) == ["ok"]
    assert records["ok"].sys.command == "/bin/true"


def test_runtime_notifications(store) -> None:
    started = _collect(store.bus, topics.PACKAGE_STARTED)
    stopped = _collect(store.bus, topics.PACKAGE_STOPPED)
    entry = RuntimeEntry(package_id="demo", process=_Proc(), started_at=99)

    store.runtime.set("demo", entry)
    assert started == [{"id": "demo", "pid": 4242, "ts": 99}]

    assert store.runtime.remove("demo", entry) is True
    assert store.runtime.remove("demo", entry) is False
    assert stopped == [{"id": "demo"}]


def test_runtime_remove_ignores_stale_entry(store) -> None:
    old = RuntimeEntry(package_id="demo", process=_Proc())
    new = RuntimeEntry(package_id="demo", process=_Proc())
    store.runtime.set("demo", old)
    store.runtime.set("demo", new)

    assert store.runtime.remove("demo", old) is False
    assert store.runtime.get("demo") is new
