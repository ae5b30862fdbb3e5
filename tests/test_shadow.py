from __future__ import annotations

import asyncio
from pathlib import Path

from control_center.package_store import RuntimeEntry
from control_center.shadow import ShadowReconciler, shadow_topic

from conftest import FakeTransport, make_record

FACTS = {
    "sw": {"id": "raspbian", "id_like": "debian", "version_codename": "buster", "version_id": "10"},
    "hw": {"revision": "a02082", "type": "rpi"},
    "ip": "10.0.0.7",
}


async def _facts():
    return {key: dict(value) if isinstance(value, dict) else value for key, value in FACTS.items()}


def _answering(bus, suffix, payload):
    """Transport that answers a shadow get on ``suffix`` through the bus."""
    transport = FakeTransport()

    def on_publish(topic, _payload):
        if topic == shadow_topic("thing-1", "get"):
            bus.publish(shadow_topic("thing-1", suffix), payload, source="transport")

    transport.on_publish = on_publish
    return transport


def _reconciler(transport, bus, store, **kwargs):
    return ShadowReconciler(transport, "thing-1", bus, store, facts_provider=_facts, **kwargs)


def _updates(transport):
    return [payload for topic, payload in transport.published if topic == shadow_topic("thing-1", "update")]


def test_matching_facts_push_nothing(bus, store) -> None:
    remote = {"timestamp": 1, "state": {"reported": {"_sys": FACTS}}}
    transport = _answering(bus, "get/accepted", remote)
    reconciler = _reconciler(transport, bus, store)

    pushed = asyncio.run(reconciler.reconcile())

    assert pushed is False
    assert transport.topics() == [shadow_topic("thing-1", "get")]
    assert bus.subscriber_count(shadow_topic("thing-1", "get/accepted")) == 0


def test_changed_facts_push_one_full_report(bus, store, tmp_path: Path) -> None:
    store.packages.set("demo", make_record("demo", tmp_path))
    stale = dict(FACTS, ip="10.0.0.99")
    transport = _answering(bus, "get/accepted", {"timestamp": 1, "state": {"reported": {"_sys": stale}}})

    assert asyncio.run(_reconciler(transport, bus, store).reconcile()) is True
    assert _updates(transport) == [
        {"state": {"reported": {"_sys": FACTS, "_installed": {"demo": 1700000000000}}}}
    ]


def test_rejected_get_means_absent(bus, store) -> None:
    transport = _answering(bus, "get/rejected", {"code": 404, "message": "No shadow exists"})
    reconciler = _reconciler(transport, bus, store)

    assert asyncio.run(reconciler.fetch()) is None
    assert asyncio.run(reconciler.reconcile()) is True
    assert len(_updates(transport)) == 1


def test_fetch_timeout_means_absent(bus, store) -> None:
    reconciler = _reconciler(FakeTransport(), bus, store, fetch_timeout=0.05)
    assert asyncio.run(reconciler.fetch()) is None


def test_store_events_become_partial_updates(bus, store, tmp_path: Path) -> None:
    transport = _answering(bus, "get/accepted", {"timestamp": 1, "state": {"reported": {"_sys": FACTS}}})
    reconciler = _reconciler(transport, bus, store)

    class _Proc:
        pid = 77

    async def scenario():
        await reconciler.reconcile()
        store.packages.set("demo", make_record("demo", tmp_path))
        entry = RuntimeEntry(package_id="demo", process=_Proc(), started_at=5)
        store.runtime.set("demo", entry)
        store.runtime.remove("demo", entry)
        store.packages.remove("demo")
        await reconciler.close()

    asyncio.run(scenario())
    assert [update["state"]["reported"] for update in _updates(transport)] == [
        {"_installed": {"demo": 1700000000000}},
        {"_runtime": {"demo": {"pid": 77, "startedAtTimestamp": 5}}},
        {"_runtime": {"demo": None}},
        {"_installed": {"demo": None}},
    ]


def test_update_wraps_fragment(bus, store) -> None:
    transport = FakeTransport()
    asyncio.run(_reconciler(transport, bus, store).update({"_package": {"demo": {"ok": True}}}))
    assert transport.published == [
        (shadow_topic("thing-1", "update"), {"state": {"reported": {"_package": {"demo": {"ok": True}}}}})
    ]
