from __future__ import annotations

import asyncio
from pathlib import Path

from control_center.bus_endpoints import register_agent_endpoints
from runtime_bus import topics

from conftest import FakeTransport, make_record


class _ShadowSpy:
    def __init__(self) -> None:
        self.fragments = []

    async def update(self, fragment) -> None:
        self.fragments.append(fragment)


def _run_on_loop(endpoints, action) -> None:
    async def scenario():
        action()
        await endpoints.drain()

    asyncio.run(scenario())


def test_ipc_state_goes_to_shadow(bus, store) -> None:
    shadow = _ShadowSpy()
    transport = FakeTransport()
    endpoints = register_agent_endpoints(bus, transport, "thing-1", store, shadow.update)

    _run_on_loop(
        endpoints,
        lambda: bus.publish(
            topics.IPC_MESSAGE,
            {"type": "state", "package": "demo", "message": {"temp": 21}},
            source="ipc",
        ),
    )

    assert shadow.fragments == [{"_package": {"demo": {"temp": 21}}}]
    assert transport.published == []


def test_other_ipc_types_go_upstream(bus, store) -> None:
    shadow = _ShadowSpy()
    transport = FakeTransport()
    endpoints = register_agent_endpoints(bus, transport, "thing-1", store, shadow.update)

    _run_on_loop(
        endpoints,
        lambda: bus.publish(
            topics.IPC_MESSAGE,
            {"type": "alert", "package": "demo", "message": "door open"},
            source="ipc",
        ),
    )

    assert transport.published == [
        ("devices/thing-1/ipc", {"type": "alert", "package": "demo", "message": "door open"})
    ]
    assert shadow.fragments == []


def test_start_failures_are_forwarded_once(bus, store) -> None:
    transport = FakeTransport()
    endpoints = register_agent_endpoints(bus, transport, "thing-1", store, _ShadowSpy().update)
    failures = [{"id": "c", "error": "unable to spawn"}]

    _run_on_loop(endpoints, lambda: bus.publish(topics.PACKAGE_START_FAILED, {"failures": failures}, source="test"))

    assert transport.published == [
        ("devices/thing-1/events", {"event": "packageStartFailed", "failures": failures})
    ]


def test_system_info_request(bus, store, tmp_path: Path) -> None:
    store.packages.set("demo", make_record("demo", tmp_path))
    transport = FakeTransport()
    endpoints = register_agent_endpoints(bus, transport, "thing-1", store, _ShadowSpy().update)

    _run_on_loop(endpoints, lambda: bus.publish("devices/$global", {"topic": "getSystemInfo"}, source="transport"))

    topic, info = transport.published[0]
    assert topic == "devices/thing-1/systemInfo"
    assert info["installedPackages"] == ["demo"]
    assert info["runningPackages"] == []
    assert info["uptime"] >= 0


def test_unregister_stops_routing(bus, store) -> None:
    transport = FakeTransport()
    endpoints = register_agent_endpoints(bus, transport, "thing-1", store, _ShadowSpy().update)
    endpoints.unregister()
    assert bus.subscriber_count(topics.IPC_MESSAGE) == 0
