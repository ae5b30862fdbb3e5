from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from control_center.agent import Agent
from control_center.policy_manager import resolve_policy

from conftest import FakeShell, FakeTransport


def _policy(tmp_path: Path) -> dict:
    return resolve_policy(
        tmp_path / "missing.json",
        thing_name="thing-1",
        storage_file=str(tmp_path / "data" / "packages.json"),
        packages_root=str(tmp_path / "packages"),
        timeouts={"shadow_fetch_s": 0.05},
    )


def test_thing_name_is_required(tmp_path: Path) -> None:
    policy = _policy(tmp_path)
    policy["thing_name"] = None
    with pytest.raises(ValueError):
        Agent(FakeTransport(), policy)


def test_agent_boot_sequence(tmp_path: Path) -> None:
    transport = FakeTransport()
    agent = Agent(transport, _policy(tmp_path), shell=FakeShell())

    def answer_shadow(topic, payload):
        if topic == "$aws/things/thing-1/shadow/get":
            agent.on_transport_message("$aws/things/thing-1/shadow/get/rejected", {"code": 404})

    transport.on_publish = answer_shadow

    async def scenario():
        failures = await agent.start()
        agent.on_ipc_message("demo", "state", {"ready": True})
        await asyncio.sleep(0.01)
        await agent.stop()
        return failures

    failures = asyncio.run(scenario())

    assert failures == []
    assert transport.notifications_started == ["thing-1"]
    updates = [payload for topic, payload in transport.published if topic.endswith("/shadow/update")]
    assert updates[0]["state"]["reported"]["_installed"] == {}
    assert "_sys" in updates[0]["state"]["reported"]
    assert updates[1] == {"state": {"reported": {"_package": {"demo": {"ready": True}}}}}
