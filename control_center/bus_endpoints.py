from __future__ import annotations

import asyncio
import logging
import os
import platform
import sys
import time
from typing import Any, Callable, Dict, List, Optional, Set

from runtime_bus import MessageEnvelope, RuntimeBus, topics

from .package_store import PackageStore

logger = logging.getLogger(__name__)

GLOBAL_DEVICE = "$global"
SYSTEM_INFO_REQUEST = "getSystemInfo"


def device_topic(thing_name: str, suffix: Optional[str] = None) -> str:
    base = f"devices/{thing_name}"
    return f"{base}/{suffix}" if suffix else base


class AgentEndpoints:
    """Bus subscriptions that route local messages upstream or into the shadow.

    ``ipc.message`` of type ``state`` becomes a ``_package`` shadow fragment,
    any other type is published to ``devices/<thing>/ipc``. Aggregated
    autostart failures go to ``devices/<thing>/events``; remote requests on
    ``devices/<thing>`` and ``devices/$global`` are answered on
    ``devices/<thing>/<request>``.
    """

    def __init__(
        self,
        bus: RuntimeBus,
        transport: Any,
        thing_name: str,
        store: PackageStore,
        shadow_update: Callable[[Dict[str, Any]], Any],
    ) -> None:
        self._bus = bus
        self._transport = transport
        self.thing_name = thing_name
        self._store = store
        self._shadow_update = shadow_update
        self._started = time.monotonic()
        self._sub_ids: List[str] = []
        self._tasks: Set[asyncio.Task] = set()

    def register(self) -> None:
        if self._sub_ids:
            return
        routes = {
            topics.IPC_MESSAGE: self._handle_ipc,
            topics.PACKAGE_START_FAILED: self._handle_start_failed,
            device_topic(self.thing_name): self._handle_request,
            device_topic(GLOBAL_DEVICE): self._handle_request,
        }
        for topic, handler in routes.items():
            self._sub_ids.append(self._bus.subscribe(topic, handler))

    def unregister(self) -> None:
        for sub_id in self._sub_ids:
            self._bus.unsubscribe(sub_id)
        self._sub_ids.clear()

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _handle_ipc(self, envelope: MessageEnvelope) -> None:
        payload = envelope.payload
        package_id = payload.get("package")
        message_type = payload.get("type")
        if not package_id:
            logger.warning("dropping ipc message without a package: %s", message_type)
            return
        if message_type == topics.IPC_STATE_TYPE:
            self._schedule(self._shadow_update({"_package": {package_id: payload.get("message")}}))
            return
        self._publish(
            device_topic(self.thing_name, "ipc"),
            {"type": message_type, "package": package_id, "message": payload.get("message")},
        )

    def _handle_start_failed(self, envelope: MessageEnvelope) -> None:
        failures = envelope.payload.get("failures") or []
        self._publish(
            device_topic(self.thing_name, "events"),
            {"event": "packageStartFailed", "failures": failures},
        )

    def _handle_request(self, envelope: MessageEnvelope) -> None:
        request = envelope.payload.get("topic") or envelope.payload.get("function")
        if request == SYSTEM_INFO_REQUEST:
            self._publish(device_topic(self.thing_name, "systemInfo"), self.system_info())
            return
        logger.warning("unsupported request %r on %s", request, envelope.topic)

    def system_info(self) -> Dict[str, Any]:
        return {
            "installedPackages": sorted(self._store.packages.list()),
            "runningPackages": sorted(self._store.runtime.list()),
            "arch": platform.machine(),
            "pythonVersion": platform.python_version(),
            "cwd": os.getcwd(),
            "platform": sys.platform,
            "uptime": round(time.monotonic() - self._started, 3),
        }

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self._schedule(self._transport.publish(topic, payload))

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("bus endpoint called outside the event loop, message dropped")
            return
        task = loop.create_task(self._logged(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _logged(self, coro) -> None:
        try:
            await coro
        except Exception as exc:
            logger.error("upstream publish failed: %s", exc)


def register_agent_endpoints(
    bus: RuntimeBus,
    transport: Any,
    thing_name: str,
    store: PackageStore,
    shadow_update: Callable[[Dict[str, Any]], Any],
) -> AgentEndpoints:
    """Register the agent's routing handlers on the provided bus."""
    endpoints = AgentEndpoints(bus, transport, thing_name, store, shadow_update)
    endpoints.register()
    return endpoints
