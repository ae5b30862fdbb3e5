"""Device shadow reconciliation.

The device is the only writer of ``state.reported``. At boot the remote
document is fetched once and a full report is pushed only if it is missing or
its ``_sys`` block differs from the local facts; afterwards store events are
mirrored as partial updates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from runtime_bus import MessageEnvelope, RuntimeBus, topics

from .package_store import PackageStore
from .shell import Shell
from .system_facts import gather_system_facts

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30.0

FactsProvider = Callable[[], Awaitable[Dict[str, Any]]]


def shadow_topic(thing_name: str, suffix: str) -> str:
    return f"$aws/things/{thing_name}/shadow/{suffix}"


class ShadowReconciler:
    def __init__(
        self,
        transport: Any,
        thing_name: str,
        bus: RuntimeBus,
        store: PackageStore,
        shell: Optional[Shell] = None,
        *,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        facts_provider: Optional[FactsProvider] = None,
    ) -> None:
        self._transport = transport
        self.thing_name = thing_name
        self._bus = bus
        self._store = store
        self._shell = shell or Shell()
        self.fetch_timeout = fetch_timeout
        self._facts_provider = facts_provider
        self._sub_ids: List[str] = []
        self._tasks: Set[asyncio.Task] = set()
        self.ready = False

    async def fetch(self) -> Optional[Dict[str, Any]]:
        """Return the remote shadow, or ``None`` when the device has none."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _settle(envelope: MessageEnvelope) -> None:
            if not future.done():
                future.set_result(envelope.payload)

        sub_ids = [
            self._bus.subscribe(shadow_topic(self.thing_name, "get/accepted"), _settle),
            self._bus.subscribe(shadow_topic(self.thing_name, "get/rejected"), _settle),
        ]
        try:
            await self._transport.publish(shadow_topic(self.thing_name, "get"), {})
            payload = await asyncio.wait_for(future, self.fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning("no shadow answer within %ss, treating it as absent", self.fetch_timeout)
            return None
        finally:
            for sub_id in sub_ids:
                self._bus.unsubscribe(sub_id)
        if not payload or not payload.get("timestamp"):
            return None
        return payload

    async def _gather_facts(self) -> Dict[str, Any]:
        if self._facts_provider is not None:
            return await self._facts_provider()
        return await gather_system_facts(self._shell)

    def installed_snapshot(self) -> Dict[str, int]:
        return {package_id: record.installed_at for package_id, record in self._store.packages.list().items()}

    async def reconcile(self) -> bool:
        """Run the boot reconciliation; return whether an update was pushed."""
        shadow = await self.fetch()
        sys_facts = await self._gather_facts()
        reported = ((shadow or {}).get("state") or {}).get("reported") or {}

        pushed = False
        if shadow is None or reported.get("_sys") != sys_facts:
            logger.info("shadow %s, pushing reported state", "absent" if shadow is None else "outdated")
            await self.update({"_sys": sys_facts, "_installed": self.installed_snapshot()})
            pushed = True
        else:
            logger.info("shadow system facts up to date")

        self._attach()
        self.ready = True
        return pushed

    async def update(self, fragment: Dict[str, Any]) -> None:
        """Merge ``fragment`` into ``state.reported`` on the remote shadow."""
        logger.debug("updating thing shadow: %s", sorted(fragment))
        await self._transport.publish(
            shadow_topic(self.thing_name, "update"),
            {"state": {"reported": fragment}},
        )

    def _attach(self) -> None:
        if self._sub_ids:
            return
        handlers = {
            topics.PACKAGE_STARTED: self._on_started,
            topics.PACKAGE_STOPPED: self._on_stopped,
            topics.PACKAGE_INSTALLED: self._on_installed,
            topics.PACKAGE_REMOVED: self._on_removed,
        }
        for topic, handler in handlers.items():
            self._sub_ids.append(self._bus.subscribe(topic, handler))

    def _on_started(self, envelope: MessageEnvelope) -> None:
        payload = envelope.payload
        self.schedule_update(
            {"_runtime": {payload["id"]: {"pid": payload.get("pid"), "startedAtTimestamp": payload.get("ts")}}}
        )

    def _on_stopped(self, envelope: MessageEnvelope) -> None:
        self.schedule_update({"_runtime": {envelope.payload["id"]: None}})

    def _on_installed(self, envelope: MessageEnvelope) -> None:
        payload = envelope.payload
        self.schedule_update({"_installed": {payload["id"]: payload.get("installed_at")}})

    def _on_removed(self, envelope: MessageEnvelope) -> None:
        self.schedule_update({"_installed": {envelope.payload["id"]: None}})

    def schedule_update(self, fragment: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Push ``fragment`` from synchronous code running on the event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("dropping shadow update outside the event loop: %s", sorted(fragment))
            return None
        task = loop.create_task(self._update_logged(fragment))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _update_logged(self, fragment: Dict[str, Any]) -> None:
        try:
            await self.update(fragment)
        except Exception as exc:
            logger.error("shadow update failed: %s", exc)

    async def close(self) -> None:
        for sub_id in self._sub_ids:
            self._bus.unsubscribe(sub_id)
        self._sub_ids.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
