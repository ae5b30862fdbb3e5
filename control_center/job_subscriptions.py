"""Per-operation job subscriptions with resubscribe backoff, plus boot autostart."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from runtime_bus import RuntimeBus, topics

from .errors import DEFAULT_STATUS_DETAIL_LENGTH
from .jobs import DEFAULT_REPORT_ATTEMPTS, JobContext, JobHandler, Operation, run_job
from .package_store import PackageStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

SOURCE = "job_subscriptions"
INITIAL_BACKOFF_S = 1.0
MAX_BACKOFF_S = 24 * 60 * 60.0


class Backoff:
    """1, 2, 4, ... seconds, capped; back to the start after any delivery."""

    def __init__(self, initial: float = INITIAL_BACKOFF_S, maximum: float = MAX_BACKOFF_S) -> None:
        self.initial = float(initial)
        self.maximum = float(maximum)
        self.current = self.initial

    def next_delay(self) -> float:
        delay = self.current
        self.current = min(self.current * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = self.initial


class JobSubscriptionManager:
    def __init__(
        self,
        transport: Any,
        thing_name: str,
        handlers: Dict[Operation, JobHandler],
        *,
        bus: Optional[RuntimeBus] = None,
        initial_backoff: float = INITIAL_BACKOFF_S,
        max_backoff: float = MAX_BACKOFF_S,
        detail_limit: int = DEFAULT_STATUS_DETAIL_LENGTH,
        report_attempts: int = DEFAULT_REPORT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        missing = [operation.value for operation in Operation if operation not in handlers]
        if missing:
            raise ValueError(f"no job handler for: {', '.join(missing)}")
        self._transport = transport
        self.thing_name = thing_name
        self._handlers = dict(handlers)
        self._bus = bus
        self._detail_limit = detail_limit
        self._report_attempts = report_attempts
        self._sleep = sleep
        self.backoffs: Dict[Operation, Backoff] = {
            operation: Backoff(initial_backoff, max_backoff) for operation in Operation
        }
        self._subscriptions: Dict[Operation, asyncio.Task] = {}
        self._jobs: Set[asyncio.Task] = set()

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        for operation in Operation:
            if operation in self._subscriptions:
                continue
            task = loop.create_task(self.subscribe_with_retry(operation), name=f"jobs:{operation.value}")
            self._subscriptions[operation] = task

    async def subscribe_with_retry(self, operation: Operation) -> None:
        backoff = self.backoffs[operation]
        while True:
            try:
                async for job in self._transport.subscribe_jobs(self.thing_name, operation.value):
                    backoff.reset()
                    self.dispatch(operation, job)
                logger.warning("job subscription for %s ended", operation.value)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("job subscription for %s failed: %s", operation.value, exc)
            delay = backoff.next_delay()
            logger.info("resubscribing to %s jobs in %.0fs", operation.value, delay)
            await self._sleep(delay)

    def dispatch(self, operation: Operation, job: Any) -> asyncio.Task:
        ctx = JobContext(job, detail_limit=self._detail_limit, report_attempts=self._report_attempts)
        logger.info("job received: %s", operation.value)
        self._publish(topics.JOB_RECEIVED, {"operation": operation.value})
        task = asyncio.get_running_loop().create_task(self._run(operation, ctx))
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)
        return task

    async def _run(self, operation: Operation, ctx: JobContext) -> None:
        await run_job(self._handlers[operation], ctx)
        outcome = ctx.outcome.value if ctx.outcome is not None else None
        self._publish(topics.JOB_COMPLETED, {"operation": operation.value, "outcome": outcome})

    async def start_job_notifications(self) -> bool:
        try:
            await self._transport.start_job_notifications(self.thing_name)
        except Exception as exc:
            logger.error("unable to start the job notification handler: %s", exc)
            return False
        logger.info("started the job notification handler for %s", self.thing_name)
        return True

    async def stop(self) -> None:
        tasks = list(self._subscriptions.values()) + list(self._jobs)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions.clear()

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self._bus is not None:
            self._bus.publish(topic, payload, source=SOURCE)


async def autostart_packages(
    store: PackageStore,
    supervisor: ProcessSupervisor,
    bus: Optional[RuntimeBus] = None,
) -> List[Dict[str, str]]:
    """Start every autostart package concurrently; return the failures.

    One aggregate notification is published when anything failed.
    """
    candidates = [package_id for package_id, record in store.packages.list().items() if record.autostart]
    if not candidates:
        return []
    logger.info("autostarting %d package(s): %s", len(candidates), ", ".join(candidates))
    results = await asyncio.gather(
        *(supervisor.start(package_id) for package_id in candidates),
        return_exceptions=True,
    )
    failures: List[Dict[str, str]] = []
    for package_id, result in zip(candidates, results):
        if isinstance(result, BaseException):
            logger.error("autostart of %s failed: %s", package_id, result)
            failures.append({"id": package_id, "error": str(result) or type(result).__name__})
    if failures and bus is not None:
        bus.publish(topics.PACKAGE_START_FAILED, {"failures": failures}, source=SOURCE)
    return failures
