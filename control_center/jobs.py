"""Job model and the reporting wrapper around transport job objects."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import (
    DEFAULT_STATUS_DETAIL_LENGTH,
    ERR_UNEXPECTED,
    AgentError,
    error_to_string,
)

logger = logging.getLogger(__name__)

DEFAULT_REPORT_ATTEMPTS = 3
STEP_INITIATED = "initiated"


class Operation(str, Enum):
    SYSTEM_SHUTDOWN = "systemShutdown"
    SYSTEM_REBOOT = "systemReboot"
    SYSTEM_UPDATE = "systemUpdate"
    PACKAGE_INSTALL = "packageInstall"
    PACKAGE_UNINSTALL = "packageUninstall"
    PACKAGE_UPDATE = "packageUpdate"
    PACKAGE_START = "packageStart"
    PACKAGE_STOP = "packageStop"
    PACKAGE_RESTART = "packageRestart"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class JobReportError(AgentError):
    """The transport refused a status report after every retry."""


class JobContext:
    """Wraps a transport job.

    Progress may be reported any number of times; exactly one of
    :meth:`succeed` / :meth:`fail` takes effect.
    """

    def __init__(
        self,
        job: Any,
        *,
        detail_limit: int = DEFAULT_STATUS_DETAIL_LENGTH,
        report_attempts: int = DEFAULT_REPORT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.job = job
        self.detail_limit = detail_limit
        self.report_attempts = max(1, int(report_attempts))
        self._sleep = sleep
        self._outcome: Optional[JobStatus] = None

    @property
    def operation(self) -> str:
        operation = getattr(self.job, "operation", "")
        return operation.value if isinstance(operation, Operation) else str(operation or "")

    @property
    def document(self) -> Dict[str, Any]:
        document = getattr(self.job, "document", None)
        return document if isinstance(document, dict) else {}

    @property
    def status(self) -> Optional[JobStatus]:
        raw = (getattr(self.job, "status", None) or {}).get("status")
        try:
            return JobStatus(raw)
        except ValueError:
            return None

    @property
    def status_details(self) -> Dict[str, Any]:
        details = (getattr(self.job, "status", None) or {}).get("statusDetails")
        return details if isinstance(details, dict) else {}

    @property
    def step(self) -> Optional[str]:
        return self.status_details.get("step")

    @property
    def outcome(self) -> Optional[JobStatus]:
        return self._outcome

    @property
    def finished(self) -> bool:
        return self._outcome is not None

    async def progress(self, step: str, **details: Any) -> None:
        if self.finished:
            logger.warning("ignoring progress %r on finished %s job", step, self.operation)
            return
        payload = {"operation": self.operation, "step": step, **details}
        try:
            await self._report(self.job.in_progress, payload)
        except JobReportError as exc:
            logger.error("unable to report progress %r for %s: %s", step, self.operation, exc)

    async def succeed(self, **details: Any) -> bool:
        if not self._claim(JobStatus.SUCCEEDED):
            return False
        payload = {"operation": self.operation, **details}
        try:
            await self._report(self.job.succeeded, payload)
        except JobReportError as exc:
            logger.error("unable to report success for %s: %s", self.operation, exc)
        return True

    async def fail(
        self,
        code: str,
        message: str,
        *,
        error: Any = None,
        cause: Optional[str] = None,
    ) -> bool:
        if not self._claim(JobStatus.FAILED):
            return False
        payload: Dict[str, Any] = {
            "operation": self.operation,
            "errorCode": code,
            "errorMessage": message,
        }
        if error is not None:
            payload["error"] = error_to_string(error, self.detail_limit)
        if cause and cause != code:
            payload["cause"] = cause
        logger.warning("%s job failed: %s %s (%s)", self.operation, code, message, payload.get("error"))
        try:
            await self._report(self.job.failed, payload)
        except JobReportError as exc:
            logger.error("unable to report failure for %s: %s", self.operation, exc)
        return True

    def _claim(self, outcome: JobStatus) -> bool:
        if self._outcome is not None:
            logger.warning(
                "%s job already %s, ignoring %s", self.operation, self._outcome.value, outcome.value
            )
            return False
        self._outcome = outcome
        return True

    async def _report(self, fn: Callable[[Dict[str, Any]], Awaitable[Any]], payload: Dict[str, Any]) -> None:
        last_exc: Optional[Exception] = None
        for attempt in range(self.report_attempts):
            if attempt:
                await self._sleep(float(2 ** (attempt - 1)))
            try:
                await fn(payload)
                return
            except Exception as exc:
                last_exc = exc
                logger.warning("job report attempt %d failed: %s", attempt + 1, exc)
        raise JobReportError(f"job status report failed: {last_exc}")


JobHandler = Callable[[JobContext], Awaitable[None]]


async def run_job(handler: JobHandler, ctx: JobContext) -> None:
    """Run ``handler`` so that the job never stays IN_PROGRESS."""
    try:
        await handler(ctx)
    except asyncio.CancelledError:
        raise
    except AgentError as exc:
        logger.error("%s handler raised %s: %s", ctx.operation, exc.code, exc)
        await ctx.fail(exc.code, "job handler failed", error=exc)
    except Exception as exc:
        logger.exception("%s handler crashed", ctx.operation)
        await ctx.fail(ERR_UNEXPECTED, "unexpected error while executing job", error=exc)
    else:
        if not ctx.finished:
            logger.error("%s handler returned without reporting an outcome", ctx.operation)
            await ctx.fail(ERR_UNEXPECTED, "job finished without an outcome")
