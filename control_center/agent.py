"""Agent wiring: policy, logging, store, supervisor, jobs and shadow."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from diagnostics.logging_setup import configure_logging
from runtime_bus import RuntimeBus, topics

from .bus_endpoints import AgentEndpoints, register_agent_endpoints
from .downloads import Downloader
from .installer import PackageInstaller
from .job_handlers import JobHandlers
from .job_subscriptions import JobSubscriptionManager, autostart_packages
from .package_store import PackageStore
from .policy_manager import resolve_policy
from .shadow import ShadowReconciler
from .shell import Shell
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class Agent:
    def __init__(
        self,
        transport: Any,
        policy: Optional[Dict[str, Any]] = None,
        *,
        thing_name: Optional[str] = None,
        bus: Optional[RuntimeBus] = None,
        shell: Optional[Shell] = None,
        downloader: Optional[Downloader] = None,
        handlers: Optional[JobHandlers] = None,
    ) -> None:
        self.policy = policy if policy is not None else resolve_policy()
        self.thing_name = thing_name or self.policy.get("thing_name")
        if not self.thing_name:
            raise ValueError("thing_name is required (policy key 'thing_name')")
        self.transport = transport
        self.bus = bus or RuntimeBus()
        self.shell = shell or Shell()

        timeouts = self.policy.get("timeouts") or {}
        jobs = self.policy.get("jobs") or {}
        system = self.policy.get("system") or {}
        subscriptions = self.policy.get("subscriptions") or {}

        self.store = PackageStore(Path(self.policy["storage_file"]), self.bus)
        self.supervisor = ProcessSupervisor(
            self.store,
            self.shell,
            startup_timeout=float(timeouts.get("startup_s", 20.0)),
            kill_timeout=float(timeouts.get("kill_s", 20.0)),
        )
        self.installer = PackageInstaller(
            self.store,
            self.supervisor,
            self.shell,
            downloader,
            packages_root=Path(self.policy["packages_root"]),
            dir_prefix=self.policy["package_dir_prefix"],
            user_prefix=self.policy["package_user_prefix"],
        )
        self.handlers = handlers or JobHandlers(
            self.store,
            self.supervisor,
            self.installer,
            self.shell,
            shutdown_command=system.get("shutdown_command", "/sbin/shutdown"),
            agent_root=Path(system.get("agent_root", ".")),
            update_commands=system.get("update_commands") or (),
        )
        self.shadow = ShadowReconciler(
            transport,
            self.thing_name,
            self.bus,
            self.store,
            self.shell,
            fetch_timeout=float(timeouts.get("shadow_fetch_s", 30.0)),
        )
        self.subscriptions = JobSubscriptionManager(
            transport,
            self.thing_name,
            self.handlers.table(),
            bus=self.bus,
            initial_backoff=float(subscriptions.get("initial_backoff_s", 1.0)),
            max_backoff=float(subscriptions.get("max_backoff_s", 24 * 60 * 60)),
            detail_limit=int(jobs.get("status_detail_max_length", 64)),
            report_attempts=int(jobs.get("report_attempts", 3)),
        )
        self.endpoints: Optional[AgentEndpoints] = None

    @classmethod
    def from_policy(cls, transport: Any, policy_file: Optional[Path] = None, **kwargs: Any) -> "Agent":
        """Resolve the policy, configure logging and build the agent."""
        policy = resolve_policy(policy_file)
        log_cfg = policy.get("logging") or {}
        summary = configure_logging(
            Path(log_cfg.get("dir", "data/logs")),
            level=log_cfg.get("level", "INFO"),
            console=bool(log_cfg.get("console", True)),
        )
        logger.info("logging to %s (%s)", summary["log_path"], summary["handlers"])
        return cls(transport, policy, **kwargs)

    async def start(self) -> List[Dict[str, str]]:
        """Reconcile the shadow, subscribe to jobs, then autostart packages.

        Returns the autostart failures.
        """
        logger.info("starting agent for %s", self.thing_name)
        self.endpoints = register_agent_endpoints(
            self.bus, self.transport, self.thing_name, self.store, self.shadow.update
        )
        restored = self.installer.recover_interrupted_updates()
        if restored:
            logger.info("restored previous version of %s", ", ".join(sorted(restored)))
        await self.shadow.reconcile()
        self.subscriptions.start()
        await self.subscriptions.start_job_notifications()

        logger.info("autostarting installed packages")
        failures = await autostart_packages(self.store, self.supervisor, self.bus)
        logger.info("autostart completed with %d failure(s)", len(failures))
        return failures

    def on_transport_message(self, topic: str, payload: Optional[Dict[str, Any]]) -> None:
        """Hand an inbound transport message to whoever listens on the bus."""
        self.bus.publish(topic, payload if isinstance(payload, dict) else {}, source="transport")

    def on_ipc_message(self, package_id: str, message_type: str, message: Any = None) -> None:
        self.bus.publish(
            topics.IPC_MESSAGE,
            {"type": message_type, "package": package_id, "message": message},
            source="ipc",
        )

    async def stop(self) -> None:
        logger.info("stopping agent")
        await self.subscriptions.stop()
        await self.supervisor.stop_all()
        await self.shadow.close()
        if self.endpoints is not None:
            self.endpoints.unregister()
            await self.endpoints.drain()
            self.endpoints = None
