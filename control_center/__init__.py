from .agent import Agent
from .errors import AgentError, error_to_string
from .jobs import JobContext, JobStatus, Operation, run_job
from .package_store import PackageRecord, PackageStore, SystemIdentity
from .policy_manager import resolve_policy

__all__ = [
    "Agent",
    "AgentError",
    "error_to_string",
    "JobContext",
    "JobStatus",
    "Operation",
    "run_job",
    "PackageRecord",
    "PackageStore",
    "SystemIdentity",
    "resolve_policy",
]
