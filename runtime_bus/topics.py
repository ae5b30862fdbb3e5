"""Topic constants for the runtime bus."""

# Package registry lifecycle (emitted by the package store)
PACKAGE_INSTALLED = "package.installed"
PACKAGE_REMOVED = "package.removed"
PACKAGE_STARTED = "package.started"
PACKAGE_STOPPED = "package.stopped"
PACKAGE_START_FAILED = "package.start_failed"

# Local IPC channel
IPC_MESSAGE = "ipc.message"
IPC_STATE_TYPE = "state"

# Job lifecycle
JOB_RECEIVED = "job.received"
JOB_COMPLETED = "job.completed"

__all__ = [
    "PACKAGE_INSTALLED",
    "PACKAGE_REMOVED",
    "PACKAGE_STARTED",
    "PACKAGE_STOPPED",
    "PACKAGE_START_FAILED",
    "IPC_MESSAGE",
    "IPC_STATE_TYPE",
    "JOB_RECEIVED",
    "JOB_COMPLETED",
]
