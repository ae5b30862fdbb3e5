"""Typed agent errors carrying the stable job error codes.

Codes are part of the wire contract with the job issuer and must not change.
"""

from __future__ import annotations

from typing import Optional

ERR_DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
ERR_FILE_COPY_FAILED = "ERR_FILE_COPY_FAILED"
ERR_UNNAMED_PACKAGE = "ERR_UNNAMED_PACKAGE"
ERR_INVALID_PACKAGE_NAME = "ERR_INVALID_PACKAGE_NAME"
ERR_SYSTEM_CALL_FAILED = "ERR_SYSTEM_CALL_FAILED"
ERR_UNEXPECTED_PACKAGE_EXIT = "ERR_UNEXPECTED_PACKAGE_EXIT"
ERR_UNABLE_TO_START_PACKAGE = "ERR_UNABLE_TO_START_PACKAGE"
ERR_UNABLE_TO_STOP_PACKAGE = "ERR_UNABLE_TO_STOP_PACKAGE"
ERR_UNSUPPORTED_CHECKSUM_ALGORITHM = "ERR_UNSUPPORTED_CHECKSUM_ALGORITHM"
ERR_CHECKSUM_FAILED = "ERR_CHECKSUM_FAILED"
ERR_INVALID_MANIFEST = "ERR_INVALID_MANIFEST"
ERR_PACKAGE_ALREADY_INSTALLED = "ERR_PACKAGE_ALREADY_INSTALLED"
ERR_PACKAGE_NOT_INSTALLED = "ERR_PACKAGE_NOT_INSTALLED"
ERR_PACKAGE_INSTALL_FAILED = "ERR_PACKAGE_INSTALL_FAILED"
ERR_PACKAGE_UNINSTALL_FAILED = "ERR_PACKAGE_UNINSTALL_FAILED"
ERR_PACKAGE_UPDATE_FAILED = "ERR_PACKAGE_UPDATE_FAILED"
ERR_PACKAGE_START_FAILED = "ERR_PACKAGE_START_FAILED"
ERR_PACKAGE_STOP_FAILED = "ERR_PACKAGE_STOP_FAILED"
ERR_UNEXPECTED = "ERR_UNEXPECTED"

ERROR_CODES = frozenset(
    {
        ERR_DOWNLOAD_FAILED,
        ERR_FILE_COPY_FAILED,
        ERR_UNNAMED_PACKAGE,
        ERR_INVALID_PACKAGE_NAME,
        ERR_SYSTEM_CALL_FAILED,
        ERR_UNEXPECTED_PACKAGE_EXIT,
        ERR_UNABLE_TO_START_PACKAGE,
        ERR_UNABLE_TO_STOP_PACKAGE,
        ERR_UNSUPPORTED_CHECKSUM_ALGORITHM,
        ERR_CHECKSUM_FAILED,
        ERR_INVALID_MANIFEST,
        ERR_PACKAGE_ALREADY_INSTALLED,
        ERR_PACKAGE_NOT_INSTALLED,
        ERR_PACKAGE_INSTALL_FAILED,
        ERR_PACKAGE_UNINSTALL_FAILED,
        ERR_PACKAGE_UPDATE_FAILED,
        ERR_PACKAGE_START_FAILED,
        ERR_PACKAGE_STOP_FAILED,
        ERR_UNEXPECTED,
    }
)

DEFAULT_STATUS_DETAIL_LENGTH = 64


class AgentError(RuntimeError):
    """Base error; ``code`` is one of :data:`ERROR_CODES`."""

    code = ERR_UNEXPECTED

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(AgentError):
    """Bad input or wrong job state. Terminal, never retried."""


class UnexpectedJobStateError(ValidationError):
    code = ERR_UNEXPECTED


class InvalidManifestError(ValidationError):
    code = ERR_INVALID_MANIFEST


class UnnamedPackageError(ValidationError):
    code = ERR_UNNAMED_PACKAGE


class InvalidPackageNameError(ValidationError):
    code = ERR_INVALID_PACKAGE_NAME


class PackageAlreadyInstalledError(ValidationError):
    code = ERR_PACKAGE_ALREADY_INSTALLED


class PackageNotInstalledError(ValidationError):
    code = ERR_PACKAGE_NOT_INSTALLED


class NotInstalledError(PackageNotInstalledError):
    """Raised by the supervisor when asked to start an unknown package."""


class UnexpectedExitError(AgentError):
    code = ERR_UNEXPECTED_PACKAGE_EXIT

    def __init__(self, message: str, *, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class UnableToStartError(AgentError):
    code = ERR_UNABLE_TO_START_PACKAGE


class AlreadyStartingError(UnableToStartError):
    pass


class UnableToStopError(AgentError):
    code = ERR_UNABLE_TO_STOP_PACKAGE


class AlreadyStoppingError(UnableToStopError):
    pass


class DownloadFailedError(AgentError):
    code = ERR_DOWNLOAD_FAILED


class FileCopyFailedError(AgentError):
    code = ERR_FILE_COPY_FAILED


class ChecksumFailedError(AgentError):
    code = ERR_CHECKSUM_FAILED

    def __init__(self, message: str, *, file_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.file_name = file_name


class UnsupportedChecksumAlgorithmError(AgentError):
    code = ERR_UNSUPPORTED_CHECKSUM_ALGORITHM


class SystemCallFailedError(AgentError):
    code = ERR_SYSTEM_CALL_FAILED

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


def error_to_string(err: object, limit: int = DEFAULT_STATUS_DETAIL_LENGTH) -> Optional[str]:
    """Render ``err`` for a job status detail, eliding past ``limit`` chars."""
    if err is None:
        return None
    text = str(err) or type(err).__name__
    if len(text) > limit:
        return text[: max(limit - 3, 0)] + "..."
    return text


def error_code(err: BaseException, default: str = ERR_UNEXPECTED) -> str:
    return getattr(err, "code", None) or default
