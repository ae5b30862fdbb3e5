from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence

from .errors import InvalidPackageNameError, SystemCallFailedError

logger = logging.getLogger(__name__)

PACKAGE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
PACKAGE_ID_MAX_LENGTH = 24


@dataclass(frozen=True)
class ShellResult:
    command: str
    returncode: int
    stdout: str
    stderr: str


def validate_package_id(value: object) -> str:
    """Package ids end up in user names and command lines; keep them boring."""
    package_id = str(value or "").strip()
    if not package_id:
        raise InvalidPackageNameError("package id is empty")
    if len(package_id) > PACKAGE_ID_MAX_LENGTH or not PACKAGE_ID_RE.match(package_id):
        raise InvalidPackageNameError(f"invalid package id: {package_id!r}")
    return package_id


def _identity_kwargs(uid: Optional[int], gid: Optional[int]) -> Dict[str, int]:
    kwargs: Dict[str, int] = {}
    if uid is not None:
        kwargs["user"] = int(uid)
        kwargs["group"] = int(gid if gid is not None else uid)
    return kwargs


class Shell:
    """Command execution with optional privilege drop."""

    async def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        uid: Optional[int] = None,
        gid: Optional[int] = None,
    ) -> ShellResult:
        logger.debug("+ %s", command)
        logger.debug("+ in %s as %s", cwd or os.getcwd(), uid if uid is not None else "agent")
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_identity_kwargs(uid, gid),
            )
            stdout, stderr = await process.communicate()
        except OSError as exc:
            raise SystemCallFailedError(f"unable to run {command!r}: {exc}", command=command) from exc
        result = ShellResult(
            command=command,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if result.returncode != 0:
            raise SystemCallFailedError(
                f"command exited with {result.returncode}: {result.stderr.strip() or command}",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    async def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Optional[str] = None,
        uid: Optional[int] = None,
        gid: Optional[int] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> asyncio.subprocess.Process:
        """Start a long-running process with piped output. Raises ``OSError``."""
        return await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **_identity_kwargs(uid, gid),
        )
