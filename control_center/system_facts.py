from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import AgentError
from .shell import Shell

logger = logging.getLogger(__name__)

OS_RELEASE_PATH = Path("/etc/os-release")
CPUINFO_PATH = Path("/proc/cpuinfo")
HARDWARE_TYPE = "rpi"
# set when the board has been over-volted, see elinux.org/RPi_HardwareHistory
OVERVOLT_PREFIX = "1000"


def parse_os_release(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep or not key or key.startswith("#"):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        values[key] = value
    return values


def parse_cpu_revision(text: str) -> str:
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == "Revision":
            revision = value.strip()
            if revision.startswith(OVERVOLT_PREFIX):
                revision = revision[len(OVERVOLT_PREFIX):]
            return revision
    return ""


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("unable to read %s: %s", path, exc)
        return ""


def build_sys_facts(os_release: Dict[str, str], revision: str, ip: str) -> Dict[str, Any]:
    return {
        "sw": {
            "id": os_release.get("ID"),
            "id_like": os_release.get("ID_LIKE"),
            "version_codename": os_release.get("VERSION_CODENAME"),
            "version_id": os_release.get("VERSION_ID"),
        },
        "hw": {"revision": revision, "type": HARDWARE_TYPE},
        "ip": ip.strip(),
    }


async def gather_system_facts(
    shell: Optional[Shell] = None,
    *,
    os_release_path: Path = OS_RELEASE_PATH,
    cpuinfo_path: Path = CPUINFO_PATH,
) -> Dict[str, Any]:
    """Collect the ``_sys`` block of the reported shadow state."""
    shell = shell or Shell()
    try:
        ip = (await shell.run("hostname --all-ip-addresses")).stdout
    except AgentError as exc:
        logger.warning("unable to resolve ip addresses: %s", exc)
        ip = ""
    return build_sys_facts(
        parse_os_release(_read(os_release_path)),
        parse_cpu_revision(_read(cpuinfo_path)),
        " ".join(ip.split()),
    )
