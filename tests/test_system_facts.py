from __future__ import annotations

import asyncio
from pathlib import Path

from control_center.system_facts import gather_system_facts, parse_cpu_revision, parse_os_release

from conftest import FakeShell

OS_RELEASE = """PRETTY_NAME="Raspbian GNU/Linux 10 (buster)"
NAME="Raspbian GNU/Linux"
VERSION_ID="10"
VERSION_CODENAME=buster
ID=raspbian
ID_LIKE=debian
"""

CPUINFO = """processor\t: 0
model name\t: ARMv7 Processor rev 4 (v7l)

Hardware\t: BCM2835
Revision\t: 1000a02082
Serial\t\t: 00000000deadbeef
"""


def test_parse_os_release_strips_quotes() -> None:
    values = parse_os_release(OS_RELEASE)
    assert values["VERSION_ID"] == "10"
    assert values["ID_LIKE"] == "debian"
    assert values["PRETTY_NAME"] == "Raspbian GNU/Linux 10 (buster)"


def test_parse_cpu_revision_strips_overvolt_prefix() -> None:
    assert parse_cpu_revision(CPUINFO) == "a02082"
    assert parse_cpu_revision("Revision\t: c03111\n") == "c03111"
    assert parse_cpu_revision("processor : 0\n") == ""


def test_gather_system_facts(tmp_path: Path) -> None:
    os_release = tmp_path / "os-release"
    os_release.write_text(OS_RELEASE)
    cpuinfo = tmp_path / "cpuinfo"
    cpuinfo.write_text(CPUINFO)
    shell = FakeShell({"hostname": "192.168.1.20 fd00::20 \n"})

    facts = asyncio.run(gather_system_facts(shell, os_release_path=os_release, cpuinfo_path=cpuinfo))

    assert facts == {
        "sw": {"id": "raspbian", "id_like": "debian", "version_codename": "buster", "version_id": "10"},
        "hw": {"revision": "a02082", "type": "rpi"},
        "ip": "192.168.1.20 fd00::20",
    }


def test_gather_system_facts_degrades(tmp_path: Path) -> None:
    shell = FakeShell(fail_on=("hostname",))
    facts = asyncio.run(
        gather_system_facts(shell, os_release_path=tmp_path / "nope", cpuinfo_path=tmp_path / "nope")
    )
    assert facts["sw"]["id"] is None
    assert facts["hw"]["revision"] == ""
    assert facts["ip"] == ""
