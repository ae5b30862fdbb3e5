from __future__ import annotations

import logging
from pathlib import Path

import pytest

from diagnostics import logging_setup


@pytest.fixture(autouse=True)
def _clean_logging():
    logging_setup.reset_logging()
    yield
    logging_setup.reset_logging()


def test_configure_logging_writes_kv_lines(tmp_path: Path) -> None:
    summary = logging_setup.configure_logging(tmp_path, level="DEBUG", console=False)
    assert summary["format"] == "kv"
    assert summary["handlers"] == "file,errors"

    logging.getLogger("control_center.supervisor").info("package demo started")
    logging.getLogger("runtime_bus.bus").error("handler failed")
    for handler in logging.getLogger("control_center").handlers:
        handler.flush()

    agent_log = (tmp_path / "agent.log").read_text(encoding="utf-8")
    errors_log = (tmp_path / "errors.log").read_text(encoding="utf-8")
    assert "level=INFO name=control_center.supervisor msg=package demo started" in agent_log
    assert "handler failed" in agent_log
    assert "handler failed" in errors_log
    assert "package demo started" not in errors_log


def test_configure_logging_is_idempotent(tmp_path: Path) -> None:
    logging_setup.configure_logging(tmp_path, console=False)
    count = len(logging.getLogger("control_center").handlers)
    logging_setup.configure_logging(tmp_path, level=logging.WARNING, console=False)
    assert len(logging.getLogger("control_center").handlers) == count
    assert logging.getLogger("control_center").level == logging.WARNING


def test_unknown_level_falls_back_to_info(tmp_path: Path) -> None:
    logging_setup.configure_logging(tmp_path, level="chatty", console=True)
    assert logging.getLogger("diagnostics").level == logging.INFO
