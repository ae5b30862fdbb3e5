from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Dict, Optional

LOGGER_NAMES = ("control_center", "runtime_bus", "diagnostics")
LOG_FORMAT = "ts=%(asctime)s level=%(levelname)s name=%(name)s msg=%(message)s"

_CONFIGURED = False


def configure_logging(
    base_dir: Optional[Path] = None,
    *,
    level: str | int = logging.INFO,
    console: bool = True,
) -> Dict[str, str]:
    """Attach the agent's file and console handlers to the package loggers.

    Everything goes to ``agent.log``; ERROR and above is duplicated into
    ``errors.log``. Calling this twice is harmless.
    """
    global _CONFIGURED
    log_dir = Path(base_dir) if base_dir is not None else Path("data/logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "agent.log"
    error_path = log_dir / "errors.log"
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers = ["file", "errors"]
    if console:
        handlers.append("console")
    summary = {
        "log_path": str(log_path),
        "error_path": str(error_path),
        "format": "kv",
        "handlers": ",".join(handlers),
    }
    if _CONFIGURED:
        for name in LOGGER_NAMES:
            logging.getLogger(name).setLevel(level)
        return summary

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    error_handler = logging.FileHandler(error_path, encoding="utf-8")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    attached: list[logging.Handler] = [file_handler, error_handler]
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        attached.append(console_handler)

    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.propagate = False
        for handler in attached:
            logger.addHandler(handler)
    _CONFIGURED = True
    return summary


def reset_logging() -> None:
    """Detach handlers installed by :func:`configure_logging` (tests)."""
    global _CONFIGURED
    seen: set[int] = set()
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            if id(handler) not in seen:
                seen.add(id(handler))
                handler.close()
        logger.propagate = True
    _CONFIGURED = False
