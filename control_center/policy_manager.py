from __future__ import annotations

import json
import logging
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

POLICY_ENV = "EDGE_AGENT_POLICY"
DEFAULT_POLICY_PATH = Path("data/policy.json")

DEFAULT_POLICY: Dict[str, Any] = {
    "thing_name": None,
    "storage_file": "data/packages.json",
    "packages_root": "../packages",
    "package_dir_prefix": "pck-",
    "package_user_prefix": "edge-pck-",
    "timeouts": {
        "startup_s": 20.0,
        "kill_s": 20.0,
        "shadow_fetch_s": 30.0,
    },
    "subscriptions": {
        "initial_backoff_s": 1.0,
        "max_backoff_s": 24 * 60 * 60,
    },
    "jobs": {
        "status_detail_max_length": 64,
        "report_attempts": 3,
    },
    "system": {
        "shutdown_command": "/sbin/shutdown",
        "agent_root": ".",
        "update_commands": [
            "git fetch origin && git reset --hard origin/master",
            "python -m pip install --quiet -e .",
        ],
    },
    "logging": {
        "dir": "data/logs",
        "level": "INFO",
        "console": True,
    },
}


def policy_path() -> Path:
    override = os.environ.get(POLICY_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return DEFAULT_POLICY_PATH


def get_default_policy() -> Dict[str, Any]:
    return deepcopy(DEFAULT_POLICY)


def load_overrides(path: Optional[Path] = None) -> Dict[str, Any]:
    path = Path(path) if path is not None else policy_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("ignoring unreadable policy file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("ignoring policy file %s: top level is not an object", path)
        return {}
    return data


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(dict(base[key]), value)
        else:
            base[key] = value
    return base


def resolve_policy(path: Optional[Path] = None, **overrides: Any) -> Dict[str, Any]:
    """Defaults, then the policy file, then keyword overrides."""
    policy = get_default_policy()
    _merge(policy, load_overrides(path))
    if overrides:
        _merge(policy, overrides)
    return policy
