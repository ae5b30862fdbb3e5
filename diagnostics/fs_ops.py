from __future__ import annotations

import os
import shutil
import stat
import sys
from pathlib import Path
from typing import Callable

FAILOVER_SUFFIX = ".failover"


def safe_rmtree(path: Path) -> None:
    """Remove a tree, retrying entries that fail on read-only permissions."""
    path = Path(path)
    if not path.exists() and not path.is_symlink():
        return
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_handle_remove_error)
    else:
        shutil.rmtree(path, onerror=lambda func, p, info: _handle_remove_error(func, p, info[1]))


def make_exclusive_dir(path: Path) -> Path:
    """Create ``path`` and its parents; fail if ``path`` itself already exists."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.mkdir(mode=0o750)
    return path


def failover_path(path: Path) -> Path:
    path = Path(path)
    return path.with_name(path.name + FAILOVER_SUFFIX)


def swap_out(path: Path) -> Path:
    """Move ``path`` aside to its failover location and return that location."""
    target = failover_path(path)
    if target.exists():
        safe_rmtree(target)
    os.replace(path, target)
    return target


def swap_back(path: Path) -> None:
    """Restore ``path`` from its failover location, discarding what is there."""
    source = failover_path(path)
    if Path(path).exists():
        safe_rmtree(Path(path))
    os.replace(source, path)


def _handle_remove_error(func: Callable, path: str, exc: BaseException) -> None:
    if isinstance(exc, PermissionError):
        _make_writable(Path(path))
        try:
            func(path)
            return
        except OSError:
            pass
    raise exc


def _make_writable(path: Path) -> None:
    for target in (path, path.parent):
        try:
            os.chmod(target, os.stat(target).st_mode | stat.S_IWUSR | stat.S_IXUSR)
        except OSError:
            pass
