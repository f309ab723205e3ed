"""Local state directory, file locking and private-file helpers."""

from __future__ import annotations

import fcntl
import json
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


HOME_ENV = "ALLOWANCE_HOME"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def allowance_home() -> Path:
    """State directory: ``$ALLOWANCE_HOME`` or ``~/.allowance``."""
    override = os.getenv(HOME_ENV)
    return Path(override).expanduser() if override else Path.home() / ".allowance"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    path.touch(exist_ok=True)
    os.chmod(path, 0o600)


def child_path(base_dir: Path, identifier: str, suffix: str) -> Path:
    """Path for ``identifier`` directly under ``base_dir``; traversal is rejected."""
    name = _UNSAFE_CHARS.sub("_", identifier)
    path = (base_dir / f"{name}{suffix}").resolve()
    if path.parent != base_dir.resolve():
        raise ValueError(f"Unsafe path for identifier: {identifier}")
    return path


@contextmanager
def file_lock(lock_path: Path) -> Iterator[None]:
    """Exclusive advisory lock shared by every process using ``lock_path``."""
    ensure_private_file(lock_path)
    with open(lock_path, "r+") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` so readers never see a partial file."""
    tmp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)
