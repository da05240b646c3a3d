"""Private on-disk state: signed batches, audit log and secrets."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any


def avatar_dir() -> Path:
    """State directory, resolved against the current HOME."""
    return Path.home() / ".avatar"


def secrets_dir() -> Path:
    return Path.home() / ".avatar-secrets"


_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def child_path(base_dir: Path, identifier: str, suffix: str = ".json") -> Path:
    """Path for ``identifier`` directly under ``base_dir``; traversal is rejected."""
    name = _UNSAFE_CHARS_RE.sub("_", identifier)
    path = (base_dir / f"{name}{suffix}").resolve()
    if path.parent != base_dir.resolve():
        raise ValueError(f"Unsafe path for identifier: {identifier}")
    return path


def write_json(path: Path, payload: Any) -> None:
    """Atomically replace ``path`` with ``payload`` and restrict its mode."""
    ensure_private_dir(path.parent)
    tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    ensure_private_file(path)


def read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)
