"""Crash-safe file helpers: atomic replace-on-write, locked appends, tolerant JSON reads."""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_REPLACE_MAX_ATTEMPTS = 8
_REPLACE_BACKOFF_SECONDS = 0.01

_LOCKS_GUARD = threading.Lock()
_LOCKS: dict[str, threading.RLock] = {}


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = _LOCKS[key] = threading.RLock()
    return lock


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize in-process access to *path* (threads only, not processes)."""
    with _lock_for(path):
        yield


def _replace_with_retry(src: Path, dst: Path) -> None:
    """Move *src* over *dst*, retrying while Windows reports a sharing violation."""
    for attempt in range(1, _REPLACE_MAX_ATTEMPTS + 1):
        try:
            src.replace(dst)
            return
        except PermissionError:
            if attempt == _REPLACE_MAX_ATTEMPTS:
                raise
        except OSError as exc:
            if exc.errno != 13 or attempt == _REPLACE_MAX_ATTEMPTS:
                raise
        time.sleep(_REPLACE_BACKOFF_SECONDS * attempt)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to a sibling temp file and swap it into place.

    If anything fails the previous contents of *path* are left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        with locked_path(path):
            _replace_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")


def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append *content* to *path* under the per-path lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with locked_path(path), path.open("a", encoding=encoding) as handle:
        handle.write(content)


@dataclass(frozen=True, slots=True)
class JsonDocument:
    """Result of :func:`read_json_document`.

    ``exists`` is False for a missing file; ``error`` is set when the file
    exists but could not be read or parsed.
    """

    data: Any = None
    exists: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exists and self.error is None


def read_json_document(path: Path) -> JsonDocument:
    """Read and parse a JSON file without raising on missing or malformed input."""
    if not path.exists():
        return JsonDocument()
    try:
        raw = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        return JsonDocument(exists=True, error=str(exc))
    if not raw.strip():
        return JsonDocument(exists=True, error="file is empty")
    try:
        return JsonDocument(data=json.loads(raw), exists=True)
    except json.JSONDecodeError as exc:
        return JsonDocument(exists=True, error=str(exc))


def quarantine(path: Path) -> Path | None:
    """Copy a malformed document aside as ``<name>.corrupt`` and return the copy."""
    target = path.with_name(path.name + ".corrupt")
    try:
        target.write_bytes(path.read_bytes())
    except OSError:
        return None
    return target
