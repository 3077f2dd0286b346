"""Advisory single-driver lock stamped with the owning process id.

The lock is cooperative: it keeps two autonomous loops on the same machine
from driving one project at once.  It is not a kernel lock and offers no
protection across hosts.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from taskloop.file_io import atomic_write_json, read_json_document
from taskloop.schemas import LockInfo, utc_now

logger = logging.getLogger(__name__)

LOCK_FILE = "ralph.lock"


class ProcessLiveness(Protocol):
    def is_alive(self, pid: int) -> bool: ...


class OsProcessLiveness:
    """Probe process existence with the platform's native mechanism."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        if sys.platform == "win32":
            return self._is_alive_windows(pid)
        try:
            os.kill(pid, 0)
        except PermissionError:
            # Exists but belongs to another user.
            return True
        except OSError:
            return False
        return True

    @staticmethod
    def _is_alive_windows(pid: int) -> bool:
        # os.kill(pid, 0) terminates the process on Windows.
        try:
            result = subprocess.run(
                ["tasklist", "/FI", f"PID eq {pid}", "/FO", "CSV", "/NH"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (subprocess.TimeoutExpired, OSError):
            return True
        return f'"{pid}"' in result.stdout


class ProcessLock:
    """``Unlocked -> Locked(pid) -> Unlocked`` with stale-lock reclamation."""

    def __init__(
        self,
        data_dir: str | Path,
        *,
        liveness: ProcessLiveness | None = None,
        pid: int | None = None,
    ) -> None:
        self.path = Path(data_dir) / LOCK_FILE
        self.liveness = liveness or OsProcessLiveness()
        self.pid = pid if pid is not None else os.getpid()

    def info(self) -> LockInfo | None:
        """Return the current lock contents, or ``None`` when absent or unreadable."""
        doc = read_json_document(self.path)
        if not doc.ok:
            return None
        try:
            return LockInfo.model_validate(doc.data)
        except ValidationError:
            return None

    def _create(self, tool: str) -> bool:
        """Create the lock file exclusively; False if another writer got there first."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = LockInfo(pid=self.pid, started_at=utc_now(), tool=tool).model_dump_json(
            by_alias=True, exclude_none=True, indent=2
        )
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        return True

    def acquire(self, tool: str) -> bool:
        """Try to take the lock for this process.

        Returns False (never raises) when a live process already holds it.  A
        lock left by a dead process, or one that cannot be parsed, is removed
        and acquisition is retried once.
        """
        if self._create(tool):
            logger.info("Acquired loop lock (pid=%d, tool=%s)", self.pid, tool)
            return True

        holder = self.info()
        if holder is not None and self.liveness.is_alive(holder.pid):
            logger.warning("Loop already running (pid=%d, tool=%s)", holder.pid, holder.tool)
            return False

        logger.warning(
            "Removing stale loop lock%s",
            f" left by pid {holder.pid}" if holder is not None else " (unreadable)",
        )
        self.path.unlink(missing_ok=True)
        if self._create(tool):
            logger.info("Acquired loop lock (pid=%d, tool=%s)", self.pid, tool)
            return True
        return False

    def release(self, *, force: bool = False) -> None:
        """Remove the lock if this process owns it (or unconditionally with *force*).

        A lock stamped with another pid is left in place unless *force* is
        set, so a finishing driver cannot drop a lock a newer driver took
        over.  ``taskloop unlock`` passes ``force=True`` to clear any lock.
        Safe to call when the lock is already gone.
        """
        if not force:
            holder = self.info()
            if holder is not None and holder.pid != self.pid:
                logger.warning("Not releasing loop lock held by pid %d", holder.pid)
                return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove loop lock %s: %s", self.path, exc)
            return
        logger.debug("Released loop lock")

    def update_progress(self, iteration: int, current_task: str | None) -> None:
        """Best-effort refresh of the progress fields; errors are logged only."""
        try:
            holder = self.info()
            if holder is None or holder.pid != self.pid:
                return
            holder.iteration = iteration
            holder.current_task = current_task
            atomic_write_json(self.path, holder.to_json_dict())
        except Exception as exc:
            logger.debug("Lock progress update skipped: %s", exc)

    def is_running(self) -> bool:
        holder = self.info()
        return holder is not None and self.liveness.is_alive(holder.pid)
