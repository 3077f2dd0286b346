"""Append-only iteration history.

Each iteration produces ``history/iteration-<n>.json`` (never rewritten) and
one block appended to ``progress.txt``.  Interesting facts are also copied to
an optional learning sink whose failures never affect the primary record.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from taskloop.file_io import append_text, atomic_write_json, read_json_document
from taskloop.schemas import IterationRecord, IterationStatus, utc_now

logger = logging.getLogger(__name__)

HISTORY_DIR = "history"
ARCHIVE_DIR = "archive"
PROGRESS_FILE = "progress.txt"
LEARNINGS_FILE = "learnings.jsonl"

_ITERATION_FILE_RE = re.compile(r"^iteration-(\d+)\.json$")


def format_progress_block(record: IterationRecord) -> str:
    """Render the human-readable ``progress.txt`` block for one iteration."""
    lines = [
        f"[Iteration {record.iteration}] {record.started_at}",
        f"Task: {record.task_id} ({record.task_title})",
        f"Status: {record.status.value}",
        f"Tool: {record.tool or 'unknown'}",
        f"Duration: {record.duration_ms}ms",
    ]
    if record.quality_checks:
        gates = ", ".join(
            f"{name}={'pass' if passed else 'fail'}" for name, passed in record.quality_checks.items()
        )
        lines.append(f"Quality: {gates}")
    if record.commit_ref:
        lines.append(f"Commit: {record.commit_ref}")
    if record.summary:
        lines.append(f"Summary: {record.summary}")
    if record.learnings:
        lines.append(f"Learnings: {'; '.join(record.learnings)}")
    if record.errors:
        lines.append(f"Errors: {'; '.join(record.errors)}")
    lines.append("---")
    return "\n".join(lines) + "\n\n"


class LearningSink(Protocol):
    def capture(self, record: IterationRecord) -> None: ...


class JsonlLearningSink:
    """Append failures, learnings and completions to ``learnings.jsonl``."""

    def __init__(self, data_dir: str | Path) -> None:
        self.path = Path(data_dir) / LEARNINGS_FILE
        self._lock = threading.Lock()

    def capture(self, record: IterationRecord) -> None:
        entries: list[dict[str, Any]] = []
        base = {
            "timestamp": utc_now(),
            "iteration": record.iteration,
            "taskId": record.task_id,
            "taskTitle": record.task_title,
        }
        if record.status == IterationStatus.SUCCESS:
            entries.append({**base, "kind": "completion", "text": record.summary or record.task_title})
        elif record.status == IterationStatus.FAILURE:
            failed = [name for name, ok in record.quality_checks.items() if not ok]
            text = "; ".join(record.errors) or (f"failed gates: {', '.join(failed)}" if failed else "failed")
            entries.append({**base, "kind": "failure", "text": text})
        for learning in record.learnings:
            entries.append({**base, "kind": "learning", "text": learning})
        if not entries:
            return
        payload = "".join(json.dumps(e, ensure_ascii=False) + "\n" for e in entries)
        with self._lock:
            append_text(self.path, payload)

    def recent(self, limit: int = 20, kind: str | None = None) -> list[dict[str, Any]]:
        """Most recent entries first; malformed lines are skipped."""
        if not self.path.exists():
            return []
        out: list[dict[str, Any]] = []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        for line in reversed(lines):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if kind is not None and entry.get("kind") != kind:
                continue
            out.append(entry)
            if len(out) >= limit:
                break
        return out


class IterationRecorder:
    """Writes and reads the per-iteration audit trail."""

    def __init__(self, data_dir: str | Path, *, learning_sink: LearningSink | None = None) -> None:
        self.data_dir = Path(data_dir)
        self.history_dir = self.data_dir / HISTORY_DIR
        self.progress_path = self.data_dir / PROGRESS_FILE
        self.learning_sink = learning_sink

    def iteration_path(self, iteration: int) -> Path:
        return self.history_dir / f"iteration-{iteration}.json"

    def record(self, record: IterationRecord) -> Path:
        """Persist *record*; an existing record for the same iteration is kept as is."""
        if record.completed_at is None:
            record.completed_at = utc_now()
        path = self.iteration_path(record.iteration)
        if path.exists():
            logger.warning("Iteration %d already recorded; keeping %s", record.iteration, path.name)
            return path
        atomic_write_json(path, record.to_json_dict())

        try:
            append_text(self.progress_path, format_progress_block(record))
        except OSError as exc:
            logger.warning("Could not append to %s: %s", self.progress_path.name, exc)

        if self.learning_sink is not None:
            try:
                self.learning_sink.capture(record)
            except Exception as exc:
                logger.warning("Learning sink failed for iteration %d: %s", record.iteration, exc)

        logger.info("Recorded iteration %d: %s - %s", record.iteration, record.task_id, record.status.value)
        return path

    def archive(self) -> Path | None:
        """Move the current session's iteration files under ``history/archive/<stamp>/``.

        Records are relocated, never edited.  Returns the archive directory, or
        ``None`` when there was nothing to archive.
        """
        files = self._numbered_files()
        if not files:
            return None
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = self.history_dir / ARCHIVE_DIR / stamp
        suffix = 1
        while target.exists():
            suffix += 1
            target = self.history_dir / ARCHIVE_DIR / f"{stamp}-{suffix}"
        target.mkdir(parents=True)
        for _, path in files:
            path.replace(target / path.name)
        logger.info("Archived %d iteration record(s) to %s", len(files), target)
        return target

    def _numbered_files(self) -> list[tuple[int, Path]]:
        if not self.history_dir.is_dir():
            return []
        numbered = []
        for path in self.history_dir.iterdir():
            match = _ITERATION_FILE_RE.match(path.name)
            if match:
                numbered.append((int(match.group(1)), path))
        numbered.sort(key=lambda item: item[0], reverse=True)
        return numbered

    @staticmethod
    def _read(path: Path) -> IterationRecord | None:
        doc = read_json_document(path)
        if not doc.ok:
            logger.warning("Failed to read %s: %s", path.name, doc.error)
            return None
        try:
            return IterationRecord.model_validate(doc.data)
        except ValidationError as exc:
            logger.warning("Invalid iteration record %s: %s", path.name, exc)
            return None

    def history(self, limit: int | None = None, task_id: str | None = None) -> list[IterationRecord]:
        """Recorded iterations, most recent first."""
        records: list[IterationRecord] = []
        for _, path in self._numbered_files():
            record = self._read(path)
            if record is None:
                continue
            if task_id is not None and record.task_id != task_id:
                continue
            records.append(record)
            if limit and len(records) >= limit:
                break
        return records

    def get(self, iteration: int) -> IterationRecord | None:
        path = self.iteration_path(iteration)
        if not path.exists():
            return None
        return self._read(path)

    def statistics(self) -> dict[str, Any]:
        records = self.history()
        total = len(records)
        successes = sum(1 for r in records if r.status == IterationStatus.SUCCESS)
        failures = sum(1 for r in records if r.status == IterationStatus.FAILURE)
        gate_passes: dict[str, int] = {}
        for r in records:
            for name, passed in r.quality_checks.items():
                gate_passes[name] = gate_passes.get(name, 0) + (1 if passed else 0)
        return {
            "total_iterations": total,
            "successful_iterations": successes,
            "failed_iterations": failures,
            "average_duration_ms": round(sum(r.duration_ms for r in records) / total) if total else 0,
            "success_rate": successes / total if total else 0.0,
            "quality_breakdown": gate_passes,
        }

    def learnings(self) -> list[str]:
        """Short insights derived from the history."""
        insights: list[str] = []
        for r in self.history():
            if r.status == IterationStatus.SUCCESS and r.gates_passed():
                insights.append(f"Iteration {r.iteration}: full quality gate pass for {r.task_title!r}")
            elif r.status == IterationStatus.FAILURE:
                failed = [name for name, ok in r.quality_checks.items() if not ok]
                if failed:
                    insights.append(f"Iteration {r.iteration}: failed quality checks: {', '.join(failed)}")
        stats = self.statistics()
        if stats["total_iterations"]:
            insights.append(
                f"Success rate: {stats['success_rate'] * 100:.1f}% "
                f"({stats['successful_iterations']}/{stats['total_iterations']})"
            )
            insights.append(f"Average iteration time: {stats['average_duration_ms']}ms")
        return insights

    def task_insights(self, task_id: str) -> dict[str, Any]:
        records = sorted(self.history(task_id=task_id), key=lambda r: r.iteration)
        if not records:
            return {
                "total_iterations": 0,
                "status_distribution": {},
                "average_duration_ms": 0,
                "quality_trend": [],
            }
        distribution: dict[str, int] = {}
        for r in records:
            distribution[r.status.value] = distribution.get(r.status.value, 0) + 1
        trend = [
            (sum(r.quality_checks.values()) / len(r.quality_checks) * 100) if r.quality_checks else 100.0
            for r in records
        ]
        return {
            "total_iterations": len(records),
            "status_distribution": distribution,
            "average_duration_ms": round(sum(r.duration_ms for r in records) / len(records)),
            "quality_trend": trend,
        }
