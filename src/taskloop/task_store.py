"""File-backed task store: active tasks, the current-task pointer, and completed history.

Three documents live side by side in the data directory and can be read
independently:

* ``tasks.json``   - array of active (not completed) tasks
* ``current.json`` - ``{"taskId": ...}``
* ``history.json`` - array of completed tasks, append-only

Concurrent edits by other processes are not detected; the last writer wins.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from taskloop import graph
from taskloop.errors import TaskNotFoundError
from taskloop.file_io import atomic_write_json, quarantine, read_json_document
from taskloop.schemas import Task, TaskStatus, utc_now

logger = logging.getLogger(__name__)

TASKS_FILE = "tasks.json"
CURRENT_FILE = "current.json"
HISTORY_FILE = "history.json"


def default_seed_tasks() -> list[Task]:
    """Starter tasks written on first run: a three-step chain."""
    setup = Task(
        title="Set up project structure",
        description="Create the initial layout, tooling and configuration.",
        priority=1,
        tags=["setup"],
    )
    core = Task(
        title="Implement core functionality",
        description="Build the primary features described in the PRD.",
        priority=2,
        dependencies=[setup.id],
        tags=["implementation"],
    )
    verify = Task(
        title="Write tests and documentation",
        description="Cover the core functionality with tests and document usage.",
        priority=3,
        dependencies=[core.id],
        tags=["testing", "docs"],
    )
    return [setup, core, verify]


class TaskStore:
    """Owns one project's task snapshot and persists every mutation."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self.tasks_path = self.data_dir / TASKS_FILE
        self.current_path = self.data_dir / CURRENT_FILE
        self.history_path = self.data_dir / HISTORY_FILE
        self.tasks: list[Task] = []
        self.history: list[Task] = []
        self.current_task_id: str | None = None
        self.load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> TaskStore:
        """(Re)load all three documents, repairing malformed ones."""
        active = self._load_task_list(self.tasks_path)
        history = self._load_task_list(self.history_path)

        # Completed work belongs in history only.
        self.tasks = []
        for task in active:
            if task.status == TaskStatus.COMPLETED:
                logger.info("Moving completed task %s from %s to history", task.id, TASKS_FILE)
                history.append(task)
            else:
                self.tasks.append(task)
        self.history = history
        self.current_task_id = self._load_current()
        return self

    def save(self) -> None:
        atomic_write_json(self.tasks_path, [t.to_json_dict() for t in self.tasks])
        atomic_write_json(self.history_path, [t.to_json_dict() for t in self.history])
        current: dict[str, Any] = {"taskId": self.current_task_id} if self.current_task_id else {}
        atomic_write_json(self.current_path, current)

    def _reset_document(self, path: Path, error: str, default: Any) -> None:
        copy = quarantine(path)
        logger.warning(
            "Malformed %s (%s); reinitialising%s",
            path.name,
            error,
            f", original kept at {copy.name}" if copy else "",
        )
        atomic_write_json(path, default)

    def _load_task_list(self, path: Path) -> list[Task]:
        doc = read_json_document(path)
        if not doc.exists:
            return []
        if doc.error is not None or not isinstance(doc.data, list):
            self._reset_document(path, doc.error or "expected a JSON array", [])
            return []

        tasks: list[Task] = []
        for position, item in enumerate(doc.data):
            try:
                tasks.append(Task.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping invalid task #%d in %s: %s", position, path.name, exc)
        return tasks

    def _load_current(self) -> str | None:
        doc = read_json_document(self.current_path)
        if not doc.exists:
            return None
        if doc.error is not None or not isinstance(doc.data, dict):
            self._reset_document(self.current_path, doc.error or "expected a JSON object", {})
            return None
        task_id = doc.data.get("taskId")
        return task_id if isinstance(task_id, str) and task_id else None

    def initialize(self, seed: Iterable[Task] | None = None) -> bool:
        """Seed the store on first run. Returns False when tasks already exist on disk."""
        if self.tasks_path.exists():
            self.load()
            return False
        self.tasks = list(seed) if seed is not None else default_seed_tasks()
        self.history = []
        self.current_task_id = None
        self.save()
        logger.info("Initialised task store at %s with %d task(s)", self.data_dir, len(self.tasks))
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def all_tasks(self) -> list[Task]:
        return [*self.tasks, *self.history]

    def get_task(self, task_id: str) -> Task | None:
        """Look up a task in the active list, then in history."""
        for task in self.all_tasks:
            if task.id == task_id:
                return task
        return None

    def _require_active(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    def current_task(self) -> Task | None:
        if not self.current_task_id:
            return None
        for task in self.tasks:
            if task.id == self.current_task_id:
                return task
        return None

    def pending_by_priority(self) -> list[Task]:
        return graph.pending_by_priority(self.tasks)

    def dependencies_of(self, task_id: str) -> list[Task]:
        return graph.dependencies_of(self.all_tasks, task_id)

    def is_satisfied(self, task_id: str) -> bool:
        return graph.is_satisfied(self.all_tasks, task_id)

    def next_task(self) -> Task | None:
        return graph.next_eligible_task(self.all_tasks)

    def detect_cycles(self) -> list[list[str]]:
        return graph.detect_cycles(self.all_tasks)

    def parallel_batches(self, max_workers: int | None = None) -> list[list[Task]]:
        return graph.parallel_batches(self.all_tasks, max_workers)

    def dependency_tree(self) -> str:
        return graph.dependency_tree(self.all_tasks)

    def task_stats(self) -> dict[str, int]:
        stats = {
            "total": len(self.tasks) + len(self.history),
            "pending": 0,
            "in_progress": 0,
            "completed": len(self.history),
            "failed": 0,
            "skipped": 0,
        }
        for task in self.tasks:
            key = task.status.value.replace("-", "_")
            stats[key] = stats.get(key, 0) + 1
        return stats

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_task(
        self,
        title: str,
        *,
        description: str = "",
        priority: int = 1,
        dependencies: Sequence[str] = (),
        tags: Sequence[str] = (),
    ) -> Task:
        task = Task(
            title=title,
            description=description,
            priority=priority,
            dependencies=list(dependencies),
            tags=list(tags),
        )
        self.tasks.append(task)
        self.save()
        logger.debug("Added task %s (%s)", task.id, title[:60])
        return task

    def set_current_task(self, task_id: str) -> None:
        self._require_active(task_id)
        self.current_task_id = task_id
        self.save()

    def update_task_status(self, task_id: str, status: TaskStatus | str) -> Task:
        """Apply a status transition and its side effects, then persist.

        ``completed`` moves the task to history (clearing the current pointer
        if it named this task); ``in-progress`` makes it the current task.
        """
        task = self._require_active(task_id)
        status = TaskStatus(status)
        task.status = status
        task.touch()

        if status == TaskStatus.COMPLETED:
            task.completed_at = utc_now()
            self.tasks.remove(task)
            self.history.append(task)
            if self.current_task_id == task_id:
                self.current_task_id = None
        elif status == TaskStatus.IN_PROGRESS:
            self.current_task_id = task_id

        self.save()
        logger.info("Task %s -> %s", task_id, status.value)
        return task

    def mark_task_complete(self, task_id: str) -> Task:
        return self.update_task_status(task_id, TaskStatus.COMPLETED)

    def increment_attempts(self, task_id: str) -> int:
        task = self._require_active(task_id)
        task.attempts += 1
        task.touch()
        self.save()
        return task.attempts
