"""Exception types raised by taskloop."""

from __future__ import annotations


class TaskloopError(Exception):
    """Base class for taskloop errors."""


class TaskNotFoundError(TaskloopError, KeyError):
    """Raised when an operation references a task or story id that does not exist."""

    def __init__(self, task_id: str, kind: str = "Task") -> None:
        self.task_id = task_id
        self.kind = kind
        super().__init__(f"{kind} {task_id} not found")

    def __str__(self) -> str:
        return f"{self.kind} {self.task_id} not found"
