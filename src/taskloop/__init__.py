"""taskloop - dependency-aware task scheduling for autonomous agent loops."""

from importlib.metadata import PackageNotFoundError, version

from taskloop.errors import TaskloopError, TaskNotFoundError
from taskloop.schemas import IterationRecord, LoopState, Story, Task, TaskStatus

__all__ = [
    "IterationRecord",
    "LoopState",
    "Story",
    "Task",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskloopError",
]

try:
    __version__ = version("taskloop")
except PackageNotFoundError:
    __version__ = "0.0.0"
