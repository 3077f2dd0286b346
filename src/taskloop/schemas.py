"""Pydantic models for every record taskloop reads from or writes to disk."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


class _Document(BaseModel):
    """Base for persisted records: camelCase on disk, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> dict[str, Any]:
        """Return the on-disk (camelCase, JSON-safe) representation."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Task graph
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle status of a task or story."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Task(_Document):
    """A unit of work in the dependency graph."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str
    description: str = ""
    priority: int = 1
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = Field(default_factory=list)
    attempts: int = Field(default=0, ge=0)
    tags: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("id must not be empty")
        return value

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        cleaned: list[str] = []
        for dep in value:
            dep = dep.strip()
            if dep and dep not in seen:
                seen.add(dep)
                cleaned.append(dep)
        return cleaned

    def touch(self) -> None:
        self.updated_at = utc_now()


class Story(Task):
    """Execution unit for the autonomous loop.

    ``passes`` is the authoritative completion signal; a story that passes is
    always reported as ``completed``.  Stories come from an external file and
    are looked up again on every load, so an ``id`` is required.
    """

    id: str
    passes: bool = False
    acceptance_criteria: list[str] = Field(default_factory=list)
    source_task_id: str | None = None
    notes: str = ""

    @model_validator(mode="after")
    def _passes_implies_completed(self) -> Story:
        if self.passes and self.status != TaskStatus.COMPLETED:
            self.status = TaskStatus.COMPLETED
        return self


class Prd(_Document):
    """Contents of ``prd.json``; produced by an external PRD generator."""

    project: str = ""
    branch_name: str = ""
    description: str = ""
    user_stories: list[Story] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Loop / lock / iteration state
# ---------------------------------------------------------------------------

class LoopPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"


class StopReason(str, Enum):
    """Reason an autonomous loop run ended."""

    MAX_ITERATIONS = "max_iterations"
    ALL_COMPLETE = "all_complete"
    PAUSED = "paused"
    BLOCKED = "blocked"
    LOCK_HELD = "lock_held"
    CHECKPOINT_REJECTED = "checkpoint_rejected"


class LoopState(_Document):
    """Persisted autonomous-loop state - written to ``state.json``."""

    enabled: bool = True
    current_iteration: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=10, ge=1)
    completed_tasks: int = Field(default=0, ge=0)
    total_tasks: int = Field(default=0, ge=0)
    paused: bool = False
    paused_at: str | None = None
    started_at: str = Field(default_factory=utc_now)
    last_updated: str = Field(default_factory=utc_now)
    tool: str = "claude"
    current_task_id: str | None = None
    stop_reason: StopReason | None = None

    def phase(self) -> LoopPhase:
        """Derive the state-machine phase from the counters."""
        if self.paused:
            return LoopPhase.PAUSED
        if self.completed_tasks >= self.total_tasks:
            return LoopPhase.COMPLETED
        if self.current_iteration >= self.max_iterations:
            return LoopPhase.EXHAUSTED
        return LoopPhase.RUNNING


class LockInfo(_Document):
    """Contents of ``ralph.lock``."""

    pid: int
    started_at: str = Field(default_factory=utc_now)
    tool: str = ""
    current_task: str | None = None
    iteration: int | None = None


class IterationStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class IterationRecord(_Document):
    """Immutable audit record of one loop iteration."""

    iteration: int = Field(ge=1)
    started_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None
    task_id: str
    task_title: str = ""
    tool: str = ""
    duration_ms: int = Field(default=0, ge=0)
    status: IterationStatus
    quality_checks: dict[str, bool] = Field(default_factory=dict)
    commit_ref: str | None = None
    summary: str = ""
    errors: list[str] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)

    def gates_passed(self) -> bool:
        """Return True when every recorded quality gate passed."""
        return all(self.quality_checks.values())


# ---------------------------------------------------------------------------
# Checkpoint gate
# ---------------------------------------------------------------------------

class CheckpointPolicy(_Document):
    """When to pause for plan approval before executing a story."""

    enabled: bool = False
    require_approval_for: Literal["all", "failed", "none"] = "failed"
    auto_approve_after_seconds: float = Field(default=0.0, ge=0)
    approval_timeout_seconds: float = Field(default=300.0, gt=0)
    plan_timeout_seconds: float = Field(default=120.0, gt=0)


class ApprovalResult(BaseModel):
    approved: bool
    feedback: str | None = None


class CheckpointDecision(BaseModel):
    """Outcome of the checkpoint gate for one story."""

    proceed: bool
    feedback: str | None = None
    plan: str = ""
