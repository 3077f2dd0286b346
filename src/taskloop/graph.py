"""Dependency-graph computations over tasks and stories.

Everything here is a pure function of the task list it is given: nothing is
read from or written to disk.  Callers that keep completed work in a separate
history list (see :class:`taskloop.task_store.TaskStore`) must pass active and
completed tasks together so completed dependencies can be seen.

A dependency id that matches no task is *dangling*: it is never satisfied and
never part of a cycle.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from taskloop.schemas import Story, Task, TaskStatus

T = TypeVar("T", bound=Task)

_STATUS_GLYPHS = {
    TaskStatus.COMPLETED: "✓",
    TaskStatus.IN_PROGRESS: "⚙",
    TaskStatus.FAILED: "✗",
}

STORY_ID_PATTERN = re.compile(r"\b(?:US|GH)-\d+\b")
FILE_PATH_PATTERN = re.compile(
    r"(?:^|[\s`\"'(])([A-Za-z0-9._/-]+\.(?:ts|js|tsx|jsx|json|css|scss|html|vue|svelte|py|go|rs|java|rb|php))\b"
)


def _index(tasks: Iterable[T]) -> dict[str, T]:
    return {task.id: task for task in tasks}


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def pending_by_priority(tasks: Sequence[T]) -> list[T]:
    """Pending tasks, lowest priority number first; ties keep input order."""
    return sorted((t for t in tasks if t.status == TaskStatus.PENDING), key=lambda t: t.priority)


def dependencies_of(tasks: Sequence[T], task_id: str) -> list[T]:
    """Tasks named in *task_id*'s dependency list, in input order."""
    by_id = _index(tasks)
    task = by_id.get(task_id)
    if task is None:
        return []
    wanted = set(task.dependencies)
    return [t for t in tasks if t.id in wanted]


def _satisfied(task: Task, by_id: dict[str, T]) -> bool:
    for dep_id in task.dependencies:
        dep = by_id.get(dep_id)
        if dep is None or dep.status != TaskStatus.COMPLETED:
            return False
    return True


def is_satisfied(tasks: Sequence[T], task_id: str) -> bool:
    """True iff every dependency of *task_id* exists and is completed."""
    by_id = _index(tasks)
    task = by_id.get(task_id)
    if task is None:
        return False
    return _satisfied(task, by_id)


def next_eligible_task(tasks: Sequence[T]) -> T | None:
    """Highest-priority pending task whose dependencies are all completed.

    Returns ``None`` when nothing is eligible, including when pending tasks
    exist but are all blocked.
    """
    by_id = _index(tasks)
    for task in pending_by_priority(tasks):
        if _satisfied(task, by_id):
            return task
    return None


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------

def detect_cycles(tasks: Sequence[Task]) -> list[list[str]]:
    """Return every dependency cycle found by depth-first traversal.

    Each cycle is the slice of the traversal path from the re-entered node to
    the current node, so a self-dependency yields a one-element cycle.
    """
    by_id = _index(tasks)
    visited: set[str] = set()
    on_stack: set[str] = set()
    cycles: list[list[str]] = []

    for root in tasks:
        if root.id in visited:
            continue
        visited.add(root.id)
        on_stack.add(root.id)
        path = [root.id]
        frames = [iter(by_id[root.id].dependencies)]
        while frames:
            dep_id = next(frames[-1], None)
            if dep_id is None:
                frames.pop()
                on_stack.discard(path.pop())
                continue
            if dep_id in on_stack:
                cycles.append(path[path.index(dep_id):])
                continue
            if dep_id in visited or dep_id not in by_id:
                continue
            visited.add(dep_id)
            on_stack.add(dep_id)
            path.append(dep_id)
            frames.append(iter(by_id[dep_id].dependencies))
    return cycles


def dangling_dependencies(tasks: Sequence[Task]) -> dict[str, list[str]]:
    """Map task id -> dependency ids that match no task."""
    known = {t.id for t in tasks}
    dangling: dict[str, list[str]] = {}
    for task in tasks:
        missing = [dep for dep in task.dependencies if dep not in known]
        if missing:
            dangling[task.id] = missing
    return dangling


@dataclass
class GraphValidation:
    cycles: list[list[str]] = field(default_factory=list)
    dangling: dict[str, list[str]] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.cycles


def validate_graph(tasks: Sequence[Task]) -> GraphValidation:
    return GraphValidation(cycles=detect_cycles(tasks), dangling=dangling_dependencies(tasks))


def parallel_batches(tasks: Sequence[T], max_workers: int | None = None) -> list[list[T]]:
    """Level the graph into batches that are safe to run concurrently.

    Completed tasks count as already satisfied and are not scheduled.  Each
    level holds the unplaced tasks whose dependencies were all placed in
    earlier levels, ordered by priority then input order and capped at
    *max_workers*; the overflow spills into the next level.  Tasks that can
    never become ready (cycles, dangling dependencies) are left out.
    """
    cap = None if max_workers is None else max(1, int(max_workers))
    order = {id(task): pos for pos, task in enumerate(tasks)}
    resolved = {t.id for t in tasks if t.status == TaskStatus.COMPLETED}
    remaining = [t for t in tasks if t.status != TaskStatus.COMPLETED]
    batches: list[list[T]] = []

    while remaining:
        ready = [t for t in remaining if all(dep in resolved for dep in t.dependencies)]
        if not ready:
            break
        ready.sort(key=lambda t: (t.priority, order[id(t)]))
        level = ready if cap is None else ready[:cap]
        placed = {id(t) for t in level}
        remaining = [t for t in remaining if id(t) not in placed]
        resolved.update(t.id for t in level)
        batches.append(level)
    return batches


def dependency_tree(tasks: Sequence[Task]) -> str:
    """Render an ASCII tree of tasks and their dependencies."""
    by_id = _index(tasks)
    lines = ["Task Dependency Tree:", ""]
    visited: set[str] = set()
    processing: set[str] = set()

    roots = [t for t in tasks if not t.dependencies]
    roots += [t for t in tasks if t.dependencies]
    for root in roots:
        if root.id in visited:
            continue
        stack: list[tuple[str, int, bool]] = [(root.id, 0, False)]
        while stack:
            task_id, depth, leaving = stack.pop()
            indent = "  " * depth
            if leaving:
                processing.discard(task_id)
                continue
            if task_id in processing:
                lines.append(f"{indent}└─ {task_id} (circular dependency)")
                continue
            task = by_id.get(task_id)
            if task_id in visited or task is None:
                continue
            visited.add(task_id)
            processing.add(task_id)
            glyph = _STATUS_GLYPHS.get(task.status, "○")
            prefix = "├─" if depth == 0 else "└─"
            lines.append(f"{indent}{prefix} {glyph} {task.title} ({task.status.value})")
            stack.append((task_id, depth, True))
            for dep_id in reversed(task.dependencies):
                stack.append((dep_id, depth + 1, False))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Story text analysis
# ---------------------------------------------------------------------------

def _story_text(story: Story) -> str:
    return "\n".join([story.description, story.notes, *story.acceptance_criteria])


def _file_refs(story: Story) -> set[str]:
    return set(FILE_PATH_PATTERN.findall(_story_text(story)))


def infer_story_dependencies(stories: Sequence[Story]) -> dict[str, list[str]]:
    """Explicit dependencies plus story ids referenced in each story's text."""
    known = {s.id for s in stories}
    deps: dict[str, list[str]] = {}
    for story in stories:
        merged = list(story.dependencies)
        for ref in STORY_ID_PATTERN.findall(_story_text(story)):
            if ref != story.id and ref in known and ref not in merged:
                merged.append(ref)
        deps[story.id] = merged
    return deps


def has_file_conflict(first: Story, second: Story) -> bool:
    """True when two stories mention more than one file path in common."""
    return len(_file_refs(first) & _file_refs(second)) > 1


def story_batches(stories: Sequence[Story], max_workers: int | None = None) -> list[list[Story]]:
    """Parallel batches for stories, honouring text references and file overlap.

    Within each dependency level, a story that conflicts with an earlier story
    of the same level is moved into a batch of its own.
    """
    inferred = infer_story_dependencies(stories)
    linked = [s.model_copy(update={"dependencies": inferred[s.id]}) for s in stories]
    final: list[list[Story]] = []
    for batch in parallel_batches(linked, max_workers):
        conflicting: set[int] = set()
        for i in range(len(batch)):
            for j in range(i + 1, len(batch)):
                if j not in conflicting and has_file_conflict(batch[i], batch[j]):
                    conflicting.add(j)
        safe = [s for pos, s in enumerate(batch) if pos not in conflicting]
        if safe:
            final.append(safe)
        final.extend([batch[pos]] for pos in sorted(conflicting))
    return final
