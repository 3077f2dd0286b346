"""Autonomous-loop state machine.

``Uninitialized -> Running <-> Paused -> Completed | Exhausted``

The loop state lives in ``state.json`` next to ``prd.json`` so a restarted
driver picks up where the previous one stopped.  Completion counters are
always re-derived from the stories in ``prd.json``; the optimistic increment
used when no PRD is readable is best-effort only and may drift.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from taskloop import graph
from taskloop.errors import TaskNotFoundError
from taskloop.file_io import atomic_write_json, quarantine, read_json_document
from taskloop.history_log import IterationRecorder
from taskloop.schemas import (
    IterationRecord,
    IterationStatus,
    LoopPhase,
    LoopState,
    Prd,
    StopReason,
    Story,
    TaskStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
PRD_FILE = "prd.json"

# Story fields the loop writes back into prd.json; everything else is the generator's.
_PROGRESS_FIELDS = {"passes", "status", "completed_at", "updated_at", "attempts"}


class LoopController:
    """Owns ``state.json`` and reads stories from ``prd.json``."""

    def __init__(self, data_dir: str | Path, *, recorder: IterationRecorder | None = None) -> None:
        self.data_dir = Path(data_dir)
        self.state_path = self.data_dir / STATE_FILE
        self.prd_path = self.data_dir / PRD_FILE
        self.recorder = recorder or IterationRecorder(self.data_dir)
        self.state: LoopState | None = self._load_state()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_state(self) -> LoopState | None:
        doc = read_json_document(self.state_path)
        if not doc.exists:
            return None
        if doc.error is None:
            try:
                return LoopState.model_validate(doc.data)
            except ValidationError as exc:
                error = str(exc)
        else:
            error = doc.error
        quarantine(self.state_path)
        logger.warning("Could not load loop state %s (%s); treating loop as uninitialised", self.state_path, error)
        return None

    def _save_state(self) -> None:
        if self.state is None:
            return
        self.state.last_updated = utc_now()
        atomic_write_json(self.state_path, self.state.to_json_dict())

    def load_prd(self) -> Prd | None:
        """Read ``prd.json``; invalid stories are skipped, an unreadable file yields ``None``."""
        doc = read_json_document(self.prd_path)
        if not doc.exists:
            return None
        if doc.error is not None or not isinstance(doc.data, dict):
            logger.warning("Failed to load PRD %s: %s", self.prd_path, doc.error or "expected a JSON object")
            return None

        raw_stories = doc.data.get("userStories") or []
        stories: list[Story] = []
        for position, item in enumerate(raw_stories if isinstance(raw_stories, list) else []):
            try:
                stories.append(Story.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping invalid story #%d in %s: %s", position, PRD_FILE, exc)
        header = {k: v for k, v in doc.data.items() if k != "userStories"}
        try:
            prd = Prd.model_validate(header)
        except ValidationError as exc:
            logger.warning("Ignoring invalid PRD header fields: %s", exc)
            prd = Prd()
        prd.user_stories = stories
        return prd

    def _update_story(self, story_id: str, change: Callable[[Story], None]) -> Story:
        """Apply *change* to one story and write only its progress fields back.

        The rest of ``prd.json`` is left exactly as the generator wrote it,
        including stories that do not validate and keys the model ignores.
        """
        doc = read_json_document(self.prd_path)
        entries = doc.data.get("userStories") if doc.ok and isinstance(doc.data, dict) else None
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict) or str(entry.get("id", "")).strip() != story_id:
                continue
            try:
                story = Story.model_validate(entry)
            except ValidationError:
                break
            change(story)
            story.touch()
            entry.update(story.model_dump(mode="json", by_alias=True, include=_PROGRESS_FIELDS, exclude_none=True))
            atomic_write_json(self.prd_path, doc.data)
            return story
        raise TaskNotFoundError(story_id, kind="Story")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, max_iterations: int, tool: str) -> LoopState:
        """Start a fresh loop, discarding any previous counters."""
        logger.info("Initializing autonomous loop...")
        self.data_dir.mkdir(parents=True, exist_ok=True)
        # Iteration numbers restart at 1, so the previous session's records move aside.
        self.recorder.archive()
        self.state = LoopState(max_iterations=max_iterations, tool=tool)
        prd = self.load_prd()
        if prd is not None:
            self._derive_counters(prd)
        self._save_state()
        logger.info("Loop initialized: max iterations=%d, tool=%s", max_iterations, tool)
        return self.state

    def status(self) -> LoopState | None:
        if self.state is None:
            self.state = self._load_state()
        return self.state

    def phase(self) -> LoopPhase:
        state = self.status()
        return LoopPhase.UNINITIALIZED if state is None else state.phase()

    def can_continue(self) -> bool:
        """The only gate a driver should consult before starting an iteration."""
        state = self.status()
        if state is None:
            return False
        if state.paused:
            return False
        if state.current_iteration >= state.max_iterations:
            return False
        return state.completed_tasks < state.total_tasks

    def pause(self) -> None:
        if self.status() is None:
            logger.warning("Cannot pause: loop not initialized")
            return
        self.state.paused = True
        self.state.paused_at = utc_now()
        self._save_state()
        logger.info("Loop paused")

    def resume(self) -> None:
        if self.status() is None:
            logger.warning("Cannot resume: loop not initialized")
            return
        self.state.paused = False
        self.state.paused_at = None
        self.state.stop_reason = None
        self._save_state()
        logger.info("Loop resumed")

    def mark_stopped(self, reason: StopReason) -> None:
        if self.status() is None:
            return
        self.state.stop_reason = reason
        self._save_state()

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    def _derive_counters(self, prd: Prd) -> None:
        self.state.total_tasks = len(prd.user_stories)
        self.state.completed_tasks = sum(1 for s in prd.user_stories if s.passes)

    def record_iteration(self, record: IterationRecord) -> None:
        """Fold one iteration result into the loop state and the audit trail.

        Failures while writing the audit trail are logged and never raised.
        """
        if self.status() is None:
            logger.warning("Ignoring iteration %d: loop not initialized", record.iteration)
            return

        state = self.state
        state.current_iteration = max(state.current_iteration, record.iteration)
        state.current_task_id = record.task_id
        if not record.tool:
            record.tool = state.tool

        prd = self.load_prd()
        if prd is not None:
            self._derive_counters(prd)
        elif record.status == IterationStatus.SUCCESS:
            state.completed_tasks += 1
            logger.debug("No PRD available; optimistically counting iteration %d as a completion", record.iteration)

        try:
            self.recorder.record(record)
        except Exception as exc:
            logger.warning("Could not write history for iteration %d: %s", record.iteration, exc)

        self._save_state()

    def iteration_history(self, limit: int | None = None, task_id: str | None = None) -> list[IterationRecord]:
        return self.recorder.history(limit=limit, task_id=task_id)

    # ------------------------------------------------------------------
    # Stories
    # ------------------------------------------------------------------

    def next_story(self) -> Story | None:
        """Highest-priority story that has not passed and whose dependencies have."""
        prd = self.load_prd()
        if prd is None:
            return None
        return graph.next_eligible_task(prd.user_stories)

    def mark_story_complete(self, story_id: str) -> Story:
        def complete(story: Story) -> None:
            story.passes = True
            story.status = TaskStatus.COMPLETED
            story.completed_at = utc_now()

        story = self._update_story(story_id, complete)
        prd = self.load_prd()
        if self.status() is not None and prd is not None:
            self._derive_counters(prd)
            self._save_state()
        logger.info("Story %s marked complete", story_id)
        return story

    def record_story_attempt(self, story_id: str) -> Story:
        def bump(story: Story) -> None:
            story.attempts += 1

        return self._update_story(story_id, bump)

    def story_stats(self) -> dict[str, int]:
        prd = self.load_prd()
        if prd is None:
            return {"completed": 0, "pending": 0, "total": 0}
        completed = sum(1 for s in prd.user_stories if s.passes)
        return {
            "completed": completed,
            "pending": len(prd.user_stories) - completed,
            "total": len(prd.user_stories),
        }
