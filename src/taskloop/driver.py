"""Autonomous-loop driver.

The :class:`AutonomousLoop` takes the project lock, resumes (or starts) the
loop state, and feeds eligible PRD stories to an executor one iteration at a
time until the controller says to stop.  Results are folded back into the
loop state, the iteration history, and the task store.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from taskloop import graph
from taskloop.checkpoint import Approver, CommandPlanGenerator, PlanGenerator, console_approver, run_checkpoint
from taskloop.config import LoopConfig, data_dir_for, load_config
from taskloop.errors import TaskNotFoundError
from taskloop.executor import Executor
from taskloop.history_log import IterationRecorder, JsonlLearningSink, LearningSink
from taskloop.loop_state import LoopController
from taskloop.process_lock import ProcessLock
from taskloop.schemas import (
    IterationRecord,
    IterationStatus,
    LoopPhase,
    LoopState,
    StopReason,
    Story,
    Task,
    TaskStatus,
    utc_now,
)
from taskloop.task_store import TaskStore

logger = logging.getLogger(__name__)


class AutonomousLoop:
    """Drives story execution for one project.

    Parameters
    ----------
    project_root:
        Directory whose ``.rulebook/ralph`` folder holds the loop data.
    executor:
        Callable ``(story, iteration, tool) -> IterationRecord`` that does the
        actual work for a story.
    config:
        Loop settings; loaded from the project when omitted.
    plan_generator / approver:
        Used only when the checkpoint policy asks for plan approval.
    learning_sink:
        Receives a copy of every recorded iteration.  Defaults to
        ``learnings.jsonl`` in the data directory.
    """

    def __init__(
        self,
        project_root: str | Path,
        executor: Executor,
        *,
        config: LoopConfig | None = None,
        task_store: TaskStore | None = None,
        lock: ProcessLock | None = None,
        controller: LoopController | None = None,
        plan_generator: PlanGenerator | None = None,
        approver: Approver | None = None,
        learning_sink: LearningSink | None = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        if not self.project_root.is_dir():
            raise FileNotFoundError(f"Project path does not exist: {self.project_root}")

        self.config = config or load_config(self.project_root)
        self.data_dir = data_dir_for(self.project_root)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.executor = executor
        self.learning_sink = learning_sink if learning_sink is not None else JsonlLearningSink(self.data_dir)
        self.controller = controller or LoopController(
            self.data_dir,
            recorder=IterationRecorder(self.data_dir, learning_sink=self.learning_sink),
        )
        self.task_store = task_store or TaskStore(self.data_dir)
        self.lock = lock or ProcessLock(self.data_dir)
        self.plan_generator = plan_generator or CommandPlanGenerator(
            timeout=self.config.checkpoint.plan_timeout_seconds
        )
        self.approver = approver or console_approver

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def run(self, *, fresh: bool = False) -> StopReason:
        """Execute stories one at a time and return why the loop stopped."""
        tool = self.config.tool
        if not self.lock.acquire(tool):
            return StopReason.LOCK_HELD

        try:
            state = self._init_state(fresh)
            logger.info(
                "Starting autonomous loop: tool=%s, iteration %d of %d",
                tool,
                state.current_iteration,
                state.max_iterations,
            )
            reason: StopReason | None = None

            while self.controller.can_continue():
                story = self.controller.next_story()
                if story is None:
                    logger.warning("No eligible story: remaining stories are blocked by dependencies")
                    reason = StopReason.BLOCKED
                    break

                iteration = self.controller.state.current_iteration + 1
                logger.info("──── Iteration %d / %d: %s ────", iteration, state.max_iterations, story.id)
                self.lock.update_progress(iteration, story.id)

                decision = run_checkpoint(
                    story,
                    self.config.checkpoint,
                    tool=tool,
                    generator=self.plan_generator,
                    approver=self.approver,
                    non_interactive=self.config.non_interactive,
                )
                if not decision.proceed:
                    self._record_rejection(story, iteration, decision.feedback)
                    self.controller.pause()
                    reason = StopReason.CHECKPOINT_REJECTED
                    break

                self._start_source_task(story)
                record = self._execute(story, iteration)
                self._apply(story, record)

            if reason is None:
                reason = self._final_reason()
            self.controller.mark_stopped(reason)
            logger.info("Loop stopped: %s", reason.value)
            return reason
        finally:
            self.lock.release()

    def run_parallel(self, max_workers: int | None = None, *, fresh: bool = False) -> StopReason:
        """Execute independent stories concurrently, one batch at a time.

        Executors run on worker threads; every result is recorded on the
        calling thread in iteration order.  A story whose dependencies did not
        pass in an earlier batch is skipped until the next pass.  Checkpoints
        are not run in this mode.
        """
        workers = max_workers or self.config.max_workers
        if not self.lock.acquire(self.config.tool):
            return StopReason.LOCK_HELD

        try:
            self._init_state(fresh)
            logger.info("Starting parallel loop with %d worker(s)", workers)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="taskloop-worker") as pool:
                while self.controller.can_continue():
                    if self._run_pass(pool, workers) == 0:
                        break
            reason = self._final_reason()
            self.controller.mark_stopped(reason)
            logger.info("Loop stopped: %s", reason.value)
            return reason
        finally:
            self.lock.release()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _init_state(self, fresh: bool) -> LoopState:
        """Resume an unfinished loop, otherwise start a new one."""
        phase = self.controller.phase()
        if not fresh and phase in (LoopPhase.RUNNING, LoopPhase.PAUSED):
            state = self.controller.status()
            logger.info("Resuming existing loop (iteration %d, %s)", state.current_iteration, phase.value)
            return state
        return self.controller.initialize(self.config.max_iterations, self.config.tool)

    def _run_pass(self, pool: ThreadPoolExecutor, workers: int) -> int:
        """Run every currently eligible batch once; returns the number of stories executed."""
        prd = self.controller.load_prd()
        stories = prd.user_stories if prd is not None else []
        passed = {s.id for s in stories if s.passes}
        executed = 0

        for batch in graph.story_batches(stories, workers):
            if not self.controller.can_continue():
                break
            state = self.controller.status()
            ready: list[Story] = []
            for story in batch:
                blocked = [dep for dep in story.dependencies if dep not in passed]
                if blocked:
                    logger.info("Skipping %s: waiting on %s", story.id, ", ".join(blocked))
                    continue
                ready.append(story)
            ready = ready[: state.max_iterations - state.current_iteration]
            if not ready:
                continue

            first = state.current_iteration + 1
            logger.info(
                "──── Iterations %d-%d / %d: %s ────",
                first,
                first + len(ready) - 1,
                state.max_iterations,
                ", ".join(s.id for s in ready),
            )
            submitted = []
            for offset, story in enumerate(ready):
                self._start_source_task(story)
                submitted.append((story, pool.submit(self._execute, story, first + offset)))
            for story, future in submitted:
                record = future.result()
                self._apply(story, record)
                if record.status == IterationStatus.SUCCESS:
                    passed.add(story.id)
            executed += len(ready)
        return executed

    def _execute(self, story: Story, iteration: int) -> IterationRecord:
        """Run the executor; any exception becomes a failure record."""
        started_at = utc_now()
        started = time.monotonic()
        try:
            record = self.executor(story, iteration, self.config.tool)
        except Exception as exc:
            logger.error("Executor failed on %s: %s", story.id, exc)
            return IterationRecord(
                iteration=iteration,
                started_at=started_at,
                task_id=story.id,
                task_title=story.title,
                tool=self.config.tool,
                duration_ms=int((time.monotonic() - started) * 1000),
                status=IterationStatus.FAILURE,
                errors=[f"{type(exc).__name__}: {exc}"],
            )
        if record.iteration != iteration or record.task_id != story.id:
            record = record.model_copy(update={"iteration": iteration, "task_id": story.id})
        return record

    def _apply(self, story: Story, record: IterationRecord) -> None:
        """Fold one result into the loop state, the PRD and the task store."""
        self.controller.record_iteration(record)
        success = record.status == IterationStatus.SUCCESS
        try:
            if success:
                self.controller.mark_story_complete(story.id)
            else:
                self.controller.record_story_attempt(story.id)
        except TaskNotFoundError as exc:
            logger.warning("Could not update PRD after iteration %d: %s", record.iteration, exc)
        self._finish_source_task(story, success)

    def _record_rejection(self, story: Story, iteration: int, feedback: str | None) -> None:
        self.controller.record_iteration(
            IterationRecord(
                iteration=iteration,
                task_id=story.id,
                task_title=story.title,
                tool=self.config.tool,
                status=IterationStatus.SKIPPED,
                summary="Plan rejected at checkpoint",
                errors=[feedback] if feedback else [],
            )
        )

    def _start_source_task(self, story: Story) -> None:
        task = self._source_task(story)
        if task is None or task.status in (TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS):
            return
        self.task_store.update_task_status(task.id, TaskStatus.IN_PROGRESS)

    def _finish_source_task(self, story: Story, success: bool) -> None:
        task = self._source_task(story)
        if task is None or task.status == TaskStatus.COMPLETED:
            return
        if success:
            self.task_store.mark_task_complete(task.id)
        else:
            self.task_store.increment_attempts(task.id)

    def _source_task(self, story: Story) -> Task | None:
        if not story.source_task_id:
            return None
        task = self.task_store.get_task(story.source_task_id)
        if task is None:
            logger.warning("Story %s references unknown task %s", story.id, story.source_task_id)
        return task

    def _final_reason(self) -> StopReason:
        state = self.controller.status()
        if state is None:
            return StopReason.BLOCKED
        if state.paused:
            return StopReason.PAUSED
        if state.completed_tasks >= state.total_tasks:
            return StopReason.ALL_COMPLETE
        if state.current_iteration >= state.max_iterations:
            return StopReason.MAX_ITERATIONS
        return StopReason.BLOCKED
