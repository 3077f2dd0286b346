"""Integration tests for the autonomous-loop driver with a fake executor."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from taskloop.config import LoopConfig, data_dir_for
from taskloop.driver import AutonomousLoop
from taskloop.loop_state import PRD_FILE, LoopController
from taskloop.process_lock import LOCK_FILE, ProcessLock
from taskloop.schemas import (
    ApprovalResult,
    CheckpointPolicy,
    IterationRecord,
    IterationStatus,
    LoopPhase,
    StopReason,
    Story,
    Task,
    TaskStatus,
)
from taskloop.task_store import TaskStore

pytestmark = pytest.mark.integration


class FakeExecutor:
    """Records calls; stories listed in *fail* fail, everything else succeeds."""

    def __init__(self, fail: tuple[str, ...] = (), raise_for: tuple[str, ...] = ()) -> None:
        self.fail = set(fail)
        self.raise_for = set(raise_for)
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def __call__(self, story: Story, iteration: int, tool: str) -> IterationRecord:
        with self._lock:
            self.calls.append((story.id, iteration))
        if story.id in self.raise_for:
            raise RuntimeError("agent crashed")
        ok = story.id not in self.fail
        return IterationRecord(
            iteration=iteration,
            task_id=story.id,
            task_title=story.title,
            tool=tool,
            status=IterationStatus.SUCCESS if ok else IterationStatus.FAILURE,
            quality_checks={"tests": ok},
        )


class FakeLiveness:
    def __init__(self, *alive: int) -> None:
        self.alive = set(alive)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


def write_prd(root: Path, stories: list[dict]) -> Path:
    data_dir = data_dir_for(root)
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / PRD_FILE).write_text(json.dumps({"project": "demo", "userStories": stories}), encoding="utf-8")
    return data_dir


def story(story_id: str, priority: int = 1, **extra) -> dict:
    return {"id": story_id, "title": f"Story {story_id}", "priority": priority, **extra}


def prd_stories(data_dir: Path) -> dict[str, dict]:
    raw = json.loads((data_dir / PRD_FILE).read_text(encoding="utf-8"))
    return {s["id"]: s for s in raw["userStories"]}


class TestRun:
    def test_runs_every_story_to_completion(self, tmp_path: Path):
        data_dir = write_prd(tmp_path, [story("US-001"), story("US-002", priority=2)])
        executor = FakeExecutor()
        loop = AutonomousLoop(tmp_path, executor, config=LoopConfig(max_iterations=5))

        assert loop.run() == StopReason.ALL_COMPLETE

        assert executor.calls == [("US-001", 1), ("US-002", 2)]
        assert all(s["passes"] for s in prd_stories(data_dir).values())
        assert not (data_dir / LOCK_FILE).exists()
        controller = LoopController(data_dir)
        assert controller.status().stop_reason == StopReason.ALL_COMPLETE
        assert [r.iteration for r in controller.iteration_history()] == [2, 1]
        assert (data_dir / "learnings.jsonl").is_file()

    def test_failures_stop_at_iteration_budget(self, tmp_path: Path):
        data_dir = write_prd(tmp_path, [story("US-001")])
        executor = FakeExecutor(fail=("US-001",))
        loop = AutonomousLoop(tmp_path, executor, config=LoopConfig(max_iterations=3))

        assert loop.run() == StopReason.MAX_ITERATIONS

        assert [c[1] for c in executor.calls] == [1, 2, 3]
        assert prd_stories(data_dir)["US-001"]["attempts"] == 3
        assert LoopController(data_dir).phase() == LoopPhase.EXHAUSTED

    def test_executor_exception_becomes_failure_record(self, tmp_path: Path):
        data_dir = write_prd(tmp_path, [story("US-001")])
        loop = AutonomousLoop(tmp_path, FakeExecutor(raise_for=("US-001",)), config=LoopConfig(max_iterations=1))

        assert loop.run() == StopReason.MAX_ITERATIONS

        [record] = LoopController(data_dir).iteration_history()
        assert record.status == IterationStatus.FAILURE
        assert record.errors == ["RuntimeError: agent crashed"]

    def test_blocked_when_remaining_stories_cannot_start(self, tmp_path: Path):
        write_prd(tmp_path, [story("US-001"), story("US-002", dependencies=["US-999"])])
        executor = FakeExecutor()
        loop = AutonomousLoop(tmp_path, executor, config=LoopConfig(max_iterations=5))

        assert loop.run() == StopReason.BLOCKED
        assert executor.calls == [("US-001", 1)]

    def test_lock_held_by_live_process(self, tmp_path: Path):
        data_dir = write_prd(tmp_path, [story("US-001")])
        liveness = FakeLiveness(4242)
        ProcessLock(data_dir, liveness=liveness, pid=4242).acquire("claude")
        executor = FakeExecutor()
        loop = AutonomousLoop(
            tmp_path,
            executor,
            config=LoopConfig(),
            lock=ProcessLock(data_dir, liveness=liveness, pid=1111),
        )

        assert loop.run() == StopReason.LOCK_HELD
        assert executor.calls == []
        assert ProcessLock(data_dir, liveness=liveness).info().pid == 4242

    def test_paused_loop_does_not_execute(self, tmp_path: Path):
        data_dir = write_prd(tmp_path, [story("US-001")])
        controller = LoopController(data_dir)
        controller.initialize(5, "claude")
        controller.pause()
        executor = FakeExecutor()

        assert AutonomousLoop(tmp_path, executor, config=LoopConfig()).run() == StopReason.PAUSED
        assert executor.calls == []

    def test_resumes_running_loop(self, tmp_path: Path):
        data_dir = write_prd(tmp_path, [story("US-001"), story("US-002", priority=2)])
        controller = LoopController(data_dir)
        controller.initialize(5, "claude")
        controller.record_iteration(
            IterationRecord(iteration=1, task_id="US-001", status=IterationStatus.FAILURE)
        )
        executor = FakeExecutor()

        AutonomousLoop(tmp_path, executor, config=LoopConfig(max_iterations=5)).run()

        assert executor.calls[0] == ("US-001", 2)

    def test_exhausted_loop_starts_fresh_session(self, tmp_path: Path):
        write_prd(tmp_path, [story("US-001"), story("US-002", priority=2)])
        first = FakeExecutor()
        assert AutonomousLoop(tmp_path, first, config=LoopConfig(max_iterations=1)).run() == StopReason.MAX_ITERATIONS

        second = FakeExecutor()
        assert AutonomousLoop(tmp_path, second, config=LoopConfig(max_iterations=1)).run() == StopReason.ALL_COMPLETE
        assert second.calls == [("US-002", 1)]

    def test_success_completes_source_task(self, tmp_path: Path):
        data_dir = write_prd(
            tmp_path,
            [story("US-001", sourceTaskId="t-1"), story("US-002", priority=2, sourceTaskId="t-2")],
        )
        TaskStore(data_dir).initialize(seed=[Task(id="t-1", title="One"), Task(id="t-2", title="Two")])
        loop = AutonomousLoop(tmp_path, FakeExecutor(fail=("US-002",)), config=LoopConfig(max_iterations=2))

        loop.run()

        store = TaskStore(data_dir)
        assert store.get_task("t-1").status == TaskStatus.COMPLETED
        assert [t.id for t in store.history] == ["t-1"]
        assert store.get_task("t-2").attempts == 1
        assert store.get_task("t-2").status == TaskStatus.IN_PROGRESS

    def test_unknown_source_task_is_tolerated(self, tmp_path: Path):
        write_prd(tmp_path, [story("US-001", sourceTaskId="ghost")])
        loop = AutonomousLoop(tmp_path, FakeExecutor(), config=LoopConfig(max_iterations=2))
        assert loop.run() == StopReason.ALL_COMPLETE

    def test_checkpoint_rejection_pauses(self, tmp_path: Path):
        data_dir = write_prd(tmp_path, [story("US-001")])
        config = LoopConfig(checkpoint=CheckpointPolicy(enabled=True, require_approval_for="all"))
        executor = FakeExecutor()
        loop = AutonomousLoop(
            tmp_path,
            executor,
            config=config,
            plan_generator=lambda target, tool: "1. do it",
            approver=lambda plan, target: ApprovalResult(approved=False, feedback="not yet"),
        )

        assert loop.run() == StopReason.CHECKPOINT_REJECTED

        assert executor.calls == []
        controller = LoopController(data_dir)
        assert controller.phase() == LoopPhase.PAUSED
        [record] = controller.iteration_history()
        assert record.status == IterationStatus.SKIPPED
        assert record.errors == ["not yet"]
        assert not (data_dir / LOCK_FILE).exists()

    def test_checkpoint_skipped_when_non_interactive(self, tmp_path: Path):
        write_prd(tmp_path, [story("US-001")])
        config = LoopConfig(
            non_interactive=True,
            checkpoint=CheckpointPolicy(enabled=True, require_approval_for="all"),
        )

        def generator(target: Story, tool: str) -> str:
            raise AssertionError("no plan in non-interactive mode")

        loop = AutonomousLoop(tmp_path, FakeExecutor(), config=config, plan_generator=generator)
        assert loop.run() == StopReason.ALL_COMPLETE

    def test_missing_project_root(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            AutonomousLoop(tmp_path / "nope", FakeExecutor(), config=LoopConfig())


class TestRunParallel:
    def test_runs_independent_stories_together(self, tmp_path: Path):
        data_dir = write_prd(
            tmp_path,
            [
                story("US-001"),
                story("US-002"),
                story("US-003", description="Extends US-001"),
            ],
        )
        executor = FakeExecutor()
        loop = AutonomousLoop(tmp_path, executor, config=LoopConfig(max_iterations=10))

        assert loop.run_parallel(max_workers=2) == StopReason.ALL_COMPLETE

        order = {story_id: n for story_id, n in executor.calls}
        assert sorted(order.values()) == [1, 2, 3]
        assert order["US-003"] == 3
        history = LoopController(data_dir).iteration_history()
        assert [r.iteration for r in history] == [3, 2, 1]

    def test_dependents_of_failed_story_wait(self, tmp_path: Path):
        write_prd(tmp_path, [story("US-001"), story("US-002", dependencies=["US-001"])])
        executor = FakeExecutor(fail=("US-001",))
        loop = AutonomousLoop(tmp_path, executor, config=LoopConfig(max_iterations=3))

        assert loop.run_parallel(max_workers=2) == StopReason.MAX_ITERATIONS
        assert {story_id for story_id, _ in executor.calls} == {"US-001"}

    def test_parallel_respects_iteration_budget(self, tmp_path: Path):
        write_prd(tmp_path, [story(f"US-00{i}") for i in range(1, 5)])
        executor = FakeExecutor()
        loop = AutonomousLoop(tmp_path, executor, config=LoopConfig(max_iterations=3))

        assert loop.run_parallel(max_workers=4) == StopReason.MAX_ITERATIONS
        assert len(executor.calls) == 3

    def test_parallel_lock_held(self, tmp_path: Path):
        data_dir = write_prd(tmp_path, [story("US-001")])
        liveness = FakeLiveness(4242)
        ProcessLock(data_dir, liveness=liveness, pid=4242).acquire("claude")
        loop = AutonomousLoop(
            tmp_path, FakeExecutor(), config=LoopConfig(), lock=ProcessLock(data_dir, liveness=liveness, pid=1)
        )
        assert loop.run_parallel(2) == StopReason.LOCK_HELD
