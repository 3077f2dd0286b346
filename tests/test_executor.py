"""Tests for the command-backed story executor."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

import taskloop.executor as executor_module
from taskloop.executor import CommandExecutor, build_story_prompt, parse_command
from taskloop.schemas import IterationStatus, Story

pytestmark = pytest.mark.unit


@pytest.fixture
def story() -> Story:
    return Story(
        id="US-003",
        title="Search page",
        description="Add a search page.",
        acceptance_criteria=["Results are paginated"],
        notes="Reuse the list component.",
    )


class TestParseCommand:
    def test_empty_values(self):
        assert parse_command(None) is None
        assert parse_command("   ") is None
        assert parse_command(["", None, "  "]) is None

    @pytest.mark.skipif(os.name == "nt", reason="POSIX shlex rules")
    def test_quoted_arguments(self):
        assert parse_command('claude -p "do the thing"') == ["claude", "-p", "do the thing"]

    def test_list_is_cleaned(self):
        assert parse_command([" pytest ", "-q", ""]) == ["pytest", "-q"]

    def test_unbalanced_quotes_fall_back_to_split(self):
        assert parse_command('echo "oops') == ["echo", '"oops']


def test_story_prompt_includes_criteria_and_notes(story: Story):
    prompt = build_story_prompt(story)
    assert prompt.startswith("## Story US-003: Search page")
    assert "- Results are paginated" in prompt
    assert "Reuse the list component." in prompt
    assert "Learning:" in prompt


def test_empty_command_rejected():
    with pytest.raises(ValueError):
        CommandExecutor("  ")


class FakeRun:
    """Stand-in for subprocess.run keyed by the first argv element."""

    def __init__(self, results: dict[str, subprocess.CompletedProcess | Exception]) -> None:
        self.results = results
        self.calls: list[tuple[list[str], str | None]] = []

    def __call__(self, argv, **kwargs):
        self.calls.append((argv, kwargs.get("input")))
        result = self.results[argv[0]]
        if isinstance(result, Exception):
            raise result
        return result


def _done(code: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], code, stdout=stdout, stderr=stderr)


class TestCommandExecutor:
    def test_success_with_gates(self, story: Story, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        fake = FakeRun(
            {
                "agent": _done(0, "Working...\nLearning: the list needs a key prop\ncommit 1a2b3c4d\nAll done"),
                "pytest": _done(0, "3 passed"),
                "ruff": _done(0),
            }
        )
        monkeypatch.setattr(executor_module.subprocess, "run", fake)

        record = CommandExecutor("agent --yes", gates={"tests": "pytest -q", "lint": "ruff check"}, cwd=tmp_path)(
            story, 4, "claude"
        )

        assert record.status == IterationStatus.SUCCESS
        assert record.iteration == 4
        assert record.task_id == "US-003"
        assert record.tool == "claude"
        assert record.quality_checks == {"tests": True, "lint": True}
        assert record.learnings == ["the list needs a key prop"]
        assert record.commit_ref == "1a2b3c4d"
        assert record.summary == "All done"
        agent_argv, agent_input = fake.calls[0]
        assert agent_argv == ["agent", "--yes"]
        assert "Search page" in agent_input

    def test_failing_gate_fails_iteration(self, story: Story, monkeypatch: pytest.MonkeyPatch):
        fake = FakeRun({"agent": _done(0, "ok"), "pytest": _done(1, "", "2 failed")})
        monkeypatch.setattr(executor_module.subprocess, "run", fake)

        record = CommandExecutor("agent", gates={"tests": "pytest"})(story, 1, "claude")

        assert record.status == IterationStatus.FAILURE
        assert record.quality_checks == {"tests": False}
        assert record.errors == ["tests: exit 1: 2 failed"]

    def test_command_failure_skips_gates(self, story: Story, monkeypatch: pytest.MonkeyPatch):
        fake = FakeRun({"agent": _done(3, "", "crashed")})
        monkeypatch.setattr(executor_module.subprocess, "run", fake)

        record = CommandExecutor("agent", gates={"tests": "pytest"})(story, 1, "claude")

        assert record.status == IterationStatus.FAILURE
        assert record.quality_checks == {}
        assert record.errors == ["exit 3: crashed"]
        assert len(fake.calls) == 1

    def test_missing_binary(self, story: Story, monkeypatch: pytest.MonkeyPatch):
        fake = FakeRun({"agent": FileNotFoundError("agent")})
        monkeypatch.setattr(executor_module.subprocess, "run", fake)

        record = CommandExecutor("agent")(story, 1, "claude")

        assert record.status == IterationStatus.FAILURE
        assert record.errors[0].startswith("Command not found")

    def test_timeout(self, story: Story, monkeypatch: pytest.MonkeyPatch):
        fake = FakeRun({"agent": subprocess.TimeoutExpired("agent", 5)})
        monkeypatch.setattr(executor_module.subprocess, "run", fake)

        record = CommandExecutor("agent", timeout=5)(story, 1, "claude")

        assert record.status == IterationStatus.FAILURE
        assert record.errors == ["Command timed out after 5s"]
