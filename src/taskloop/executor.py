"""Story executors: the out-of-band worker that actually performs a story.

The loop only needs something callable as ``executor(story, iteration, tool)``
that returns an :class:`IterationRecord`.  :class:`CommandExecutor` is the
stock implementation: run an AI CLI (or any command) with the story prompt on
stdin, then run each configured quality gate.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

from taskloop.schemas import IterationRecord, IterationStatus, Story, utc_now

logger = logging.getLogger(__name__)

_LEARNING_RE = re.compile(r"^\s*(?:[-*]\s*)?learning:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_COMMIT_RE = re.compile(r"\bcommit(?:ted)?\s*[:=]?\s*([0-9a-f]{7,40})\b", re.IGNORECASE)


class Executor(Protocol):
    def __call__(self, story: Story, iteration: int, tool: str) -> IterationRecord: ...


def _strip_wrapping_quotes(token: str) -> str:
    if len(token) >= 2 and token[0] == token[-1] and token[0] in {'"', "'"}:
        return token[1:-1]
    return token


def parse_command(command: str | Sequence[str] | None) -> list[str] | None:
    """Split a shell-like command string (or clean an argv list); ``None`` when empty."""
    if command is None:
        return None
    if isinstance(command, str):
        raw = command.strip()
        if not raw:
            return None
        try:
            if os.name == "nt":
                parts = [_strip_wrapping_quotes(p) for p in shlex.split(raw, posix=False)]
            else:
                parts = shlex.split(raw, posix=True)
        except ValueError:
            logger.warning("Could not parse command %r; falling back to whitespace split.", raw)
            parts = raw.split()
        return [p for p in parts if p] or None
    cleaned = [str(p).strip() for p in command if p is not None and str(p).strip()]
    return cleaned or None


def build_story_prompt(story: Story) -> str:
    parts = [f"## Story {story.id}: {story.title}", "", story.description]
    if story.acceptance_criteria:
        parts += ["", "### Acceptance criteria", *(f"- {c}" for c in story.acceptance_criteria)]
    if story.notes:
        parts += ["", "### Notes", story.notes]
    parts += [
        "",
        "Implement this story completely, then summarise what you changed.",
        "Prefix anything worth remembering for later stories with 'Learning:'.",
    ]
    return "\n".join(parts)


def _summarise(output: str, max_len: int = 300) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return ""
    last = lines[-1]
    return last if len(last) <= max_len else last[: max_len - 3] + "..."


class CommandExecutor:
    """Run *command* for each story and grade the result with quality gates."""

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        gates: Mapping[str, str | Sequence[str]] | None = None,
        cwd: str | Path | None = None,
        timeout: float = 1800.0,
        gate_timeout: float = 600.0,
    ) -> None:
        argv = parse_command(command)
        if argv is None:
            raise ValueError("command must not be empty")
        self.argv = argv
        self.gates: dict[str, list[str]] = {}
        for name, gate in (gates or {}).items():
            gate_argv = parse_command(gate)
            if gate_argv:
                self.gates[name] = gate_argv
        self.cwd = Path(cwd) if cwd is not None else None
        self.timeout = timeout
        self.gate_timeout = gate_timeout

    def _run(self, argv: list[str], stdin: str | None, timeout: float) -> tuple[bool, str]:
        logger.debug("Running %s (cwd=%s)", " ".join(argv), self.cwd)
        try:
            proc = subprocess.run(
                argv,
                input=stdin,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            return False, f"Command not found: {exc}"
        except subprocess.TimeoutExpired:
            return False, f"Command timed out after {timeout:.0f}s"
        except (OSError, ValueError) as exc:
            return False, f"Could not run command: {exc}"
        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            return False, f"exit {proc.returncode}: {_summarise(output) or 'no output'}"
        return True, output

    def __call__(self, story: Story, iteration: int, tool: str) -> IterationRecord:
        started_at = utc_now()
        started = time.monotonic()
        errors: list[str] = []
        checks: dict[str, bool] = {}
        learnings: list[str] = []
        summary = ""
        commit_ref = None

        ok, output = self._run(self.argv, build_story_prompt(story), self.timeout)
        if ok:
            summary = _summarise(output)
            learnings = [m.strip() for m in _LEARNING_RE.findall(output)]
            commit = _COMMIT_RE.search(output)
            commit_ref = commit.group(1) if commit else None
            for name, gate_argv in self.gates.items():
                passed, gate_output = self._run(gate_argv, None, self.gate_timeout)
                checks[name] = passed
                if not passed:
                    errors.append(f"{name}: {gate_output}")
        else:
            errors.append(output)

        status = IterationStatus.SUCCESS if ok and all(checks.values()) else IterationStatus.FAILURE
        return IterationRecord(
            iteration=iteration,
            started_at=started_at,
            task_id=story.id,
            task_title=story.title,
            tool=tool,
            duration_ms=int((time.monotonic() - started) * 1000),
            status=status,
            quality_checks=checks,
            commit_ref=commit_ref,
            summary=summary,
            errors=errors,
            learnings=learnings,
        )
