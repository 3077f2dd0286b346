"""Optional plan-approval gate run before a story is executed.

The plan itself comes from an external generator (normally an AI CLI in
planning-only mode) and approval from an external approver (a human prompt
or a tool).  Waiting for approval is always bounded: a timeout resolves to
auto-approval.
"""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from collections.abc import Callable
from typing import Protocol

from taskloop.schemas import ApprovalResult, CheckpointDecision, CheckpointPolicy, Story

logger = logging.getLogger(__name__)

Approver = Callable[[str, Story], ApprovalResult]

_TOOL_BINARIES = {"claude": ["claude", "-p", "-"], "amp": ["amp", "-p", "-"], "gemini": ["gemini"]}


class PlanGenerator(Protocol):
    def __call__(self, story: Story, tool: str) -> str: ...


def should_run_checkpoint(policy: CheckpointPolicy, story: Story, non_interactive: bool = False) -> bool:
    """Decide whether *story* needs plan approval under *policy*."""
    if not policy.enabled or non_interactive:
        return False
    if policy.require_approval_for == "none":
        return False
    if policy.require_approval_for == "all":
        return True
    return not story.passes


def build_plan_prompt(story: Story) -> str:
    criteria = "\n".join(f"- {c}" for c in story.acceptance_criteria)
    return "\n".join(
        [
            "You are planning (NOT implementing) a solution for this story:",
            "",
            f"Story: {story.title}",
            f"Description: {story.description}",
            "Acceptance Criteria:",
            criteria,
            "",
            "Provide a detailed implementation plan covering:",
            "1. Files to create/modify",
            "2. Key design decisions",
            "3. Potential risks or blockers",
            "4. Estimated implementation steps",
            "",
            "IMPORTANT: Output ONLY the plan. Do NOT implement or generate code.",
        ]
    )


class CommandPlanGenerator:
    """Ask an AI CLI for a plan, feeding the prompt on stdin."""

    def __init__(self, timeout: float = 120.0, commands: dict[str, list[str]] | None = None) -> None:
        self.timeout = timeout
        self.commands = dict(commands or _TOOL_BINARIES)

    def __call__(self, story: Story, tool: str) -> str:
        argv = self.commands.get(tool, [tool])
        try:
            proc = subprocess.run(
                argv,
                input=build_plan_prompt(story),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Plan generation with %s failed: %s", tool, exc)
            return ""
        if proc.returncode != 0:
            logger.warning("Plan generation with %s exited %d", tool, proc.returncode)
            return ""
        return proc.stdout.strip()


def console_approver(plan: str, story: Story) -> ApprovalResult:
    """Interactive approver reading ``approve`` / ``reject`` / ``edit`` from stdin."""
    bar = "=" * 64
    print(f"\n{bar}\n  Implementation Plan\n  Story: {story.title}\n{bar}\n\n{plan}\n")
    action = input("Review plan [approve/reject/edit]: ").strip().lower() or "approve"
    if action.startswith("a"):
        return ApprovalResult(approved=True)
    question = "Reason for rejection? " if action.startswith("r") else "What needs to change? "
    return ApprovalResult(approved=False, feedback=input(question).strip() or None)


def request_approval(
    plan: str,
    story: Story,
    approver: Approver,
    policy: CheckpointPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ApprovalResult:
    """Obtain approval for *plan*, never waiting longer than the policy allows."""
    if policy.auto_approve_after_seconds > 0:
        logger.info("Auto-approving plan for %s in %.0fs", story.id, policy.auto_approve_after_seconds)
        sleep(policy.auto_approve_after_seconds)
        return ApprovalResult(approved=True)

    answers: queue.Queue[ApprovalResult | Exception] = queue.Queue(maxsize=1)

    def _ask() -> None:
        try:
            answers.put(approver(plan, story))
        except Exception as exc:
            answers.put(exc)

    # Daemon thread: an approver still blocked on input must not hold up exit.
    threading.Thread(target=_ask, name="taskloop-approval", daemon=True).start()
    try:
        answer = answers.get(timeout=policy.approval_timeout_seconds)
    except queue.Empty:
        logger.warning(
            "No approval for %s within %.0fs; auto-approving", story.id, policy.approval_timeout_seconds
        )
        return ApprovalResult(approved=True)
    if isinstance(answer, Exception):
        logger.warning("Approver failed for %s (%s); auto-approving", story.id, answer)
        return ApprovalResult(approved=True)
    return answer


def run_checkpoint(
    story: Story,
    policy: CheckpointPolicy,
    *,
    tool: str,
    generator: PlanGenerator,
    approver: Approver,
    non_interactive: bool = False,
) -> CheckpointDecision:
    """Run the whole gate for one story and say whether execution may proceed."""
    if not should_run_checkpoint(policy, story, non_interactive):
        return CheckpointDecision(proceed=True)

    logger.info("Generating plan for %s with %s", story.id, tool)
    plan = generator(story, tool)
    if not plan:
        logger.warning("No plan produced for %s; proceeding without approval", story.id)
        return CheckpointDecision(proceed=True)

    result = request_approval(plan, story, approver, policy)
    if not result.approved:
        logger.info("Plan for %s rejected: %s", story.id, result.feedback or "(no feedback)")
    return CheckpointDecision(proceed=result.approved, feedback=result.feedback, plan=plan)
