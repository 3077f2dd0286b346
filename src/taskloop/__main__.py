"""CLI entrypoint for taskloop."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from taskloop import graph
from taskloop.config import LoopConfig, data_dir_for, load_config, write_default_config
from taskloop.driver import AutonomousLoop
from taskloop.executor import CommandExecutor
from taskloop.history_log import IterationRecorder
from taskloop.loop_state import LoopController
from taskloop.process_lock import ProcessLock
from taskloop.schemas import StopReason
from taskloop.task_store import TaskStore

_EXIT_CODES = {
    StopReason.ALL_COMPLETE: 0,
    StopReason.MAX_ITERATIONS: 0,
    StopReason.PAUSED: 0,
    StopReason.BLOCKED: 1,
    StopReason.CHECKPOINT_REJECTED: 1,
    StopReason.LOCK_HELD: 2,
}


def _load_dotenv() -> None:
    """Load .env from the cwd or its parent so settings apply regardless of where we run."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _parse_gate(value: str) -> tuple[str, str]:
    name, sep, command = value.partition("=")
    if not sep or not name.strip() or not command.strip():
        raise argparse.ArgumentTypeError(f"expected NAME=COMMAND, got {value!r}")
    return name.strip(), command.strip()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser."""
    p = argparse.ArgumentParser(
        prog="taskloop",
        description="taskloop - dependency-aware task scheduling for autonomous agent loops.",
    )
    p.add_argument(
        "--project",
        type=str,
        default=".",
        help="Project root holding .rulebook/ralph (default: current directory).",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = p.add_subparsers(dest="command")

    init_p = sub.add_parser("init", help="Create the task store, config and loop state.")
    init_p.add_argument("--max-iterations", type=int, default=None, help="Iteration budget.")
    init_p.add_argument("--tool", type=str, default=None, help="AI tool name recorded in the state.")
    init_p.add_argument("--no-seed", action="store_true", help="Start with an empty task list.")

    status_p = sub.add_parser("status", help="Show loop state and lock holder.")
    status_p.add_argument("--json", action="store_true", help="Print machine-readable JSON.")

    sub.add_parser("tasks", help="Print the task dependency tree and counts.")

    next_p = sub.add_parser("next", help="Show the next eligible task.")
    next_p.add_argument("--story", action="store_true", help="Pick from PRD stories instead of tasks.")

    sub.add_parser("cycles", help="Report dependency cycles and dangling references.")

    batches_p = sub.add_parser("batches", help="Show how work would be split into parallel batches.")
    batches_p.add_argument("--workers", type=int, default=None, help="Maximum batch size.")
    batches_p.add_argument("--stories", action="store_true", help="Batch PRD stories instead of tasks.")

    sub.add_parser("pause", help="Pause the loop after the current iteration.")
    sub.add_parser("resume", help="Allow a paused loop to continue.")

    history_p = sub.add_parser("history", help="List recorded iterations, newest first.")
    history_p.add_argument("--limit", type=int, default=None, help="Show at most N iterations.")
    history_p.add_argument("--task", type=str, default=None, help="Only iterations for this task id.")
    history_p.add_argument("--json", action="store_true", help="Print machine-readable JSON.")

    stats_p = sub.add_parser("stats", help="Aggregate iteration statistics and learnings.")
    stats_p.add_argument("--task", type=str, default=None, help="Insights for a single task id.")

    sub.add_parser("lock", help="Show the current lock holder, if any.")
    sub.add_parser("unlock", help="Forcibly remove the loop lock.")

    run_p = sub.add_parser("run", help="Run the autonomous loop.")
    run_p.add_argument("--command", dest="agent_command", type=str, default=None,
                       help="Command executed per story with the prompt on stdin.")
    run_p.add_argument("--gate", action="append", type=_parse_gate, default=[], metavar="NAME=COMMAND",
                       help="Quality gate run after each story (repeatable).")
    run_p.add_argument("--max-iterations", type=int, default=None, help="Iteration budget.")
    run_p.add_argument("--tool", type=str, default=None, help="AI tool name.")
    run_p.add_argument("--parallel", action="store_true", help="Execute independent stories concurrently.")
    run_p.add_argument("--workers", type=int, default=None, help="Worker threads for --parallel.")
    run_p.add_argument("--fresh", action="store_true", help="Start a new loop instead of resuming.")
    return p


def _config_for(args: argparse.Namespace, root: Path) -> LoopConfig:
    config = load_config(root)
    updates = {}
    if getattr(args, "max_iterations", None) is not None:
        updates["max_iterations"] = args.max_iterations
    if getattr(args, "tool", None):
        updates["tool"] = args.tool
    if not updates:
        return config
    return LoopConfig.model_validate({**config.model_dump(), **updates})


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace, root: Path) -> int:
    data_dir = data_dir_for(root)
    config = _config_for(args, root)
    store = TaskStore(data_dir)
    created = store.initialize(seed=[] if args.no_seed else None)
    config_path = write_default_config(root)
    state = LoopController(data_dir).initialize(config.max_iterations, config.tool)
    print(f"Task store: {'created' if created else 'already present'} ({len(store.tasks)} active task(s))")
    if config_path is not None:
        print(f"Config:     {config_path}")
    print(f"Loop:       {state.total_tasks} stories, max {state.max_iterations} iteration(s), tool {state.tool}")
    return 0


def _cmd_status(args: argparse.Namespace, root: Path) -> int:
    data_dir = data_dir_for(root)
    controller = LoopController(data_dir)
    state = controller.status()
    holder = ProcessLock(data_dir).info()
    if args.json:
        payload = {
            "phase": controller.phase().value,
            "state": state.to_json_dict() if state else None,
            "lock": holder.to_json_dict() if holder else None,
        }
        print(json.dumps(payload, indent=2))
        return 0
    print(f"Phase:      {controller.phase().value}")
    if state is not None:
        print(f"Iteration:  {state.current_iteration} / {state.max_iterations}")
        print(f"Stories:    {state.completed_tasks} / {state.total_tasks} complete")
        print(f"Tool:       {state.tool}")
        if state.stop_reason:
            print(f"Stopped:    {state.stop_reason.value}")
    if holder is not None:
        print(f"Lock:       pid {holder.pid} ({holder.tool}), iteration {holder.iteration}")
    return 0


def _cmd_tasks(args: argparse.Namespace, root: Path) -> int:
    store = TaskStore(data_dir_for(root))
    print(store.dependency_tree() or "(no tasks)")
    stats = store.task_stats()
    print("\n" + ", ".join(f"{key}={value}" for key, value in stats.items()))
    return 0


def _cmd_next(args: argparse.Namespace, root: Path) -> int:
    data_dir = data_dir_for(root)
    item = LoopController(data_dir).next_story() if args.story else TaskStore(data_dir).next_task()
    if item is None:
        print("Nothing eligible.")
        return 1
    print(f"{item.id}  [p{item.priority}]  {item.title}")
    return 0


def _cmd_cycles(args: argparse.Namespace, root: Path) -> int:
    store = TaskStore(data_dir_for(root))
    report = graph.validate_graph(store.all_tasks)
    for cycle in report.cycles:
        print("cycle:    " + " -> ".join([*cycle, cycle[0]]))
    for task_id, missing in report.dangling.items():
        print(f"dangling: {task_id} -> {', '.join(missing)}")
    if report.valid:
        print("Dependency graph is valid.")
        return 0
    return 1


def _cmd_batches(args: argparse.Namespace, root: Path) -> int:
    data_dir = data_dir_for(root)
    if args.stories:
        prd = LoopController(data_dir).load_prd()
        batches = graph.story_batches(prd.user_stories if prd else [], args.workers)
    else:
        batches = TaskStore(data_dir).parallel_batches(args.workers)
    if not batches:
        print("Nothing to schedule.")
    for number, batch in enumerate(batches, start=1):
        print(f"Batch {number}: " + ", ".join(f"{t.id} ({t.title})" for t in batch))
    return 0


def _cmd_pause(args: argparse.Namespace, root: Path) -> int:
    controller = LoopController(data_dir_for(root))
    if controller.status() is None:
        print("Loop not initialized; run 'taskloop init' first.", file=sys.stderr)
        return 1
    controller.pause()
    return 0


def _cmd_resume(args: argparse.Namespace, root: Path) -> int:
    controller = LoopController(data_dir_for(root))
    if controller.status() is None:
        print("Loop not initialized; run 'taskloop init' first.", file=sys.stderr)
        return 1
    controller.resume()
    return 0


def _cmd_history(args: argparse.Namespace, root: Path) -> int:
    records = IterationRecorder(data_dir_for(root)).history(limit=args.limit, task_id=args.task)
    if args.json:
        print(json.dumps([r.to_json_dict() for r in records], indent=2))
        return 0
    for r in records:
        checks = " ".join(f"{name}:{'ok' if ok else 'FAIL'}" for name, ok in r.quality_checks.items())
        print(f"#{r.iteration:<4} {r.status.value:<8} {r.task_id:<12} {r.duration_ms:>8}ms  {checks}")
    if not records:
        print("No iterations recorded.")
    return 0


def _cmd_stats(args: argparse.Namespace, root: Path) -> int:
    recorder = IterationRecorder(data_dir_for(root))
    if args.task:
        print(json.dumps(recorder.task_insights(args.task), indent=2))
        return 0
    print(json.dumps(recorder.statistics(), indent=2))
    for line in recorder.learnings():
        print(f"- {line}")
    return 0


def _cmd_lock(args: argparse.Namespace, root: Path) -> int:
    lock = ProcessLock(data_dir_for(root))
    holder = lock.info()
    if holder is None:
        print("Not locked.")
        return 0
    state = "running" if lock.is_running() else "stale"
    print(f"Locked by pid {holder.pid} ({state}), tool {holder.tool}, since {holder.started_at}")
    if holder.current_task:
        print(f"Working on {holder.current_task} (iteration {holder.iteration})")
    return 0


def _cmd_unlock(args: argparse.Namespace, root: Path) -> int:
    ProcessLock(data_dir_for(root)).release(force=True)
    print("Lock removed.")
    return 0


def _cmd_run(args: argparse.Namespace, root: Path) -> int:
    config = _config_for(args, root)
    command = args.agent_command or config.command
    if not command:
        print("Error: no command given (use --command or set 'command' in config.yaml)", file=sys.stderr)
        return 1
    gates = {**config.quality_gates, **dict(args.gate)}
    if not sys.stdin.isatty():
        config = config.model_copy(update={"non_interactive": True})

    executor = CommandExecutor(command, gates=gates, cwd=root, timeout=config.command_timeout_seconds)
    loop = AutonomousLoop(root, executor, config=config)
    if args.parallel:
        reason = loop.run_parallel(args.workers, fresh=args.fresh)
    else:
        reason = loop.run(fresh=args.fresh)

    if reason == StopReason.LOCK_HELD:
        print("Another loop is already running for this project.", file=sys.stderr)
    else:
        print(f"Loop stopped: {reason.value}")
    return _EXIT_CODES.get(reason, 1)


_HANDLERS = {
    "init": _cmd_init,
    "status": _cmd_status,
    "tasks": _cmd_tasks,
    "next": _cmd_next,
    "cycles": _cmd_cycles,
    "batches": _cmd_batches,
    "pause": _cmd_pause,
    "resume": _cmd_resume,
    "history": _cmd_history,
    "stats": _cmd_stats,
    "lock": _cmd_lock,
    "unlock": _cmd_unlock,
    "run": _cmd_run,
}


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the selected sub-command."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command is None:
        parser.print_help()
        return 1

    root = Path(args.project).resolve()
    if not root.is_dir():
        print(f"Error: project path does not exist: {root}", file=sys.stderr)
        return 1
    try:
        return _HANDLERS[args.command](args, root)
    except ValidationError as exc:
        print(f"Error: invalid option: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
