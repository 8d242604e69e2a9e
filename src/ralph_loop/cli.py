"""CLI entry point for ralph-loop."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ralph_loop.config import LoopConfig, load_config, validate_config
from ralph_loop.constants import EXIT_ERROR, EXIT_SUCCESS
from ralph_loop.errors import ConfigError, MissingInputError, RalphError, SessionLockedError
from ralph_loop.event_stream import EventStream
from ralph_loop.logging_setup import configure_logging
from ralph_loop.loop_controller import EVENTS_FILE, LoopController, LoopOutcome
from ralph_loop.metrics import format_cost
from ralph_loop.notifier import TelegramNotifier
from ralph_loop.pr_chunks import count_checklist
from ralph_loop.state import StateStore

logger = logging.getLogger(__name__)

PROGRESS_WIDTH = 20


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="ralph",
		description="Run an autonomous coding agent in a bounded, resumable loop",
	)
	sub = parser.add_subparsers(dest="command")

	def add_common(p: argparse.ArgumentParser) -> None:
		p.add_argument("--config", default=None, help="Path to ralph.toml")
		p.add_argument("-d", "--work-dir", default=None, help="Project directory (default: .)")
		p.add_argument("--state-dir", default=None, help="State directory (default: .ralph)")

	# run
	run = sub.add_parser("run", help="Start or resume the loop against a plan file")
	run.add_argument("plan", help="Plan document with checkbox tasks")
	add_common(run)
	run.add_argument("-m", "--max-iterations", type=int, default=None)
	run.add_argument("-r", "--rate-limit", type=int, default=None, help="Max agent calls per hour")
	run.add_argument("-p", "--prompt", default=None, help="Prompt file (default: PROMPT.md)")
	run.add_argument("-t", "--timeout", type=float, default=None, help="Minutes per agent call")
	run.add_argument("-M", "--model", default=None, help="Model passed to the agent CLI")
	run.add_argument("-w", "--worktree", default=None, help="Branch name recorded with the session")
	run.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
	run.add_argument("--fresh", action="store_true", help="Discard existing state before starting")
	run.add_argument("--dry-run", action="store_true", help="Render the prompt without calling the agent")

	# status
	status = sub.add_parser("status", help="Show session, metrics, tasks and PR chunks")
	add_common(status)

	# reset
	reset = sub.add_parser("reset", help="Remove all loop state")
	add_common(reset)

	return parser


def _load(args: argparse.Namespace) -> LoopConfig:
	cfg = load_config(args.config)
	if args.work_dir is not None:
		cfg.target.work_dir = args.work_dir
	if args.state_dir is not None:
		cfg.target.state_dir = args.state_dir
	return cfg


def _apply_run_flags(cfg: LoopConfig, args: argparse.Namespace) -> None:
	cfg.target.plan_file = args.plan
	if args.prompt is not None:
		cfg.target.prompt_file = args.prompt
	if args.worktree is not None:
		cfg.target.worktree_branch = args.worktree
	sched = cfg.scheduler
	if args.max_iterations is not None:
		sched.max_iterations = args.max_iterations
	if args.rate_limit is not None:
		sched.rate_limit_per_hour = args.rate_limit
	if args.timeout is not None:
		sched.timeout_minutes = args.timeout
	if args.model is not None:
		sched.model = args.model
	cfg.verbose = cfg.verbose or args.verbose
	cfg.dry_run = args.dry_run


def cmd_run(args: argparse.Namespace) -> int:
	"""Run the loop. Returns the outcome's process exit code."""
	try:
		cfg = _load(args)
	except (ConfigError, FileNotFoundError) as exc:
		print(f"Error: {exc}", file=sys.stderr)
		return EXIT_ERROR
	_apply_run_flags(cfg, args)

	issues = validate_config(cfg)
	if issues:
		for issue in issues:
			print(f"Config error: {issue}", file=sys.stderr)
		return EXIT_ERROR

	store = StateStore(cfg.target.state_path)
	configure_logging(cfg.verbose)
	if args.fresh and store.state_dir.exists():
		# the lock stays held until the controller releases it
		try:
			store.acquire_lock()
		except SessionLockedError as exc:
			logger.error("%s; refusing to reset its state", exc)
			return EXIT_ERROR
		logger.warning("Fresh start requested - resetting state...")
		store.wipe()
	configure_logging(cfg.verbose, store.logs_dir)

	notifier = None
	telegram = cfg.notifications.telegram
	if telegram.enabled:
		notifier = TelegramNotifier(telegram.bot_token, telegram.chat_id)

	controller = LoopController(
		cfg,
		store,
		notifier=notifier,
		event_stream=EventStream(store.logs_dir / EVENTS_FILE),
	)
	try:
		result = asyncio.run(controller.run())
	except MissingInputError as exc:
		logger.error("%s", exc)
		return EXIT_ERROR
	except SessionLockedError as exc:
		logger.error("%s", exc)
		return EXIT_ERROR
	except RalphError as exc:
		logger.error("%s. Inspect with 'ralph status' or clear with 'ralph reset'.", exc)
		return EXIT_ERROR
	except KeyboardInterrupt:
		logger.warning("Interrupted. Run 'ralph run %s' again to resume.", cfg.target.plan_file)
		return EXIT_ERROR
	finally:
		store.release_lock()

	print()
	print(f"Outcome:       {result.outcome.value} ({result.stopped_reason})")
	print(f"Iterations:    {result.iterations}")
	print(f"Total tokens:  {result.total_tokens}")
	print(f"Total cost:    {format_cost(result.estimated_cost_usd)}")
	if result.chunks_completed:
		print(f"PR chunks:     {', '.join(result.chunks_completed)}")
	if result.outcome is LoopOutcome.MAX_ITERATIONS:
		print(f"Run 'ralph run {cfg.target.plan_file} -m {cfg.scheduler.max_iterations + 10}' to continue")
	return result.exit_code


def _progress_bar(done: int, total: int) -> str:
	pct = done * 100 // total
	filled = pct * PROGRESS_WIDTH // 100
	return f"[{'#' * filled}{'.' * (PROGRESS_WIDTH - filled)}] {pct}%"


def cmd_status(args: argparse.Namespace) -> int:
	"""Print the current session, metrics, plan progress and PR chunks."""
	try:
		cfg = _load(args)
		store = StateStore(cfg.target.state_path)
		if not store.has_session():
			print("No active session found. Run 'ralph run <plan>' to start.")
			return EXIT_SUCCESS
		session = store.load_session()
		metrics = store.load_metrics()
		chunk_state = store.load_pr_chunks()
	except (ConfigError, FileNotFoundError) as exc:
		print(f"Error: {exc}", file=sys.stderr)
		return EXIT_ERROR
	except RalphError as exc:
		print(f"Error: {exc}", file=sys.stderr)
		print("Run 'ralph reset' to discard the damaged state.", file=sys.stderr)
		return EXIT_ERROR

	print("Ralph Loop Status")
	print(f"  Session:    {session.session_id}")
	print(f"  Started:    {session.started_at}")
	print(f"  Status:     {session.status.value}")
	print(f"  Iteration:  {session.iteration} / {session.max_iterations}")
	if session.worktree_branch:
		print(f"  Worktree:   {session.worktree_branch}")

	print()
	print("Metrics")
	print(f"  Input tokens:   {metrics.total_input_tokens}")
	print(f"  Output tokens:  {metrics.total_output_tokens}")
	print(f"  Total tokens:   {metrics.total_tokens}")
	print(f"  Est. cost:      {format_cost(metrics.estimated_cost_usd)}")
	print(f"  Completed:      {metrics.iterations_completed} iterations")
	print(f"  Failed:         {metrics.iterations_failed} iterations")

	plan_path = cfg.target.resolved_work_dir / session.plan_file
	if session.plan_file and plan_path.is_file():
		total, done = count_checklist(plan_path.read_text(encoding="utf-8"))
		print()
		print(f"Tasks ({session.plan_file})")
		print(f"  Total:      {total}")
		print(f"  Completed:  {done}")
		print(f"  Remaining:  {total - done}")
		if total > 0:
			print(f"  Progress:   {_progress_bar(done, total)}")

	if chunk_state is not None and chunk_state.chunks:
		print()
		print(f"PR Chunks ({chunk_state.chunks_completed}/{len(chunk_state.chunks)} complete)")
		for i, chunk in enumerate(chunk_state.chunks):
			if chunk.completed:
				mark = "x"
			elif i == chunk_state.current_chunk_index:
				mark = ">"
			else:
				mark = " "
			print(f"  [{mark}] {chunk.name}: {', '.join(chunk.tasks)}")
	return EXIT_SUCCESS


def cmd_reset(args: argparse.Namespace) -> int:
	try:
		cfg = _load(args)
	except (ConfigError, FileNotFoundError) as exc:
		print(f"Error: {exc}", file=sys.stderr)
		return EXIT_ERROR
	store = StateStore(cfg.target.state_path)
	if not store.state_dir.exists():
		print("No state to reset.")
		return EXIT_SUCCESS
	try:
		store.acquire_lock()
	except SessionLockedError as exc:
		print(f"Error: {exc}", file=sys.stderr)
		return EXIT_ERROR
	store.release_lock()
	store.wipe()
	print(f"State reset: removed {store.state_dir}")
	return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return EXIT_SUCCESS

	handlers = {
		"run": cmd_run,
		"status": cmd_status,
		"reset": cmd_reset,
	}
	return handlers[args.command](args)


if __name__ == "__main__":
	sys.exit(main())
