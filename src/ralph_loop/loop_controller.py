"""Loop controller -- bounded, resumable iteration scheduler around the agent."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from ralph_loop.agent_runner import AgentRunner, AgentRunResult, render_iteration_prompt
from ralph_loop.config import LoopConfig
from ralph_loop.constants import (
	EVENT_CHUNK_COMPLETED,
	EVENT_ITERATION_FINISHED,
	EVENT_ITERATION_STARTED,
	EVENT_LOOP_FINISHED,
	EVENT_LOOP_STARTED,
	EVENT_RATE_LIMITED,
	EXIT_ERROR,
	EXIT_RATE_LIMITED,
	EXIT_SUCCESS,
)
from ralph_loop.errors import ConfigError, MissingInputError
from ralph_loop.event_stream import EventStream
from ralph_loop.exit_gate import evaluate_exit
from ralph_loop.metrics import MetricsAccumulator, format_cost
from ralph_loop.models import (
	ExitSignalRecord,
	LoopStatus,
	PRChunkState,
	Session,
	WorkStatus,
)
from ralph_loop.notifier import TelegramNotifier
from ralph_loop.pr_chunks import ChunkCompletion, PRChunkTracker, count_checklist, parse_pr_chunks
from ralph_loop.rate_limiter import RateLimiter
from ralph_loop.state import StateStore
from ralph_loop.status_parser import parse_status_block
from ralph_loop.token_parser import extract_token_usage

logger = logging.getLogger(__name__)

EVENTS_FILE = "events.jsonl"


class LoopOutcome(str, Enum):
	COMPLETED = "completed"
	MAX_ITERATIONS = "max_iterations"
	FAILED = "failed"
	RATE_LIMITED = "rate_limited"
	DRY_RUN = "dry_run"

	@property
	def exit_code(self) -> int:
		if self in (LoopOutcome.COMPLETED, LoopOutcome.DRY_RUN):
			return EXIT_SUCCESS
		if self is LoopOutcome.RATE_LIMITED:
			return EXIT_RATE_LIMITED
		return EXIT_ERROR


@dataclass
class LoopResult:
	"""Summary of one controller run."""

	session_id: str = ""
	outcome: LoopOutcome = LoopOutcome.FAILED
	iterations: int = 0
	calls: int = 0
	stopped_reason: str = ""
	total_tokens: int = 0
	estimated_cost_usd: str = "0.000000"
	chunks_completed: list[str] = field(default_factory=list)

	@property
	def exit_code(self) -> int:
		return self.outcome.exit_code


class Runner(Protocol):
	async def run(self, prompt: str, iteration: int) -> AgentRunResult: ...


class LoopController:
	"""Drives the agent until completion, the iteration cap, or repeated failure.

	Each turn advances the persisted iteration counter once, waits for rate
	limit admission, calls the agent, then records metrics, parses the status
	block, updates the exit-signal window and the PR chunk pointer, and asks
	the exit gate whether to stop. A failed call is retried inside the same
	turn after a backoff, so retries never consume iteration slots.
	"""

	def __init__(
		self,
		config: LoopConfig,
		store: StateStore,
		runner: Runner | None = None,
		notifier: TelegramNotifier | None = None,
		event_stream: EventStream | None = None,
	) -> None:
		self.config = config
		self.store = store
		self.runner: Runner = runner or AgentRunner(config, store.logs_dir)
		self.notifier = notifier
		self.event_stream = event_stream or EventStream(store.logs_dir / EVENTS_FILE)
		sched = config.scheduler
		self.rate_limiter = RateLimiter(store, sched.rate_limit_per_hour)
		self.metrics = MetricsAccumulator(store, config.pricing)
		self.chunk_tracker = PRChunkTracker(store)
		self._session_id = ""
		self._calls = 0
		self._chunks_completed: list[str] = []

	# -- setup --

	def _check_inputs(self) -> tuple[Path, Path]:
		target = self.config.target
		prompt_path = target.prompt_path
		plan_path = target.plan_path
		if not prompt_path.is_file():
			raise MissingInputError(f"Prompt file not found: {prompt_path}")
		if not plan_path.is_file():
			raise MissingInputError(f"Plan file not found: {plan_path}")
		return prompt_path, plan_path

	def _load_or_create_session(self, plan_text: str) -> Session:
		target = self.config.target
		max_iterations = self.config.scheduler.max_iterations

		if self.store.has_session():
			session = self.store.load_session()
			if session.plan_file and Path(session.plan_file) != Path(target.plan_file):
				raise ConfigError(
					f"Session {session.session_id} is working on {session.plan_file}, "
					f"not {target.plan_file}; run with that plan or start over with --fresh"
				)
			logger.info("Resuming session: %s", session.session_id)

			def _resume(s: Session) -> None:
				if s.status.terminal:
					logger.info("Session was %s, resuming as running", s.status.value)
					s.status = LoopStatus.RUNNING
				s.max_iterations = max(max_iterations, s.iteration)

			return self.store.update_session(_resume)

		session = Session(
			max_iterations=max_iterations,
			worktree_branch=target.worktree_branch,
			prompt_file=target.prompt_file,
			plan_file=target.plan_file,
		)
		chunks = parse_pr_chunks(plan_text)
		if chunks:
			logger.info(
				"PR chunks detected: %d (%s)",
				len(chunks), ", ".join(c.name for c in chunks),
			)
		return self.store.create_session(session, PRChunkState.from_chunks(chunks))

	# -- main loop --

	async def run(self) -> LoopResult:
		"""Run the loop until a stopping condition. Always releases the lock."""
		prompt_path, plan_path = self._check_inputs()
		self.store.acquire_lock()
		try:
			self.store.initialize()
			self.event_stream.open()
			plan_text = plan_path.read_text(encoding="utf-8")
			session = self._load_or_create_session(plan_text)
			self._session_id = session.session_id
			self.event_stream.session_id = session.session_id

			if self.config.dry_run:
				return self._dry_run(session, prompt_path)

			self._emit(EVENT_LOOP_STARTED, session.iteration, {
				"max_iterations": session.max_iterations,
				"plan_file": session.plan_file,
			})
			if self.notifier is not None:
				await self.notifier.send_loop_start(
					session.session_id, session.plan_file, session.max_iterations,
				)

			result = await self._loop(session, prompt_path, plan_path)
			await self._finish(result)
			return result
		finally:
			self.event_stream.close()
			if self.notifier is not None:
				await self.notifier.close()
			self.store.release_lock()

	async def _loop(self, session: Session, prompt_path: Path, plan_path: Path) -> LoopResult:
		sched = self.config.scheduler
		iteration = session.iteration
		max_iterations = session.max_iterations

		while iteration < max_iterations:
			iteration += 1
			self.store.set_iteration(iteration)
			logger.info("=== Iteration %d/%d ===", iteration, max_iterations)
			self._emit(EVENT_ITERATION_STARTED, iteration)

			failures = 0
			while True:
				if not await self._await_admission(iteration):
					return self._stop(
						LoopOutcome.RATE_LIMITED, LoopStatus.FAILED, iteration,
						"rate_limit_exceeded",
					)

				prompt = render_iteration_prompt(
					prompt_path.read_text(encoding="utf-8"),
					iteration,
					max_iterations,
					session.session_id,
					session.plan_file,
					str(self.config.target.resolved_work_dir),
				)
				run = await self._call_agent(prompt, iteration)
				plan_text = plan_path.read_text(encoding="utf-8")
				decision = await self._process_response(iteration, prompt, run, plan_text)

				if decision is not None:
					return self._stop(
						LoopOutcome.COMPLETED, LoopStatus.COMPLETED, iteration, decision,
					)

				if run.success:
					break

				failures += 1
				logger.error(
					"Iteration %d failed (%d/%d consecutive)",
					iteration, failures, sched.max_consecutive_failures,
				)
				if failures >= sched.max_consecutive_failures:
					logger.error(
						"Too many consecutive failures. Inspect with 'ralph status' "
						"and clear with 'ralph reset' if needed."
					)
					return self._stop(
						LoopOutcome.FAILED, LoopStatus.FAILED, iteration,
						"consecutive_failures",
					)
				logger.info("Waiting %ss before retry...", sched.failure_backoff)
				await asyncio.sleep(sched.failure_backoff)

			total, done = count_checklist(plan_text)
			if total > 0 and total == done:
				logger.info("All %d plan tasks are checked", total)

			await asyncio.sleep(sched.inter_iteration_delay)

		logger.warning("Max iterations (%d) reached", max_iterations)
		return self._stop(
			LoopOutcome.MAX_ITERATIONS, LoopStatus.MAX_ITERATIONS, iteration,
			"max_iterations",
		)

	async def _await_admission(self, iteration: int) -> bool:
		"""Block until the rate limiter admits a call, within the current turn."""
		sched = self.config.scheduler
		waits = 0
		while not self.rate_limiter.try_acquire():
			waits += 1
			self._emit(EVENT_RATE_LIMITED, iteration, {"waits": waits})
			if sched.max_rate_limit_waits and waits > sched.max_rate_limit_waits:
				logger.error(
					"Rate limit still exceeded after %d waits. Check 'ralph status' "
					"and resume later.", sched.max_rate_limit_waits,
				)
				return False
			logger.info("Waiting %ss for rate limit...", sched.rate_limit_wait)
			await asyncio.sleep(sched.rate_limit_wait)
		return True

	async def _call_agent(self, prompt: str, iteration: int) -> AgentRunResult:
		self._calls += 1
		try:
			run = await self.runner.run(prompt, iteration)
		except (OSError, RuntimeError) as exc:
			logger.error("Agent call raised: %s", exc)
			return AgentRunResult(error=str(exc))
		if run.timed_out:
			logger.error("Agent call timed out")
		elif run.error:
			logger.error("Agent call failed: %s", run.error)
		elif run.exit_code != 0:
			logger.error("Agent exited with code %s", run.exit_code)
		return run

	async def _process_response(
		self,
		iteration: int,
		prompt: str,
		run: AgentRunResult,
		plan_text: str,
	) -> str | None:
		"""Record one call attempt. Returns the exit reason when the loop should stop."""
		transcript = run.transcript
		self.store.write_last_response(transcript)

		usage = extract_token_usage(transcript, prompt)
		record = self.metrics.record(iteration, usage, run.duration_seconds, run.success)

		status = parse_status_block(transcript)
		if not status.block_found:
			logger.warning("No RALPH_STATUS block found in response")
		else:
			logger.info(
				"Status: %s | Work: %s | Tests: %s | Remaining: %s | Exit: %s",
				status.status.value, status.work_type.value, status.tests_status.value,
				status.tasks_remaining, status.exit_signal_text,
			)
		if status.pr_chunk_complete.lower() == "true":
			logger.info("Agent reports PR_CHUNK_COMPLETE: true")

		window = self.store.append_exit_signal(ExitSignalRecord(
			exit_signal=status.exit_signal_text,
			completion_indicators=status.completion_indicators,
		))

		completion = self.chunk_tracker.check(plan_text)
		if completion is not None:
			await self._announce_chunk(iteration, completion)

		self._emit(
			EVENT_ITERATION_FINISHED, iteration,
			{
				"success": run.success,
				"timed_out": run.timed_out,
				"status": status.status.value,
				"exit_signal": status.exit_signal,
				"estimated_tokens": usage.estimated,
			},
			input_tokens=record.input_tokens,
			output_tokens=record.output_tokens,
			cost_usd=record.cost_usd,
		)
		logger.info("Running cost: %s", self.metrics.running_cost())

		decision = evaluate_exit(transcript, status, window)
		if decision.should_exit:
			return decision.reason

		if run.success and status.status is WorkStatus.BLOCKED:
			logger.warning("Agent reports BLOCKED: %s", status.recommendation or "(no recommendation)")
			await asyncio.sleep(self.config.scheduler.blocked_wait)
		return None

	async def _announce_chunk(self, iteration: int, completion: ChunkCompletion) -> None:
		chunk = completion.chunk
		next_name = completion.next_chunk.name if completion.next_chunk else None
		self._chunks_completed.append(chunk.name)
		logger.info(
			"PR_CHUNK_COMPLETE %s tasks=%s iteration=%d",
			chunk.name, ",".join(chunk.tasks), iteration,
		)
		if next_name:
			logger.info("Next PR chunk: %s", next_name)
		else:
			logger.info("All PR chunks complete")
		self._emit(EVENT_CHUNK_COMPLETED, iteration, {
			"chunk": chunk.name,
			"tasks": chunk.tasks,
			"next_chunk": next_name,
			"chunks_completed": completion.chunks_completed,
		})
		telegram = self.config.notifications.telegram
		if self.notifier is not None and telegram.on_chunk_complete:
			await self.notifier.send_chunk_complete(chunk.name, chunk.tasks, iteration, next_name)

	# -- termination --

	def _stop(
		self,
		outcome: LoopOutcome,
		status: LoopStatus,
		iteration: int,
		reason: str,
	) -> LoopResult:
		self.store.set_status(status)
		metrics = self.store.load_metrics()
		return LoopResult(
			session_id=self._session_id,
			outcome=outcome,
			iterations=iteration,
			calls=self._calls,
			stopped_reason=reason,
			total_tokens=metrics.total_tokens,
			estimated_cost_usd=metrics.estimated_cost_usd,
			chunks_completed=list(self._chunks_completed),
		)

	async def _finish(self, result: LoopResult) -> None:
		cost = format_cost(result.estimated_cost_usd)
		logger.info(
			"Loop finished: %s after %d iterations (%s) | Tokens: %d | Cost: %s",
			result.outcome.value, result.iterations, result.stopped_reason,
			result.total_tokens, cost,
		)
		self._emit(EVENT_LOOP_FINISHED, result.iterations, {
			"outcome": result.outcome.value,
			"stopped_reason": result.stopped_reason,
			"total_tokens": result.total_tokens,
			"estimated_cost_usd": result.estimated_cost_usd,
		})
		telegram = self.config.notifications.telegram
		if self.notifier is not None and telegram.on_loop_end:
			await self.notifier.send_loop_end(
				result.outcome.value, result.iterations, result.total_tokens,
				cost, result.stopped_reason,
			)

	def _dry_run(self, session: Session, prompt_path: Path) -> LoopResult:
		iteration = session.iteration + 1
		prompt = render_iteration_prompt(
			prompt_path.read_text(encoding="utf-8"),
			iteration,
			session.max_iterations,
			session.session_id,
			session.plan_file,
			str(self.config.target.resolved_work_dir),
		)
		logger.info("[DRY RUN] Would execute %s for iteration %d", self.config.scheduler.claude_binary, iteration)
		logger.info("[DRY RUN] Prompt (%d chars):\n%s", len(prompt), prompt)
		return LoopResult(
			session_id=session.session_id,
			outcome=LoopOutcome.DRY_RUN,
			iterations=session.iteration,
			stopped_reason="dry_run",
		)

	def _emit(
		self,
		event_type: str,
		iteration: int,
		details: dict | None = None,
		**kwargs: int | float,
	) -> None:
		self.event_stream.emit(
			event_type,
			iteration=iteration,
			details=details,
			**kwargs,
		)
