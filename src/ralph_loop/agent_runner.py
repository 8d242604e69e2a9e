"""External agent collaborator -- render the prompt, run claude, capture output."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ralph_loop.config import LoopConfig, build_claude_cmd
from ralph_loop.token_parser import parse_stream_json

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool results; the asyncio default (64 KiB) is too small
STREAM_LIMIT = 16 * 1024 * 1024

LOOP_CONTEXT_TEMPLATE = """\


---
## Current Loop Context
- **Iteration:** {iteration} / {max_iterations}
- **Session:** {session_id}
- **Plan:** {plan_file}
- **Working Directory:** {work_dir}

Please read {plan_file} and proceed with the FIRST unchecked task.
Remember to output the RALPH_STATUS block at the end of your response.
"""


def render_iteration_prompt(
	prompt_text: str,
	iteration: int,
	max_iterations: int,
	session_id: str,
	plan_file: str,
	work_dir: str,
) -> str:
	"""Append the per-iteration context block to the operator's prompt."""
	return prompt_text + LOOP_CONTEXT_TEMPLATE.format(
		iteration=iteration,
		max_iterations=max_iterations,
		session_id=session_id,
		plan_file=plan_file,
		work_dir=work_dir,
	)


@dataclass
class AgentRunResult:
	"""Outcome of one agent call."""

	transcript: str = ""
	exit_code: int | None = None
	timed_out: bool = False
	duration_seconds: float = 0.0
	error: str = ""

	@property
	def success(self) -> bool:
		return not self.timed_out and not self.error and self.exit_code == 0


class AgentRunner:
	"""Runs the claude CLI once per iteration with a hard timeout.

	Stdout is read incrementally, so when the timeout fires and the process
	is killed the transcript captured so far is still returned for parsing.
	"""

	def __init__(self, config: LoopConfig, logs_dir: Path) -> None:
		self.config = config
		self.logs_dir = logs_dir

	async def run(self, prompt: str, iteration: int) -> AgentRunResult:
		cmd = build_claude_cmd(self.config, prompt)
		timeout = self.config.scheduler.timeout_seconds
		cwd = str(self.config.target.resolved_work_dir)
		chunks: list[str] = []
		result = AgentRunResult()

		logger.debug("Executing %s (timeout: %.0fs)...", cmd[0], timeout)
		start = time.monotonic()
		try:
			proc = await asyncio.create_subprocess_exec(
				*cmd,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
				cwd=cwd,
				limit=STREAM_LIMIT,
			)
		except (FileNotFoundError, PermissionError) as exc:
			result.error = f"Could not start {cmd[0]}: {exc}"
			result.duration_seconds = time.monotonic() - start
			logger.error(result.error)
			return result

		async def _drain() -> None:
			assert proc.stdout is not None
			async for raw in proc.stdout:
				chunks.append(raw.decode("utf-8", errors="replace"))
			await proc.wait()

		try:
			await asyncio.wait_for(_drain(), timeout=timeout)
			result.exit_code = proc.returncode
		except asyncio.TimeoutError:
			result.timed_out = True
			logger.warning("Agent call timed out after %.0f minutes", timeout / 60)
			try:
				proc.kill()
				await proc.wait()
			except ProcessLookupError:
				pass
			result.exit_code = proc.returncode

		result.duration_seconds = time.monotonic() - start
		result.transcript = "".join(chunks)
		self._write_logs(iteration, result.transcript)
		return result

	def _write_logs(self, iteration: int, transcript: str) -> None:
		"""Keep the raw transcript and its extracted text for the operator."""
		self.logs_dir.mkdir(parents=True, exist_ok=True)
		prefix = self.logs_dir / f"iter_{iteration:03d}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
		try:
			prefix.with_suffix(".json").write_text(transcript, encoding="utf-8")
			text = parse_stream_json(transcript).text_content
			prefix.with_suffix(".log").write_text(text, encoding="utf-8")
		except OSError as exc:
			logger.warning("Could not write iteration logs: %s", exc)
