"""PR chunk tracking -- review-boundary groups of plan tasks.

A plan document groups its tasks into chunks with HTML comment markers::

	<!-- PR: auth-backend -->
	### T-001: Add user model
	**Status:** [x] done

Chunks are derived once when the session is created. Each iteration the
tracker checks only the current chunk; when every task it owns shows a
``[x]`` near its heading, the chunk is marked completed and the pointer
advances to the next chunk in document order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from ralph_loop.constants import DEFAULT_CHUNK_NAME, TASK_STATUS_LOOKAHEAD
from ralph_loop.models import PRChunk, PRChunkState, _now_iso
from ralph_loop.state import StateStore

logger = logging.getLogger(__name__)

CHUNK_MARKER_RE = re.compile(r"<!--\s*PR:\s*([^>]+?)\s*-->")
TASK_HEADING_RE = re.compile(r"^###\s+((?:T|US)-\d+):")
CHECKBOX_RE = re.compile(r"^\s*- \[[ xX]\]")
CHECKED_RE = re.compile(r"^\s*- \[[xX]\]")
DONE_MARK_RE = re.compile(r"\[[xX]\]")


def parse_pr_chunks(plan_text: str) -> list[PRChunk]:
	"""Derive the ordered chunk list from a plan document in one linear scan.

	Tasks seen before the first marker fall into an implicit ``default``
	chunk. Chunks that end up with no tasks are dropped.
	"""
	chunks: list[PRChunk] = []
	name = DEFAULT_CHUNK_NAME
	tasks: list[str] = []

	def close() -> None:
		if tasks:
			chunks.append(PRChunk(name=name, start_task=tasks[0], tasks=list(tasks)))

	for line in plan_text.splitlines():
		marker = CHUNK_MARKER_RE.search(line)
		if marker:
			close()
			name = marker.group(1).strip()
			tasks = []
			continue
		heading = TASK_HEADING_RE.match(line)
		if heading:
			tasks.append(heading.group(1))

	close()
	return chunks


def is_task_complete(plan_text: str, task_id: str) -> bool:
	"""True if a ``[x]`` appears on the task heading or within the lines after it.

	The lookahead stops early at the next heading so one task's status
	cannot leak into its predecessor.
	"""
	lines = plan_text.splitlines()
	heading = re.compile(rf"^###\s+{re.escape(task_id)}:")
	for i, line in enumerate(lines):
		if not heading.match(line):
			continue
		window = [line]
		for following in lines[i + 1:i + TASK_STATUS_LOOKAHEAD + 1]:
			if following.startswith("#"):
				break
			window.append(following)
		return any(DONE_MARK_RE.search(w) for w in window)
	return False


def count_checklist(plan_text: str) -> tuple[int, int]:
	"""Return (total, completed) checkbox task lines in the plan."""
	total = 0
	done = 0
	for line in plan_text.splitlines():
		if CHECKBOX_RE.match(line):
			total += 1
			if CHECKED_RE.match(line):
				done += 1
	return total, done


def is_plan_complete(plan_text: str) -> bool:
	total, done = count_checklist(plan_text)
	return total > 0 and total == done


@dataclass
class ChunkCompletion:
	"""A chunk that just transitioned to completed."""

	chunk: PRChunk
	next_chunk: PRChunk | None = None
	chunks_completed: int = 0
	completed_at: str = field(default_factory=_now_iso)


class PRChunkTracker:
	"""Advances the persisted PRChunkState one chunk at a time."""

	def __init__(self, store: StateStore) -> None:
		self._store = store

	def check(self, plan_text: str) -> ChunkCompletion | None:
		"""Evaluate the current chunk against the plan document.

		Returns a ChunkCompletion on the first (and only) transition of the
		current chunk to completed, otherwise None. Chunks are never skipped:
		only the chunk at ``current_chunk_index`` is evaluated.
		"""
		state = self._store.load_pr_chunks()
		if state is None or not state.chunks:
			return None
		if state.current_chunk is None or state.current_chunk_index >= len(state.chunks):
			return None

		chunk = state.chunks[state.current_chunk_index]
		if chunk.completed:
			return None
		if not chunk.tasks or not all(is_task_complete(plan_text, t) for t in chunk.tasks):
			return None

		completed_at = _now_iso()
		chunk.completed = True
		state.chunks_completed += 1
		state.last_chunk_completed_at = completed_at
		state.current_chunk_index += 1
		next_chunk: PRChunk | None = None
		if state.current_chunk_index < len(state.chunks):
			next_chunk = state.chunks[state.current_chunk_index]
			state.current_chunk = next_chunk.name
		else:
			state.current_chunk = None
		self._store.save_pr_chunks(state)

		return ChunkCompletion(
			chunk=chunk,
			next_chunk=next_chunk,
			chunks_completed=state.chunks_completed,
			completed_at=completed_at,
		)
