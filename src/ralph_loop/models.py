"""Data models for ralph-loop state."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

_COST_QUANTUM = Decimal("0.000001")


def _now_iso() -> str:
	return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _new_session_id() -> str:
	return f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{os.getpid()}"


def _known(cls: type, data: dict[str, Any]) -> dict[str, Any]:
	names = {f.name for f in fields(cls)}
	return {k: v for k, v in data.items() if k in names}


class LoopStatus(str, Enum):
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"
	MAX_ITERATIONS = "max_iterations"

	@property
	def terminal(self) -> bool:
		return self is not LoopStatus.RUNNING


class WorkStatus(str, Enum):
	"""STATUS field of the agent's status block."""

	IN_PROGRESS = "IN_PROGRESS"
	COMPLETE = "COMPLETE"
	BLOCKED = "BLOCKED"
	UNKNOWN = "UNKNOWN"

	@classmethod
	def parse(cls, value: str) -> WorkStatus:
		try:
			return cls(value.strip())
		except ValueError:
			return cls.UNKNOWN


class WorkType(str, Enum):
	"""WORK_TYPE field of the agent's status block."""

	IMPLEMENTATION = "IMPLEMENTATION"
	TESTING = "TESTING"
	DOCUMENTATION = "DOCUMENTATION"
	REFACTORING = "REFACTORING"
	DEBUGGING = "DEBUGGING"
	UNKNOWN = "UNKNOWN"
	OTHER = "OTHER"

	@classmethod
	def parse(cls, value: str) -> WorkType:
		cleaned = value.strip().upper()
		if not cleaned:
			return cls.UNKNOWN
		try:
			return cls(cleaned)
		except ValueError:
			return cls.OTHER


class VerificationStatus(str, Enum):
	PASSING = "PASSING"
	FAILING = "FAILING"
	NOT_RUN = "NOT_RUN"
	UNKNOWN = "UNKNOWN"

	@classmethod
	def parse(cls, value: str) -> VerificationStatus:
		cleaned = value.strip().upper()
		if not cleaned:
			return cls.NOT_RUN
		try:
			return cls(cleaned)
		except ValueError:
			return cls.UNKNOWN


@dataclass
class Session:
	"""One run of the controller, from first start to terminal state."""

	session_id: str = field(default_factory=_new_session_id)
	started_at: str = field(default_factory=_now_iso)
	iteration: int = 0
	max_iterations: int = 10
	status: LoopStatus = LoopStatus.RUNNING
	worktree_branch: str | None = None
	prompt_file: str = ""
	plan_file: str = ""
	last_updated: str = field(default_factory=_now_iso)

	def to_dict(self) -> dict[str, Any]:
		data = asdict(self)
		data["status"] = self.status.value
		return data

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> Session:
		known = _known(cls, data)
		if "status" in known:
			known["status"] = LoopStatus(known["status"])
		return cls(**known)


@dataclass(frozen=True)
class IterationRecord:
	"""Metrics for a single agent call attempt. Immutable once appended."""

	iteration: int
	timestamp: str
	input_tokens: int
	output_tokens: int
	cost_usd: float
	duration_seconds: float
	success: bool
	estimated: bool = False

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> IterationRecord:
		return cls(**_known(cls, data))


@dataclass
class Metrics:
	"""Aggregate token/cost counters plus the append-only history."""

	total_input_tokens: int = 0
	total_output_tokens: int = 0
	total_tokens: int = 0
	estimated_cost_usd: str = "0.000000"  # Decimal text in memory, a number on disk
	iterations_completed: int = 0
	iterations_failed: int = 0
	total_duration_seconds: float = 0.0
	history: list[IterationRecord] = field(default_factory=list)

	def to_dict(self) -> dict[str, Any]:
		data = asdict(self)
		data["history"] = [r.to_dict() for r in self.history]
		data["estimated_cost_usd"] = float(self.estimated_cost_usd)
		return data

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> Metrics:
		known = _known(cls, data)
		known["history"] = [IterationRecord.from_dict(r) for r in known.get("history", [])]
		if "estimated_cost_usd" in known:
			known["estimated_cost_usd"] = str(
				Decimal(str(known["estimated_cost_usd"])).quantize(_COST_QUANTUM)
			)
		return cls(**known)


@dataclass(frozen=True)
class ExitSignalRecord:
	exit_signal: str = "false"  # "true" | "false"
	completion_indicators: int = 0
	timestamp: str = field(default_factory=_now_iso)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> ExitSignalRecord:
		return cls(**_known(cls, data))


@dataclass
class PRChunk:
	"""A named, ordered group of plan tasks forming one reviewable unit."""

	name: str
	start_task: str
	tasks: list[str] = field(default_factory=list)
	completed: bool = False

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> PRChunk:
		known = _known(cls, data)
		known["tasks"] = list(known.get("tasks", []))
		return cls(**known)


@dataclass
class PRChunkState:
	chunks: list[PRChunk] = field(default_factory=list)
	current_chunk_index: int = 0
	chunks_completed: int = 0
	current_chunk: str | None = None
	last_chunk_completed_at: str | None = None

	@classmethod
	def from_chunks(cls, chunks: list[PRChunk]) -> PRChunkState:
		return cls(
			chunks=chunks,
			current_chunk=chunks[0].name if chunks else None,
		)

	def to_dict(self) -> dict[str, Any]:
		data = asdict(self)
		data["chunks"] = [c.to_dict() for c in self.chunks]
		return data

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> PRChunkState:
		known = _known(cls, data)
		known["chunks"] = [PRChunk.from_dict(c) for c in known.get("chunks", [])]
		return cls(**known)


@dataclass
class RateLimitCounter:
	bucket_key: str = ""
	count: int = 0

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> RateLimitCounter:
		return cls(**_known(cls, data))


@dataclass(frozen=True)
class ParsedStatus:
	"""Status record parsed from one agent transcript.

	Every field has a fixed default so a missing or partial status block
	never propagates as a failure.
	"""

	status: WorkStatus = WorkStatus.UNKNOWN
	exit_signal: bool = False
	tasks_remaining: str = "unknown"
	tasks_completed_this_loop: str = "0"
	files_modified: str = "0"
	tests_status: VerificationStatus = VerificationStatus.NOT_RUN
	work_type: WorkType = WorkType.UNKNOWN
	recommendation: str = ""
	completion_indicators: int = 0
	pr_chunk_complete: str = "false"
	block_found: bool = False

	@property
	def exit_signal_text(self) -> str:
		return "true" if self.exit_signal else "false"
