"""JSONL timeline of loop events under the state directory's logs."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import IO, Any

from ralph_loop.models import _now_iso


@dataclass
class LoopEvent:
	"""One line of events.jsonl."""

	event_type: str
	session_id: str = ""
	iteration: int = 0
	details: dict[str, Any] = field(default_factory=dict)
	input_tokens: int = 0
	output_tokens: int = 0
	cost_usd: float = 0.0
	timestamp: str = field(default_factory=_now_iso)

	def to_json(self) -> str:
		return json.dumps(asdict(self), separators=(",", ":"))


class EventStream:
	"""Append-only writer; events emitted while closed are dropped.

	The session id is bound once the controller knows it and stamped on
	every subsequent event.
	"""

	def __init__(self, path: Path, session_id: str = "") -> None:
		self.path = path
		self.session_id = session_id
		self._handle: IO[str] | None = None

	def open(self) -> None:
		self.path.parent.mkdir(parents=True, exist_ok=True)
		self._handle = self.path.open("a", encoding="utf-8")

	def close(self) -> None:
		if self._handle is not None:
			self._handle.close()
			self._handle = None

	def __enter__(self) -> EventStream:
		self.open()
		return self

	def __exit__(self, *exc: object) -> None:
		self.close()

	def emit(
		self,
		event_type: str,
		*,
		iteration: int = 0,
		details: dict[str, Any] | None = None,
		input_tokens: int = 0,
		output_tokens: int = 0,
		cost_usd: float = 0.0,
	) -> LoopEvent | None:
		if self._handle is None:
			return None
		event = LoopEvent(
			event_type=event_type,
			session_id=self.session_id,
			iteration=iteration,
			details=dict(details or {}),
			input_tokens=input_tokens,
			output_tokens=output_tokens,
			cost_usd=cost_usd,
		)
		self._handle.write(event.to_json() + "\n")
		self._handle.flush()
		return event
