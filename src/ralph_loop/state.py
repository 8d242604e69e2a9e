"""Durable loop state -- JSON documents under the state directory.

Every mutation is a full read-modify-write followed by an atomic replace
(write to a sibling temp file, fsync, ``os.replace``), so a reader never
observes a partially written document and a crash leaves either the old or
the new version on disk.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
from pathlib import Path
from typing import IO, Any, Callable

from ralph_loop.constants import EXIT_SIGNAL_WINDOW
from ralph_loop.errors import SessionLockedError, StateCorruptionError
from ralph_loop.models import (
	ExitSignalRecord,
	LoopStatus,
	Metrics,
	PRChunkState,
	RateLimitCounter,
	Session,
	_now_iso,
)

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
METRICS_FILE = "metrics.json"
EXIT_SIGNALS_FILE = "exit_signals.json"
RATE_LIMIT_FILE = "rate_limit.json"
LOCK_FILE = "lock"
LOGS_DIR = "logs"
LAST_RESPONSE_FILE = "last_response"


def atomic_write_json(path: Path, data: Any) -> None:
	"""Serialize ``data`` to ``path`` via a temp file and ``os.replace``."""
	path.parent.mkdir(parents=True, exist_ok=True)
	tmp_path = path.with_suffix(path.suffix + ".tmp")
	with open(tmp_path, "w", encoding="utf-8") as handle:
		json.dump(data, handle, indent=2)
		handle.flush()
		os.fsync(handle.fileno())
	os.replace(tmp_path, path)


def read_json(path: Path) -> Any:
	"""Load a JSON document, raising StateCorruptionError if it cannot be parsed."""
	try:
		with open(path, encoding="utf-8") as handle:
			return json.load(handle)
	except json.JSONDecodeError as exc:
		raise StateCorruptionError(f"State document {path} is not valid JSON: {exc}") from exc
	except UnicodeDecodeError as exc:
		raise StateCorruptionError(f"State document {path} is not UTF-8: {exc}") from exc


class StateStore:
	"""Read-modify-write access to the session, metrics, exit-signal and
	rate-limit documents of one state directory.

	The store holds no cached copies: every accessor reads from disk, so the
	documents on disk are the only source of truth between iterations and
	across restarts.
	"""

	def __init__(self, state_dir: str | Path) -> None:
		self.state_dir = Path(state_dir)
		self._lock_handle: IO[str] | None = None

	# -- paths --

	@property
	def state_path(self) -> Path:
		return self.state_dir / STATE_FILE

	@property
	def metrics_path(self) -> Path:
		return self.state_dir / METRICS_FILE

	@property
	def exit_signals_path(self) -> Path:
		return self.state_dir / EXIT_SIGNALS_FILE

	@property
	def rate_limit_path(self) -> Path:
		return self.state_dir / RATE_LIMIT_FILE

	@property
	def logs_dir(self) -> Path:
		return self.state_dir / LOGS_DIR

	@property
	def last_response_path(self) -> Path:
		return self.state_dir / LAST_RESPONSE_FILE

	def initialize(self) -> None:
		"""Create the state directory and any missing documents."""
		self.logs_dir.mkdir(parents=True, exist_ok=True)
		if not self.metrics_path.exists():
			atomic_write_json(self.metrics_path, Metrics().to_dict())
		if not self.exit_signals_path.exists():
			atomic_write_json(self.exit_signals_path, [])
		if not self.rate_limit_path.exists():
			atomic_write_json(self.rate_limit_path, RateLimitCounter().to_dict())

	# -- locking --

	def acquire_lock(self) -> None:
		"""Take an exclusive lock on the state directory for this process.

		Raises SessionLockedError when another loop instance already holds it.
		A store that already holds the lock keeps it.
		"""
		if self._lock_handle is not None:
			return
		self.state_dir.mkdir(parents=True, exist_ok=True)
		handle = open(self.state_dir / LOCK_FILE, "a+", encoding="utf-8")
		try:
			fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
		except BlockingIOError as exc:
			handle.close()
			raise SessionLockedError(
				f"Another ralph loop is already running against {self.state_dir}"
			) from exc
		handle.seek(0)
		handle.truncate()
		handle.write(str(os.getpid()))
		handle.flush()
		self._lock_handle = handle

	def release_lock(self) -> None:
		if self._lock_handle is None:
			return
		fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)
		self._lock_handle.close()
		self._lock_handle = None

	# -- session --

	def has_session(self) -> bool:
		return self.state_path.exists()

	def _read_state_doc(self) -> dict[str, Any]:
		data = read_json(self.state_path)
		if not isinstance(data, dict):
			raise StateCorruptionError(f"State document {self.state_path} is not an object")
		return data

	def load_session(self) -> Session:
		data = self._read_state_doc()
		try:
			return Session.from_dict(data)
		except (TypeError, ValueError) as exc:
			raise StateCorruptionError(f"Invalid session document: {exc}") from exc

	def create_session(self, session: Session, pr_chunks: PRChunkState | None = None) -> Session:
		doc = session.to_dict()
		if pr_chunks is not None and pr_chunks.chunks:
			doc["pr_chunks"] = pr_chunks.to_dict()
		atomic_write_json(self.state_path, doc)
		logger.info("Created new session: %s", session.session_id)
		return session

	def update_session(self, mutate: Callable[[Session], None]) -> Session:
		"""Apply ``mutate`` to the stored session and persist the result.

		Keys the Session model does not own (such as ``pr_chunks``) are
		preserved untouched.
		"""
		doc = self._read_state_doc()
		try:
			session = Session.from_dict(doc)
		except (TypeError, ValueError) as exc:
			raise StateCorruptionError(f"Invalid session document: {exc}") from exc
		mutate(session)
		session.last_updated = _now_iso()
		doc.update(session.to_dict())
		atomic_write_json(self.state_path, doc)
		return session

	def set_iteration(self, iteration: int) -> Session:
		def _apply(s: Session) -> None:
			if iteration < s.iteration:
				raise ValueError(f"iteration cannot decrease ({s.iteration} -> {iteration})")
			if iteration > s.max_iterations:
				raise ValueError(f"iteration {iteration} exceeds max_iterations {s.max_iterations}")
			s.iteration = iteration
		return self.update_session(_apply)

	def set_status(self, status: LoopStatus) -> Session:
		def _apply(s: Session) -> None:
			s.status = status
		return self.update_session(_apply)

	# -- PR chunks --

	def load_pr_chunks(self) -> PRChunkState | None:
		doc = self._read_state_doc()
		raw = doc.get("pr_chunks")
		if not raw:
			return None
		try:
			return PRChunkState.from_dict(raw)
		except (TypeError, ValueError, AttributeError) as exc:
			raise StateCorruptionError(f"Invalid pr_chunks document: {exc}") from exc

	def save_pr_chunks(self, chunk_state: PRChunkState) -> None:
		doc = self._read_state_doc()
		doc["pr_chunks"] = chunk_state.to_dict()
		doc["last_updated"] = _now_iso()
		atomic_write_json(self.state_path, doc)

	# -- metrics --

	def load_metrics(self) -> Metrics:
		if not self.metrics_path.exists():
			return Metrics()
		data = read_json(self.metrics_path)
		try:
			return Metrics.from_dict(data)
		except (TypeError, ValueError, AttributeError) as exc:
			raise StateCorruptionError(f"Invalid metrics document: {exc}") from exc

	def update_metrics(self, mutate: Callable[[Metrics], None]) -> Metrics:
		metrics = self.load_metrics()
		mutate(metrics)
		atomic_write_json(self.metrics_path, metrics.to_dict())
		return metrics

	# -- exit signals --

	def load_exit_signals(self) -> list[ExitSignalRecord]:
		if not self.exit_signals_path.exists():
			return []
		data = read_json(self.exit_signals_path)
		if not isinstance(data, list):
			raise StateCorruptionError(f"Exit signal document {self.exit_signals_path} is not a list")
		try:
			return [ExitSignalRecord.from_dict(r) for r in data]
		except (TypeError, ValueError, AttributeError) as exc:
			raise StateCorruptionError(f"Invalid exit signal record: {exc}") from exc

	def append_exit_signal(self, record: ExitSignalRecord) -> list[ExitSignalRecord]:
		"""Append to the rolling window, evicting the oldest beyond its capacity."""
		window = self.load_exit_signals()
		window.append(record)
		window = window[-EXIT_SIGNAL_WINDOW:]
		atomic_write_json(self.exit_signals_path, [r.to_dict() for r in window])
		return window

	# -- rate limit --

	def load_rate_limit(self) -> RateLimitCounter:
		if not self.rate_limit_path.exists():
			return RateLimitCounter()
		data = read_json(self.rate_limit_path)
		try:
			return RateLimitCounter.from_dict(data)
		except (TypeError, ValueError, AttributeError) as exc:
			raise StateCorruptionError(f"Invalid rate limit document: {exc}") from exc

	def save_rate_limit(self, counter: RateLimitCounter) -> None:
		atomic_write_json(self.rate_limit_path, counter.to_dict())

	# -- transcripts --

	def write_last_response(self, transcript: str) -> None:
		self.state_dir.mkdir(parents=True, exist_ok=True)
		self.last_response_path.write_text(transcript, encoding="utf-8")

	# -- reset --

	def wipe(self) -> None:
		"""Remove all state. Operator-initiated only.

		While this store holds the lock, the lock file stays in place and
		the lock stays held; everything else under the state directory goes.
		"""
		if not self.state_dir.exists():
			return
		if self._lock_handle is None:
			shutil.rmtree(self.state_dir)
		else:
			for child in self.state_dir.iterdir():
				if child.name == LOCK_FILE:
					continue
				if child.is_dir():
					shutil.rmtree(child)
				else:
					child.unlink()
		logger.warning("Removed state directory %s", self.state_dir)
