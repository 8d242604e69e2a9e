"""Tests for the durable state store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ralph_loop.errors import SessionLockedError, StateCorruptionError
from ralph_loop.models import (
	ExitSignalRecord,
	LoopStatus,
	PRChunk,
	PRChunkState,
	RateLimitCounter,
	Session,
)
from ralph_loop.state import StateStore, atomic_write_json, read_json


@pytest.fixture()
def store(tmp_path: Path) -> StateStore:
	s = StateStore(tmp_path / ".ralph")
	s.initialize()
	return s


class TestAtomicWrite:
	def test_writes_and_leaves_no_temp_file(self, tmp_path: Path) -> None:
		path = tmp_path / "doc.json"
		atomic_write_json(path, {"a": 1})
		assert json.loads(path.read_text()) == {"a": 1}
		assert not (tmp_path / "doc.json.tmp").exists()

	def test_replaces_existing(self, tmp_path: Path) -> None:
		path = tmp_path / "doc.json"
		atomic_write_json(path, {"a": 1})
		atomic_write_json(path, {"a": 2})
		assert read_json(path) == {"a": 2}

	def test_read_corrupt_raises(self, tmp_path: Path) -> None:
		path = tmp_path / "doc.json"
		path.write_text("{not json")
		with pytest.raises(StateCorruptionError):
			read_json(path)


class TestInitialize:
	def test_creates_documents(self, store: StateStore) -> None:
		assert store.metrics_path.exists()
		assert store.exit_signals_path.exists()
		assert store.rate_limit_path.exists()
		assert store.logs_dir.is_dir()
		assert not store.has_session()

	def test_preserves_existing_metrics(self, store: StateStore) -> None:
		store.update_metrics(lambda m: setattr(m, "total_tokens", 42))
		store.initialize()
		assert store.load_metrics().total_tokens == 42


class TestSessionDocument:
	def test_create_and_load(self, store: StateStore) -> None:
		session = Session(max_iterations=5, plan_file="plan.md")
		store.create_session(session)
		loaded = store.load_session()
		assert loaded.session_id == session.session_id
		assert loaded.max_iterations == 5

	def test_set_iteration_monotonic(self, store: StateStore) -> None:
		store.create_session(Session(max_iterations=5))
		store.set_iteration(2)
		with pytest.raises(ValueError):
			store.set_iteration(1)
		with pytest.raises(ValueError):
			store.set_iteration(6)
		assert store.load_session().iteration == 2

	def test_set_status(self, store: StateStore) -> None:
		store.create_session(Session())
		store.set_status(LoopStatus.COMPLETED)
		assert store.load_session().status is LoopStatus.COMPLETED

	def test_update_preserves_pr_chunks(self, store: StateStore) -> None:
		chunks = PRChunkState.from_chunks([PRChunk(name="a", start_task="T-001", tasks=["T-001"])])
		store.create_session(Session(), chunks)
		store.set_iteration(1)
		assert store.load_pr_chunks() == chunks

	def test_no_chunks_returns_none(self, store: StateStore) -> None:
		store.create_session(Session(), PRChunkState())
		assert store.load_pr_chunks() is None

	def test_corrupt_session_raises(self, store: StateStore) -> None:
		store.state_path.write_text("[]")
		with pytest.raises(StateCorruptionError):
			store.load_session()

	def test_bad_status_value_raises(self, store: StateStore) -> None:
		store.state_path.write_text(json.dumps({"status": "exploded"}))
		with pytest.raises(StateCorruptionError):
			store.load_session()


class TestExitSignalWindow:
	def test_keeps_five_most_recent(self, store: StateStore) -> None:
		for i in range(6):
			store.append_exit_signal(ExitSignalRecord(exit_signal="false", completion_indicators=i))
		window = store.load_exit_signals()
		assert len(window) == 5
		assert [r.completion_indicators for r in window] == [1, 2, 3, 4, 5]

	def test_corrupt_window_raises(self, store: StateStore) -> None:
		store.exit_signals_path.write_text('{"oops": 1}')
		with pytest.raises(StateCorruptionError):
			store.load_exit_signals()


class TestRateLimitDocument:
	def test_round_trip(self, store: StateStore) -> None:
		store.save_rate_limit(RateLimitCounter(bucket_key="2026010112", count=7))
		assert store.load_rate_limit() == RateLimitCounter(bucket_key="2026010112", count=7)


class TestLocking:
	def test_second_lock_conflicts(self, tmp_path: Path) -> None:
		first = StateStore(tmp_path / ".ralph")
		second = StateStore(tmp_path / ".ralph")
		first.acquire_lock()
		try:
			with pytest.raises(SessionLockedError):
				second.acquire_lock()
		finally:
			first.release_lock()
		second.acquire_lock()
		second.release_lock()

	def test_acquire_is_reentrant_for_the_holder(self, store: StateStore) -> None:
		store.acquire_lock()
		try:
			store.acquire_lock()
		finally:
			store.release_lock()

	def test_release_without_lock_is_noop(self, store: StateStore) -> None:
		store.release_lock()


class TestWipe:
	def test_removes_directory(self, store: StateStore) -> None:
		store.create_session(Session())
		store.wipe()
		assert not store.state_dir.exists()

	def test_wipe_under_lock_keeps_lock(self, store: StateStore) -> None:
		store.create_session(Session())
		store.acquire_lock()
		try:
			store.wipe()
			assert not store.has_session()
			assert not store.logs_dir.exists()
			assert (store.state_dir / "lock").exists()
			with pytest.raises(SessionLockedError):
				StateStore(store.state_dir).acquire_lock()
		finally:
			store.release_lock()
