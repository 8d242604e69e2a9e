"""Tests for CLI argument parsing and commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ralph_loop.cli import build_parser, cmd_reset, cmd_status, main
from ralph_loop.loop_controller import LoopOutcome, LoopResult
from ralph_loop.models import PRChunk, PRChunkState, Session
from ralph_loop.state import StateStore


@pytest.fixture(autouse=True)
def _restore_logger() -> Iterator[None]:
	yield
	root = logging.getLogger("ralph_loop")
	for handler in list(root.handlers):
		root.removeHandler(handler)
		handler.close()
	root.propagate = True


@pytest.fixture()
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
	monkeypatch.chdir(tmp_path)
	for name in ("MAX_ITERATIONS", "RATE_LIMIT", "TIMEOUT_MINUTES", "MODEL", "PROMPT_FILE",
		"COST_PER_1M_INPUT", "COST_PER_1M_OUTPUT", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID"):
		monkeypatch.delenv(name, raising=False)
	(tmp_path / "PROMPT.md").write_text("prompt")
	(tmp_path / "plan.md").write_text("### T-001: a\n- [x] a\n### T-002: b\n- [ ] b\n")
	return tmp_path


class TestArgParsing:
	def test_run_flags(self) -> None:
		args = build_parser().parse_args([
			"run", "plan.md", "-m", "20", "-r", "50", "-p", "P.md", "-t", "5",
			"-M", "sonnet", "-w", "feat/x", "-v", "--fresh", "--dry-run",
		])
		assert args.command == "run"
		assert args.plan == "plan.md"
		assert args.max_iterations == 20
		assert args.rate_limit == 50
		assert args.prompt == "P.md"
		assert args.timeout == 5.0
		assert args.model == "sonnet"
		assert args.worktree == "feat/x"
		assert args.verbose is True
		assert args.fresh is True
		assert args.dry_run is True

	def test_run_defaults(self) -> None:
		args = build_parser().parse_args(["run", "plan.md"])
		assert args.max_iterations is None
		assert args.fresh is False
		assert args.state_dir is None

	def test_no_command_returns_0(self) -> None:
		assert main([]) == 0


class TestCmdRun:
	def _fake_controller(self, outcome: LoopOutcome) -> tuple[MagicMock, list]:
		created: list = []

		def make(config: object, store: object, **kwargs: object) -> MagicMock:
			controller = MagicMock()
			controller.run = AsyncMock(return_value=LoopResult(
				session_id="s1", outcome=outcome, iterations=2, stopped_reason=outcome.value,
			))
			created.append((config, store, kwargs))
			return controller

		return MagicMock(side_effect=make), created

	def test_applies_flags_and_returns_exit_code(self, workdir: Path) -> None:
		ctrl_cls, created = self._fake_controller(LoopOutcome.COMPLETED)
		with patch("ralph_loop.cli.LoopController", ctrl_cls):
			code = main(["run", "plan.md", "-m", "7", "-M", "sonnet", "-w", "feat/x"])
		assert code == 0
		config, store, kwargs = created[0]
		assert config.scheduler.max_iterations == 7
		assert config.scheduler.model == "sonnet"
		assert config.target.worktree_branch == "feat/x"
		assert config.target.plan_file == "plan.md"
		assert kwargs["notifier"] is None

	def test_rate_limited_exit_code(self, workdir: Path) -> None:
		ctrl_cls, _ = self._fake_controller(LoopOutcome.RATE_LIMITED)
		with patch("ralph_loop.cli.LoopController", ctrl_cls):
			assert main(["run", "plan.md"]) == 2

	def test_max_iterations_exit_code(self, workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
		ctrl_cls, _ = self._fake_controller(LoopOutcome.MAX_ITERATIONS)
		with patch("ralph_loop.cli.LoopController", ctrl_cls):
			assert main(["run", "plan.md", "-m", "5"]) == 1
		assert "-m 15" in capsys.readouterr().out

	def test_invalid_flags_rejected(self, workdir: Path) -> None:
		assert main(["run", "plan.md", "-m", "0"]) == 1

	def test_missing_prompt_returns_1(self, workdir: Path) -> None:
		(workdir / "PROMPT.md").unlink()
		assert main(["run", "plan.md", "--dry-run"]) == 1

	def test_fresh_wipes_state(self, workdir: Path) -> None:
		store = StateStore(workdir / ".ralph")
		store.create_session(Session(iteration=4, max_iterations=10))
		assert main(["run", "plan.md", "--fresh", "--dry-run"]) == 0
		assert store.load_session().iteration == 0

	def test_fresh_refused_while_another_loop_holds_the_lock(self, workdir: Path) -> None:
		running = StateStore(workdir / ".ralph")
		running.create_session(Session(session_id="live", iteration=4, max_iterations=10))
		running.acquire_lock()
		try:
			assert main(["run", "plan.md", "--fresh", "--dry-run"]) == 1
			session = running.load_session()
			assert session.session_id == "live"
			assert session.iteration == 4
		finally:
			running.release_lock()

	def test_resume_with_other_plan_returns_1(self, workdir: Path) -> None:
		assert main(["run", "plan.md", "--dry-run"]) == 0
		(workdir / "next.md").write_text("### T-001: a\n- [ ] a\n")
		assert main(["run", "next.md", "--dry-run"]) == 1
		assert main(["run", "next.md", "--fresh", "--dry-run"]) == 0
		assert StateStore(workdir / ".ralph").load_session().plan_file == "next.md"

	def test_fresh_releases_lock_after_run(self, workdir: Path) -> None:
		StateStore(workdir / ".ralph").create_session(Session(iteration=4))
		assert main(["run", "plan.md", "--fresh", "--dry-run"]) == 0
		other = StateStore(workdir / ".ralph")
		other.acquire_lock()
		other.release_lock()

	def test_dry_run_end_to_end(self, workdir: Path) -> None:
		assert main(["run", "plan.md", "--dry-run"]) == 0
		assert (workdir / ".ralph" / "state.json").exists()
		assert (workdir / ".ralph" / "logs" / "session.log").exists()

	def test_telegram_notifier_created_when_configured(
		self, workdir: Path, monkeypatch: pytest.MonkeyPatch,
	) -> None:
		monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "tok")
		monkeypatch.setenv("TELEGRAM_CHAT_ID", "1")
		ctrl_cls, created = self._fake_controller(LoopOutcome.COMPLETED)
		with patch("ralph_loop.cli.LoopController", ctrl_cls):
			main(["run", "plan.md"])
		assert created[0][2]["notifier"] is not None


class TestCmdStatus:
	def test_no_session(self, workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
		args = build_parser().parse_args(["status"])
		assert cmd_status(args) == 0
		assert "No active session" in capsys.readouterr().out

	def test_shows_progress_and_chunks(self, workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
		store = StateStore(workdir / ".ralph")
		store.initialize()
		chunks = PRChunkState.from_chunks([
			PRChunk(name="core", start_task="T-001", tasks=["T-001", "T-002"]),
		])
		store.create_session(
			Session(session_id="20260101_120000_42", iteration=2, plan_file="plan.md", worktree_branch="feat/x"),
			chunks,
		)
		args = build_parser().parse_args(["status"])
		assert cmd_status(args) == 0
		out = capsys.readouterr().out
		assert "20260101_120000_42" in out
		assert "Iteration:  2 / 10" in out
		assert "Worktree:   feat/x" in out
		assert "Total:      2" in out
		assert "Completed:  1" in out
		assert "50%" in out
		assert "[>] core: T-001, T-002" in out
		assert "$0.00" in out

	def test_corrupt_state(self, workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
		state_dir = workdir / ".ralph"
		state_dir.mkdir()
		(state_dir / "state.json").write_text("{broken")
		args = build_parser().parse_args(["status"])
		assert cmd_status(args) == 1
		assert "ralph reset" in capsys.readouterr().err


class TestCmdReset:
	def test_removes_state(self, workdir: Path) -> None:
		store = StateStore(workdir / ".ralph")
		store.create_session(Session())
		args = build_parser().parse_args(["reset"])
		assert cmd_reset(args) == 0
		assert not store.state_dir.exists()

	def test_nothing_to_reset(self, workdir: Path) -> None:
		assert cmd_reset(build_parser().parse_args(["reset"])) == 0

	def test_refuses_while_locked(self, workdir: Path) -> None:
		store = StateStore(workdir / ".ralph")
		store.acquire_lock()
		try:
			assert cmd_reset(build_parser().parse_args(["reset"])) == 1
			assert store.state_dir.exists()
		finally:
			store.release_lock()

	def test_custom_state_dir(self, workdir: Path) -> None:
		store = StateStore(workdir / "state")
		store.create_session(Session())
		assert main(["reset", "--state-dir", "state"]) == 0
		assert not store.state_dir.exists()
