"""Tests for config loading, environment overrides and build_claude_cmd."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralph_loop.config import (
	DEFAULT_MODEL,
	LoopConfig,
	apply_env_overrides,
	build_claude_cmd,
	load_config,
	validate_config,
)
from ralph_loop.constants import DEFAULT_LIMITS
from ralph_loop.errors import ConfigError


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
	toml = tmp_path / "ralph.toml"
	toml.write_text("""\
[target]
plan_file = "plan.md"
prompt_file = "AGENT.md"
state_dir = ".state"

[scheduler]
max_iterations = 25
rate_limit_per_hour = 40
timeout_minutes = 5
model = "claude-sonnet-4-5"

[pricing]
input_per_million = 3
output_per_million = 15

[notifications.telegram]
bot_token = "tok"
chat_id = "42"
on_chunk_complete = false
""")
	return toml


class TestLoadConfig:
	def test_defaults_without_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.chdir(tmp_path)
		cfg = load_config(environ={})
		assert cfg.scheduler.max_iterations == DEFAULT_LIMITS["max_iterations"]
		assert cfg.scheduler.rate_limit_per_hour == 100
		assert cfg.scheduler.model == DEFAULT_MODEL
		assert cfg.target.state_dir == ".ralph"
		assert cfg.pricing.input_per_million == 15.0
		assert cfg.notifications.telegram.enabled is False

	def test_full_file(self, full_config: Path) -> None:
		cfg = load_config(full_config, environ={})
		assert cfg.target.plan_file == "plan.md"
		assert cfg.target.prompt_file == "AGENT.md"
		assert cfg.scheduler.max_iterations == 25
		assert cfg.scheduler.timeout_minutes == 5.0
		assert isinstance(cfg.scheduler.timeout_minutes, float)
		assert cfg.scheduler.timeout_seconds == 300
		assert cfg.pricing.output_per_million == 15.0
		assert cfg.notifications.telegram.enabled is True
		assert cfg.notifications.telegram.on_chunk_complete is False

	def test_picks_up_ralph_toml_in_cwd(
		self, full_config: Path, monkeypatch: pytest.MonkeyPatch,
	) -> None:
		monkeypatch.chdir(full_config.parent)
		assert load_config(environ={}).scheduler.max_iterations == 25

	def test_missing_explicit_path(self, tmp_path: Path) -> None:
		with pytest.raises(FileNotFoundError):
			load_config(tmp_path / "nope.toml", environ={})

	def test_invalid_toml(self, tmp_path: Path) -> None:
		bad = tmp_path / "ralph.toml"
		bad.write_text("[scheduler\n")
		with pytest.raises(ConfigError):
			load_config(bad, environ={})

	def test_unknown_section(self, tmp_path: Path) -> None:
		bad = tmp_path / "ralph.toml"
		bad.write_text("[bogus]\nx = 1\n")
		with pytest.raises(ConfigError):
			load_config(bad, environ={})

	def test_bad_bool(self, tmp_path: Path) -> None:
		bad = tmp_path / "ralph.toml"
		bad.write_text('[scheduler]\nskip_permissions = "yes"\n')
		with pytest.raises(ConfigError):
			load_config(bad, environ={})

	def test_unknown_key_ignored(self, tmp_path: Path) -> None:
		toml = tmp_path / "ralph.toml"
		toml.write_text("[scheduler]\nshiny = 1\n")
		cfg = load_config(toml, environ={})
		assert not hasattr(cfg.scheduler, "shiny")


class TestEnvOverrides:
	def test_overrides_file_values(self, full_config: Path) -> None:
		env = {
			"MAX_ITERATIONS": "7",
			"RATE_LIMIT": "12",
			"TIMEOUT_MINUTES": "2.5",
			"MODEL": "other-model",
			"PROMPT_FILE": "P.md",
			"COST_PER_1M_INPUT": "1.5",
			"COST_PER_1M_OUTPUT": "6",
			"TELEGRAM_CHAT_ID": "99",
		}
		cfg = load_config(full_config, environ=env)
		assert cfg.scheduler.max_iterations == 7
		assert cfg.scheduler.rate_limit_per_hour == 12
		assert cfg.scheduler.timeout_minutes == 2.5
		assert cfg.scheduler.model == "other-model"
		assert cfg.target.prompt_file == "P.md"
		assert cfg.pricing.input_per_million == 1.5
		assert cfg.pricing.output_per_million == 6.0
		assert cfg.notifications.telegram.chat_id == "99"
		assert cfg.notifications.telegram.bot_token == "tok"

	def test_empty_value_ignored(self) -> None:
		cfg = apply_env_overrides(LoopConfig(), {"MAX_ITERATIONS": ""})
		assert cfg.scheduler.max_iterations == 10

	def test_invalid_number(self) -> None:
		with pytest.raises(ConfigError):
			apply_env_overrides(LoopConfig(), {"RATE_LIMIT": "lots"})


class TestValidateConfig:
	def test_valid(self) -> None:
		cfg = LoopConfig()
		cfg.target.plan_file = "plan.md"
		assert validate_config(cfg) == []

	def test_collects_issues(self) -> None:
		cfg = LoopConfig()
		cfg.scheduler.max_iterations = 0
		cfg.scheduler.timeout_minutes = 0
		cfg.scheduler.failure_backoff = -1
		cfg.notifications.telegram.bot_token = "tok"
		issues = validate_config(cfg)
		assert "target.plan_file is required" in issues
		assert "scheduler.max_iterations must be >= 1" in issues
		assert "scheduler.timeout_minutes must be > 0" in issues
		assert "scheduler.failure_backoff must be >= 0" in issues
		assert "notifications.telegram needs both bot_token and chat_id" in issues


class TestBuildClaudeCmd:
	def test_default_cmd(self) -> None:
		cmd = build_claude_cmd(LoopConfig(), "do it")
		assert cmd == [
			"claude", "-p", "do it", "--model", DEFAULT_MODEL,
			"--dangerously-skip-permissions", "--verbose", "--output-format", "stream-json",
		]

	def test_flags_toggle(self) -> None:
		cfg = LoopConfig()
		cfg.scheduler.skip_permissions = False
		cfg.scheduler.verbose_output = False
		cfg.scheduler.claude_binary = "/opt/claude"
		cmd = build_claude_cmd(cfg, "x")
		assert cmd == ["/opt/claude", "-p", "x", "--model", DEFAULT_MODEL, "--output-format", "stream-json"]


class TestTargetPaths:
	def test_paths_resolve_against_work_dir(self, tmp_path: Path) -> None:
		cfg = LoopConfig()
		cfg.target.work_dir = str(tmp_path)
		cfg.target.plan_file = "plan.md"
		assert cfg.target.plan_path == tmp_path.resolve() / "plan.md"
		assert cfg.target.prompt_path == tmp_path.resolve() / "PROMPT.md"
		assert cfg.target.state_path == tmp_path.resolve() / ".ralph"
