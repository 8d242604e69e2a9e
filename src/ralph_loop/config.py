"""Configuration: dataclass tree loaded from ralph.toml plus environment overrides."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph_loop.constants import DEFAULT_LIMITS
from ralph_loop.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "ralph.toml"
DEFAULT_MODEL = "claude-opus-4-5-20251101"


@dataclass
class TargetConfig:
	"""What the loop works on."""

	plan_file: str = ""
	prompt_file: str = "PROMPT.md"
	work_dir: str = "."
	state_dir: str = ".ralph"
	worktree_branch: str | None = None

	@property
	def resolved_work_dir(self) -> Path:
		return Path(self.work_dir).expanduser().resolve()

	@property
	def plan_path(self) -> Path:
		return self.resolved_work_dir / self.plan_file

	@property
	def prompt_path(self) -> Path:
		return self.resolved_work_dir / self.prompt_file

	@property
	def state_path(self) -> Path:
		return self.resolved_work_dir / self.state_dir


@dataclass
class SchedulerConfig:
	"""Loop pacing, limits and agent invocation options."""

	max_iterations: int = DEFAULT_LIMITS["max_iterations"]
	rate_limit_per_hour: int = DEFAULT_LIMITS["rate_limit_per_hour"]
	timeout_minutes: float = DEFAULT_LIMITS["timeout_minutes"]
	max_consecutive_failures: int = DEFAULT_LIMITS["max_consecutive_failures"]
	failure_backoff: float = DEFAULT_LIMITS["failure_backoff"]
	rate_limit_wait: float = DEFAULT_LIMITS["rate_limit_wait"]
	max_rate_limit_waits: int = 0  # 0 = wait indefinitely
	blocked_wait: float = DEFAULT_LIMITS["blocked_wait"]
	inter_iteration_delay: float = DEFAULT_LIMITS["inter_iteration_delay"]
	model: str = DEFAULT_MODEL
	skip_permissions: bool = True
	verbose_output: bool = True
	output_format: str = "stream-json"
	claude_binary: str = "claude"

	@property
	def timeout_seconds(self) -> float:
		return self.timeout_minutes * 60


@dataclass
class PricingConfig:
	"""Per-million-token rates in USD (Opus 4.5 list price by default)."""

	input_per_million: float = 15.00
	output_per_million: float = 75.00


@dataclass
class TelegramConfig:
	bot_token: str = ""
	chat_id: str = ""
	on_chunk_complete: bool = True
	on_loop_end: bool = True

	@property
	def enabled(self) -> bool:
		return bool(self.bot_token and self.chat_id)


@dataclass
class NotificationConfig:
	telegram: TelegramConfig = field(default_factory=TelegramConfig)


@dataclass
class LoopConfig:
	"""Top-level configuration."""

	target: TargetConfig = field(default_factory=TargetConfig)
	scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
	pricing: PricingConfig = field(default_factory=PricingConfig)
	notifications: NotificationConfig = field(default_factory=NotificationConfig)
	verbose: bool = False
	dry_run: bool = False


def _apply_section(obj: Any, data: dict[str, Any], section: str) -> None:
	for key, value in data.items():
		if isinstance(value, dict):
			child = getattr(obj, key, None)
			if child is None or not hasattr(child, "__dataclass_fields__"):
				raise ConfigError(f"Unknown config section [{section}.{key}]")
			_apply_section(child, value, f"{section}.{key}")
			continue
		if not hasattr(obj, key):
			logger.warning("Ignoring unknown config key %s.%s", section, key)
			continue
		current = getattr(obj, key)
		if isinstance(current, bool) and not isinstance(value, bool):
			raise ConfigError(f"{section}.{key} must be a boolean")
		if isinstance(current, float) and isinstance(value, int) and not isinstance(value, bool):
			value = float(value)
		setattr(obj, key, value)


# env var -> (section attr, field, type)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
	"MAX_ITERATIONS": ("scheduler", "max_iterations", int),
	"RATE_LIMIT": ("scheduler", "rate_limit_per_hour", int),
	"TIMEOUT_MINUTES": ("scheduler", "timeout_minutes", float),
	"MODEL": ("scheduler", "model", str),
	"PROMPT_FILE": ("target", "prompt_file", str),
	"COST_PER_1M_INPUT": ("pricing", "input_per_million", float),
	"COST_PER_1M_OUTPUT": ("pricing", "output_per_million", float),
}


def apply_env_overrides(cfg: LoopConfig, environ: dict[str, str] | None = None) -> LoopConfig:
	"""Overlay supported environment variables onto ``cfg``."""
	env = os.environ if environ is None else environ
	for name, (section, attr, kind) in _ENV_OVERRIDES.items():
		raw = env.get(name)
		if raw is None or raw == "":
			continue
		try:
			value = kind(raw)
		except ValueError as exc:
			raise ConfigError(f"Environment variable {name}={raw!r} is not a valid {kind.__name__}") from exc
		setattr(getattr(cfg, section), attr, value)

	telegram = cfg.notifications.telegram
	telegram.bot_token = env.get("TELEGRAM_BOT_TOKEN", telegram.bot_token)
	telegram.chat_id = env.get("TELEGRAM_CHAT_ID", telegram.chat_id)
	return cfg


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> LoopConfig:
	"""Load configuration from TOML (optional) and the environment.

	An explicit ``path`` must exist; with no path, ``ralph.toml`` in the
	current directory is used when present.
	"""
	cfg = LoopConfig()
	if path is not None:
		config_path = Path(path)
		if not config_path.exists():
			raise FileNotFoundError(f"Config file not found: {config_path}")
	else:
		config_path = Path(DEFAULT_CONFIG_FILE)

	if config_path.exists():
		try:
			with open(config_path, "rb") as f:
				data = tomllib.load(f)
		except tomllib.TOMLDecodeError as exc:
			raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
		for section, values in data.items():
			if not isinstance(values, dict) or not hasattr(cfg, section):
				raise ConfigError(f"Unknown config section [{section}]")
			_apply_section(getattr(cfg, section), values, section)

	return apply_env_overrides(cfg, environ)


def validate_config(cfg: LoopConfig) -> list[str]:
	"""Return a list of human-readable problems; empty means valid."""
	issues: list[str] = []
	sched = cfg.scheduler
	if not cfg.target.plan_file:
		issues.append("target.plan_file is required")
	if sched.max_iterations < 1:
		issues.append("scheduler.max_iterations must be >= 1")
	if sched.rate_limit_per_hour < 1:
		issues.append("scheduler.rate_limit_per_hour must be >= 1")
	if sched.timeout_minutes <= 0:
		issues.append("scheduler.timeout_minutes must be > 0")
	if sched.max_consecutive_failures < 1:
		issues.append("scheduler.max_consecutive_failures must be >= 1")
	if sched.max_rate_limit_waits < 0:
		issues.append("scheduler.max_rate_limit_waits must be >= 0")
	for name in ("failure_backoff", "rate_limit_wait", "blocked_wait", "inter_iteration_delay"):
		if getattr(sched, name) < 0:
			issues.append(f"scheduler.{name} must be >= 0")
	if cfg.pricing.input_per_million < 0 or cfg.pricing.output_per_million < 0:
		issues.append("pricing rates must be >= 0")
	telegram = cfg.notifications.telegram
	if bool(telegram.bot_token) != bool(telegram.chat_id):
		issues.append("notifications.telegram needs both bot_token and chat_id")
	return issues


def build_claude_cmd(cfg: LoopConfig, prompt: str) -> list[str]:
	"""Build the argv for one agent call."""
	sched = cfg.scheduler
	cmd = [sched.claude_binary, "-p", prompt, "--model", sched.model]
	if sched.skip_permissions:
		cmd.append("--dangerously-skip-permissions")
	if sched.verbose_output:
		cmd.append("--verbose")
	cmd.extend(["--output-format", sched.output_format])
	return cmd
