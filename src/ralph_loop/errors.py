"""Exception types raised by the loop controller."""

from __future__ import annotations


class RalphError(Exception):
	"""Base class for controller errors."""


class ConfigError(RalphError):
	"""Invalid or unreadable configuration."""


class MissingInputError(RalphError):
	"""A required input (prompt file, plan file) is absent at startup."""


class StateCorruptionError(RalphError):
	"""A state document exists but cannot be read or parsed."""


class SessionLockedError(RalphError):
	"""Another loop instance holds the state directory lock."""
