"""Exit decision for one iteration -- completion tag, then dual-condition gate."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ralph_loop.constants import (
	COMPLETION_TAG,
	CONSECUTIVE_EXIT_SIGNALS,
	MIN_COMPLETION_INDICATORS,
)
from ralph_loop.models import ExitSignalRecord, ParsedStatus, WorkStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExitDecision:
	should_exit: bool
	reason: str = ""


def has_completion_tag(transcript: str) -> bool:
	return COMPLETION_TAG in transcript


def consecutive_exit_signals(window: Sequence[ExitSignalRecord]) -> bool:
	"""True when the newest entries of the window all report exit_signal "true"."""
	recent = list(window)[-CONSECUTIVE_EXIT_SIGNALS:]
	if len(recent) < CONSECUTIVE_EXIT_SIGNALS:
		return False
	return all(r.exit_signal == "true" for r in recent)


def evaluate_exit(
	transcript: str,
	status: ParsedStatus,
	window: Sequence[ExitSignalRecord],
) -> ExitDecision:
	"""Decide whether the loop should terminate successfully.

	1. The completion tag anywhere in the raw transcript exits immediately,
	   regardless of the parsed status.
	2. Otherwise the agent's explicit EXIT_SIGNAL must be true AND at least
	   one corroborating condition must hold: STATUS is COMPLETE, no tasks
	   remain, two or more completion indicators matched, or the last two
	   recorded exit signals were both true.

	``window`` is the exit-signal history including the current iteration.
	"""
	if has_completion_tag(transcript):
		logger.info("Exit condition met: %s found", COMPLETION_TAG)
		return ExitDecision(True, "completion_tag")

	if not status.exit_signal:
		logger.debug("Exit check: EXIT_SIGNAL is not true, continuing")
		return ExitDecision(False)

	if status.status is WorkStatus.COMPLETE:
		logger.info("Exit condition met: STATUS=COMPLETE with EXIT_SIGNAL=true")
		return ExitDecision(True, "status_complete")

	if status.tasks_remaining == "0":
		logger.info("Exit condition met: TASKS_REMAINING=0 with EXIT_SIGNAL=true")
		return ExitDecision(True, "no_tasks_remaining")

	if status.completion_indicators >= MIN_COMPLETION_INDICATORS:
		logger.info(
			"Exit condition met: %d completion indicators with EXIT_SIGNAL=true",
			status.completion_indicators,
		)
		return ExitDecision(True, "completion_indicators")

	if consecutive_exit_signals(window):
		logger.info("Exit condition met: %d consecutive EXIT_SIGNAL=true", CONSECUTIVE_EXIT_SIGNALS)
		return ExitDecision(True, "consecutive_exit_signals")

	logger.warning(
		"EXIT_SIGNAL=true but no secondary condition met (status=%s, remaining=%s, indicators=%d)",
		status.status.value, status.tasks_remaining, status.completion_indicators,
	)
	return ExitDecision(False)
