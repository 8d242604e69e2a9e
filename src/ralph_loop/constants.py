"""Markers, patterns and default limits shared across the loop."""

from __future__ import annotations

# -- Transcript markers --

COMPLETION_TAG = "<promise>COMPLETE</promise>"
STATUS_BLOCK_BEGIN = "---RALPH_STATUS---"
STATUS_BLOCK_END = "---END_RALPH_STATUS---"

# Phrases counted (once each) as weak evidence of completion
COMPLETION_PATTERNS: tuple[str, ...] = (
	COMPLETION_TAG,
	"EXIT_SIGNAL: true",
)

# -- Exit gate --

EXIT_SIGNAL_WINDOW = 5
MIN_COMPLETION_INDICATORS = 2
CONSECUTIVE_EXIT_SIGNALS = 2

# -- Plan document --

TASK_STATUS_LOOKAHEAD = 5
DEFAULT_CHUNK_NAME = "default"

# -- Token estimation --

BYTES_PER_TOKEN = 4

# -- Loop events --

EVENT_LOOP_STARTED = "loop_started"
EVENT_ITERATION_STARTED = "iteration_started"
EVENT_ITERATION_FINISHED = "iteration_finished"
EVENT_RATE_LIMITED = "rate_limited"
EVENT_CHUNK_COMPLETED = "chunk_completed"
EVENT_LOOP_FINISHED = "loop_finished"

# -- Process exit codes --

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_RATE_LIMITED = 2

DEFAULT_LIMITS: dict[str, int] = {
	"max_iterations": 10,
	"rate_limit_per_hour": 100,
	"timeout_minutes": 15,
	"max_consecutive_failures": 3,
	"failure_backoff": 30,
	"rate_limit_wait": 60,
	"blocked_wait": 10,
	"inter_iteration_delay": 2,
}
