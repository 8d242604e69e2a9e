"""Bounded, resumable control loop around an autonomous coding agent."""

from ralph_loop.config import LoopConfig, load_config
from ralph_loop.exit_gate import ExitDecision, evaluate_exit
from ralph_loop.loop_controller import LoopController, LoopOutcome, LoopResult
from ralph_loop.pr_chunks import PRChunkTracker, parse_pr_chunks
from ralph_loop.rate_limiter import RateLimiter
from ralph_loop.state import StateStore
from ralph_loop.status_parser import parse_status_block

__all__ = [
	"ExitDecision",
	"LoopConfig",
	"LoopController",
	"LoopOutcome",
	"LoopResult",
	"PRChunkTracker",
	"RateLimiter",
	"StateStore",
	"evaluate_exit",
	"load_config",
	"parse_pr_chunks",
	"parse_status_block",
]
