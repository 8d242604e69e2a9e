"""Token and cost bookkeeping with an append-only per-call history."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from ralph_loop.config import PricingConfig
from ralph_loop.models import IterationRecord, Metrics, _now_iso
from ralph_loop.state import StateStore
from ralph_loop.token_parser import TokenUsage, compute_token_cost

logger = logging.getLogger(__name__)

_COST_QUANTUM = Decimal("0.000001")
_DISPLAY_QUANTUM = Decimal("0.01")


def format_cost(cost: str | Decimal) -> str:
	"""Render a stored cost for display, rounded to cents."""
	return f"${Decimal(cost).quantize(_DISPLAY_QUANTUM, rounding=ROUND_HALF_UP)}"


class MetricsAccumulator:
	"""Appends one IterationRecord per agent call attempt and keeps totals.

	Totals are strictly additive; only an operator-initiated state wipe
	resets them. The running cost is carried as a Decimal serialized at
	micro-dollar precision so repeated addition does not drift.
	"""

	def __init__(self, store: StateStore, pricing: PricingConfig) -> None:
		self._store = store
		self._pricing = pricing

	def record(
		self,
		iteration: int,
		usage: TokenUsage,
		duration_seconds: float,
		success: bool,
	) -> IterationRecord:
		cost = compute_token_cost(
			usage, self._pricing.input_per_million, self._pricing.output_per_million,
		)
		record_cost = cost.quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP)
		record = IterationRecord(
			iteration=iteration,
			timestamp=_now_iso(),
			input_tokens=usage.input_tokens,
			output_tokens=usage.output_tokens,
			cost_usd=float(record_cost),
			duration_seconds=round(duration_seconds, 3),
			success=success,
			estimated=usage.estimated,
		)

		def _apply(m: Metrics) -> None:
			m.total_input_tokens += record.input_tokens
			m.total_output_tokens += record.output_tokens
			m.total_tokens += record.input_tokens + record.output_tokens
			total = Decimal(m.estimated_cost_usd) + record_cost
			m.estimated_cost_usd = str(total.quantize(_COST_QUANTUM))
			m.total_duration_seconds = round(m.total_duration_seconds + record.duration_seconds, 3)
			if success:
				m.iterations_completed += 1
			else:
				m.iterations_failed += 1
			m.history.append(record)

		self._store.update_metrics(_apply)
		logger.debug(
			"Tokens: +%d in, +%d out | Cost: +$%s%s",
			record.input_tokens, record.output_tokens, record.cost_usd,
			" (estimated)" if record.estimated else "",
		)
		return record

	def running_cost(self) -> str:
		return format_cost(self._store.load_metrics().estimated_cost_usd)
