"""Hour-bucketed call budget for agent invocations."""

from __future__ import annotations

import logging
from datetime import datetime

from ralph_loop.models import RateLimitCounter
from ralph_loop.state import StateStore

logger = logging.getLogger(__name__)


def hour_bucket(now: datetime) -> str:
	return now.strftime("%Y%m%d%H")


class RateLimiter:
	"""Hard per-hour cap on agent calls, reset when the wall-clock hour changes.

	No smoothing or burst allowance: the counter is keyed by the calendar
	hour and admission is denied once it reaches the ceiling.
	"""

	def __init__(self, store: StateStore, calls_per_hour: int) -> None:
		self._store = store
		self.calls_per_hour = calls_per_hour

	def try_acquire(self, now: datetime | None = None) -> bool:
		"""Admit one call if the current hour's budget allows it."""
		now = now or datetime.now()
		bucket = hour_bucket(now)
		counter = self._store.load_rate_limit()

		if counter.bucket_key != bucket:
			if counter.bucket_key:
				logger.debug("Rate limit reset for new hour")
			counter = RateLimitCounter(bucket_key=bucket, count=0)

		if counter.count >= self.calls_per_hour:
			self._store.save_rate_limit(counter)
			logger.warning(
				"Rate limit (%d/hour) reached. Reset in %d minutes.",
				self.calls_per_hour, minutes_until_reset(now),
			)
			return False

		counter.count += 1
		self._store.save_rate_limit(counter)
		logger.debug("Rate limit: %d/%d calls this hour", counter.count, self.calls_per_hour)
		return True

	def calls_this_hour(self, now: datetime | None = None) -> int:
		now = now or datetime.now()
		counter = self._store.load_rate_limit()
		if counter.bucket_key != hour_bucket(now):
			return 0
		return counter.count


def minutes_until_reset(now: datetime) -> int:
	return 60 - now.minute
