"""Parse the RALPH_STATUS block out of a raw agent transcript."""

from __future__ import annotations

import re

from ralph_loop.constants import (
	COMPLETION_PATTERNS,
	STATUS_BLOCK_BEGIN,
	STATUS_BLOCK_END,
)
from ralph_loop.models import ParsedStatus, VerificationStatus, WorkStatus, WorkType

_BLOCK_RE = re.compile(
	re.escape(STATUS_BLOCK_BEGIN) + r"(.*?)" + re.escape(STATUS_BLOCK_END),
	re.DOTALL,
)


def normalize_transcript(transcript: str) -> str:
	"""Turn JSON-escaped newlines from the event stream into real ones."""
	return transcript.replace("\\r\\n", "\n").replace("\\n", "\n")


def extract_status_block(transcript: str) -> str | None:
	"""Return the body of the LAST complete status block, or None."""
	blocks = _BLOCK_RE.findall(normalize_transcript(transcript))
	if not blocks:
		return None
	return blocks[-1]


def _field(block: str, key: str) -> str | None:
	# Anchored at line start so STATUS does not match TESTS_STATUS
	match = re.search(rf"^[ \t]*{key}:[ \t]*(.*)$", block, re.MULTILINE)
	if match is None:
		return None
	value = match.group(1).replace("\r", "").strip()
	# Unescape quotes left over from the JSON stream, then drop wrapping quotes
	value = value.replace('\\"', '"').strip()
	if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
		value = value[1:-1].strip()
	return value


def count_completion_indicators(transcript: str) -> int:
	"""Count how many distinct completion phrases appear anywhere in the transcript.

	Matching is a case-insensitive substring search; repeated occurrences of
	the same phrase count once.
	"""
	lowered = transcript.lower()
	return sum(1 for pattern in COMPLETION_PATTERNS if pattern.lower() in lowered)


def parse_status_block(transcript: str) -> ParsedStatus:
	"""Parse one transcript into a ParsedStatus.

	Never raises on malformed input: a missing block yields the defaults
	with ``block_found=False``, and each missing key inside a block falls
	back to its own default independently of the others.
	"""
	indicators = count_completion_indicators(transcript)
	block = extract_status_block(transcript)
	if block is None:
		return ParsedStatus(completion_indicators=indicators)

	def get(key: str, default: str) -> str:
		value = _field(block, key)
		return value if value else default

	return ParsedStatus(
		status=WorkStatus.parse(get("STATUS", "UNKNOWN")),
		exit_signal=get("EXIT_SIGNAL", "false") == "true",
		tasks_remaining=get("TASKS_REMAINING", "unknown"),
		tasks_completed_this_loop=get("TASKS_COMPLETED_THIS_LOOP", "0"),
		files_modified=get("FILES_MODIFIED", "0"),
		tests_status=VerificationStatus.parse(get("TESTS_STATUS", "NOT_RUN")),
		work_type=WorkType.parse(get("WORK_TYPE", "UNKNOWN")),
		recommendation=get("RECOMMENDATION", ""),
		completion_indicators=indicators,
		pr_chunk_complete=get("PR_CHUNK_COMPLETE", "false"),
		block_found=True,
	)
