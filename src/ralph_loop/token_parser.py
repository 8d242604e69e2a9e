"""Parse the agent's stream-json transcript for token usage and readable text."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from ralph_loop.constants import BYTES_PER_TOKEN

logger = logging.getLogger(__name__)

_PER_MILLION = Decimal(1_000_000)


@dataclass
class TokenUsage:
	"""Token counts for one agent call."""

	input_tokens: int = 0
	output_tokens: int = 0
	estimated: bool = False

	@property
	def total_tokens(self) -> int:
		return self.input_tokens + self.output_tokens


@dataclass
class StreamJsonResult:
	"""Parsed result from the stream-json output format."""

	usage: TokenUsage | None = None
	text_content: str = ""
	result_text: str = ""
	events: int = 0
	text_blocks: list[str] = field(default_factory=list)


def _int(value: object) -> int:
	try:
		return int(value)  # type: ignore[arg-type]
	except (TypeError, ValueError):
		return 0


def _usage_from(raw: dict[str, object]) -> TokenUsage:
	input_tokens = _int(raw.get("input_tokens")) or _int(raw.get("cache_read_input_tokens"))
	return TokenUsage(input_tokens=input_tokens, output_tokens=_int(raw.get("output_tokens")))


def parse_stream_json(output: str) -> StreamJsonResult:
	"""Parse NDJSON stream-json output from the claude CLI.

	Each line is a JSON object. Text blocks of ``assistant`` messages are
	concatenated for the readable log. Token usage is taken from the LAST
	event that carries a ``usage`` object; the final ``result`` event holds
	the session totals, so it wins when present. Non-JSON lines are skipped.

	Args:
		output: Raw stdout from ``claude -p --output-format stream-json``.

	Returns:
		StreamJsonResult; ``usage`` is None when no event carried usage.
	"""
	result = StreamJsonResult()
	if not output or not output.strip():
		return result

	for line in output.splitlines():
		line = line.strip()
		if not line:
			continue
		try:
			event = json.loads(line)
		except (json.JSONDecodeError, ValueError):
			continue
		if not isinstance(event, dict):
			continue
		result.events += 1

		event_type = event.get("type", "")
		msg = event.get("message")
		msg = msg if isinstance(msg, dict) else {}

		usage = event.get("usage")
		if not isinstance(usage, dict):
			usage = msg.get("usage")
		if isinstance(usage, dict):
			result.usage = _usage_from(usage)

		if event_type == "assistant":
			for block in msg.get("content", []) or []:
				if isinstance(block, dict) and block.get("type") == "text":
					result.text_blocks.append(str(block.get("text", "")))
		elif event_type == "result":
			result.result_text = str(event.get("result", "") or "")

	result.text_content = "\n".join(result.text_blocks)
	return result


def estimate_usage(transcript: str, prompt: str) -> TokenUsage:
	"""Approximate token counts from byte lengths. Lower confidence."""
	return TokenUsage(
		input_tokens=len(prompt.encode("utf-8")) // BYTES_PER_TOKEN,
		output_tokens=len(transcript.encode("utf-8")) // BYTES_PER_TOKEN,
		estimated=True,
	)


def extract_token_usage(transcript: str, prompt: str) -> TokenUsage:
	"""Token usage for one call, falling back to a byte-length estimate.

	The estimate is used when the transcript carries no usage, or usage
	with both counts zero, so no iteration is recorded without token data.
	"""
	parsed = parse_stream_json(transcript)
	if parsed.usage is not None and parsed.usage.total_tokens > 0:
		logger.debug(
			"Token usage from JSON: %d in, %d out",
			parsed.usage.input_tokens, parsed.usage.output_tokens,
		)
		return parsed.usage

	usage = estimate_usage(transcript, prompt)
	logger.debug(
		"Token usage estimated (no JSON data): ~%d in, ~%d out",
		usage.input_tokens, usage.output_tokens,
	)
	return usage


def compute_token_cost(usage: TokenUsage, input_per_million: float, output_per_million: float) -> Decimal:
	"""Compute USD cost from token usage and per-million-token rates.

	Args:
		usage: Token counts from a call.
		input_per_million: USD per million input tokens.
		output_per_million: USD per million output tokens.

	Returns:
		Unrounded cost as a Decimal.
	"""
	cost = Decimal(usage.input_tokens) * Decimal(str(input_per_million)) / _PER_MILLION
	cost += Decimal(usage.output_tokens) * Decimal(str(output_per_million)) / _PER_MILLION
	return cost
