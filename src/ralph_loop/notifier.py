"""Telegram notifications for loop milestones.

Messages go through an async httpx client. A background sender groups
messages that arrive within a short window of each other into one post;
``close()`` drains whatever is still pending before the loop exits.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
BATCH_WINDOW = 5.0
HTTP_TIMEOUT = 10.0
TELEGRAM_MAX_LEN = 4096
SEPARATOR = "\n---\n"


def format_loop_start(session_id: str, plan_file: str, max_iterations: int) -> str:
	return (
		f"*Ralph loop started*\n"
		f"Session: {session_id}\n"
		f"Plan: {plan_file}\n"
		f"Max iterations: {max_iterations}"
	)


def format_chunk_complete(
	chunk_name: str,
	tasks: list[str],
	iteration: int,
	next_chunk: str | None,
) -> str:
	lines = [
		f"*PR chunk complete:* {chunk_name}",
		f"Tasks: {', '.join(tasks)}",
		f"Iteration: {iteration}",
		"Ready for PR review",
		f"Next chunk: {next_chunk}" if next_chunk else "All PR chunks complete",
	]
	return "\n".join(lines)


def format_loop_end(
	outcome: str,
	iterations: int,
	total_tokens: int,
	cost: str,
	stopped_reason: str,
) -> str:
	return (
		f"*Ralph loop {outcome.upper()}*\n"
		f"Iterations: {iterations}\n"
		f"Tokens: {total_tokens}, Cost: {cost}\n"
		f"Reason: {stopped_reason}"
	)


class TelegramNotifier:
	"""Operator notifications via the Telegram Bot API.

	Delivery failures are logged and dropped; they never reach the loop.
	"""

	def __init__(
		self,
		bot_token: str,
		chat_id: str,
		batch_window: float = BATCH_WINDOW,
		client: httpx.AsyncClient | None = None,
	) -> None:
		self._url = f"{API_BASE}/bot{bot_token}/sendMessage"
		self._chat_id = chat_id
		self._batch_window = batch_window
		self._client = client
		self._owns_client = client is None
		# None is the shutdown sentinel
		self._pending: asyncio.Queue[str | None] = asyncio.Queue()
		self._sender: asyncio.Task[None] | None = None

	async def send(self, message: str) -> None:
		"""Queue a message; the sender posts it with its neighbours."""
		if self._sender is None or self._sender.done():
			self._sender = asyncio.create_task(self._run_sender())
		await self._pending.put(message)

	async def _run_sender(self) -> None:
		loop = asyncio.get_running_loop()
		while True:
			first = await self._pending.get()
			if first is None:
				return
			batch = [first]
			stopping = False
			deadline = loop.time() + self._batch_window
			while True:
				remaining = deadline - loop.time()
				if remaining <= 0:
					break
				try:
					item = await asyncio.wait_for(self._pending.get(), remaining)
				except asyncio.TimeoutError:
					break
				if item is None:
					stopping = True
					break
				batch.append(item)
			await self._post(batch)
			if stopping:
				return

	async def _post(self, messages: list[str]) -> None:
		text = SEPARATOR.join(messages)[:TELEGRAM_MAX_LEN]
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=HTTP_TIMEOUT)
		try:
			response = await self._client.post(self._url, json={
				"chat_id": self._chat_id,
				"text": text,
				"parse_mode": "Markdown",
				"disable_web_page_preview": True,
			})
			response.raise_for_status()
		except httpx.HTTPError as exc:
			logger.warning("Telegram send failed: %s", exc)

	async def close(self) -> None:
		"""Deliver anything still queued, then release the HTTP client."""
		if self._sender is not None and not self._sender.done():
			await self._pending.put(None)
			await self._sender
		self._sender = None
		if self._client is not None and self._owns_client:
			await self._client.aclose()
			self._client = None

	async def send_loop_start(self, session_id: str, plan_file: str, max_iterations: int) -> None:
		await self.send(format_loop_start(session_id, plan_file, max_iterations))

	async def send_chunk_complete(
		self,
		chunk_name: str,
		tasks: list[str],
		iteration: int,
		next_chunk: str | None,
	) -> None:
		await self.send(format_chunk_complete(chunk_name, tasks, iteration, next_chunk))

	async def send_loop_end(
		self,
		outcome: str,
		iterations: int,
		total_tokens: int,
		cost: str,
		stopped_reason: str,
	) -> None:
		await self.send(format_loop_end(outcome, iterations, total_tokens, cost, stopped_reason))
