"""Coalescing scheduler for remote refreshes."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Awaitable, Callable, Optional

from dormchat.settings import settings

logger = logging.getLogger(__name__)


class RefreshScheduler:
	"""Turn bursts of refresh requests into few remote fetches.

	The first request opens a debounce window and every request inside it
	shares one run. Runs start at least ``min_interval`` apart. A request made
	while a run is in flight is queued (at most one) and re-issued afterwards.
	"""

	def __init__(
		self,
		refresh: Callable[[], Awaitable[object]],
		*,
		debounce: Optional[float] = None,
		min_interval: Optional[float] = None,
		name: str = "refresh",
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._refresh = refresh
		self._debounce = settings.chat_refresh_debounce_seconds if debounce is None else debounce
		self._min_interval = settings.chat_refresh_min_interval_seconds if min_interval is None else min_interval
		self._name = name
		self._clock = clock
		self._timer: Optional[asyncio.Task] = None
		self._running: Optional[asyncio.Task] = None
		self._pending = False
		self._last_started: Optional[float] = None
		self._closed = False
		self.runs = 0

	@property
	def busy(self) -> bool:
		return self._timer is not None or self._running is not None

	def request(self) -> None:
		if self._closed:
			return
		if self._running is not None:
			self._pending = True
			return
		if self._timer is not None:
			return
		self._timer = asyncio.get_running_loop().create_task(self._wait_and_run(self._delay()), name=f"{self._name}:timer")

	def _delay(self) -> float:
		delay = max(0.0, self._debounce)
		if self._last_started is not None:
			delay = max(delay, self._last_started + self._min_interval - self._clock())
		return delay

	async def _wait_and_run(self, delay: float) -> None:
		try:
			if delay > 0:
				await asyncio.sleep(delay)
		finally:
			self._timer = None
		if self._closed:
			return
		self._running = asyncio.current_task()
		self._last_started = self._clock()
		self.runs += 1
		try:
			await self._refresh()
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("%s failed", self._name)
		finally:
			self._running = None
		if self._pending and not self._closed:
			self._pending = False
			self.request()

	async def flush(self) -> None:
		"""Wait until no run is scheduled, in flight or queued."""
		while True:
			task = self._timer or self._running
			if task is None:
				return
			with suppress(asyncio.CancelledError):
				await asyncio.shield(task)

	async def close(self) -> None:
		self._closed = True
		self._pending = False
		for task in (self._timer, self._running):
			if task is not None and task is not asyncio.current_task():
				task.cancel()
		for task in (self._timer, self._running):
			if task is not None and task is not asyncio.current_task():
				with suppress(asyncio.CancelledError):
					await task
		self._timer = None
		self._running = None
