"""Supervised realtime subscription with bounded retries and a degraded mode."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import suppress
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

from dormchat.infra.store import EventCallback, Filter, RealtimeEvent, RemoteStore, SubscriptionHandle
from dormchat.obs import metrics as obs_metrics
from dormchat.settings import settings

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
	IDLE = "idle"
	CONNECTING = "connecting"
	LIVE = "live"
	DEGRADED = "degraded"
	CLOSED = "closed"


class RealtimeSubscription:
	"""One realtime subscription for one owner.

	Connecting runs in the background so a failing subscription never blocks
	fetches or sends. Failures are retried ``max_retries`` times with a fixed
	delay, then the subscription is left degraded. In degraded mode ``poll``
	runs on an interval when the polling fallback is enabled. Events arriving
	after ``close`` are dropped.
	"""

	def __init__(
		self,
		store: RemoteStore,
		collection: str,
		filters: Sequence[Filter],
		on_event: EventCallback,
		*,
		poll: Optional[Callable[[], Awaitable[object]]] = None,
		max_retries: Optional[int] = None,
		retry_delay: Optional[float] = None,
		name: str = "",
	) -> None:
		self._store = store
		self.collection = collection
		self._filters = tuple(filters)
		self._on_event = on_event
		self._poll = poll
		self._max_retries = settings.chat_subscription_max_retries if max_retries is None else max(0, max_retries)
		self._retry_delay = settings.chat_subscription_retry_delay_seconds if retry_delay is None else retry_delay
		self.name = name or collection
		self.state = SubscriptionState.IDLE
		self.attempts = 0
		self._handle: Optional[SubscriptionHandle] = None
		self._connect_task: Optional[asyncio.Task] = None
		self._poll_task: Optional[asyncio.Task] = None

	@property
	def live(self) -> bool:
		return self.state == SubscriptionState.LIVE

	def open(self) -> None:
		if self.state != SubscriptionState.IDLE:
			return
		self.state = SubscriptionState.CONNECTING
		self._connect_task = asyncio.get_running_loop().create_task(self._connect(), name=f"realtime:{self.name}")

	async def wait_ready(self) -> SubscriptionState:
		"""Wait for the connect loop to settle (live, degraded or closed)."""
		if self._connect_task is not None:
			with suppress(asyncio.CancelledError):
				await asyncio.shield(self._connect_task)
		return self.state

	async def _dispatch(self, event: RealtimeEvent) -> None:
		if self.state == SubscriptionState.CLOSED:
			return
		obs_metrics.inc_realtime_event(event.collection, event.event_type)
		result = self._on_event(event)
		if inspect.isawaitable(result):
			await result

	async def _connect(self) -> None:
		while True:
			self.attempts += 1
			try:
				handle = await self._store.subscribe(self.collection, self._filters, self._dispatch)
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				obs_metrics.inc_subscription_failure(self.collection)
				retries_used = self.attempts - 1
				if retries_used >= self._max_retries:
					logger.error(
						"realtime subscription %s failed after %d attempts: %s",
						self.name,
						self.attempts,
						exc,
					)
					self._enter_degraded()
					return
				logger.warning("realtime subscription %s failed (attempt %d): %s", self.name, self.attempts, exc)
				await asyncio.sleep(self._retry_delay)
				continue
			if self.state == SubscriptionState.CLOSED:
				await self._release(handle)
				return
			self._handle = handle
			self.state = SubscriptionState.LIVE
			return

	def _enter_degraded(self) -> None:
		self.state = SubscriptionState.DEGRADED
		obs_metrics.inc_subscription_degraded(self.collection)
		if self._poll is None or not settings.chat_polling_fallback_enabled:
			return
		logger.info("realtime subscription %s degraded, polling every %.1fs", self.name, settings.chat_polling_interval_seconds)
		self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(), name=f"poll:{self.name}")

	async def _poll_loop(self) -> None:
		interval = max(0.01, float(settings.chat_polling_interval_seconds))
		assert self._poll is not None
		while self.state == SubscriptionState.DEGRADED:
			await asyncio.sleep(interval)
			if self.state != SubscriptionState.DEGRADED:
				return
			try:
				await self._poll()
			except asyncio.CancelledError:
				raise
			except Exception:
				logger.warning("polling fallback for %s failed", self.name, exc_info=True)

	async def _release(self, handle: SubscriptionHandle) -> None:
		try:
			await self._store.unsubscribe(handle)
		except Exception:
			logger.warning("failed to close realtime subscription %s", self.name, exc_info=True)

	async def close(self) -> None:
		if self.state == SubscriptionState.CLOSED:
			return
		self.state = SubscriptionState.CLOSED
		for task in (self._connect_task, self._poll_task):
			if task is not None and not task.done():
				task.cancel()
				with suppress(asyncio.CancelledError):
					await task
		self._connect_task = None
		self._poll_task = None
		handle, self._handle = self._handle, None
		if handle is not None:
			await self._release(handle)
