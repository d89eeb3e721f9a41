"""Unread badge: number of conversations holding unread messages."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Callable, Optional

from dormchat.infra.store import RealtimeEvent, RemoteStore, StoreError, in_
from dormchat.obs import metrics as obs_metrics

from .conversations import MESSAGES_COLLECTION, fetch_conversations
from .observers import Listener, Signal
from .read_state import is_unread_for
from .realtime import RealtimeSubscription
from .refresh import RefreshScheduler

logger = logging.getLogger(__name__)


async def count_unread_conversations(store: RemoteStore, user_id: str) -> int:
	"""Distinct conversations with at least one message from someone else that ``user_id`` has not read."""
	conversations = await fetch_conversations(store, user_id)
	if not conversations:
		return 0
	rows = await store.query(
		MESSAGES_COLLECTION,
		[in_("conversation_id", [c.conversation_id for c in conversations])],
	)
	unread = {
		str(row["conversation_id"])
		for row in rows
		if is_unread_for(user_id, row.get("sender_id"), row.get("read_by"))
	}
	return len(unread)


class UnreadBadgeAggregator:
	"""Process-wide unread conversation count.

	The count is recomputed from scratch on every trigger. ``loaded`` turns
	true after the first successful computation for a signed-in user, and
	signing out resets both synchronously.
	"""

	def __init__(
		self,
		store: RemoteStore,
		*,
		debounce: Optional[float] = None,
		min_interval: Optional[float] = None,
	) -> None:
		self._store = store
		self._debounce = debounce
		self._min_interval = min_interval
		self.user_id: Optional[str] = None
		self.count = 0
		self.loaded = False
		self.changed: Signal[int] = Signal("unread.changed")
		self._session = 0
		self._scheduler: Optional[RefreshScheduler] = None
		self._subscription: Optional[RealtimeSubscription] = None
		self._teardown: Optional[asyncio.Task] = None

	def subscribe(self, listener: Listener) -> Callable[[], None]:
		return self.changed.connect(listener)

	async def sign_in(self, user_id: str) -> int:
		if self.user_id == user_id:
			return await self.refresh()
		if self.user_id is not None:
			self.sign_out()
		await self.wait_teardown()
		self.user_id = user_id
		self._session += 1
		self._scheduler = RefreshScheduler(
			self._scheduled_refresh,
			debounce=self._debounce,
			min_interval=self._min_interval,
			name="unread.refresh",
		)
		self._subscription = RealtimeSubscription(
			self._store,
			MESSAGES_COLLECTION,
			(),
			self._on_message_event,
			poll=self.refresh,
			name="unread.messages",
		)
		self._subscription.open()
		return await self.refresh()

	def sign_out(self) -> None:
		"""Reset to zero immediately; realtime and timers are released in the background."""
		self._session += 1
		self.user_id = None
		self.count = 0
		self.loaded = False
		obs_metrics.set_unread_conversations(0)
		scheduler, self._scheduler = self._scheduler, None
		subscription, self._subscription = self._subscription, None
		self._teardown = asyncio.get_running_loop().create_task(
			self._release(scheduler, subscription),
			name="unread:teardown",
		)

	async def _release(self, scheduler: Optional[RefreshScheduler], subscription: Optional[RealtimeSubscription]) -> None:
		if scheduler is not None:
			await scheduler.close()
		if subscription is not None:
			await subscription.close()
		await self.changed.emit(0)

	async def wait_teardown(self) -> None:
		task, self._teardown = self._teardown, None
		if task is not None:
			with suppress(asyncio.CancelledError):
				await task

	def request_refresh(self) -> None:
		if self._scheduler is not None:
			self._scheduler.request()

	async def flush(self) -> None:
		if self._scheduler is not None:
			await self._scheduler.flush()

	async def wait_ready(self) -> None:
		if self._subscription is not None:
			await self._subscription.wait_ready()

	async def refresh(self) -> int:
		user_id = self.user_id
		if user_id is None:
			return 0
		session = self._session
		count = await count_unread_conversations(self._store, user_id)
		if session != self._session:
			# Signed out (or switched user) while counting.
			return self.count
		changed = count != self.count or not self.loaded
		self.count = count
		self.loaded = True
		obs_metrics.set_unread_conversations(count)
		if changed:
			await self.changed.emit(count)
		return count

	async def _scheduled_refresh(self) -> None:
		try:
			await self.refresh()
		except StoreError as exc:
			logger.warning("unread count refresh failed: %s", exc)

	def _on_message_event(self, event: RealtimeEvent) -> None:
		self.request_refresh()

	async def close(self) -> None:
		if self.user_id is not None:
			self.sign_out()
		await self.wait_teardown()
		self.changed.clear()
