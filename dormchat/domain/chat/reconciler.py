"""Per-conversation message stream: fetch, optimistic send, realtime merge, read receipts."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import replace
from enum import Enum
from typing import Dict, Iterable, List, Optional

from dormchat.infra.store import SENDER_PROFILE, Order, PermissionDenied, RealtimeEvent, RemoteStore, StoreError, eq
from dormchat.obs import metrics as obs_metrics
from dormchat.obs.logging import bind_context, reset_context
from dormchat.settings import settings

from .blocking import classify_rejection, ensure_can_interact
from .conversations import MESSAGES_COLLECTION, update_last_message_summary
from .exceptions import Blocked, SendFailed, SendRejected
from .identity import ConversationResolver
from .models import (
	ConversationRequest,
	Message,
	Participant,
	PendingMessage,
	ProductSnapshot,
	new_temp_id,
	utcnow,
)
from .observers import Signal
from .read_state import decode_read_by
from .realtime import RealtimeSubscription
from .schemas import MessageView

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
	UNINITIALIZED = "uninitialized"
	LOADING = "loading"
	READY = "ready"
	DISPOSED = "disposed"


def _order_key(message: Message):
	return (message.created_at, message.id)


class MessageStreamReconciler:
	"""Message state for one open conversation.

	Confirmed messages are kept by id and optimistic sends are kept apart as
	pending entries; :attr:`messages` merges the two for rendering. A pending
	entry is dropped as soon as a confirmed message with the same conversation,
	sender and content arrives, whichever of the insert result, the realtime
	echo or a refetch gets there first.

	Every continuation after an await checks the instance generation so a
	disposed reconciler never mutates state or notifies listeners.
	"""

	def __init__(
		self,
		store: RemoteStore,
		user_id: str,
		other_user: Participant,
		*,
		conversation_id: Optional[str] = None,
		product: Optional[ProductSnapshot] = None,
		resolver: Optional[ConversationResolver] = None,
	) -> None:
		self._store = store
		self.user_id = str(user_id)
		self.other_user = other_user
		self._conversation_id = conversation_id
		self._product = product
		self._resolver = resolver or ConversationResolver(store)
		self.state = ReconcilerState.UNINITIALIZED
		self.changed: Signal[List[Message]] = Signal("messages.changed")
		self.read_marked: Signal[str] = Signal("messages.read_marked")
		self.message_sent: Signal[Message] = Signal("messages.sent")
		self.conversation_changed: Signal[str] = Signal("messages.conversation_changed")
		self._confirmed: Dict[str, Message] = {}
		self._pending: List[PendingMessage] = []
		self._generation = 0
		self._sending = False
		self._focused = True
		self._read_lock = asyncio.Lock()
		self._subscription: Optional[RealtimeSubscription] = None
		self._receipt_task: Optional[asyncio.Task] = None

	# -- views ---------------------------------------------------------

	@property
	def conversation_id(self) -> Optional[str]:
		return self._conversation_id

	@property
	def sending(self) -> bool:
		return self._sending

	@property
	def subscription(self) -> Optional[RealtimeSubscription]:
		return self._subscription

	@property
	def messages(self) -> List[Message]:
		merged = list(self._confirmed.values())
		merged.extend(pending.to_message() for pending in self._pending)
		merged.sort(key=_order_key)
		return merged

	@property
	def unread_count(self) -> int:
		return sum(1 for message in self._confirmed.values() if message.is_unread_for(self.user_id))

	def views(self) -> List[MessageView]:
		return [
			MessageView.from_model(message, user_id=self.user_id, other_user_id=self.other_user.id)
			for message in self.messages
		]

	# -- lifecycle -----------------------------------------------------

	def _active(self, generation: int) -> bool:
		return generation == self._generation and self.state != ReconcilerState.DISPOSED

	async def initialize(self, conversation_id: Optional[str] = None) -> List[Message]:
		"""Load the full history, or an empty ready state when no conversation exists yet."""
		if self.state == ReconcilerState.DISPOSED:
			return []
		if conversation_id is not None:
			self._conversation_id = conversation_id
		self._generation += 1
		generation = self._generation
		self.state = ReconcilerState.LOADING
		cid = self._conversation_id
		if cid is None:
			self._confirmed = {}
			self.state = ReconcilerState.READY
			await self._emit_changed()
			return self.messages

		token = bind_context(user_id=self.user_id, conversation_id=cid)
		try:
			try:
				fetched = await self._fetch_history(cid)
			except StoreError:
				if self._active(generation):
					self.state = ReconcilerState.UNINITIALIZED
				raise
			if not self._active(generation):
				return []
			self._confirmed = {}
			self._merge(fetched)
			self.state = ReconcilerState.READY
			await self._open_subscription(cid)
			await self._emit_changed()
			if self._focused:
				await self.mark_read()
			return self.messages
		finally:
			reset_context(token)

	async def dispose(self) -> None:
		if self.state == ReconcilerState.DISPOSED:
			return
		self._generation += 1
		self.state = ReconcilerState.DISPOSED
		task, self._receipt_task = self._receipt_task, None
		if task is not None and not task.done():
			task.cancel()
			with suppress(asyncio.CancelledError):
				await task
		await self._close_subscription()
		self._pending.clear()
		for signal in (self.changed, self.read_marked, self.message_sent, self.conversation_changed):
			signal.clear()

	async def on_focus(self) -> List[Message]:
		"""Screen regained focus: reconcile with a fetch, then send read receipts."""
		self._focused = True
		if self.state != ReconcilerState.READY or self._conversation_id is None:
			return self.messages
		await self.refetch()
		await self.mark_read()
		return self.messages

	def on_blur(self) -> None:
		self._focused = False

	async def flush(self) -> None:
		"""Wait for a scheduled read receipt to complete."""
		task = self._receipt_task
		if task is not None:
			with suppress(asyncio.CancelledError):
				await asyncio.shield(task)

	# -- fetching and merging ------------------------------------------

	async def _fetch_history(self, conversation_id: str) -> List[Message]:
		rows = await self._store.query(
			MESSAGES_COLLECTION,
			[eq("conversation_id", conversation_id)],
			order=Order("created_at"),
			include=SENDER_PROFILE,
		)
		return [Message.from_row(row) for row in rows]

	async def refetch(self) -> List[Message]:
		"""Merge a fresh copy of the history into local state without discarding pending sends."""
		cid = self._conversation_id
		if cid is None or self.state != ReconcilerState.READY:
			return self.messages
		generation = self._generation
		fetched = await self._fetch_history(cid)
		if not self._active(generation) or cid != self._conversation_id:
			return []
		self._merge(fetched)
		await self._emit_changed()
		return self.messages

	def _merge(self, incoming: Iterable[Message]) -> None:
		dropped = 0
		for message in incoming:
			existing = self._confirmed.get(message.id)
			if existing is not None and existing.content == message.content:
				dropped += 1
				# read_by only grows; never let a stale copy resurrect unread state.
				message = message.with_readers(existing.read_by)
				if message.sender is None and existing.sender is not None:
					message = replace(message, sender=existing.sender)
			self._confirmed[message.id] = message
			for pending in self._pending:
				if pending.matches(message):
					self._pending.remove(pending)
					break
		if dropped:
			obs_metrics.inc_duplicates_dropped(dropped)

	def _drop_pending(self, pending: PendingMessage) -> None:
		if pending in self._pending:
			self._pending.remove(pending)

	async def _emit_changed(self) -> None:
		await self.changed.emit(self.messages)

	# -- sending -------------------------------------------------------

	async def send(self, text: str) -> Message:
		"""Send ``text``; raises ``SendRejected``, ``Blocked`` or ``SendFailed``."""
		content = (text or "").strip()
		if self.state == ReconcilerState.DISPOSED:
			raise SendRejected("closed")
		if not content:
			obs_metrics.inc_chat_send("rejected")
			raise SendRejected("empty")
		if self._sending:
			obs_metrics.inc_chat_send("rejected")
			raise SendRejected("in_flight")
		if self.other_user.is_deleted:
			obs_metrics.inc_chat_send("rejected")
			raise SendRejected("deleted_account")

		self._sending = True
		generation = self._generation
		try:
			try:
				if self._conversation_id is None:
					cid = await self._ensure_conversation(generation)
				else:
					cid = self._conversation_id
					await ensure_can_interact(self._store, self.user_id, self.other_user.id)
			except Blocked:
				obs_metrics.inc_chat_send("blocked")
				raise
			except StoreError as exc:
				obs_metrics.inc_chat_send("failed")
				raise SendFailed(exc) from exc

			pending = PendingMessage(
				temp_id=new_temp_id(),
				conversation_id=cid,
				sender_id=self.user_id,
				content=content,
				created_at=utcnow(),
				known_ids=frozenset(self._confirmed),
			)
			self._pending.append(pending)
			await self._emit_changed()

			try:
				row = await self._store.insert(
					MESSAGES_COLLECTION,
					{"conversation_id": cid, "sender_id": self.user_id, "content": content, "read_by": []},
				)
			except StoreError as exc:
				self._drop_pending(pending)
				if self._active(generation):
					await self._emit_changed()
				if isinstance(exc, PermissionDenied):
					blocked = await classify_rejection(self._store, self.user_id, self.other_user.id)
					if blocked is not None:
						obs_metrics.inc_chat_send("blocked")
						raise blocked from exc
				obs_metrics.inc_chat_send("failed")
				logger.warning("message send failed: %s", exc, extra={"conversation_id": cid})
				raise SendFailed(exc) from exc

			message = Message.from_row(row)
			if self._active(generation):
				self._merge([message])
				self._drop_pending(pending)
				await self._emit_changed()
			await update_last_message_summary(self._store, message)
			obs_metrics.inc_chat_send("ok")
			await self.message_sent.emit(message)
			return message
		finally:
			self._sending = False

	async def _ensure_conversation(self, generation: int) -> str:
		if self._conversation_id is not None:
			return self._conversation_id
		conversation = await self._resolver.find_or_create(
			ConversationRequest(
				initiator_id=self.user_id,
				other_user_id=str(self.other_user.id),
				product=self._product,
			)
		)
		if not self._active(generation):
			raise SendRejected("closed")
		cid = conversation.conversation_id
		# The conversation may already exist with history from the other side.
		try:
			history = await self._fetch_history(cid)
		except StoreError as exc:
			logger.warning("history load failed: %s", exc, extra={"conversation_id": cid})
			history = []
		if not self._active(generation):
			raise SendRejected("closed")
		self._conversation_id = cid
		self._merge(history)
		await self._open_subscription(cid)
		await self.conversation_changed.emit(cid)
		if history:
			await self._emit_changed()
			if self._focused:
				await self.mark_read()
		return cid

	# -- read receipts -------------------------------------------------

	async def mark_read(self) -> int:
		"""Mark every unread message from the other side read in one batched write.

		Returns the number of messages marked. Write failures are logged and
		swallowed so message display is never blocked by a receipt.
		"""
		async with self._read_lock:
			cid = self._conversation_id
			if cid is None or self.state != ReconcilerState.READY:
				return 0
			unread = [message for message in self._confirmed.values() if message.is_unread_for(self.user_id)]
			if not unread:
				return 0
			generation = self._generation
			reader = frozenset({self.user_id})
			rows = [message.with_readers(reader).to_row() for message in unread]
			try:
				await self._store.upsert(MESSAGES_COLLECTION, rows)
			except StoreError as exc:
				obs_metrics.inc_chat_read_failure()
				logger.warning("read receipt update failed: %s", exc, extra={"conversation_id": cid, "count": len(rows)})
				return 0
			obs_metrics.inc_chat_read(len(rows))
			if not self._active(generation):
				return len(rows)
			for message in unread:
				current = self._confirmed.get(message.id)
				if current is not None:
					self._confirmed[message.id] = current.with_readers(reader)
		await self._emit_changed()
		await self.read_marked.emit(cid)
		return len(unread)

	def _schedule_read_receipt(self) -> None:
		if self._receipt_task is not None and not self._receipt_task.done():
			return
		self._receipt_task = asyncio.get_running_loop().create_task(self._delayed_read_receipt(), name="messages:read-receipt")

	async def _delayed_read_receipt(self) -> None:
		delay = settings.chat_read_receipt_delay_seconds
		if delay > 0:
			await asyncio.sleep(delay)
		if self._focused and self.state == ReconcilerState.READY:
			await self.mark_read()

	# -- realtime ------------------------------------------------------

	async def _open_subscription(self, conversation_id: str) -> None:
		await self._close_subscription()
		subscription = RealtimeSubscription(
			self._store,
			MESSAGES_COLLECTION,
			[eq("conversation_id", conversation_id)],
			self.handle_event,
			poll=self.refetch,
			name=f"messages:{conversation_id}",
		)
		self._subscription = subscription
		subscription.open()

	async def _close_subscription(self) -> None:
		subscription, self._subscription = self._subscription, None
		if subscription is not None:
			await subscription.close()

	async def handle_event(self, event: RealtimeEvent) -> None:
		row = event.row
		cid = self._conversation_id
		if cid is None or str(row.get("conversation_id")) != cid or self.state != ReconcilerState.READY:
			return
		message_id = row.get("id")
		if message_id is None:
			return
		message_id = str(message_id)
		if event.event_type == "update":
			if self._patch_in_place(message_id, row):
				await self._emit_changed()
			return
		if event.event_type != "insert":
			return

		generation = self._generation
		# The payload lacks sender display info; read the full row.
		try:
			rows = await self._store.query(
				MESSAGES_COLLECTION,
				[eq("id", message_id)],
				include=SENDER_PROFILE,
				limit=1,
			)
		except StoreError as exc:
			logger.warning("failed to load realtime message %s: %s", message_id, exc)
			return
		if not rows or not self._active(generation) or cid != self._conversation_id:
			return
		message = Message.from_row(rows[0])
		self._merge([message])
		await self._emit_changed()
		if self._focused and message.is_unread_for(self.user_id):
			self._schedule_read_receipt()

	def _patch_in_place(self, message_id: str, row: dict) -> bool:
		existing = self._confirmed.get(message_id)
		if existing is None:
			return False
		patched = existing.with_readers(decode_read_by(row.get("read_by")))
		content = row.get("content")
		if content is not None and content != patched.content:
			patched = replace(patched, content=content)
		if patched == existing:
			return False
		self._confirmed[message_id] = patched
		return True
