"""Conversation list synchronisation for the signed-in user."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from dormchat.infra.store import Order, RealtimeEvent, RemoteStore, StoreError, eq, in_
from dormchat.obs import metrics as obs_metrics

from .identity import CONVERSATIONS_COLLECTION
from .models import Conversation, Message, Participant, conversation_from_row, other_participant_id, utcnow
from .observers import Signal
from .realtime import RealtimeSubscription
from .refresh import RefreshScheduler
from .schemas import ConversationSummary, ParticipantView, ProductView

logger = logging.getLogger(__name__)

MESSAGES_COLLECTION = "messages"
PROFILES_COLLECTION = "profiles"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def latest_message(messages: Iterable[Message]) -> Optional[Message]:
	ordered = sorted(messages, key=lambda m: (m.created_at, m.id))
	return ordered[-1] if ordered else None


def summarize(
	conversation: Conversation,
	messages: Sequence[Message],
	user_id: str,
	other: Participant,
) -> ConversationSummary:
	latest = latest_message(messages)
	is_mine = latest is not None and latest.sender_id == user_id
	product = conversation.product
	return ConversationSummary(
		conversation_id=conversation.conversation_id,
		kind=conversation.kind,
		other_user=ParticipantView.from_model(other),
		product=ProductView.from_model(product) if product is not None else None,
		last_message=latest.content if latest else (conversation.last_message or ""),
		last_message_at=latest.created_at if latest else (conversation.last_message_at or conversation.created_at),
		unread_count=sum(1 for message in messages if message.is_unread_for(user_id)),
		is_mine=is_mine,
		last_message_read_by_other=bool(is_mine and latest.is_read_by(other.id)),
	)


def fingerprint(summaries: Iterable[ConversationSummary]) -> str:
	digest = hashlib.sha1()
	for summary in summaries:
		digest.update(summary.fingerprint().encode("utf-8"))
		digest.update(b"\n")
	return digest.hexdigest()


def filter_conversations(summaries: Iterable[ConversationSummary], query: str) -> List[ConversationSummary]:
	"""Case-insensitive substring match on the other user's name and the product name."""
	needle = (query or "").strip().casefold()
	if not needle:
		return list(summaries)
	matched = []
	for summary in summaries:
		haystacks = [summary.other_user.username]
		if summary.product is not None:
			haystacks.append(summary.product.name)
		if any(needle in (text or "").casefold() for text in haystacks):
			matched.append(summary)
	return matched


async def fetch_conversations(store: RemoteStore, user_id: str) -> List[Conversation]:
	seen: Dict[str, Conversation] = {}
	for column in ("user1_id", "user2_id"):
		rows = await store.query(CONVERSATIONS_COLLECTION, [eq(column, user_id)])
		for row in rows:
			conversation = conversation_from_row(row)
			seen.setdefault(conversation.conversation_id, conversation)
	return list(seen.values())


async def fetch_participants(store: RemoteStore, user_ids: Iterable[Optional[str]]) -> Dict[str, Participant]:
	wanted = sorted({uid for uid in user_ids if uid})
	if not wanted:
		return {}
	rows = await store.query(PROFILES_COLLECTION, [in_("id", wanted)])
	return {str(row["id"]): Participant.from_profile(row) for row in rows if row.get("id")}


async def list_conversations(store: RemoteStore, user_id: str) -> List[ConversationSummary]:
	"""All conversations of ``user_id`` with derived read state, newest first."""
	conversations = await fetch_conversations(store, user_id)
	if not conversations:
		return []
	ids = [conversation.conversation_id for conversation in conversations]
	rows = await store.query(
		MESSAGES_COLLECTION,
		[in_("conversation_id", ids)],
		order=Order("created_at"),
	)
	grouped: Dict[str, List[Message]] = {cid: [] for cid in ids}
	for row in rows:
		message = Message.from_row(row)
		grouped.setdefault(message.conversation_id, []).append(message)

	others = {c.conversation_id: other_participant_id(c, user_id) for c in conversations}
	profiles = await fetch_participants(store, others.values())
	summaries = []
	for conversation in conversations:
		other_id = others[conversation.conversation_id]
		other = profiles.get(other_id) if other_id else None
		summaries.append(
			summarize(
				conversation,
				grouped.get(conversation.conversation_id, []),
				user_id,
				other or Participant.deleted(),
			)
		)
	summaries.sort(key=lambda s: (s.last_message_at or _EPOCH, s.conversation_id), reverse=True)
	return summaries


async def update_last_message_summary(store: RemoteStore, message: Message) -> bool:
	"""Write the denormalised last message; failures are logged, not raised."""
	try:
		await store.update(
			CONVERSATIONS_COLLECTION,
			[eq("conversation_id", message.conversation_id)],
			{
				"last_message": message.content,
				"last_message_at": message.created_at.isoformat(),
				"updated_at": utcnow().isoformat(),
			},
		)
	except StoreError:
		logger.warning("failed to update last message summary", exc_info=True)
		return False
	return True


async def flag_product_deleted(store: RemoteStore, product_id: str) -> int:
	"""Mark the product snapshot deleted on every conversation about ``product_id``."""
	rows = await store.update(
		CONVERSATIONS_COLLECTION,
		[eq("product_id", product_id)],
		{"product_deleted": True, "updated_at": utcnow().isoformat()},
	)
	return len(rows)


class ConversationListSynchronizer:
	"""Keeps the signed-in user's conversation list in step with the store."""

	def __init__(
		self,
		store: RemoteStore,
		user_id: str,
		*,
		debounce: Optional[float] = None,
		min_interval: Optional[float] = None,
	) -> None:
		self._store = store
		self.user_id = user_id
		self.changed: Signal[List[ConversationSummary]] = Signal("conversations.changed")
		self.failed: Signal[Exception] = Signal("conversations.failed")
		self._scheduler = RefreshScheduler(
			self._scheduled_refresh,
			debounce=debounce,
			min_interval=min_interval,
			name="conversations.refresh",
		)
		self._conversations: List[ConversationSummary] = []
		self._fingerprint: Optional[str] = None
		self._subscriptions: List[RealtimeSubscription] = []
		self._generation = 0
		self._closed = False
		self.fetches = 0

	@property
	def conversations(self) -> List[ConversationSummary]:
		return list(self._conversations)

	@property
	def loaded(self) -> bool:
		return self._fingerprint is not None

	def get(self, conversation_id: str) -> Optional[ConversationSummary]:
		for summary in self._conversations:
			if summary.conversation_id == conversation_id:
				return summary
		return None

	def search(self, query: str) -> List[ConversationSummary]:
		return filter_conversations(self._conversations, query)

	async def start(self) -> List[ConversationSummary]:
		"""Open realtime feeds and load the list; fetch errors propagate for a retry affordance."""
		if not self._subscriptions:
			self._subscriptions = [
				RealtimeSubscription(
					self._store,
					MESSAGES_COLLECTION,
					(),
					self._on_message_event,
					poll=self.refresh,
					name="conversations.messages",
				),
				RealtimeSubscription(
					self._store,
					CONVERSATIONS_COLLECTION,
					(),
					self._on_conversation_event,
					name="conversations.rows",
				),
			]
			for subscription in self._subscriptions:
				subscription.open()
		await self.refresh()
		return self.conversations

	async def refresh(self) -> bool:
		"""Fetch now; returns True when the list changed and listeners were notified."""
		generation = self._generation
		self.fetches += 1
		try:
			summaries = await list_conversations(self._store, self.user_id)
		except StoreError:
			obs_metrics.inc_conversation_refresh("failed")
			raise
		if generation != self._generation or self._closed:
			return False
		digest = fingerprint(summaries)
		if digest == self._fingerprint:
			obs_metrics.inc_conversation_refresh("unchanged")
			return False
		self._conversations = summaries
		self._fingerprint = digest
		obs_metrics.inc_conversation_refresh("changed")
		await self.changed.emit(self.conversations)
		return True

	async def _scheduled_refresh(self) -> None:
		try:
			await self.refresh()
		except StoreError as exc:
			logger.warning("conversation list refresh failed: %s", exc)
			await self.failed.emit(exc)

	def request_refresh(self) -> None:
		if not self._closed:
			self._scheduler.request()

	async def flush(self) -> None:
		await self._scheduler.flush()

	async def wait_ready(self) -> None:
		for subscription in self._subscriptions:
			await subscription.wait_ready()

	def _on_message_event(self, event: RealtimeEvent) -> None:
		self.request_refresh()

	def _on_conversation_event(self, event: RealtimeEvent) -> None:
		row = event.row
		if event.event_type == "insert":
			if self.user_id in (row.get("user1_id"), row.get("user2_id")):
				self.request_refresh()
			return
		if event.event_type != "update" or "product_deleted" not in row:
			return
		current = self.get(str(row.get("conversation_id")))
		if current is None or current.product is None:
			return
		if bool(row.get("product_deleted")) != current.product.deleted:
			self.request_refresh()

	async def close(self) -> None:
		self._closed = True
		self._generation += 1
		await self._scheduler.close()
		for subscription in self._subscriptions:
			await subscription.close()
		self._subscriptions = []
		self.changed.clear()
		self.failed.clear()
