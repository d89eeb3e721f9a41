"""Client facade wiring the chat components for one signed-in user."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from dormchat import obs
from dormchat.infra.store import RemoteStore
from dormchat.infra.supabase_store import SupabaseStore
from dormchat.obs.logging import bind_context, reset_context

from .conversations import ConversationListSynchronizer, list_conversations
from .exceptions import NotAuthenticated
from .identity import ConversationResolver, SchemaCache
from .models import Conversation, ConversationRequest, Participant, ProductSnapshot
from .observers import Listener
from .reconciler import MessageStreamReconciler
from .schemas import ConversationSummary
from .unread import UnreadBadgeAggregator

logger = logging.getLogger(__name__)


class ChatClient:
	def __init__(self, store: RemoteStore, *, schema: Optional[SchemaCache] = None) -> None:
		self.store = store
		self.schema = schema or SchemaCache()
		self.resolver = ConversationResolver(store, schema=self.schema)
		self.unread = UnreadBadgeAggregator(store)
		self.conversations: Optional[ConversationListSynchronizer] = None
		self.user_id: Optional[str] = None
		self._active: Optional[MessageStreamReconciler] = None
		self._context_tokens: dict = {}

	@property
	def active_conversation(self) -> Optional[MessageStreamReconciler]:
		return self._active

	def _require_user(self) -> str:
		if self.user_id is None:
			raise NotAuthenticated()
		return self.user_id

	async def sign_in(self, user_id: str) -> None:
		if self.user_id is not None and self.user_id != user_id:
			await self.sign_out()
		self.user_id = user_id
		reset_context(self._context_tokens)
		self._context_tokens = bind_context(user_id=user_id)
		if self.conversations is None:
			self.conversations = ConversationListSynchronizer(self.store, user_id)
		await self.unread.sign_in(user_id)
		logger.info("chat session started")

	async def sign_out(self) -> None:
		# Badge first: it must read zero before any teardown awaits.
		self.unread.sign_out()
		await self._dispose_active()
		if self.conversations is not None:
			await self.conversations.close()
			self.conversations = None
		self.user_id = None
		await self.unread.wait_teardown()
		tokens, self._context_tokens = self._context_tokens, {}
		reset_context(tokens)

	async def list_conversations(self) -> List[ConversationSummary]:
		return await list_conversations(self.store, self._require_user())

	async def watch_conversations(self) -> ConversationListSynchronizer:
		"""Start the live conversation list; fetch errors propagate for a retry affordance."""
		self._require_user()
		assert self.conversations is not None
		await self.conversations.start()
		return self.conversations

	def search_conversations(self, query: str) -> List[ConversationSummary]:
		if self.conversations is None:
			return []
		return self.conversations.search(query)

	async def find_or_create_conversation(
		self,
		other_user_id: str,
		*,
		product: Optional[ProductSnapshot] = None,
	) -> Conversation:
		request = ConversationRequest(
			initiator_id=self._require_user(),
			other_user_id=other_user_id,
			product=product,
		)
		return await self.resolver.find_or_create(request)

	async def open_conversation(
		self,
		conversation_id: Optional[str],
		other_user: Participant,
		*,
		product: Optional[ProductSnapshot] = None,
	) -> MessageStreamReconciler:
		"""Open a conversation screen; the previously open one is disposed first."""
		user_id = self._require_user()
		await self._dispose_active()
		reconciler = MessageStreamReconciler(
			self.store,
			user_id,
			other_user,
			conversation_id=conversation_id,
			product=product,
			resolver=self.resolver,
		)
		reconciler.read_marked.connect(self._on_activity)
		reconciler.message_sent.connect(self._on_activity)
		reconciler.conversation_changed.connect(self._on_activity)
		self._active = reconciler
		await reconciler.initialize()
		return reconciler

	async def open_summary(self, summary: ConversationSummary) -> MessageStreamReconciler:
		other = summary.other_user
		participant = Participant(id=other.id, username=other.username, avatar_url=other.avatar_url)
		return await self.open_conversation(summary.conversation_id, participant)

	async def close_conversation(self) -> None:
		await self._dispose_active()

	async def _dispose_active(self) -> None:
		reconciler, self._active = self._active, None
		if reconciler is not None:
			await reconciler.dispose()

	def _on_activity(self, _value: object) -> None:
		if self.conversations is not None:
			self.conversations.request_refresh()
		self.unread.request_refresh()

	def get_unread_conversation_count(self) -> int:
		return self.unread.count

	def subscribe_unread(self, listener: Listener) -> Callable[[], None]:
		return self.unread.subscribe(listener)

	async def close(self) -> None:
		await self.sign_out()
		await self.unread.close()


async def connect(url: Optional[str] = None, key: Optional[str] = None) -> ChatClient:
	"""Build a client over the hosted backend using settings for anything not given."""
	obs.init()
	store = await SupabaseStore.connect(url, key)
	return ChatClient(store)
