"""Conversation identity: deterministic ids and race-safe find-or-create."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

from dormchat.infra.store import ConflictError, RemoteStore, SchemaMismatchError, eq
from dormchat.obs import metrics as obs_metrics

from .blocking import ensure_can_interact
from .exceptions import CannotMessageSelf
from .models import Conversation, ConversationRequest, conversation_from_row, utcnow

logger = logging.getLogger(__name__)

CONVERSATIONS_COLLECTION = "conversations"
PRODUCT_ID_PREFIX = "product_"


def resolve_legacy_id(user_a: str, user_b: str) -> str:
	"""Same id whichever participant starts the conversation."""
	return "_".join(sorted((str(user_a), str(user_b))))


def resolve_product_centric_id(product_id: str, buyer_id: str, seller_id: str) -> str:
	"""Buyer/seller order is meaningful; this is not commutative."""
	return f"{PRODUCT_ID_PREFIX}{product_id}_{buyer_id}_{seller_id}"


class SchemaVariant(str, Enum):
	UNKNOWN = "unknown"
	PRODUCT_CENTRIC = "product_centric"
	LEGACY = "legacy"


class SchemaCache:
	"""Conversation schema variant detected for this deployment, kept per session."""

	def __init__(self, variant: SchemaVariant = SchemaVariant.UNKNOWN) -> None:
		self.variant = variant

	@property
	def supports_product_centric(self) -> bool:
		return self.variant != SchemaVariant.LEGACY

	def mark(self, variant: SchemaVariant) -> None:
		if self.variant != variant:
			logger.info("conversation schema detected as %s", variant.value)
		self.variant = variant


class ConversationResolver:
	def __init__(self, store: RemoteStore, *, schema: Optional[SchemaCache] = None) -> None:
		self._store = store
		self._schema = schema or SchemaCache()

	@property
	def schema(self) -> SchemaCache:
		return self._schema

	async def fetch(self, conversation_id: str) -> Optional[Conversation]:
		rows = await self._store.query(
			CONVERSATIONS_COLLECTION,
			[eq("conversation_id", conversation_id)],
			limit=1,
		)
		if not rows:
			return None
		return conversation_from_row(rows[0])

	async def find_or_create(self, request: ConversationRequest) -> Conversation:
		initiator = str(request.initiator_id)
		other = str(request.other_user_id)
		if initiator == other:
			raise CannotMessageSelf()
		await ensure_can_interact(self._store, initiator, other)

		if request.product is not None and self._schema.supports_product_centric:
			product = request.product
			conversation_id = resolve_product_centric_id(product.product_id, initiator, other)
			row = self._base_row(conversation_id, initiator, other)
			row.update({"buyer_id": initiator, "seller_id": other})
			row.update(product.to_columns())
			try:
				conversation = await self._find_or_insert(conversation_id, row)
			except SchemaMismatchError:
				# TODO: drop once every deployment has run the product-conversation migration
				logger.warning(
					"product-centric conversation columns missing, falling back to legacy shape",
					extra={"product_id": product.product_id},
				)
				obs_metrics.inc_schema_fallback()
				self._schema.mark(SchemaVariant.LEGACY)
			else:
				self._schema.mark(SchemaVariant.PRODUCT_CENTRIC)
				return conversation

		conversation_id = resolve_legacy_id(initiator, other)
		return await self._find_or_insert(conversation_id, self._base_row(conversation_id, initiator, other))

	@staticmethod
	def _base_row(conversation_id: str, initiator: str, other: str) -> Dict[str, Any]:
		now = utcnow().isoformat()
		return {
			"conversation_id": conversation_id,
			"user1_id": initiator,
			"user2_id": other,
			"created_at": now,
			"updated_at": now,
		}

	async def _find_or_insert(self, conversation_id: str, row: Dict[str, Any]) -> Conversation:
		existing = await self.fetch(conversation_id)
		if existing is not None:
			return existing
		try:
			created = await self._store.insert(CONVERSATIONS_COLLECTION, row)
		except ConflictError:
			# Lost a creation race; the other caller's row wins.
			obs_metrics.inc_create_conflict()
			winner = await self.fetch(conversation_id)
			if winner is None:
				raise
			return winner
		return conversation_from_row(created)
