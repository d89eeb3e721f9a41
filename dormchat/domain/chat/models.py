"""Domain models for conversations and messages."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Tuple, Union

import ulid

from dormchat.settings import settings

from .read_state import decode_read_by, encode_read_by, is_unread_for

TEMP_ID_PREFIX = "temp-"


def parse_timestamp(value: Any) -> Optional[datetime]:
	if value is None or value == "":
		return None
	if isinstance(value, datetime):
		parsed = value
	else:
		try:
			parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
		except ValueError:
			return None
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def new_temp_id() -> str:
	"""Temporary id for an optimistic message: prefix, millisecond clock, random ULID."""
	return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{ulid.new()}"


@dataclass(frozen=True, slots=True)
class Participant:
	id: Optional[str]
	username: str
	avatar_url: Optional[str] = None

	@property
	def is_deleted(self) -> bool:
		return self.id is None

	@classmethod
	def deleted(cls) -> "Participant":
		return cls(id=None, username=settings.deleted_account_name, avatar_url=settings.deleted_account_avatar)

	@classmethod
	def from_profile(cls, profile: Optional[Mapping[str, Any]]) -> "Participant":
		"""Build a participant; a missing or deleted profile yields the deleted-account sentinel."""
		if not profile or not profile.get("id") or profile.get("is_deleted"):
			return cls.deleted()
		return cls(
			id=str(profile["id"]),
			username=profile.get("username") or "Unknown User",
			avatar_url=profile.get("avatar_url"),
		)


class ProductKind(str, Enum):
	SELL_ITEM = "sell_item"
	BUY_ORDER = "buy_order"


@dataclass(slots=True)
class ProductSnapshot:
	"""Denormalised copy of a listing kept on the conversation row."""

	product_id: str
	name: str
	kind: ProductKind = ProductKind.SELL_ITEM
	image: Optional[str] = None
	price: Optional[float] = None
	location: Optional[str] = None
	deleted: bool = False

	def to_columns(self) -> dict:
		return {
			"product_id": self.product_id,
			"product_name": self.name,
			"product_type": self.kind.value,
			"product_image": self.image,
			"product_price": self.price,
			"product_location": self.location,
			"product_deleted": self.deleted,
		}

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "ProductSnapshot":
		raw_kind = row.get("product_type") or ProductKind.SELL_ITEM.value
		try:
			kind = ProductKind(raw_kind)
		except ValueError:
			kind = ProductKind.SELL_ITEM
		price = row.get("product_price")
		return cls(
			product_id=str(row["product_id"]),
			name=row.get("product_name") or "",
			kind=kind,
			image=row.get("product_image"),
			price=float(price) if price is not None else None,
			location=row.get("product_location"),
			deleted=bool(row.get("product_deleted")),
		)


@dataclass(slots=True)
class ConversationRequest:
	"""Context for find-or-create: the initiator talks to ``other_user_id``.

	With a product the initiator is the buyer and ``other_user_id`` the owner.
	"""

	initiator_id: str
	other_user_id: str
	product: Optional[ProductSnapshot] = None


@dataclass(slots=True)
class LegacyConversation:
	conversation_id: str
	user1_id: Optional[str]
	user2_id: Optional[str]
	last_message: Optional[str] = None
	last_message_at: Optional[datetime] = None
	created_at: Optional[datetime] = None

	kind = "legacy"

	def participants(self) -> Tuple[Optional[str], Optional[str]]:
		return (self.user1_id, self.user2_id)

	@property
	def product(self) -> Optional[ProductSnapshot]:
		return None


@dataclass(slots=True)
class ProductConversation:
	conversation_id: str
	buyer_id: Optional[str]
	seller_id: Optional[str]
	product: ProductSnapshot
	last_message: Optional[str] = None
	last_message_at: Optional[datetime] = None
	created_at: Optional[datetime] = None

	kind = "product"

	def participants(self) -> Tuple[Optional[str], Optional[str]]:
		return (self.buyer_id, self.seller_id)


Conversation = Union[LegacyConversation, ProductConversation]


def other_participant_id(conversation: Conversation, user_id: str) -> Optional[str]:
	first, second = conversation.participants()
	if first == user_id:
		return second
	if second == user_id:
		return first
	# Own id was nulled out; the remaining side is whoever is not us.
	return first if first is not None else second


def conversation_from_row(row: Mapping[str, Any]) -> Conversation:
	"""Decide the schema variant of a stored conversation row."""
	common = {
		"conversation_id": str(row["conversation_id"]),
		"last_message": row.get("last_message"),
		"last_message_at": parse_timestamp(row.get("last_message_at")),
		"created_at": parse_timestamp(row.get("created_at")),
	}
	if row.get("product_id"):
		return ProductConversation(
			buyer_id=row.get("buyer_id") or row.get("user1_id"),
			seller_id=row.get("seller_id") or row.get("user2_id"),
			product=ProductSnapshot.from_row(row),
			**common,
		)
	return LegacyConversation(user1_id=row.get("user1_id"), user2_id=row.get("user2_id"), **common)


@dataclass(frozen=True, slots=True)
class Message:
	id: str
	conversation_id: str
	sender_id: Optional[str]
	content: str
	created_at: datetime
	read_by: frozenset[str] = field(default_factory=frozenset)
	sender: Optional[Participant] = None
	is_temporary: bool = False

	@property
	def dedupe_key(self) -> Tuple[str, str]:
		return (self.id, self.content)

	def is_unread_for(self, user_id: str) -> bool:
		return is_unread_for(user_id, self.sender_id, self.read_by)

	def is_read_by(self, user_id: Optional[str]) -> bool:
		return user_id is not None and user_id in self.read_by

	def with_readers(self, readers: frozenset[str]) -> "Message":
		if readers <= self.read_by:
			return self
		return replace(self, read_by=self.read_by | readers)

	def to_row(self) -> dict:
		return {
			"id": self.id,
			"conversation_id": self.conversation_id,
			"sender_id": self.sender_id,
			"content": self.content,
			"read_by": encode_read_by(self.read_by),
		}

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Message":
		sender_id = row.get("sender_id")
		sender_profile = row.get("sender")
		return cls(
			id=str(row["id"]),
			conversation_id=str(row["conversation_id"]),
			sender_id=str(sender_id) if sender_id is not None else None,
			content=row.get("content") or "",
			created_at=parse_timestamp(row.get("created_at")) or utcnow(),
			read_by=decode_read_by(row.get("read_by")),
			sender=Participant.from_profile(sender_profile) if "sender" in row else None,
		)


@dataclass(slots=True)
class PendingMessage:
	"""Optimistic send awaiting confirmation; never persisted remotely."""

	temp_id: str
	conversation_id: str
	sender_id: str
	content: str
	created_at: datetime
	# Confirmed ids known when the send started; none of these can confirm it.
	known_ids: frozenset[str] = field(default_factory=frozenset)

	def matches(self, message: Message) -> bool:
		return (
			message.conversation_id == self.conversation_id
			and message.content == self.content
			and message.sender_id == self.sender_id
			and message.id not in self.known_ids
		)

	def to_message(self) -> Message:
		return Message(
			id=self.temp_id,
			conversation_id=self.conversation_id,
			sender_id=self.sender_id,
			content=self.content,
			created_at=self.created_at,
			is_temporary=True,
		)
