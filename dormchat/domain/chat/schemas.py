"""Pydantic views handed to the UI layer."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .models import Message, Participant, ProductSnapshot


class ParticipantView(BaseModel):
	id: Optional[str] = None
	username: str
	avatar_url: Optional[str] = None
	is_deleted: bool = False

	@classmethod
	def from_model(cls, participant: Participant) -> "ParticipantView":
		return cls(
			id=participant.id,
			username=participant.username,
			avatar_url=participant.avatar_url,
			is_deleted=participant.is_deleted,
		)


class ProductView(BaseModel):
	product_id: str
	name: str
	kind: str
	image: Optional[str] = None
	price: Optional[float] = None
	location: Optional[str] = None
	deleted: bool = False

	@classmethod
	def from_model(cls, product: ProductSnapshot) -> "ProductView":
		return cls(
			product_id=product.product_id,
			name=product.name,
			kind=product.kind.value,
			image=product.image,
			price=product.price,
			location=product.location,
			deleted=product.deleted,
		)


class ConversationSummary(BaseModel):
	conversation_id: str
	kind: Literal["legacy", "product"]
	other_user: ParticipantView
	product: Optional[ProductView] = None
	last_message: str = ""
	last_message_at: Optional[datetime] = None
	unread_count: int = Field(default=0, ge=0)
	is_mine: bool = False
	last_message_read_by_other: bool = False

	@property
	def can_send(self) -> bool:
		return not self.other_user.is_deleted

	def fingerprint(self) -> str:
		stamp = self.last_message_at.isoformat() if self.last_message_at else ""
		deleted = int(bool(self.product and self.product.deleted))
		return "|".join(
			(
				self.conversation_id,
				stamp,
				str(self.unread_count),
				str(int(self.last_message_read_by_other)),
				self.last_message,
				str(self.other_user.id or ""),
				str(deleted),
			)
		)


class MessageView(BaseModel):
	id: str
	conversation_id: str
	sender_id: Optional[str] = None
	content: str
	created_at: datetime
	read_by: List[str] = Field(default_factory=list)
	is_temporary: bool = False
	is_mine: bool = False
	is_read_by_other: bool = False

	@classmethod
	def from_model(cls, message: Message, *, user_id: str, other_user_id: Optional[str]) -> "MessageView":
		return cls(
			id=message.id,
			conversation_id=message.conversation_id,
			sender_id=message.sender_id,
			content=message.content,
			created_at=message.created_at,
			read_by=sorted(message.read_by),
			is_temporary=message.is_temporary,
			is_mine=message.sender_id == user_id,
			is_read_by_other=message.sender_id == user_id and message.is_read_by(other_user_id),
		)
