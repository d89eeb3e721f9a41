"""Domain-level exceptions for chat sync."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from dormchat.infra.store import StoreError, StoreUnavailable


class BlockDirection(str, Enum):
	BLOCKED_BY_ME = "blocked_by_me"
	BLOCKED_ME = "blocked_me"
	UNSPECIFIED = "unspecified"


class ChatError(Exception):
	"""Base class for chat sync errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class Blocked(ChatError):
	reason = "blocked"

	def __init__(self, direction: BlockDirection = BlockDirection.UNSPECIFIED) -> None:
		super().__init__(f"blocked:{direction.value}")
		self.reason = "blocked"
		self.direction = direction


class SendRejected(ChatError):
	"""The send was refused locally before any remote call."""

	reason = "rejected"


class SendFailed(ChatError):
	reason = "send_failed"

	def __init__(self, cause: Optional[BaseException] = None) -> None:
		super().__init__("send_failed")
		self.cause = cause

	@property
	def retryable(self) -> bool:
		return isinstance(self.cause, StoreUnavailable)


class CannotMessageSelf(ChatError):
	reason = "self_conversation"


class NotAuthenticated(ChatError):
	reason = "not_authenticated"


_BLOCKED_COPY = {
	BlockDirection.BLOCKED_BY_ME: "You have blocked this user. Unblock them to send messages.",
	BlockDirection.BLOCKED_ME: "This user has blocked you. You can't send them messages.",
	BlockDirection.UNSPECIFIED: "You can't message this user.",
}

_REJECTED_COPY = {
	"empty": "Type a message first.",
	"in_flight": "Your previous message is still sending.",
	"deleted_account": "This account has been deleted.",
	"closed": "This conversation is no longer open.",
}


def user_message(exc: BaseException) -> str:
	"""Convert an error into copy for the UI layer."""
	if isinstance(exc, Blocked):
		return _BLOCKED_COPY[exc.direction]
	if isinstance(exc, SendRejected):
		return _REJECTED_COPY.get(exc.reason, "Message could not be sent.")
	if isinstance(exc, SendFailed):
		if exc.retryable:
			return "Check your connection and try again."
		return "Message failed to send. Try again."
	if isinstance(exc, CannotMessageSelf):
		return "You can't start a conversation with yourself."
	if isinstance(exc, NotAuthenticated):
		return "Please sign in again."
	if isinstance(exc, StoreUnavailable):
		return "Check your connection and try again."
	if isinstance(exc, StoreError):
		return "Something went wrong loading your messages. Pull to retry."
	return "Something went wrong. Try again."
