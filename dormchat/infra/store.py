"""Remote store contract used by the chat sync core.

The hosted backend owns persistence, auth and realtime delivery. The core only
needs row queries with a small filter vocabulary, inserts that report unique
violations distinctly, batched updates and a realtime event stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional, Protocol, Sequence, Union

FilterOp = Literal["eq", "neq", "contains", "not_contains", "in"]
EventType = Literal["insert", "update", "delete"]

Row = dict[str, Any]


@dataclass(frozen=True, slots=True)
class Filter:
	column: str
	op: FilterOp
	value: Any

	def matches(self, row: Mapping[str, Any]) -> bool:
		current = row.get(self.column)
		if self.op == "eq":
			return current == self.value
		if self.op == "neq":
			return current != self.value
		if self.op == "in":
			return current in tuple(self.value)
		members = current if isinstance(current, (list, tuple, set, frozenset)) else ()
		if self.op == "contains":
			return self.value in members
		return self.value not in members


def eq(column: str, value: Any) -> Filter:
	return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
	return Filter(column, "neq", value)


def contains(column: str, value: Any) -> Filter:
	return Filter(column, "contains", value)


def not_contains(column: str, value: Any) -> Filter:
	return Filter(column, "not_contains", value)


def in_(column: str, values: Sequence[Any]) -> Filter:
	return Filter(column, "in", tuple(values))


@dataclass(frozen=True, slots=True)
class Order:
	column: str
	descending: bool = False


@dataclass(frozen=True, slots=True)
class Include:
	"""Relational include: attach the related row under ``alias``."""

	alias: str
	collection: str
	foreign_key: str
	columns: tuple[str, ...] = ("id",)


SENDER_PROFILE = Include(
	alias="sender",
	collection="profiles",
	foreign_key="sender_id",
	columns=("id", "username", "avatar_url", "is_deleted"),
)


@dataclass(frozen=True, slots=True)
class RealtimeEvent:
	event_type: EventType
	collection: str
	row: Row
	old: Row = field(default_factory=dict)


EventCallback = Callable[[RealtimeEvent], Union[Awaitable[None], None]]


class SubscriptionHandle(Protocol):
	collection: str


class RemoteStore(Protocol):
	async def query(
		self,
		collection: str,
		filters: Sequence[Filter] = (),
		*,
		order: Optional[Order] = None,
		include: Optional[Include] = None,
		limit: Optional[int] = None,
	) -> list[Row]:
		...

	async def insert(self, collection: str, row: Mapping[str, Any]) -> Row:
		...

	async def update(self, collection: str, filters: Sequence[Filter], patch: Mapping[str, Any]) -> list[Row]:
		...

	async def upsert(self, collection: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: str = "id") -> None:
		...

	async def subscribe(
		self,
		collection: str,
		filters: Sequence[Filter],
		on_event: EventCallback,
	) -> SubscriptionHandle:
		...

	async def unsubscribe(self, handle: SubscriptionHandle) -> None:
		...


class StoreError(Exception):
	"""Base class for failures reported by the remote store."""

	code: str = "unknown"

	def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
		super().__init__(message or self.code)
		if code:
			self.code = code


class ConflictError(StoreError):
	code = "23505"


class SchemaMismatchError(StoreError):
	"""The deployment is missing a column the request referenced."""

	code = "42703"


class PermissionDenied(StoreError):
	code = "42501"


class StoreUnavailable(StoreError):
	"""Transport-level failure; the request may be retried by the user."""

	code = "unavailable"


class SubscriptionError(StoreError):
	code = "subscription_failed"
