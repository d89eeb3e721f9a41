"""Remote store adapter over the hosted backend (PostgREST + realtime)."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import httpx
import ulid
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from dormchat.infra.store import (
	ConflictError,
	EventCallback,
	Filter,
	Include,
	Order,
	PermissionDenied,
	RealtimeEvent,
	Row,
	SchemaMismatchError,
	StoreError,
	StoreUnavailable,
	SubscriptionError,
)
from dormchat.settings import settings

logger = logging.getLogger(__name__)

# PostgREST reports a missing column either from Postgres (42703) or from its
# own schema cache (PGRST204).
_SCHEMA_CODES = {"42703", "PGRST204"}
_EVENT_TYPES = {"INSERT": "insert", "UPDATE": "update", "DELETE": "delete"}


def translate_error(exc: Exception) -> StoreError:
	"""Map client exceptions onto the store error taxonomy."""
	if isinstance(exc, StoreError):
		return exc
	if isinstance(exc, APIError):
		code = str(exc.code or "")
		message = exc.message or str(exc)
		if code == "23505":
			return ConflictError(message, code=code)
		if code in _SCHEMA_CODES or "does not exist" in message:
			return SchemaMismatchError(message, code=code or None)
		if code == "42501":
			return PermissionDenied(message, code=code)
		return StoreError(message, code=code or None)
	if isinstance(exc, (httpx.HTTPError, OSError, asyncio.TimeoutError)):
		return StoreUnavailable(str(exc) or exc.__class__.__name__)
	return StoreError(str(exc))


def _select_expression(include: Optional[Include]) -> str:
	if include is None:
		return "*"
	columns = ", ".join(include.columns)
	return f"*, {include.alias}:{include.collection}!{include.foreign_key}({columns})"


def _apply_filters(builder, filters: Sequence[Filter]):
	for flt in filters:
		if flt.op == "eq":
			builder = builder.eq(flt.column, flt.value)
		elif flt.op == "neq":
			builder = builder.neq(flt.column, flt.value)
		elif flt.op == "in":
			builder = builder.in_(flt.column, list(flt.value))
		elif flt.op == "contains":
			builder = builder.contains(flt.column, [flt.value])
		elif flt.op == "not_contains":
			builder = builder.not_.contains(flt.column, [flt.value])
		else:  # pragma: no cover - Literal guards the vocabulary
			raise ValueError(f"unsupported filter op: {flt.op}")
	return builder


def _realtime_filter(filters: Sequence[Filter]) -> Optional[str]:
	if not filters:
		return None
	if len(filters) > 1 or filters[0].op != "eq":
		raise ValueError("realtime subscriptions accept a single equality filter")
	flt = filters[0]
	return f"{flt.column}=eq.{flt.value}"


def _parse_change(collection: str, payload: Mapping[str, Any]) -> Optional[RealtimeEvent]:
	data = payload.get("data", payload)
	raw_type = str(data.get("type") or data.get("eventType") or "").upper()
	event_type = _EVENT_TYPES.get(raw_type)
	if event_type is None:
		return None
	row = data.get("record") or data.get("new") or {}
	old = data.get("old_record") or data.get("old") or {}
	return RealtimeEvent(event_type, collection, dict(row), dict(old))  # type: ignore[arg-type]


@dataclass(slots=True)
class ChannelHandle:
	collection: str
	channel: Any


class SupabaseStore:
	"""RemoteStore backed by the supabase async client."""

	def __init__(self, client: AsyncClient) -> None:
		self._client = client
		self._dispatch_tasks: set[asyncio.Future] = set()

	@classmethod
	async def connect(cls, url: Optional[str] = None, key: Optional[str] = None) -> "SupabaseStore":
		supabase_url = url or settings.supabase_url
		supabase_key = key or settings.supabase_key
		if not supabase_url or not supabase_key:
			raise StoreError("supabase url and key must be configured", code="config")
		client = await acreate_client(supabase_url, supabase_key)
		return cls(client)

	async def query(
		self,
		collection: str,
		filters: Sequence[Filter] = (),
		*,
		order: Optional[Order] = None,
		include: Optional[Include] = None,
		limit: Optional[int] = None,
	) -> list[Row]:
		builder = self._client.table(collection).select(_select_expression(include))
		builder = _apply_filters(builder, filters)
		if order is not None:
			builder = builder.order(order.column, desc=order.descending)
		if limit is not None:
			builder = builder.limit(limit)
		try:
			response = await builder.execute()
		except Exception as exc:
			raise translate_error(exc) from exc
		return list(response.data or [])

	async def insert(self, collection: str, row: Mapping[str, Any]) -> Row:
		try:
			response = await self._client.table(collection).insert(dict(row)).execute()
		except Exception as exc:
			raise translate_error(exc) from exc
		if not response.data:
			raise StoreError(f"insert into {collection} returned no row")
		return dict(response.data[0])

	async def update(self, collection: str, filters: Sequence[Filter], patch: Mapping[str, Any]) -> list[Row]:
		builder = _apply_filters(self._client.table(collection).update(dict(patch)), filters)
		try:
			response = await builder.execute()
		except Exception as exc:
			raise translate_error(exc) from exc
		return list(response.data or [])

	async def upsert(self, collection: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: str = "id") -> None:
		if not rows:
			return
		try:
			await self._client.table(collection).upsert([dict(row) for row in rows], on_conflict=on_conflict).execute()
		except Exception as exc:
			raise translate_error(exc) from exc

	async def subscribe(self, collection: str, filters: Sequence[Filter], on_event: EventCallback) -> ChannelHandle:
		loop = asyncio.get_running_loop()
		joined: asyncio.Future = loop.create_future()

		def _on_change(payload: Mapping[str, Any]) -> None:
			event = _parse_change(collection, payload)
			if event is None:
				return
			result = on_event(event)
			if inspect.isawaitable(result):
				self._track(asyncio.ensure_future(result))

		def _on_status(status, err=None) -> None:
			value = str(getattr(status, "value", status)).upper()
			if joined.done():
				if value in ("CHANNEL_ERROR", "TIMED_OUT"):
					logger.warning("realtime channel for %s reported %s", collection, value)
				return
			if value == "SUBSCRIBED":
				joined.set_result(True)
			elif value in ("CHANNEL_ERROR", "TIMED_OUT", "CLOSED"):
				joined.set_exception(SubscriptionError(f"{collection}: {value} {err or ''}".strip()))

		channel = self._client.channel(f"{collection}-{ulid.new()}")
		pg_filter = _realtime_filter(filters)
		for event_name in ("INSERT", "UPDATE"):
			channel.on_postgres_changes(
				event_name,
				callback=_on_change,
				table=collection,
				schema="public",
				filter=pg_filter,
			)
		try:
			await channel.subscribe(_on_status)
			await asyncio.wait_for(joined, timeout=settings.realtime_join_timeout_seconds)
		except asyncio.CancelledError:
			await self._remove_quietly(channel)
			raise
		except Exception as exc:
			await self._remove_quietly(channel)
			if isinstance(exc, SubscriptionError):
				raise
			raise SubscriptionError(str(exc) or exc.__class__.__name__) from exc
		return ChannelHandle(collection=collection, channel=channel)

	async def unsubscribe(self, handle: ChannelHandle) -> None:
		await self._client.remove_channel(handle.channel)

	def _track(self, task: asyncio.Future) -> None:
		self._dispatch_tasks.add(task)
		task.add_done_callback(self._dispatch_done)

	def _dispatch_done(self, task: asyncio.Future) -> None:
		self._dispatch_tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.warning("realtime event handler failed: %s", exc, exc_info=exc)

	async def _remove_quietly(self, channel: Any) -> None:
		try:
			await self._client.remove_channel(channel)
		except Exception:
			logger.debug("failed to remove realtime channel", exc_info=True)
