"""In-process remote store used by tests and offline development."""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence

import ulid

from dormchat.infra.store import (
	ConflictError,
	EventCallback,
	Filter,
	Include,
	Order,
	RealtimeEvent,
	Row,
	SchemaMismatchError,
)

logger = logging.getLogger(__name__)

_UNIQUE_KEYS: Dict[str, str] = {
	"conversations": "conversation_id",
	"messages": "id",
	"profiles": "id",
}


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _sort_value(value: Any) -> Any:
	if isinstance(value, str):
		try:
			return datetime.fromisoformat(value.replace("Z", "+00:00"))
		except ValueError:
			return value
	return value


@dataclass(slots=True)
class MemorySubscription:
	collection: str
	filters: tuple[Filter, ...]
	callback: EventCallback
	active: bool = True
	delivered: int = 0


@dataclass(slots=True)
class _Failure:
	op: str
	error: Exception
	collection: Optional[str] = None


@dataclass
class InMemoryStore:
	"""Row store with unique keys, realtime fan-out and fault injection.

	``columns`` restricts the known columns per collection; touching any other
	column raises ``SchemaMismatchError`` like a deployment missing a migration.
	With ``defer_events`` set, realtime events queue until ``flush_events``.
	"""

	columns: Optional[Dict[str, set[str]]] = None
	defer_events: bool = False
	read_by_as_json: bool = False
	tables: Dict[str, List[Row]] = field(default_factory=lambda: defaultdict(list))
	calls: List[tuple[str, str]] = field(default_factory=list)
	subscriptions: List[MemorySubscription] = field(default_factory=list)
	pending_events: Deque[RealtimeEvent] = field(default_factory=deque)
	_failures: List[_Failure] = field(default_factory=list)
	_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

	# -- test helpers -------------------------------------------------

	def seed(self, collection: str, rows: Iterable[Mapping[str, Any]]) -> None:
		for row in rows:
			self.tables[collection].append(self._prepare(collection, row))

	def rows(self, collection: str) -> List[Row]:
		return [copy.deepcopy(row) for row in self.tables.get(collection, [])]

	def fail_next(self, op: str, error: Exception, *, collection: Optional[str] = None, times: int = 1) -> None:
		for _ in range(times):
			self._failures.append(_Failure(op=op, error=error, collection=collection))

	def count_calls(self, op: str, collection: Optional[str] = None) -> int:
		return sum(1 for name, coll in self.calls if name == op and (collection is None or coll == collection))

	def active_subscriptions(self, collection: Optional[str] = None) -> List[MemorySubscription]:
		return [sub for sub in self.subscriptions if sub.active and (collection is None or sub.collection == collection)]

	async def deliver(self, event: RealtimeEvent) -> None:
		"""Push an event to matching subscribers, regardless of ``defer_events``."""
		for sub in list(self.subscriptions):
			if not sub.active or sub.collection != event.collection:
				continue
			if not all(flt.matches(event.row) for flt in sub.filters):
				continue
			sub.delivered += 1
			try:
				result = sub.callback(event)
				if inspect.isawaitable(result):
					await result
			except Exception:
				logger.exception("realtime subscriber failed for %s", event.collection)

	async def flush_events(self) -> int:
		flushed = 0
		while self.pending_events:
			await self.deliver(self.pending_events.popleft())
			flushed += 1
		return flushed

	# -- internals ----------------------------------------------------

	def _record(self, op: str, collection: str) -> None:
		self.calls.append((op, collection))
		for idx, failure in enumerate(self._failures):
			if failure.op == op and (failure.collection is None or failure.collection == collection):
				del self._failures[idx]
				raise failure.error

	def _check_columns(self, collection: str, names: Iterable[str]) -> None:
		if self.columns is None or collection not in self.columns:
			return
		known = self.columns[collection]
		for name in names:
			if name not in known:
				raise SchemaMismatchError(f'column {collection}.{name} does not exist')

	def _prepare(self, collection: str, row: Mapping[str, Any]) -> Row:
		prepared = copy.deepcopy(dict(row))
		if collection == "messages":
			prepared.setdefault("id", str(ulid.new()))
			prepared.setdefault("created_at", _now_iso())
			prepared.setdefault("read_by", [])
		if self.read_by_as_json and isinstance(prepared.get("read_by"), (list, tuple)):
			prepared["read_by"] = json.dumps(list(prepared["read_by"]))
		return prepared

	def _find(self, collection: str, key: str, value: Any) -> Optional[Row]:
		for row in self.tables.get(collection, []):
			if row.get(key) == value:
				return row
		return None

	def _attach(self, row: Row, include: Include) -> Row:
		related = self._find(include.collection, "id", row.get(include.foreign_key))
		if related is None:
			row[include.alias] = None
		else:
			row[include.alias] = {column: related.get(column) for column in include.columns}
		return row

	async def _emit(self, events: Sequence[RealtimeEvent]) -> None:
		if self.defer_events:
			self.pending_events.extend(events)
			return
		for event in events:
			await self.deliver(event)

	# -- RemoteStore --------------------------------------------------

	async def query(
		self,
		collection: str,
		filters: Sequence[Filter] = (),
		*,
		order: Optional[Order] = None,
		include: Optional[Include] = None,
		limit: Optional[int] = None,
	) -> List[Row]:
		async with self._lock:
			self._record("query", collection)
			self._check_columns(collection, [flt.column for flt in filters])
			matched = [
				copy.deepcopy(row)
				for row in self.tables.get(collection, [])
				if all(flt.matches(row) for flt in filters)
			]
			if order is not None:
				matched.sort(key=lambda r: _sort_value(r.get(order.column)), reverse=order.descending)
			if include is not None:
				matched = [self._attach(row, include) for row in matched]
			if limit is not None:
				matched = matched[:limit]
			return matched

	async def insert(self, collection: str, row: Mapping[str, Any]) -> Row:
		async with self._lock:
			self._record("insert", collection)
			self._check_columns(collection, row.keys())
			prepared = self._prepare(collection, row)
			key = _UNIQUE_KEYS.get(collection)
			if key and self._find(collection, key, prepared.get(key)) is not None:
				raise ConflictError(f"duplicate key value violates unique constraint on {collection}.{key}")
			self.tables[collection].append(prepared)
			stored = copy.deepcopy(prepared)
		await self._emit([RealtimeEvent("insert", collection, copy.deepcopy(stored))])
		return stored

	async def update(self, collection: str, filters: Sequence[Filter], patch: Mapping[str, Any]) -> List[Row]:
		async with self._lock:
			self._record("update", collection)
			self._check_columns(collection, list(patch.keys()) + [flt.column for flt in filters])
			events: List[RealtimeEvent] = []
			updated: List[Row] = []
			for row in self.tables.get(collection, []):
				if not all(flt.matches(row) for flt in filters):
					continue
				old = copy.deepcopy(row)
				row.update(self._patch(patch))
				updated.append(copy.deepcopy(row))
				events.append(RealtimeEvent("update", collection, copy.deepcopy(row), old))
		await self._emit(events)
		return updated

	def _patch(self, patch: Mapping[str, Any]) -> Row:
		prepared = copy.deepcopy(dict(patch))
		if self.read_by_as_json and isinstance(prepared.get("read_by"), (list, tuple)):
			prepared["read_by"] = json.dumps(list(prepared["read_by"]))
		return prepared

	async def upsert(self, collection: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: str = "id") -> None:
		async with self._lock:
			self._record("upsert", collection)
			events: List[RealtimeEvent] = []
			for incoming in rows:
				self._check_columns(collection, incoming.keys())
				existing = self._find(collection, on_conflict, incoming.get(on_conflict))
				if existing is None:
					prepared = self._prepare(collection, incoming)
					self.tables[collection].append(prepared)
					events.append(RealtimeEvent("insert", collection, copy.deepcopy(prepared)))
					continue
				old = copy.deepcopy(existing)
				existing.update(self._patch(incoming))
				events.append(RealtimeEvent("update", collection, copy.deepcopy(existing), old))
		await self._emit(events)

	async def subscribe(self, collection: str, filters: Sequence[Filter], on_event: EventCallback) -> MemorySubscription:
		async with self._lock:
			self._record("subscribe", collection)
			sub = MemorySubscription(collection=collection, filters=tuple(filters), callback=on_event)
			self.subscriptions.append(sub)
			return sub

	async def unsubscribe(self, handle: MemorySubscription) -> None:
		async with self._lock:
			self._record("unsubscribe", handle.collection)
			handle.active = False
			if handle in self.subscriptions:
				self.subscriptions.remove(handle)


__all__ = ["InMemoryStore", "MemorySubscription"]
