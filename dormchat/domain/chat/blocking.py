"""Block relation checks between two participants."""

from __future__ import annotations

import logging
from typing import Optional

from dormchat.infra.store import RemoteStore, StoreError, eq

from .exceptions import Blocked, BlockDirection

logger = logging.getLogger(__name__)

BLOCKS_COLLECTION = "blocked_users"


async def _has_block(store: RemoteStore, blocker_id: str, blocked_id: str) -> bool:
	rows = await store.query(
		BLOCKS_COLLECTION,
		[eq("blocker_id", blocker_id), eq("blocked_id", blocked_id)],
		limit=1,
	)
	return bool(rows)


async def block_direction(store: RemoteStore, user_id: str, other_id: Optional[str]) -> Optional[BlockDirection]:
	"""Return which side blocked the other, or None when they can interact."""
	if other_id is None:
		return None
	if await _has_block(store, user_id, other_id):
		return BlockDirection.BLOCKED_BY_ME
	if await _has_block(store, other_id, user_id):
		return BlockDirection.BLOCKED_ME
	return None


async def ensure_can_interact(store: RemoteStore, user_id: str, other_id: Optional[str]) -> None:
	direction = await block_direction(store, user_id, other_id)
	if direction is not None:
		raise Blocked(direction)


async def classify_rejection(store: RemoteStore, user_id: str, other_id: Optional[str]) -> Optional[Blocked]:
	"""Explain a write the backend rejected; None when no block relation exists."""
	try:
		direction = await block_direction(store, user_id, other_id)
	except StoreError:
		logger.warning("block direction lookup failed for rejected write", exc_info=True)
		return Blocked(BlockDirection.UNSPECIFIED)
	if direction is None:
		return None
	return Blocked(direction)
