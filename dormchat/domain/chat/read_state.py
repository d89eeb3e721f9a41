"""Codec for the ``read_by`` column.

The column reaches the client either as a native list or as a JSON-encoded
string depending on how the row was written. Every read or comparison of
``read_by`` goes through :func:`decode_read_by`.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional


def _readers(values: Iterable[Any]) -> frozenset[str]:
	return frozenset(str(value) for value in values if value is not None and str(value))


def decode_read_by(raw: Any) -> frozenset[str]:
	"""Normalise a raw ``read_by`` value into a set of reader ids. Never raises."""
	if raw is None:
		return frozenset()
	if isinstance(raw, (list, tuple, set, frozenset)):
		return _readers(raw)
	if isinstance(raw, (bytes, bytearray)):
		raw = raw.decode("utf-8", errors="replace")
	if not isinstance(raw, str):
		return frozenset()
	text = raw.strip()
	if not text:
		return frozenset()
	try:
		data = json.loads(text)
	except (ValueError, RecursionError):
		return frozenset()
	if isinstance(data, list):
		return _readers(data)
	return frozenset()


def encode_read_by(readers: Iterable[str]) -> list[str]:
	return sorted(_readers(readers))


def with_reader(raw: Any, user_id: str) -> frozenset[str]:
	return decode_read_by(raw) | {str(user_id)}


def is_unread_for(user_id: str, sender_id: Optional[str], raw_read_by: Any) -> bool:
	"""A message is unread for ``user_id`` when someone else sent it and they are not a reader."""
	if sender_id is not None and str(sender_id) == str(user_id):
		return False
	return str(user_id) not in decode_read_by(raw_read_by)
