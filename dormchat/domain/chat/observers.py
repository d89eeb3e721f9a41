"""Typed observer channels owned by the component that emits them."""

from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, Generic, List, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Union[Awaitable[None], None]]


class Signal(Generic[T]):
	"""Per-concern publish/subscribe channel.

	Listeners run in registration order. A failing listener is logged and
	does not stop delivery to the others.
	"""

	def __init__(self, name: str) -> None:
		self.name = name
		self._listeners: List[Listener] = []

	def connect(self, listener: Listener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _disconnect() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _disconnect

	def clear(self) -> None:
		self._listeners.clear()

	def __len__(self) -> int:
		return len(self._listeners)

	async def emit(self, value: T) -> None:
		for listener in list(self._listeners):
			try:
				result = listener(value)
				if inspect.isawaitable(result):
					await result
			except Exception:
				logger.exception("listener failed on %s", self.name)
