"""Attune — Shared Runtime State

Lock-guarded cells owned by the orchestrator and injected at construction.
"""

from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, Generic, Optional, Set, TypeVar

T = TypeVar("T")


class OnceCell(Generic[T]):
    """Value computed by an async initializer on first read.

    Concurrent first readers wait on the same initialization. If the
    initializer raises, the cell stays empty and the next read retries.
    """

    def __init__(self, initializer: Callable[[], Awaitable[T]]):
        self._initializer = initializer
        self._lock = asyncio.Lock()
        self._value: Optional[T] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        if self._initialized:
            return self._value
        async with self._lock:
            if not self._initialized:
                self._value = await self._initializer()
                self._initialized = True
        return self._value


class SeenChats:
    """Conversation ids that already received the system preamble."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._ids: Set[str] = set()

    async def check_and_add(self, chat_id: str) -> bool:
        """Record chat_id; True only for the caller that added it first."""
        async with self._lock:
            if chat_id in self._ids:
                return False
            self._ids.add(chat_id)
            return True

    async def discard(self, chat_id: str) -> None:
        async with self._lock:
            self._ids.discard(chat_id)

    async def contains(self, chat_id: str) -> bool:
        async with self._lock:
            return chat_id in self._ids
