"""
Storage backends for the conversation state store.

Both backends expose the same small set of async primitives. Every write is a
field-level merge or an atomic append; none of them replaces a whole record.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from callrelay.clock import Clock, SystemClock
from callrelay.redis.manager import RedisManager


class StateBackend(Protocol):
    async def merge_hash(
        self, key: str, mapping: dict[str, str], ttl_seconds: int | None = None
    ) -> None: ...

    async def get_hash(self, key: str) -> dict[str, str]: ...

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int: ...

    async def zadd_bounded(
        self,
        key: str,
        member: str,
        score: float,
        ttl_seconds: int | None = None,
        max_len: int | None = None,
    ) -> None: ...

    async def zrange(self, key: str, limit: int | None = None, desc: bool = False) -> list[str]: ...

    async def zrem(self, key: str, member: str) -> None: ...

    async def set_value(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def get_value(self, key: str) -> str | None: ...

    async def delete_keys(self, *keys: str) -> None: ...

    async def expire_keys(self, keys: list[str], ttl_seconds: int) -> None: ...

    async def ping(self) -> bool: ...


class RedisStateBackend:
    """Backend on top of :class:`RedisManager` (sync client off-loaded to executor)."""

    def __init__(self, manager: RedisManager):
        self.manager = manager

    async def merge_hash(
        self, key: str, mapping: dict[str, str], ttl_seconds: int | None = None
    ) -> None:
        await self.manager.merge_hash_async(key, mapping, ttl_seconds)

    async def get_hash(self, key: str) -> dict[str, str]:
        return await self.manager.get_hash_async(key)

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        return await self.manager.incr_async(key, ttl_seconds)

    async def zadd_bounded(
        self,
        key: str,
        member: str,
        score: float,
        ttl_seconds: int | None = None,
        max_len: int | None = None,
    ) -> None:
        await self.manager.zadd_bounded_async(key, member, score, ttl_seconds, max_len)

    async def zrange(self, key: str, limit: int | None = None, desc: bool = False) -> list[str]:
        return await self.manager.zrange_async(key, limit, desc)

    async def zrem(self, key: str, member: str) -> None:
        await self.manager.zrem_async(key, member)

    async def set_value(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self.manager.set_value_async(key, value, ttl_seconds)

    async def get_value(self, key: str) -> str | None:
        return await self.manager.get_value_async(key)

    async def delete_keys(self, *keys: str) -> None:
        await self.manager.delete_keys_async(*keys)

    async def expire_keys(self, keys: list[str], ttl_seconds: int) -> None:
        await self.manager.expire_keys_async(keys, ttl_seconds)

    async def ping(self) -> bool:
        return await self.manager.ping_async()


@dataclass
class _Entry:
    value: Any
    expires_at: float | None = None


@dataclass
class _SortedSet:
    scores: dict[str, float] = field(default_factory=dict)

    def ordered(self) -> list[str]:
        return sorted(self.scores, key=lambda m: (self.scores[m], m))


class InMemoryStateBackend:
    """In-process backend for tests and local development.

    Expiry is evaluated lazily against the injected clock. All operations are
    serialized by one asyncio lock. Not suitable for multi-process deployments.
    """

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self.clock.now():
            del self._data[key]
            return None
        return entry

    def _touch(self, entry: _Entry, ttl_seconds: int | None) -> None:
        if ttl_seconds is not None:
            entry.expires_at = self.clock.now() + ttl_seconds

    def _typed(self, key: str, factory: type) -> _Entry:
        entry = self._live(key)
        if entry is None:
            entry = _Entry(factory())
            self._data[key] = entry
        elif not isinstance(entry.value, factory):
            raise TypeError(f"WRONGTYPE key {key} holds {type(entry.value).__name__}")
        return entry

    async def merge_hash(
        self, key: str, mapping: dict[str, str], ttl_seconds: int | None = None
    ) -> None:
        async with self._lock:
            entry = self._typed(key, dict)
            entry.value.update(mapping)
            self._touch(entry, ttl_seconds)

    async def get_hash(self, key: str) -> dict[str, str]:
        async with self._lock:
            entry = self._live(key)
            return dict(entry.value) if entry else {}

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        async with self._lock:
            entry = self._typed(key, int)
            entry.value += 1
            self._touch(entry, ttl_seconds)
            return entry.value

    async def zadd_bounded(
        self,
        key: str,
        member: str,
        score: float,
        ttl_seconds: int | None = None,
        max_len: int | None = None,
    ) -> None:
        async with self._lock:
            entry = self._typed(key, _SortedSet)
            entry.value.scores[member] = score
            if max_len is not None:
                ordered = entry.value.ordered()
                for stale in ordered[: max(len(ordered) - max_len, 0)]:
                    del entry.value.scores[stale]
            self._touch(entry, ttl_seconds)

    async def zrange(self, key: str, limit: int | None = None, desc: bool = False) -> list[str]:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return []
            ordered = entry.value.ordered()
            if desc:
                ordered.reverse()
            return ordered if limit is None else ordered[:limit]

    async def zrem(self, key: str, member: str) -> None:
        async with self._lock:
            entry = self._live(key)
            if entry is not None:
                entry.value.scores.pop(member, None)

    async def set_value(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        async with self._lock:
            entry = _Entry(str(value))
            self._touch(entry, ttl_seconds)
            self._data[key] = entry

    async def get_value(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def delete_keys(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)

    async def expire_keys(self, keys: list[str], ttl_seconds: int) -> None:
        async with self._lock:
            for key in keys:
                entry = self._live(key)
                if entry is not None:
                    self._touch(entry, ttl_seconds)

    async def ping(self) -> bool:
        return True

    def ttl(self, key: str) -> float | None:
        """Remaining lifetime of ``key`` in seconds (test helper)."""
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return entry.expires_at - self.clock.now()
