from __future__ import annotations

import re
from typing import Any, AsyncIterator

from velosync.services.rate_governor import RELEASE_COUNTERS_LUA


class FakeClock:
    # Deterministic time source shared by the fake Redis and the components under test.
    def __init__(self, start: float = 1_700_002_800.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory subset of the redis.asyncio API used by velosync.

    Values are stored as strings to mirror ``decode_responses=True``; key expiry
    follows the shared FakeClock so window and TTL behavior is testable.
    """

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _list(self, key: str) -> list[str]:
        if not self._alive(key):
            self._data[key] = []
        return self._data[key]

    def _zset(self, key: str) -> dict[str, float]:
        if not self._alive(key):
            self._data[key] = {}
        return self._data[key]

    async def get(self, key: str) -> str | None:
        if not self._alive(key):
            return None
        return self._data[key]

    async def set(self, key: str, value: Any, ex: int | None = None) -> bool:
        self._data[key] = str(value)
        self._expires.pop(key, None)
        if ex is not None:
            self._expires[key] = self.clock() + ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                del self._data[key]
                self._expires.pop(key, None)
                removed += 1
        return removed

    async def incr(self, key: str) -> int:
        value = int(self._data[key]) + 1 if self._alive(key) else 1
        self._data[key] = str(value)
        return value

    async def decr(self, key: str) -> int:
        value = int(self._data[key]) - 1 if self._alive(key) else -1
        self._data[key] = str(value)
        return value

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any:
        # Only the scripts velosync ships are understood.
        keys = keys_and_args[:numkeys]
        if script == RELEASE_COUNTERS_LUA:
            for key in keys:
                if self._alive(key):
                    await self.decr(key)
            return 0
        raise NotImplementedError("FakeRedis.eval does not know this script")

    async def expire(self, key: str, seconds: int) -> bool:
        if not self._alive(key):
            return False
        self._expires[key] = self.clock() + seconds
        return True

    async def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        expires_at = self._expires.get(key)
        if expires_at is None:
            return -1
        return int(round(expires_at - self.clock()))

    async def rpush(self, key: str, *values: Any) -> int:
        items = self._list(key)
        items.extend(str(value) for value in values)
        return len(items)

    async def lpush(self, key: str, *values: Any) -> int:
        items = self._list(key)
        for value in values:
            items.insert(0, str(value))
        return len(items)

    async def lpop(self, key: str, count: int | None = None) -> Any:
        items = self._list(key)
        if not items:
            return None
        if count is None:
            return items.pop(0)
        popped = items[:count]
        del items[:count]
        return popped

    async def llen(self, key: str) -> int:
        return len(self._list(key))

    @staticmethod
    def _slice(length: int, start: int, end: int) -> tuple[int, int]:
        if start < 0:
            start = max(0, length + start)
        if end < 0:
            end = length + end
        return start, min(end, length - 1) + 1

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._list(key)
        lo, hi = self._slice(len(items), start, end)
        return list(items[lo:hi])

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        items = self._list(key)
        lo, hi = self._slice(len(items), start, end)
        self._data[key] = items[lo:hi]
        return True

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self._zset(key)
        added = sum(1 for member in mapping if member not in zset)
        zset.update({str(member): float(score) for member, score in mapping.items()})
        return added

    async def zrangebyscore(
        self,
        key: str,
        min: Any,
        max: Any,
        start: int | None = None,
        num: int | None = None,
    ) -> list[str]:
        low = float(min)
        high = float(max)
        members = sorted(
            (score, member) for member, score in self._zset(key).items() if low <= score <= high
        )
        result = [member for _score, member in members]
        if start is not None and num is not None:
            result = result[start : start + num]
        return result

    async def zrem(self, key: str, *members: str) -> int:
        zset = self._zset(key)
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        return removed

    async def zcard(self, key: str) -> int:
        return len(self._zset(key))

    async def scan_iter(self, match: str | None = None) -> AsyncIterator[str]:
        for key in list(self._data):
            if not self._alive(key):
                continue
            if match is None or _glob(match).fullmatch(key):
                yield key

    def keys_matching(self, pattern: str) -> list[str]:
        return [key for key in list(self._data) if self._alive(key) and _glob(pattern).fullmatch(key)]


def _glob(pattern: str) -> re.Pattern[str]:
    # Redis glob rules: * ? [class] with backslash escapes.
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "\\" and index + 1 < len(pattern):
            parts.append(re.escape(pattern[index + 1]))
            index += 2
            continue
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[" and pattern.find("]", index + 1) != -1:
            end = pattern.find("]", index + 1)
            parts.append("[" + pattern[index + 1 : end].replace("\\", "\\\\") + "]")
            index = end + 1
            continue
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("".join(parts), re.DOTALL)
