"""Helper utilities"""
import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict
from datetime import datetime, timezone


class RateLimiter:
    """Sliding window rate limiter"""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clients: Dict[str, list] = defaultdict(list)

    def allow_request(self, client_id: str) -> bool:
        now = time.time()

        self.clients[client_id] = [
            ts for ts in self.clients[client_id]
            if now - ts < self.window_seconds
        ]

        if len(self.clients[client_id]) < self.max_requests:
            self.clients[client_id].append(now)
            return True
        return False


class KeyedLock:
    """One asyncio.Lock per live key.

    Locks are created on first use and dropped once no task holds or waits
    on them, so memory tracks the number of keys currently being written.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def utcnow() -> datetime:
    """Naive UTC now, matching what MongoDB hands back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_timestamp(value: str) -> datetime:
    """Parse ISO-8601 (trailing Z allowed) to naive UTC"""
    return to_naive_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))


def parse_date(date_str: str) -> datetime:
    """Parse YYYY-MM-DD to datetime"""
    try:
        return datetime.strptime(date_str, "%Y-%m-%d")
    except ValueError:
        raise ValueError(f"Invalid date: {date_str}. Use YYYY-MM-DD")
