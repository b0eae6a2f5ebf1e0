"""
Run guard — single-flight locks for scheduled and on-demand jobs.

Two backends, selected by ``RUN_GUARD_BACKEND``:

    local  — process-local non-blocking ``threading.Lock`` per job name
    redis  — ``SET key NX EX ttl`` mutex shared by every process/host

A guard never blocks: ``acquire`` returns False when another run holds the
lock and the caller skips its work.

Usage:
    from avalanche_watch.app.core.run_guard import get_run_guard

    with get_run_guard().hold("bulletin-sync") as acquired:
        if not acquired:
            return skipped_result()
        ...
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from avalanche_watch.app.core.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "avalanche-watch:lock:"


class RunGuard:
    """Interface shared by both backends."""

    backend = "abstract"

    def acquire(self, name: str) -> bool:
        raise NotImplementedError

    def release(self, name: str) -> None:
        raise NotImplementedError

    def is_held(self, name: str) -> bool:
        raise NotImplementedError

    @contextmanager
    def hold(self, name: str) -> Iterator[bool]:
        """Yield whether the lock was taken; release on exit only if it was."""
        acquired = self.acquire(name)
        if not acquired:
            logger.info("Run '%s' already in progress — skipping", name)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(name)


class LocalRunGuard(RunGuard):
    backend = "local"

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            if name not in self._locks:
                self._locks[name] = threading.Lock()
            return self._locks[name]

    def acquire(self, name: str) -> bool:
        return self._lock_for(name).acquire(blocking=False)

    def release(self, name: str) -> None:
        lock = self._lock_for(name)
        if lock.locked():
            lock.release()

    def is_held(self, name: str) -> bool:
        return self._lock_for(name).locked()


class RedisRunGuard(RunGuard):
    """
    Cross-process mutex on Redis.

    The stored value is a per-instance token so ``release`` never deletes a
    lock that expired and was re-taken by another process.
    """

    backend = "redis"

    def __init__(self, client=None, url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        if client is None:
            import redis

            client = redis.Redis.from_url(
                url or settings.REDIS_URL, decode_responses=True
            )
        self._client = client
        self._ttl = ttl_seconds or settings.RUN_GUARD_TTL_SECONDS
        self._token = uuid.uuid4().hex

    def _key(self, name: str) -> str:
        return f"{KEY_PREFIX}{name}"

    def acquire(self, name: str) -> bool:
        try:
            return bool(self._client.set(self._key(name), self._token, nx=True, ex=self._ttl))
        except Exception as e:
            logger.warning("Redis lock '%s' unavailable: %s — treating as held", name, e)
            return False

    def release(self, name: str) -> None:
        key = self._key(name)
        try:
            if self._client.get(key) == self._token:
                self._client.delete(key)
        except Exception as e:
            logger.warning("Redis lock '%s' release failed: %s", name, e)

    def is_held(self, name: str) -> bool:
        try:
            return self._client.get(self._key(name)) is not None
        except Exception:
            return False

    def ping(self) -> bool:
        return bool(self._client.ping())


# ── Singleton ──

_guard: Optional[RunGuard] = None


def get_run_guard() -> RunGuard:
    """Process-wide guard built from settings."""
    global _guard
    if _guard is None:
        if settings.RUN_GUARD_BACKEND == "redis":
            _guard = RedisRunGuard()
        else:
            _guard = LocalRunGuard()
        logger.info("Run guard backend: %s", _guard.backend)
    return _guard
