"""
Job lock management for the escrow deployer.

This module enforces at most one in-flight resolution per job key. Locks
expire after a fixed TTL unless their holder refreshes them.

The lock table lives in process memory. Running the deployer on several
hosts needs a shared store with native TTL support behind the same
interface.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = 300.0  # seconds


@dataclass(slots=True)
class Lock:
    """A held lock.

    Attributes:
        key: Lock key, "<job_key>:<operation>"
        acquired_at: Monotonic timestamp of acquisition or last refresh
        ttl: Seconds after which the lock is treated as absent
    """
    key: str
    acquired_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.acquired_at > self.ttl


class JobLockManager:
    """
    Non-blocking, TTL-bounded lock table keyed by job key and operation.

    All methods are safe to call concurrently from asyncio tasks and threads.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_LOCK_TTL,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the lock manager.

        Args:
            ttl: Lock lifetime in seconds
            clock: Monotonic time source (injectable for tests)
        """
        if ttl <= 0:
            raise ValueError(f"Lock TTL must be positive, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._locks: dict[str, Lock] = {}
        self._mutex = threading.Lock()

    @staticmethod
    def lock_key(job_key: str, operation: str) -> str:
        return f"{job_key}:{operation}"

    def _live_lock(self, key: str, now: float) -> Lock | None:
        # Caller must hold self._mutex
        lock = self._locks.get(key)
        if lock is not None and lock.is_expired(now):
            logger.warning(f"Evicting expired lock {key} (held {now - lock.acquired_at:.0f}s)")
            del self._locks[key]
            return None
        return lock

    def _acquire(self, job_key: str, operation: str) -> Lock | None:
        key = self.lock_key(job_key, operation)
        with self._mutex:
            now = self._clock()
            if self._live_lock(key, now) is not None:
                return None
            lock = Lock(key=key, acquired_at=now, ttl=self.ttl)
            self._locks[key] = lock
        logger.debug(f"Acquired lock {key}")
        return lock

    def try_acquire(self, job_key: str, operation: str) -> bool:
        """
        Acquire the lock without blocking.

        Returns:
            False if a live lock exists for the key, True once acquired
        """
        return self._acquire(job_key, operation) is not None

    def release(self, job_key: str, operation: str) -> bool:
        """
        Release a lock. Releasing an absent lock is a no-op.

        Returns:
            True if a live lock was removed
        """
        key = self.lock_key(job_key, operation)
        with self._mutex:
            if self._live_lock(key, self._clock()) is None:
                return False
            del self._locks[key]
        logger.debug(f"Released lock {key}")
        return True

    def is_held(self, job_key: str, operation: str) -> bool:
        """Check for a live lock, evicting it first if it has expired."""
        key = self.lock_key(job_key, operation)
        with self._mutex:
            return self._live_lock(key, self._clock()) is not None

    def _release_owned(self, lock: Lock) -> bool:
        # A lock that expired and was re-acquired by someone else is not ours
        with self._mutex:
            if self._locks.get(lock.key) is not lock:
                return False
            del self._locks[lock.key]
        logger.debug(f"Released lock {lock.key}")
        return True

    def refresh(self, lock: Lock) -> bool:
        """
        Restart the TTL of a lock this caller holds.

        Returns:
            False if the lock already expired or now belongs to someone else
        """
        with self._mutex:
            now = self._clock()
            if self._live_lock(lock.key, now) is not lock:
                return False
            lock.acquired_at = now
        logger.debug(f"Refreshed lock {lock.key}")
        return True

    @contextmanager
    def hold(self, job_key: str, operation: str) -> Iterator[Lock | None]:
        """
        Scoped lock: yields the held Lock, or None when contended, and
        releases it on every exit path, including exceptions and task
        cancellation.
        """
        lock = self._acquire(job_key, operation)
        try:
            yield lock
        finally:
            if lock is not None:
                self._release_owned(lock)

    def active_locks(self) -> list[Lock]:
        """Return all live locks, evicting expired ones."""
        with self._mutex:
            now = self._clock()
            for key in list(self._locks):
                self._live_lock(key, now)
            return list(self._locks.values())

    def clear(self) -> None:
        """Drop every lock."""
        with self._mutex:
            self._locks.clear()
