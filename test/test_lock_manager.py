#!/usr/bin/env python3
"""Unit tests for JobLockManager."""

import threading

import pytest

from escrow_deployer.lock_manager import JobLockManager


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return JobLockManager(ttl=300.0, clock=clock)


class TestJobLockManager:
    """Test suite for JobLockManager."""

    def test_lock_key_format(self):
        assert JobLockManager.lock_key("q1", "blockchain_submit") == "q1:blockchain_submit"

    def test_invalid_ttl(self):
        with pytest.raises(ValueError, match="TTL must be positive"):
            JobLockManager(ttl=0)

    def test_second_acquire_fails_while_held(self, manager):
        assert manager.try_acquire("q1", "blockchain_submit") is True
        assert manager.try_acquire("q1", "blockchain_submit") is False
        assert manager.is_held("q1", "blockchain_submit") is True

    def test_keys_are_independent(self, manager):
        assert manager.try_acquire("q1", "blockchain_submit") is True
        assert manager.try_acquire("q2", "blockchain_submit") is True
        assert manager.try_acquire("q1", "other_operation") is True

    def test_release_then_reacquire(self, manager):
        manager.try_acquire("q1", "blockchain_submit")
        assert manager.release("q1", "blockchain_submit") is True
        assert manager.is_held("q1", "blockchain_submit") is False
        assert manager.try_acquire("q1", "blockchain_submit") is True

    def test_release_is_idempotent(self, manager):
        manager.try_acquire("q1", "blockchain_submit")
        assert manager.release("q1", "blockchain_submit") is True
        assert manager.release("q1", "blockchain_submit") is False
        assert manager.release("never-locked", "blockchain_submit") is False

    def test_lock_held_until_ttl(self, manager, clock):
        manager.try_acquire("q1", "blockchain_submit")
        clock.advance(300.0)
        assert manager.is_held("q1", "blockchain_submit") is True
        assert manager.try_acquire("q1", "blockchain_submit") is False

    def test_expired_lock_self_heals(self, manager, clock):
        """A crashed holder never blocks the job for longer than the TTL."""
        manager.try_acquire("q1", "blockchain_submit")
        clock.advance(300.1)
        assert manager.is_held("q1", "blockchain_submit") is False
        assert manager.try_acquire("q1", "blockchain_submit") is True

    def test_release_of_expired_lock_is_noop(self, manager, clock):
        manager.try_acquire("q1", "blockchain_submit")
        clock.advance(301)
        assert manager.release("q1", "blockchain_submit") is False

    def test_hold_releases_on_exit(self, manager):
        with manager.hold("q1", "blockchain_submit") as lock:
            assert lock is not None
            assert manager.is_held("q1", "blockchain_submit")
        assert not manager.is_held("q1", "blockchain_submit")

    def test_hold_releases_on_exception(self, manager):
        with pytest.raises(RuntimeError):
            with manager.hold("q1", "blockchain_submit"):
                raise RuntimeError("boom")
        assert not manager.is_held("q1", "blockchain_submit")

    def test_hold_contended_does_not_release_other_holder(self, manager):
        manager.try_acquire("q1", "blockchain_submit")
        with manager.hold("q1", "blockchain_submit") as lock:
            assert lock is None
        assert manager.is_held("q1", "blockchain_submit")

    def test_hold_does_not_release_reacquired_lock(self, manager, clock):
        """After expiry another caller owns the key; the old holder must not free it."""
        with manager.hold("q1", "blockchain_submit") as lock:
            assert lock is not None
            clock.advance(301)
            assert manager.try_acquire("q1", "blockchain_submit") is True
        assert manager.is_held("q1", "blockchain_submit")

    def test_refresh_extends_lifetime(self, manager, clock):
        with manager.hold("q1", "blockchain_submit") as lock:
            clock.advance(200)
            assert manager.refresh(lock) is True
            clock.advance(200)
            assert manager.is_held("q1", "blockchain_submit")
            assert manager.try_acquire("q1", "blockchain_submit") is False

    def test_refresh_after_expiry_fails(self, manager, clock):
        with manager.hold("q1", "blockchain_submit") as lock:
            clock.advance(301)
            assert manager.refresh(lock) is False
            assert not manager.is_held("q1", "blockchain_submit")

    def test_refresh_never_takes_over_reacquired_lock(self, manager, clock):
        with manager.hold("q1", "blockchain_submit") as lock:
            clock.advance(301)
            assert manager.try_acquire("q1", "blockchain_submit") is True
            acquired_at = manager.active_locks()[0].acquired_at
            clock.advance(10)

            assert manager.refresh(lock) is False
            assert manager.active_locks()[0].acquired_at == acquired_at

    def test_active_locks_evicts_expired(self, manager, clock):
        manager.try_acquire("q1", "blockchain_submit")
        clock.advance(200)
        manager.try_acquire("q2", "blockchain_submit")
        clock.advance(150)

        keys = [lock.key for lock in manager.active_locks()]
        assert keys == ["q2:blockchain_submit"]

    def test_clear(self, manager):
        manager.try_acquire("q1", "blockchain_submit")
        manager.try_acquire("q2", "blockchain_submit")
        manager.clear()
        assert manager.active_locks() == []

    def test_concurrent_acquire_single_winner(self):
        manager = JobLockManager()
        barrier = threading.Barrier(16)
        results: list[bool] = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            acquired = manager.try_acquire("q1", "blockchain_submit")
            with results_lock:
                results.append(acquired)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 15
