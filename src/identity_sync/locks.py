"""Per-user exclusive locks with a global ordering.

Resolution, merge and recompute all take the locks of the unified users they
touch. Locks are striped by id and always acquired in ascending stripe order,
so two merges sharing a participant cannot deadlock. Row locks (`SELECT .. FOR UPDATE` ordered by id)
give the same guarantee across processes; this manager covers threads inside
one process, and the only guard on sqlite.
"""
from __future__ import annotations
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator
from prometheus_client import Histogram

LOCK_WAIT = Histogram('identity_user_lock_wait_seconds', 'Time spent waiting for unified user locks', buckets=(0.0001, 0.001, 0.01, 0.1, 0.5, 1, 5))


class UserLockManager:
    def __init__(self, stripes: int = 256):
        # striped so the lock table stays bounded; two ids on one stripe share a lock
        self._stripes = [threading.RLock() for _ in range(stripes)]

    def _stripe_indexes(self, user_ids: Iterable[int]) -> list[int]:
        return sorted({int(uid) % len(self._stripes) for uid in user_ids if uid is not None})

    @contextmanager
    def hold(self, user_ids: Iterable[int]) -> Iterator[None]:
        indexes = self._stripe_indexes(user_ids)
        acquired: list[threading.RLock] = []
        with LOCK_WAIT.time():
            for idx in indexes:
                lock = self._stripes[idx]
                lock.acquire()
                acquired.append(lock)
        try:
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


_manager = UserLockManager()


def get_lock_manager() -> UserLockManager:
    return _manager
