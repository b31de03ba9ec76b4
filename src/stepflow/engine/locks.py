"""Per-instance exclusive access.

Two separate guarantees:

* ``hold(instance_id)``: at most one mutator of an instance's state at a
  time. Held only while reading/applying state, never while a step runs.
* ``claim(instance_id)``: at most one driver loop per instance. A claim is
  a token; releasing with a stale token is a no-op, so a finished driver
  can't release a claim a newer driver already took.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class InstanceLocks:
    """Lock map keyed by instance id."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._claims: dict[str, object] = {}
        self._guard = threading.Lock()

    def get(self, instance_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = self._locks[instance_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[None]:
        with self.get(instance_id):
            yield

    def discard(self, instance_id: str) -> None:
        """Forget the lock of a finished instance.

        Threads already holding or waiting on the old lock keep it; later
        callers get a fresh one. Only call this once the instance is
        terminal, when every mutator turns into a no-op or a refusal.
        """
        with self._guard:
            self._locks.pop(instance_id, None)

    def claim(self, instance_id: str) -> object | None:
        """Claim the driver slot; ``None`` if another driver holds it."""
        with self._guard:
            if instance_id in self._claims:
                return None
            token = object()
            self._claims[instance_id] = token
            return token

    def release(self, instance_id: str, token: object) -> None:
        with self._guard:
            if self._claims.get(instance_id) is token:
                del self._claims[instance_id]

    def is_claimed(self, instance_id: str) -> bool:
        with self._guard:
            return instance_id in self._claims

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


__all__ = ["InstanceLocks"]
