"""Wall-clock deadlines for waiting steps.

A waiting instance holds no thread. When a USER_TASK (or any waiting step)
has a timeout, or a TIMER step starts waiting, the engine schedules a
:class:`ScheduledEvent`; the scheduler hands due events back to the engine
callback, which applies ``handle_timeout`` / ``handle_timer``.

┌──────────────────────────────────────────────────────────────────────┐
│  ThreadTimeoutScheduler                                              │
│                                                                      │
│   start(callback)                                                    │
│      └── daemon thread:                                              │
│             while not stop_event.wait(poll_interval):                │
│                 poll()  ── pop due events ──▶ callback(event)        │
│                                                                      │
│   stop()                                                             │
│      └── stop_event.set(); thread.join(timeout=5.0)                  │
└──────────────────────────────────────────────────────────────────────┘

Hosts with their own scheduling infrastructure implement the
:class:`TimeoutScheduler` protocol instead.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from stepflow.core.logging import get_logger
from stepflow.core.timestamps import to_iso8601, utc_now

logger = get_logger(__name__)


class EventKind(str, Enum):
    """What a scheduled event means to the engine."""

    TIMEOUT = "TIMEOUT"
    TIMER = "TIMER"


@dataclass(frozen=True)
class ScheduledEvent:
    """A deadline for one waiting step of one instance."""

    instance_id: str
    step_id: str
    kind: EventKind
    due_at: datetime

    @classmethod
    def after(cls, instance_id: str, step_id: str, kind: EventKind, seconds: float) -> ScheduledEvent:
        return cls(instance_id, step_id, kind, utc_now() + timedelta(seconds=seconds))

    @property
    def key(self) -> tuple[str, str, EventKind]:
        return (self.instance_id, self.step_id, self.kind)

    def is_due(self, now: datetime) -> bool:
        return self.due_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "step_id": self.step_id,
            "kind": self.kind.value,
            "due_at": to_iso8601(self.due_at),
        }


EventCallback = Callable[[ScheduledEvent], Any]


@runtime_checkable
class TimeoutScheduler(Protocol):
    """Scheduler contract used by the engine."""

    def schedule(self, event: ScheduledEvent) -> None: ...

    def cancel(self, instance_id: str, step_id: str | None = None) -> int: ...

    def start(self, callback: EventCallback) -> None: ...

    def stop(self) -> None: ...


class ThreadTimeoutScheduler:
    """Daemon-thread poller for scheduled events.

    Scheduling the same (instance, step, kind) again replaces the earlier
    deadline. ``poll()`` is public so tests and hosts with their own loop
    can drive it directly.

    Example:
        >>> scheduler = ThreadTimeoutScheduler(poll_interval=0.5)
        >>> scheduler.start(engine_callback)
        >>> scheduler.schedule(ScheduledEvent.after("01HX...", "step_2", EventKind.TIMER, 30))
        >>> scheduler.stop()
    """

    name = "thread"

    def __init__(self, poll_interval: float = 1.0) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        self._interval = poll_interval
        self._events: dict[tuple[str, str, EventKind], ScheduledEvent] = {}
        self._callback: EventCallback | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._started = False
        self._tick_count = 0
        self._fired_count = 0
        self._last_tick: datetime | None = None

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def schedule(self, event: ScheduledEvent) -> None:
        with self._lock:
            self._events[event.key] = event
        logger.debug("scheduler.scheduled", **event.to_dict())

    def cancel(self, instance_id: str, step_id: str | None = None) -> int:
        """Drop pending events of an instance (optionally one step). Returns the count."""
        with self._lock:
            keys = [
                key for key in self._events
                if key[0] == instance_id and (step_id is None or key[1] == step_id)
            ]
            for key in keys:
                del self._events[key]
        if keys:
            logger.debug("scheduler.cancelled", instance_id=instance_id, step_id=step_id, count=len(keys))
        return len(keys)

    def pending(self, instance_id: str | None = None) -> list[ScheduledEvent]:
        with self._lock:
            events = [e for e in self._events.values() if instance_id is None or e.instance_id == instance_id]
        return sorted(events, key=lambda e: e.due_at)

    def poll(self, now: datetime | None = None) -> list[ScheduledEvent]:
        """Fire every event due at *now*; returns the fired events.

        Callback failures are logged and do not stop the remaining events.
        """
        now = now or utc_now()
        with self._lock:
            due = sorted((e for e in self._events.values() if e.is_due(now)), key=lambda e: e.due_at)
            for event in due:
                del self._events[event.key]
            callback = self._callback

        if callback is None:
            if due:
                logger.warning("scheduler.no_callback", dropped=len(due))
            return due

        for event in due:
            try:
                callback(event)
            except Exception:
                logger.exception("scheduler.callback_failed", **event.to_dict())
            else:
                self._fired_count += 1
        return due

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, callback: EventCallback) -> None:
        """Register *callback* and start the polling loop in a daemon thread."""
        self._callback = callback
        if self._started:
            logger.warning("scheduler.already_started")
            return
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("scheduler.started", interval=self._interval)
            while not self._stop_event.wait(self._interval):
                self._tick_count += 1
                self._last_tick = utc_now()
                self.poll(self._last_tick)
            logger.info("scheduler.stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name="stepflow-scheduler")
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        """Stop the polling loop, waiting up to 5 seconds for the current tick."""
        if not self._started:
            return
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("scheduler.stop_timeout")
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.is_running,
            "backend": self.name,
            "tick_count": self._tick_count,
            "fired_count": self._fired_count,
            "pending": len(self._events),
            "last_tick": to_iso8601(self._last_tick),
            "interval_seconds": self._interval,
        }


__all__ = [
    "EventKind",
    "ScheduledEvent",
    "EventCallback",
    "TimeoutScheduler",
    "ThreadTimeoutScheduler",
]
