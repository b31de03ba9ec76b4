"""Wall-clock deadlines for in-flight executor calls.

Executors are synchronous host code; the only portable way to bound them is
to run them on a worker thread and stop waiting at the deadline. The worker
thread is not killed (Python has no safe way to do that); its eventual
result is discarded.

Example:
    >>> result = run_with_timeout(
    ...     executor.execute,
    ...     timeout_seconds=30.0,
    ...     args=(step, ctx),
    ...     operation=step.id,
    ... )
"""

from __future__ import annotations

import concurrent.futures
import time
from collections.abc import Callable
from typing import Any, TypeVar

from stepflow.core.errors import StepTimeoutError

T = TypeVar("T")


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float,
    operation: str | None = None,
    args: tuple[Any, ...] | None = None,
    kwargs: dict[str, Any] | None = None,
) -> T:
    """Run a callable with a timeout using a single-use worker thread.

    Args:
        func: Callable to execute
        timeout_seconds: Maximum execution time
        operation: Name for error messages (usually the step id)
        args: Positional arguments for func
        kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Raises:
        StepTimeoutError: If execution exceeds timeout
        Exception: Any exception raised by func
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    start = time.monotonic()
    pos_args = args or ()
    kw_args = kwargs or {}

    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix="stepflow-deadline"
    )
    try:
        future = executor.submit(func, *pos_args, **kw_args)
        try:
            return future.result(timeout=timeout_seconds)
        except concurrent.futures.TimeoutError:
            elapsed = time.monotonic() - start
            name = operation or getattr(func, "__name__", "unknown")
            raise StepTimeoutError(
                f"{name} exceeded its {timeout_seconds:g}s timeout",
                timeout=timeout_seconds,
                elapsed=elapsed,
                step_id=operation,
            ) from None
    finally:
        # Don't block on a straggler; its result is discarded.
        executor.shutdown(wait=False, cancel_futures=True)


__all__ = ["run_with_timeout"]
