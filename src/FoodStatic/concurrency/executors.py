"""Worker pool construction for the transform stage."""

from __future__ import annotations

import os
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from multiprocessing import get_context
from typing import Optional, Tuple

_POLICIES = ("io", "cpu")


def default_workers() -> int:
    """Return the available parallelism for this process (at least one)."""

    try:
        return max(1, len(os.sched_getaffinity(0)))
    except (AttributeError, OSError):
        # sched_getaffinity is Linux-only.
        return max(1, os.cpu_count() or 1)


def create_executor(policy: str, workers: int) -> Tuple[Optional[Executor], bool]:
    """
    Build the pool that batches are fanned out to.

    Args:
        policy: ``"io"`` for a thread pool whose workers feed the shared sinks
            directly, ``"cpu"`` for a spawned process pool whose results are
            recorded by the submitting thread.
        workers: Pool size. With ``1`` or less no pool is created and the
            caller processes batches inline.

    Returns:
        Tuple of (executor, needs_shutdown).

    Raises:
        ValueError: If ``policy`` is not a known policy.
    """
    normalized = (policy or "io").lower()
    if normalized not in _POLICIES:
        raise ValueError(f"Unknown runner policy: {policy!r}")
    if workers <= 1:
        return None, False
    if normalized == "cpu":
        return ProcessPoolExecutor(max_workers=workers, mp_context=get_context("spawn")), True
    return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="foodstatic-transform"), True
