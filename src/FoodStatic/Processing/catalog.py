"""Single-writer gzip JSONL catalog fed by a bounded queue.

A gzip stream is not safe for concurrent writers, so exactly one dedicated
thread owns it. Workers hand rows over through a bounded :class:`queue.Queue`;
when the writer falls behind, producers block, which keeps memory bounded.
Rows land in arrival order, which is not the source order.

The stream is written to a temporary sibling and renamed onto
``catalog.jsonl.gz`` only when :meth:`CatalogEmitter.close` succeeds, so a failed
run never leaves a truncated catalog behind.
"""

from __future__ import annotations

import gzip
import os
import queue
import threading
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import TracebackType
from typing import Any, List, Optional, Type

import jsonlines

from .errors import WriteFailure
from .logging import get_logger, log_event

__all__ = ["CatalogEmitter"]

LOGGER = get_logger(__name__, base_fields={"stage": "catalog"})

_SENTINEL = object()


class CatalogEmitter:
    """Append-only catalog writer owned by one background thread."""

    def __init__(self, path: Path, *, queue_size: int = 10_000, durable: bool = False) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.path = Path(path)
        self.durable = durable
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size)
        self._tmp = self.path.with_name(f"{self.path.name}.tmp.{uuid.uuid4().hex}")
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None
        self._lines = 0
        self._dropped = 0
        self._closed = False

    @property
    def dropped_lines(self) -> int:
        """Rows queued but never written because the writer had already failed."""

        return self._dropped

    def start(self) -> "CatalogEmitter":
        """Open the temporary stream and start the writer thread."""

        if self._thread is not None:
            raise RuntimeError("CatalogEmitter already started")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = gzip.open(self._tmp, "wt", encoding="utf-8")
        self._thread = threading.Thread(
            target=self._run, args=(handle,), name="foodstatic-catalog", daemon=True
        )
        self._thread.start()
        return self

    def _run(self, handle: Any) -> None:
        writer = jsonlines.Writer(handle, compact=True)
        try:
            while True:
                item = self._queue.get()
                if item is _SENTINEL:
                    break
                if self._error is not None:
                    # Keep draining so producers never block on a dead writer.
                    self._dropped += len(item)
                    continue
                written = 0
                try:
                    for line in item:
                        writer.write(line)
                        written += 1
                except Exception as exc:
                    self._error = exc
                    self._dropped += len(item) - written
                    log_event(
                        LOGGER,
                        "error",
                        "Catalog write failed",
                        path=str(self.path),
                        error=str(exc),
                        error_code="CATALOG_WRITE_FAILED",
                    )
                self._lines += written
        finally:
            try:
                writer.close()
                handle.close()
                if self.durable and self._error is None:
                    fd = os.open(self._tmp, os.O_RDONLY)
                    try:
                        os.fsync(fd)
                    finally:
                        os.close(fd)
            except Exception as exc:
                if self._error is None:
                    self._error = exc

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("CatalogEmitter is closed")
        if self._thread is None:
            raise RuntimeError("CatalogEmitter not started")
        if self._error is not None:
            raise WriteFailure(f"Catalog writer failed: {self._error}", path=self.path)

    def append(self, line: Mapping[str, Any]) -> None:
        """Queue one catalog row; blocks while the queue is full."""

        self._ensure_open()
        self._queue.put([dict(line)])

    def extend(self, lines: Iterable[Mapping[str, Any]]) -> None:
        """Queue several catalog rows as one unit."""

        self._ensure_open()
        payload: List[dict] = [dict(line) for line in lines]
        if payload:
            self._queue.put(payload)

    def close(self) -> int:
        """Drain the queue, finalise the stream and publish it; return line count."""

        if self._closed:
            return self._lines
        self._closed = True
        if self._thread is None:
            return 0
        self._queue.put(_SENTINEL)
        self._thread.join()
        if self._error is not None:
            self._tmp.unlink(missing_ok=True)
            raise WriteFailure(f"Catalog writer failed: {self._error}", path=self.path)
        self._tmp.replace(self.path)
        log_event(LOGGER, "info", "Catalog published", path=str(self.path), lines=self._lines)
        return self._lines

    def abort(self) -> None:
        """Stop the writer and discard the partial stream."""

        if self._closed:
            return
        self._closed = True
        if self._thread is not None:
            self._queue.put(_SENTINEL)
            self._thread.join()
        self._tmp.unlink(missing_ok=True)

    def __enter__(self) -> "CatalogEmitter":
        if self._thread is None:
            self.start()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is not None:
            self.abort()
            return
        self.close()
