# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.Processing.aggregator",
#   "purpose": "Concurrent category/brand membership accumulation and paged flush.",
#   "sections": [
#     {
#       "id": "shard-for-key",
#       "name": "shard_for_key",
#       "anchor": "function-shard-for-key",
#       "kind": "function"
#     },
#     {
#       "id": "bucketfailure",
#       "name": "BucketFailure",
#       "anchor": "class-bucketfailure",
#       "kind": "class"
#     },
#     {
#       "id": "flushreport",
#       "name": "FlushReport",
#       "anchor": "class-flushreport",
#       "kind": "class"
#     },
#     {
#       "id": "indexaggregator",
#       "name": "IndexAggregator",
#       "anchor": "class-indexaggregator",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Concurrent category/brand membership accumulation and paged flush.

Accumulation and pagination are two strictly separate phases. While batches are
in flight, workers call :meth:`IndexAggregator.record` concurrently; the bucket
map is split across ``lock_stripes`` independently locked stripes chosen by a
stable hash of the key, so contention stays low without one global lock. Once
the worker pool has shut down, :meth:`IndexAggregator.flush` runs exactly once
on a single thread: it sorts every bucket by code and writes fixed-size pages
plus a ``_meta.json`` summary under a hash-derived shard directory.

Layout::

    {indexes_root}/{dimension}/{shard}/{key}/page-0001.json
    {indexes_root}/{dimension}/{shard}/{key}/_meta.json

Pages are written before ``_meta.json``; a bucket whose flush fails therefore
never advertises pages that are missing, and it is reported in
:class:`FlushReport` while the remaining buckets continue to flush.
"""

from __future__ import annotations

import math
import threading
import time
import zlib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence, Set, Tuple

from .io import key_dirname, stable_hash, write_json_atomic
from .logging import get_logger, log_event
from .models import DIMENSIONS, IndexEntry

__all__ = [
    "BucketFailure",
    "FlushReport",
    "IndexAggregator",
    "META_FILENAME",
    "bucket_dir",
    "page_filename",
    "shard_for_key",
]

LOGGER = get_logger(__name__, base_fields={"stage": "index"})

META_FILENAME = "_meta.json"

BucketId = Tuple[str, str]


def shard_for_key(key: str, shard_count: int) -> str:
    """Return the zero-padded shard directory name for ``key``.

    The value depends only on ``key`` and ``shard_count``, so repeated runs place
    a key under the same shard.
    """

    if shard_count < 1:
        raise ValueError("shard_count must be >= 1")
    width = len(str(shard_count - 1))
    return f"{stable_hash(key) % shard_count:0{width}d}"


def page_filename(page: int, width: int = 4) -> str:
    """Return the 1-based page file name, e.g. ``page-0001.json``."""

    return f"page-{page:0{width}d}.json"


def bucket_dir(indexes_root: Path, dimension: str, key: str, shard_count: int) -> Path:
    """Return the directory holding the pages of one bucket."""

    return indexes_root / dimension / shard_for_key(key, shard_count) / key_dirname(key)


def _paginate(codes: Sequence[str], page_size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(codes), page_size):
        yield codes[start : start + page_size]


@dataclass(slots=True, frozen=True)
class BucketFailure:
    """A bucket left incomplete by an I/O error during flush."""

    dimension: str
    key: str
    error: str

    def label(self) -> str:
        return f"{self.dimension}:{self.key}"


@dataclass(slots=True)
class FlushReport:
    """Outcome of :meth:`IndexAggregator.flush`."""

    buckets_written: int = 0
    pages_written: int = 0
    entries_written: int = 0
    duration_s: float = 0.0
    failed: List[BucketFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class _Stripe:
    __slots__ = ("lock", "buckets")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.buckets: Dict[BucketId, Set[str]] = {}


class IndexAggregator:
    """Sharded-lock table of ``(dimension, key) → codes`` with a one-shot flush."""

    def __init__(
        self,
        *,
        page_size: int = 500,
        shard_count: int = 256,
        lock_stripes: int = 64,
        page_number_width: int = 4,
        durable: bool = False,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be >= 1")
        self.page_size = page_size
        self.shard_count = shard_count
        self.page_number_width = page_number_width
        self.durable = durable
        self._stripes = tuple(_Stripe() for _ in range(lock_stripes))
        self._flushed = False

    def _stripe_for(self, key: str) -> _Stripe:
        return self._stripes[zlib.crc32(key.encode("utf-8")) % len(self._stripes)]

    def record(self, dimension: str, key: str, code: str) -> None:
        """Add ``code`` to the bucket ``(dimension, key)``; repeated adds are no-ops."""

        if dimension not in DIMENSIONS:
            raise ValueError(f"Unknown index dimension: {dimension!r}")
        if not key:
            raise ValueError("Index key must not be empty")
        if self._flushed:
            raise RuntimeError("IndexAggregator already flushed")
        stripe = self._stripe_for(key)
        with stripe.lock:
            bucket = stripe.buckets.get((dimension, key))
            if bucket is None:
                bucket = stripe.buckets[(dimension, key)] = set()
            bucket.add(code)

    def record_entries(self, entries: Iterable[IndexEntry]) -> int:
        """Record every entry in ``entries`` and return how many were seen."""

        count = 0
        for entry in entries:
            self.record(entry.dimension, entry.key, entry.code)
            count += 1
        return count

    def bucket_count(self) -> int:
        return sum(len(stripe.buckets) for stripe in self._stripes)

    def snapshot(self) -> Dict[BucketId, List[str]]:
        """Return a sorted copy of every bucket (intended for diagnostics and tests)."""

        result: Dict[BucketId, List[str]] = {}
        for stripe in self._stripes:
            with stripe.lock:
                for bucket_id, codes in stripe.buckets.items():
                    result[bucket_id] = sorted(codes)
        return result

    def _iter_buckets(self) -> List[Tuple[BucketId, Set[str]]]:
        merged: List[Tuple[BucketId, Set[str]]] = []
        for stripe in self._stripes:
            merged.extend(stripe.buckets.items())
        merged.sort(key=lambda item: item[0])
        return merged

    def _flush_bucket(self, indexes_root: Path, dimension: str, key: str, codes: Set[str]) -> int:
        ordered = sorted(codes)
        directory = bucket_dir(indexes_root, dimension, key, self.shard_count)
        pages = math.ceil(len(ordered) / self.page_size)
        for number, chunk in enumerate(_paginate(ordered, self.page_size), start=1):
            write_json_atomic(
                directory / page_filename(number, self.page_number_width),
                {"page": number, "codes": list(chunk)},
                durable=self.durable,
            )
        write_json_atomic(
            directory / META_FILENAME,
            {
                "count": len(ordered),
                "pages": pages,
                "page_size": self.page_size,
                "dimension": dimension,
                "key": key,
            },
            durable=self.durable,
        )
        return pages

    def close(self) -> None:
        """Discard every bucket without writing; later ``record``/``flush`` calls raise."""

        self._flushed = True
        for stripe in self._stripes:
            with stripe.lock:
                stripe.buckets.clear()

    def flush(self, indexes_root: Path) -> FlushReport:
        """Write every bucket under ``indexes_root``; may only be called once.

        Must run after all producers have finished. A bucket that fails to write
        is recorded in the returned report and the flush moves on.
        """

        if self._flushed:
            raise RuntimeError("IndexAggregator already flushed or closed")
        self._flushed = True

        started = time.perf_counter()
        report = FlushReport()
        buckets = self._iter_buckets()
        log_event(LOGGER, "info", "Flushing index buckets", buckets=len(buckets))
        for (dimension, key), codes in buckets:
            try:
                pages = self._flush_bucket(Path(indexes_root), dimension, key, codes)
            except OSError as exc:
                failure = BucketFailure(dimension=dimension, key=key, error=str(exc))
                report.failed.append(failure)
                log_event(
                    LOGGER,
                    "error",
                    "Bucket flush failed",
                    dimension=dimension,
                    key=key,
                    error=str(exc),
                    error_code="FLUSH_FAILED",
                )
                continue
            report.buckets_written += 1
            report.pages_written += pages
            report.entries_written += len(codes)
        for stripe in self._stripes:
            stripe.buckets.clear()
        report.duration_s = time.perf_counter() - started
        log_event(
            LOGGER,
            "info",
            "Index flush complete",
            buckets=report.buckets_written,
            pages=report.pages_written,
            failed=len(report.failed),
            duration_s=round(report.duration_s, 3),
        )
        return report
