# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.Processing.transform",
#   "purpose": "Parallel normalise → write → index/catalog stage over row batches.",
#   "sections": [
#     {
#       "id": "batchresult",
#       "name": "BatchResult",
#       "anchor": "class-batchresult",
#       "kind": "class"
#     },
#     {
#       "id": "transformstats",
#       "name": "TransformStats",
#       "anchor": "class-transformstats",
#       "kind": "class"
#     },
#     {
#       "id": "product-entries",
#       "name": "product_entries",
#       "anchor": "function-product-entries",
#       "kind": "function"
#     },
#     {
#       "id": "transform-batch",
#       "name": "transform_batch",
#       "anchor": "function-transform-batch",
#       "kind": "function"
#     },
#     {
#       "id": "transformstage",
#       "name": "TransformStage",
#       "anchor": "class-transformstage",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Parallel normalise → write → index/catalog stage over row batches.

Each batch is one work unit. :func:`transform_batch` normalises every row of the
batch first and only then performs side effects, writing one
``products/{code}.json`` per accepted product. A failed write is logged and
counted, and that product is left out of the index and the catalog so every
published reference points at an existing document.

:class:`TransformStage` fans batches out over a bounded executor and keeps at
most ``max_in_flight`` batches submitted at once so the reader cannot run
arbitrarily far ahead. With the thread policy, workers feed the aggregator and
the catalog directly; with the process policy the batch results travel back to
the coordinating thread, which records them.
"""

from __future__ import annotations

import concurrent.futures as cf
from collections import Counter
from collections.abc import Iterable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

from tqdm import tqdm

from FoodStatic.concurrency import create_executor

from .aggregator import IndexAggregator
from .catalog import CatalogEmitter
from .errors import SkipReason, WriteFailure
from .io import write_json_atomic
from .logging import get_logger, log_event
from .models import BRAND, CATEGORY, IndexEntry, Product
from .normalizer import ColumnIndex, index_values, normalize_row
from .settings import PipelineCfg, RunnerPolicy

__all__ = [
    "BatchResult",
    "TransformStage",
    "TransformStats",
    "product_entries",
    "product_path",
    "transform_batch",
]

LOGGER = get_logger(__name__, base_fields={"stage": "transform"})


@dataclass(slots=True)
class BatchResult:
    """Outcome of one batch: counters plus the rows bound for the sinks."""

    rows: int = 0
    accepted: int = 0
    write_failures: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    entries: List[IndexEntry] = field(default_factory=list)
    catalog: List[dict] = field(default_factory=list)
    # Set once the payload has been handed to the sinks.
    recorded: Optional[int] = None
    catalog_failed: int = 0


@dataclass(slots=True)
class TransformStats:
    """Run-level counters accumulated across batches."""

    batches: int = 0
    rows: int = 0
    accepted: int = 0
    write_failures: int = 0
    catalog_failures: int = 0
    batch_errors: int = 0
    index_entries: int = 0
    malformed_rows: int = 0
    skipped: Counter = field(default_factory=Counter)

    def merge(self, result: BatchResult) -> None:
        self.batches += 1
        self.rows += result.rows
        self.accepted += result.accepted
        self.write_failures += result.write_failures
        self.skipped.update(result.skipped)


def product_path(products_dir: Path, code: str) -> Path:
    return products_dir / f"{code}.json"


def product_entries(product: Product) -> List[IndexEntry]:
    """Return one entry per distinct category value and per distinct brand value."""

    entries = [
        IndexEntry(dimension=CATEGORY, key=value, code=product.code)
        for value in index_values(product.main_category)
    ]
    entries.extend(
        IndexEntry(dimension=BRAND, key=value, code=product.code)
        for value in index_values(product.brand)
    )
    return entries


def transform_batch(
    rows: Sequence[Sequence[str]],
    columns: ColumnIndex,
    products_dir: Path,
    *,
    durable: bool = False,
) -> BatchResult:
    """Normalise ``rows`` and write their product documents.

    Module-level so it can be shipped to a spawned process pool.
    """

    result = BatchResult(rows=len(rows))
    skipped: Counter = Counter()
    products: List[Product] = []
    for row in rows:
        outcome = normalize_row(row, columns)
        if isinstance(outcome, SkipReason):
            skipped[outcome.value] += 1
            continue
        products.append(outcome)

    for product in products:
        target = product_path(products_dir, product.code)
        try:
            write_json_atomic(target, product.to_document(), durable=durable)
        except OSError as exc:
            result.write_failures += 1
            log_event(
                LOGGER,
                "error",
                "Product write failed",
                code=product.code,
                path=str(target),
                error=str(exc),
                error_code="WRITE_FAILED",
            )
            continue
        result.accepted += 1
        result.entries.extend(product_entries(product))
        result.catalog.append(product.catalog_line())

    result.skipped = dict(skipped)
    return result


class TransformStage:
    """Drive batches through a bounded worker pool into the aggregation sinks."""

    def __init__(
        self,
        settings: PipelineCfg,
        aggregator: IndexAggregator,
        catalog: CatalogEmitter,
    ) -> None:
        self.settings = settings
        self.aggregator = aggregator
        self.catalog = catalog
        self.stats = TransformStats()
        self._products_dir = settings.products_dir

    def _absorb(self, result: BatchResult) -> BatchResult:
        """Hand a batch's entries and catalog rows to the sinks, then drop them."""

        result.recorded = self.aggregator.record_entries(result.entries)
        try:
            self.catalog.extend(result.catalog)
        except WriteFailure as exc:
            result.catalog_failed = len(result.catalog)
            log_event(
                LOGGER,
                "error",
                "Catalog append failed",
                rows=result.catalog_failed,
                error=str(exc),
                error_code="CATALOG_WRITE_FAILED",
            )
        result.entries = []
        result.catalog = []
        return result

    def _run_in_thread(self, rows: List[List[str]], columns: ColumnIndex) -> BatchResult:
        result = transform_batch(
            rows, columns, self._products_dir, durable=self.settings.durable_writes
        )
        return self._absorb(result)

    def _complete(self, result: BatchResult, progress: tqdm) -> None:
        if result.recorded is None:
            result = self._absorb(result)
        self.stats.merge(result)
        self.stats.index_entries += result.recorded or 0
        self.stats.catalog_failures += result.catalog_failed
        progress.update(result.rows)

    def _fail(self, exc: BaseException) -> None:
        self.stats.batch_errors += 1
        log_event(
            LOGGER,
            "error",
            "Batch failed",
            error=repr(exc),
            error_code="BATCH_FAILED",
        )

    def run(self, batches: Iterable[List[List[str]]], columns: ColumnIndex) -> TransformStats:
        """Consume ``batches`` to completion; returns after the pool has shut down."""

        settings = self.settings
        policy = RunnerPolicy(settings.policy).value
        executor, needs_shutdown = create_executor(policy, settings.workers)
        max_in_flight = settings.effective_max_in_flight
        in_process = policy == RunnerPolicy.CPU.value
        pending: Set[Future] = set()
        progress = tqdm(
            desc="Processing products",
            unit="row",
            disable=not settings.progress,
            leave=False,
        )

        def _drain(return_when: str) -> None:
            nonlocal pending
            done, still_pending = wait(pending, return_when=return_when)
            pending = set(still_pending)
            for future in done:
                try:
                    self._complete(future.result(), progress)
                except Exception as exc:
                    self._fail(exc)

        log_event(
            LOGGER,
            "info",
            "Transform started",
            workers=settings.workers,
            policy=policy,
            max_in_flight=max_in_flight,
        )
        try:
            for rows in batches:
                if executor is None:
                    try:
                        self._complete(self._run_in_thread(rows, columns), progress)
                    except Exception as exc:
                        self._fail(exc)
                    continue
                while len(pending) >= max_in_flight:
                    _drain(FIRST_COMPLETED)
                if in_process:
                    future = executor.submit(
                        transform_batch,
                        rows,
                        columns,
                        self._products_dir,
                        durable=settings.durable_writes,
                    )
                else:
                    future = executor.submit(self._run_in_thread, rows, columns)
                pending.add(future)
            if pending:
                _drain(cf.ALL_COMPLETED)
        finally:
            if executor is not None and needs_shutdown:
                executor.shutdown(wait=True, cancel_futures=True)
            progress.close()

        log_event(
            LOGGER,
            "info",
            "Transform complete",
            batches=self.stats.batches,
            rows=self.stats.rows,
            accepted=self.stats.accepted,
            skipped=sum(self.stats.skipped.values()),
            write_failures=self.stats.write_failures,
            batch_errors=self.stats.batch_errors,
            buckets=self.aggregator.bucket_count(),
        )
        return self.stats
