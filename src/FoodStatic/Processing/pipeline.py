# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.Processing.pipeline",
#   "purpose": "End-to-end orchestration of one static-tree generation run.",
#   "sections": [
#     {
#       "id": "runsummary",
#       "name": "RunSummary",
#       "anchor": "class-runsummary",
#       "kind": "class"
#     },
#     {
#       "id": "run-pipeline",
#       "name": "run_pipeline",
#       "anchor": "function-run-pipeline",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""End-to-end orchestration of one static-tree generation run.

Phases:

1. Open and validate the input. Any problem here raises
   :class:`~FoodStatic.Processing.errors.FatalStartupError` before a single
   output file exists.
2. Take the output-root lock, start the catalog writer and stream batches
   through :class:`~FoodStatic.Processing.transform.TransformStage`. If the
   input stream breaks mid-way, the catalog and index are discarded and
   :class:`~FoodStatic.Processing.errors.SourceReadError` propagates.
3. Publish the catalog, then flush the index aggregator. The flush is the
   barrier: it only starts after the worker pool has shut down.
4. Fold every counter into a :class:`RunSummary` for the operator.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from filelock import FileLock, Timeout

from .aggregator import BucketFailure, IndexAggregator
from .catalog import CatalogEmitter
from .errors import (
    FatalStartupError,
    FlushPartialFailure,
    SkipReason,
    SourceReadError,
    WriteFailure,
)
from .logging import get_logger, log_event
from .settings import PipelineCfg
from .source import RecordSource
from .transform import TransformStage

__all__ = ["EXIT_FAILURES", "EXIT_FATAL", "EXIT_OK", "RunSummary", "run_pipeline"]

LOGGER = get_logger(__name__, base_fields={"stage": "pipeline"})

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_FAILURES = 2

_LOCK_NAME = ".foodstatic.lock"


@dataclass(slots=True)
class RunSummary:
    """Counters surfaced to the operator at the end of a run."""

    rows: int = 0
    accepted: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    write_failures: int = 0
    catalog_failures: int = 0
    batch_errors: int = 0
    catalog_lines: int = 0
    catalog_error: Optional[str] = None
    buckets_written: int = 0
    pages_written: int = 0
    failed_buckets: List[BucketFailure] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    @property
    def ok(self) -> bool:
        return not (
            self.write_failures
            or self.catalog_failures
            or self.batch_errors
            or self.catalog_error
            or self.failed_buckets
        )

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.ok else EXIT_FAILURES

    def raise_for_failures(self) -> None:
        """Raise :class:`FlushPartialFailure` when any bucket was left incomplete."""

        if self.failed_buckets:
            labels = [failure.label() for failure in self.failed_buckets]
            raise FlushPartialFailure(
                f"{len(labels)} index bucket(s) failed to flush", failed_buckets=labels
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": self.rows,
            "accepted": self.accepted,
            "skipped": dict(self.skipped),
            "skipped_total": self.skipped_total,
            "write_failures": self.write_failures,
            "catalog_failures": self.catalog_failures,
            "batch_errors": self.batch_errors,
            "catalog_lines": self.catalog_lines,
            "catalog_error": self.catalog_error,
            "buckets_written": self.buckets_written,
            "pages_written": self.pages_written,
            "failed_buckets": [failure.label() for failure in self.failed_buckets],
            "duration_s": round(self.duration_s, 3),
            "ok": self.ok,
        }


def run_pipeline(settings: PipelineCfg) -> RunSummary:
    """Generate the static tree described by ``settings`` and return its summary."""

    started = time.perf_counter()
    source = RecordSource(settings.input_path, batch_size=settings.batch_size)
    columns = source.open()

    output_root = settings.output_root
    output_root.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(output_root / _LOCK_NAME))
    try:
        lock.acquire(timeout=0)
    except Timeout as exc:
        raise FatalStartupError(
            f"Another run is writing to {output_root}; lock {lock.lock_file} is held",
            path=output_root,
        ) from exc

    try:
        log_event(
            LOGGER,
            "info",
            "Run started",
            input=str(settings.input_path),
            output=str(output_root),
            batch_size=settings.batch_size,
            page_size=settings.page_size,
            shard_count=settings.shard_count,
            workers=settings.workers,
        )
        settings.products_dir.mkdir(parents=True, exist_ok=True)
        settings.indexes_dir.mkdir(parents=True, exist_ok=True)

        aggregator = IndexAggregator(
            page_size=settings.page_size,
            shard_count=settings.shard_count,
            lock_stripes=settings.lock_stripes,
            page_number_width=settings.page_number_width,
            durable=settings.durable_writes,
        )
        catalog = CatalogEmitter(
            settings.catalog_path,
            queue_size=settings.catalog_queue_size,
            durable=settings.durable_writes,
        ).start()
        stage = TransformStage(settings, aggregator, catalog)
        try:
            stats = stage.run(source.iter_batches(), columns)
        except SourceReadError as exc:
            catalog.abort()
            aggregator.close()
            log_event(
                LOGGER,
                "error",
                "Run aborted: input stream failed",
                error=str(exc),
                line=exc.line,
                error_code="SOURCE_READ_FAILED",
            )
            raise
        except BaseException:
            catalog.abort()
            aggregator.close()
            raise
        stats.malformed_rows = source.stats.malformed_rows

        summary = RunSummary(
            rows=stats.rows + stats.malformed_rows,
            accepted=stats.accepted,
            write_failures=stats.write_failures,
            catalog_failures=stats.catalog_failures,
            batch_errors=stats.batch_errors,
        )
        skipped = dict(stats.skipped)
        if stats.malformed_rows:
            skipped[SkipReason.MALFORMED.value] = stats.malformed_rows
        summary.skipped = skipped

        try:
            summary.catalog_lines = catalog.close()
        except WriteFailure as exc:
            summary.catalog_error = str(exc)
        summary.catalog_failures += catalog.dropped_lines

        report = aggregator.flush(settings.indexes_dir)
        summary.buckets_written = report.buckets_written
        summary.pages_written = report.pages_written
        summary.failed_buckets = list(report.failed)
    finally:
        lock.release()

    summary.duration_s = time.perf_counter() - started
    log_event(
        LOGGER,
        "info" if summary.ok else "warning",
        "Run complete",
        **summary.to_dict(),
        error_code=None if summary.ok else "RUN_FAILURES",
    )
    return summary
