"""Exception hierarchy and skip taxonomy shared across the FoodStatic pipeline.

The pipeline spans input discovery, per-row normalisation, per-product file
writes, and the final index flush. Only problems discovered before any output
is produced abort a run; everything else is counted and surfaced through the
end-of-run summary. This module groups those failure modes so callers can react
to high-level categories while still seeing which unit of work was affected.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

__all__ = [
    "FoodStaticError",
    "FatalStartupError",
    "ConfigurationError",
    "SourceReadError",
    "WriteFailure",
    "FlushPartialFailure",
    "SkipReason",
]


class FoodStaticError(RuntimeError):
    """Base exception for FoodStatic processing failures."""


class FatalStartupError(FoodStaticError):
    """Raised when the input cannot be opened; the run aborts before any output."""

    def __init__(self, message: str, *, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class ConfigurationError(FoodStaticError):
    """Raised when settings or CLI overrides are invalid."""


class SourceReadError(FoodStaticError):
    """Raised when the input stream breaks after reading has started.

    Product files written before the failure stay in place; the catalog and
    index are not published for an aborted run.
    """

    def __init__(self, message: str, *, path: Optional[Path] = None, line: int = 0) -> None:
        super().__init__(message)
        self.path = path
        self.line = line


class WriteFailure(FoodStaticError):
    """Raised when a single output unit (file or bucket) could not be written."""

    def __init__(self, message: str, *, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class FlushPartialFailure(FoodStaticError):
    """Raised when one or more index buckets failed to flush.

    Buckets listed in ``failed_buckets`` are incomplete; every other bucket was
    written in full and remains usable.
    """

    def __init__(self, message: str, *, failed_buckets: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.failed_buckets = tuple(failed_buckets)


class SkipReason(str, Enum):
    """Why a source row was excluded from every output."""

    EMPTY_CODE = "empty_code"
    MALFORMED = "malformed"
