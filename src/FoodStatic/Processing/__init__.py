# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.Processing.__init__",
#   "purpose": "Processing package facade for the static-tree generator.",
#   "sections": []
# }
# === /NAVMAP ===

"""
Processing package facade for the static-tree generator.

The pipeline reads the gzip TSV export through :class:`RecordSource`,
normalises rows into :class:`Product` records, writes one JSON document per
product, accumulates category and brand memberships in an
:class:`IndexAggregator` and streams catalog rows through a single-writer
:class:`CatalogEmitter`. :func:`run_pipeline` wires the stages together.
"""

from .aggregator import FlushReport, IndexAggregator
from .catalog import CatalogEmitter
from .errors import (
    ConfigurationError,
    FatalStartupError,
    FlushPartialFailure,
    FoodStaticError,
    SkipReason,
    WriteFailure,
)
from .models import Macros, Product
from .normalizer import ColumnIndex, normalize_row
from .pipeline import RunSummary, run_pipeline
from .settings import PipelineCfg, ServerCfg
from .source import RecordSource
from .transform import TransformStage

__all__ = [
    "CatalogEmitter",
    "ColumnIndex",
    "ConfigurationError",
    "FatalStartupError",
    "FlushPartialFailure",
    "FlushReport",
    "FoodStaticError",
    "IndexAggregator",
    "Macros",
    "PipelineCfg",
    "Product",
    "RecordSource",
    "RunSummary",
    "ServerCfg",
    "SkipReason",
    "TransformStage",
    "WriteFailure",
    "normalize_row",
    "run_pipeline",
]
