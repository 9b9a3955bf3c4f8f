"""
Pytest Configuration

Puts ``src`` on ``sys.path`` and provides builders for synthetic gzip TSV
exports shaped like the Open Food Facts dump, so every suite can run against a
few hand-written rows instead of the multi-gigabyte real file.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import sys
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Sequence, Union

import pytest

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

HEADER: List[str] = [
    "code",
    "url",
    "product_name",
    "generic_name",
    "brands",
    "main_category",
    "ingredients_text",
    "serving_size",
    "serving_quantity",
    "energy-kcal_100g",
    "energy-kcal_serving",
    "fat_100g",
    "proteins_100g",
    "sugars_100g",
]

Row = Union[Mapping[str, str], Sequence[str], str]


def make_row(values: Mapping[str, str], header: Sequence[str] = HEADER) -> List[str]:
    """Return a full-width row with ``values`` placed by column name."""

    return [values.get(column, "") for column in header]


def render_line(row: Row, header: Sequence[str] = HEADER) -> str:
    if isinstance(row, str):
        return row
    if isinstance(row, Mapping):
        row = make_row(row, header)
    return "\t".join(row)


def write_export(path: Path, rows: Iterable[Row], header: Sequence[str] = HEADER) -> Path:
    """Write a gzip TSV export with ``header`` followed by ``rows``.

    Rows may be mappings (placed by column name), sequences (used as-is) or raw
    strings (written verbatim, useful for malformed lines).
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    lines = ["\t".join(header)]
    lines.extend(render_line(row, header) for row in rows)
    with gzip.open(path, "wt", encoding="utf-8", newline="") as handle:
        handle.write("\n".join(lines) + "\n")
    return path


SAMPLE_ROWS: List[Row] = [
    {
        "code": "3017620422003",
        "product_name": "Nutella",
        "brands": "Ferrero",
        "main_category": "en:spreads",
        "serving_size": "15 g",
        "serving_quantity": "15",
        "energy-kcal_100g": "539",
        "fat_100g": "30,9",
    },
    {"code": "", "product_name": "No barcode"},
    {
        "code": "5449000000996",
        "product_name": "Coca-Cola",
        "brands": "Coca-Cola, Coca-Cola",
        "main_category": "en:sodas",
        "serving_size": "330 ml",
        "serving_quantity": "n/a",
        "sugars_100g": "10.6",
    },
    {
        "code": "0000000000017",
        "product_name": "Kinder Bueno",
        "brands": "Ferrero,Kinder",
        "main_category": "en:spreads",
    },
    "8000500310427\tonly three\tcolumns",
    {"code": "8000500310427", "product_name": "Ferrero Rocher", "brands": "Ferrero"},
]


@pytest.fixture
def export_factory(tmp_path: Path) -> Callable[..., Path]:
    """Return a callable that writes an export under ``tmp_path``."""

    counter = {"n": 0}

    def _factory(rows: Iterable[Row], header: Sequence[str] = HEADER) -> Path:
        counter["n"] += 1
        return write_export(tmp_path / f"input-{counter['n']}" / "products.csv.gz", rows, header)

    return _factory


@pytest.fixture
def sample_export(export_factory: Callable[..., Path]) -> Path:
    """Export with four valid products, one empty code and one malformed row."""

    return export_factory(SAMPLE_ROWS)


@pytest.fixture
def truncated_export(tmp_path: Path) -> Path:
    """Export whose gzip stream is cut off well after the header.

    Product names are hex digests so the compressed stream stays large enough
    that the header decodes cleanly and the failure only shows up mid-read.
    """

    rows = [
        {
            "code": f"{i:013d}",
            "product_name": hashlib.sha256(str(i).encode()).hexdigest() * 2,
            "brands": f"brand-{i % 50}",
        }
        for i in range(1, 20001)
    ]
    path = write_export(tmp_path / "truncated" / "products.csv.gz", rows)
    data = path.read_bytes()
    path.write_bytes(data[: int(len(data) * 0.6)])
    return path


@pytest.fixture
def header() -> List[str]:
    return list(HEADER)


@pytest.fixture
def row_builder() -> Callable[..., List[str]]:
    """Return :func:`make_row` so tests can build rows by column name."""

    return make_row


@pytest.fixture(autouse=True)
def _reset_foodstatic_logging():
    """Drop handlers installed by CLI runs so later tests never log to closed streams."""

    yield
    logger = logging.getLogger("FoodStatic")
    for handler in list(logger.handlers):
        if getattr(handler, "_foodstatic_managed", False):
            logger.removeHandler(handler)
    logger.propagate = True
