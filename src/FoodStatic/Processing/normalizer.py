"""Map one raw tab-separated row onto a :class:`~FoodStatic.Processing.models.Product`.

Fields are addressed by header name through :class:`ColumnIndex`, never by
position, so exports that add, drop, or reorder columns keep working. Missing
columns and unparseable values simply leave the field absent. The only reason a
row is rejected is an empty product code.

Everything here is stateless and side-effect free; it is the unit the
transform stage parallelises.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

from .errors import SkipReason
from .models import Macros, Product

__all__ = [
    "ColumnIndex",
    "NUTRIENTS",
    "NUTRIENT_GROUPS",
    "index_values",
    "normalize_code",
    "normalize_row",
    "parse_number",
]

# Open Food Facts column stems for the macro nutrient group.
NUTRIENTS: Tuple[str, ...] = (
    "energy-kcal",
    "energy-kj",
    "carbohydrates",
    "fat",
    "proteins",
    "sugars",
    "fiber",
    "salt",
    "added-sugars",
    "sucrose",
    "glucose",
    "fructose",
    "galactose",
    "lactose",
    "maltose",
    "maltodextrins",
    "psicose",
    "starch",
    "polyols",
    "erythritol",
    "isomalt",
    "maltitol",
    "sorbitol",
    "soluble-fiber",
    "insoluble-fiber",
    "polydextrose",
)

# Per-100g breakdown groups emitted beside ``macros`` when any value is present.
NUTRIENT_GROUPS: Dict[str, Tuple[str, ...]] = {
    "vitamins": (
        "vitamin-a",
        "beta-carotene",
        "vitamin-d",
        "vitamin-e",
        "vitamin-k",
        "vitamin-c",
        "vitamin-b1",
        "vitamin-b2",
        "vitamin-pp",
        "vitamin-b6",
        "vitamin-b9",
        "folates",
        "vitamin-b12",
        "biotin",
        "pantothenic-acid",
        "choline",
        "phylloquinone",
        "inositol",
    ),
    "minerals": (
        "sodium",
        "calcium",
        "phosphorus",
        "iron",
        "magnesium",
        "zinc",
        "copper",
        "manganese",
        "fluoride",
        "selenium",
        "chromium",
        "molybdenum",
        "iodine",
        "potassium",
        "chloride",
        "silica",
        "bicarbonate",
        "sulphate",
        "nitrate",
    ),
    "fats": (
        "saturated-fat",
        "unsaturated-fat",
        "monounsaturated-fat",
        "polyunsaturated-fat",
        "trans-fat",
        "cholesterol",
        "omega-3-fat",
        "omega-6-fat",
        "omega-9-fat",
        "alpha-linolenic-acid",
        "eicosapentaenoic-acid",
        "docosahexaenoic-acid",
        "linoleic-acid",
        "arachidonic-acid",
        "gamma-linolenic-acid",
        "dihomo-gamma-linolenic-acid",
        "oleic-acid",
        "elaidic-acid",
        "gondoic-acid",
        "mead-acid",
        "erucic-acid",
        "nervonic-acid",
        "butyric-acid",
        "caproic-acid",
        "caprylic-acid",
        "capric-acid",
        "lauric-acid",
        "myristic-acid",
        "palmitic-acid",
        "stearic-acid",
        "arachidic-acid",
        "behenic-acid",
        "lignoceric-acid",
        "cerotic-acid",
        "montanic-acid",
        "melissic-acid",
    ),
    "other": (
        "caffeine",
        "taurine",
        "carnitine",
        "beta-glucan",
        "alcohol",
        "nucleotides",
        "casein",
        "serum-proteins",
        "methylsulfonylmethane",
        "energy-from-fat",
        "added-salt",
    ),
}

_SERVING_UNIT_RE = re.compile(r"\b(ml|milliliters?|g|grams?)\b", re.IGNORECASE)
_PER_SERVING_PRECISION = 6


@dataclass(frozen=True)
class ColumnIndex:
    """Header-derived mapping from column name to position."""

    positions: Mapping[str, int]
    width: int

    @classmethod
    def from_header(cls, header: Sequence[str]) -> "ColumnIndex":
        positions: Dict[str, int] = {}
        for position, name in enumerate(header):
            # First occurrence wins when an export repeats a column name.
            positions.setdefault(name.strip(), position)
        return cls(positions=positions, width=len(header))

    def get(self, row: Sequence[str], name: str) -> Optional[str]:
        """Return the raw value of ``name`` in ``row`` or ``None`` when absent/blank."""

        position = self.positions.get(name)
        if position is None or position >= len(row):
            return None
        value = row[position]
        if not value:
            return None
        return value

    def __contains__(self, name: object) -> bool:
        return name in self.positions


def parse_number(value: Optional[str]) -> Optional[float]:
    """Parse a numeric cell; blanks, junk and non-finite values become ``None``."""

    if value is None:
        return None
    cleaned = value.replace(" ", "").replace(",", ".")
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


def normalize_code(value: Optional[str]) -> str:
    """Reduce a raw barcode cell to its ASCII digits."""

    if value is None:
        return ""
    return "".join(ch for ch in value.strip() if "0" <= ch <= "9")


def _text(columns: ColumnIndex, row: Sequence[str], name: str) -> Optional[str]:
    value = columns.get(row, name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _nutrient_key(stem: str) -> str:
    return stem.replace("-", "_")


def _parse_macros(row: Sequence[str], columns: ColumnIndex) -> Macros:
    serving_size = _text(columns, row, "serving_size")
    serving_quantity = parse_number(columns.get(row, "serving_quantity"))
    serving_unit: Optional[str] = None
    if serving_size is not None:
        match = _SERVING_UNIT_RE.search(serving_size)
        if match:
            serving_unit = match.group(1).lower()

    per100g: Dict[str, float] = {}
    serving: Dict[str, float] = {}
    for stem in NUTRIENTS:
        key = _nutrient_key(stem)
        per_100 = parse_number(columns.get(row, f"{stem}_100g"))
        if per_100 is not None:
            per100g[key] = per_100
        per_serving = parse_number(columns.get(row, f"{stem}_serving"))
        if per_serving is None and per_100 is not None and serving_quantity is not None:
            per_serving = round(per_100 * serving_quantity / 100.0, _PER_SERVING_PRECISION)
        if per_serving is not None:
            serving[key] = per_serving

    return Macros(
        serving_size=serving_size,
        serving_quantity=serving_quantity,
        serving_unit=serving_unit,
        serving=serving,
        per100g=per100g,
    )


def _group_key(group: str, stem: str) -> str:
    # Fat columns drop their "-fat" suffix: ``omega-3-fat`` becomes ``omega_3``.
    if group == "fats" and stem.endswith("-fat"):
        stem = stem[: -len("-fat")]
    return _nutrient_key(stem)


def _parse_groups(row: Sequence[str], columns: ColumnIndex) -> Dict[str, Dict[str, float]]:
    groups: Dict[str, Dict[str, float]] = {}
    for group, stems in NUTRIENT_GROUPS.items():
        values: Dict[str, float] = {}
        for stem in stems:
            value = parse_number(columns.get(row, f"{stem}_100g"))
            if value is not None:
                values[_group_key(group, stem)] = value
        if values:
            groups[group] = values
    return groups


def normalize_row(row: Sequence[str], columns: ColumnIndex) -> Union[Product, SkipReason]:
    """Return the :class:`Product` for ``row`` or the reason it was skipped."""

    code = normalize_code(columns.get(row, "code"))
    if not code:
        return SkipReason.EMPTY_CODE

    return Product(
        code=code,
        name=_text(columns, row, "product_name"),
        brand=_text(columns, row, "brands"),
        main_category=_text(columns, row, "main_category"),
        generic_name=_text(columns, row, "generic_name"),
        ingredients_text=_text(columns, row, "ingredients_text"),
        macros=_parse_macros(row, columns),
        nutrients=_parse_groups(row, columns),
    )


def index_values(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a comma-separated cell into trimmed, unique, order-preserving values."""

    if not raw:
        return ()
    seen: set[str] = set()
    ordered: list[str] = []
    for part in raw.split(","):
        value = part.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return tuple(ordered)
