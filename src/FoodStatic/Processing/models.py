# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.Processing.models",
#   "purpose": "Typed records flowing through the FoodStatic pipeline.",
#   "sections": [
#     {
#       "id": "macros",
#       "name": "Macros",
#       "anchor": "class-macros",
#       "kind": "class"
#     },
#     {
#       "id": "product",
#       "name": "Product",
#       "anchor": "class-product",
#       "kind": "class"
#     },
#     {
#       "id": "indexentry",
#       "name": "IndexEntry",
#       "anchor": "class-indexentry",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Typed records flowing through the FoodStatic pipeline.

``Product`` is the durable entity: its :meth:`Product.to_document` output is
what lands in ``products/{code}.json`` and :meth:`Product.catalog_line` is the
lightweight row appended to the catalog. Absent values are ``None`` in memory
and are omitted from documents rather than serialised as ``null``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

__all__ = [
    "CATEGORY",
    "BRAND",
    "DIMENSIONS",
    "IndexEntry",
    "Macros",
    "Product",
]

CATEGORY = "category"
BRAND = "brand"
DIMENSIONS = (CATEGORY, BRAND)


def _without_none(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True, frozen=True)
class Macros:
    """Serving description plus per-serving and per-100g nutrient values."""

    serving_size: Optional[str] = None
    serving_quantity: Optional[float] = None
    serving_unit: Optional[str] = None
    serving: Mapping[str, float] = field(default_factory=dict)
    per100g: Mapping[str, float] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        return _without_none(
            {
                "serving_size": self.serving_size,
                "serving_quantity": self.serving_quantity,
                "serving_unit": self.serving_unit,
                "serving": dict(self.serving),
                "per100g": dict(self.per100g),
            }
        )


@dataclass(slots=True, frozen=True)
class Product:
    """One accepted source row, addressable by ``code``."""

    code: str
    name: Optional[str] = None
    brand: Optional[str] = None
    main_category: Optional[str] = None
    generic_name: Optional[str] = None
    ingredients_text: Optional[str] = None
    macros: Macros = field(default_factory=Macros)
    nutrients: Mapping[str, Mapping[str, float]] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        """Return the product JSON document with absent fields omitted.

        Nutrient groups (``vitamins``, ``minerals``, ``fats``, ``other``) appear
        after ``macros`` only when they hold at least one value.
        """

        document = _without_none(
            {
                "code": self.code,
                "product_name": self.name,
                "generic_name": self.generic_name,
                "ingredients_text": self.ingredients_text,
                "brands": self.brand,
                "main_category": self.main_category,
                "macros": self.macros.to_document(),
            }
        )
        for group, values in self.nutrients.items():
            if values:
                document[group] = dict(values)
        return document

    def catalog_line(self) -> Dict[str, Optional[str]]:
        """Return the four-field catalog row; absent values stay ``None``."""

        return {
            "code": self.code,
            "name": self.name,
            "brand": self.brand,
            "category": self.main_category,
        }


@dataclass(slots=True, frozen=True)
class IndexEntry:
    """Membership of ``code`` in the bucket ``key`` of ``dimension``."""

    dimension: str
    key: str
    code: str
