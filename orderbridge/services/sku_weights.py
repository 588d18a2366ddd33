"""
SKU weight reference table and unit conversion.

The table is a JSON file:

    {
        "defaultWeight": {"value": 2, "unit": "ounce"},
        "skus": {"RING-001": {"weight": 0.3, "unit": "ounce"}}
    }
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Ounces per unit. Unknown or missing units are treated as pounds.
OUNCES_PER_UNIT = {
    "oz": 1.0,
    "ounce": 1.0,
    "ounces": 1.0,
    "lb": 16.0,
    "lbs": 16.0,
    "pound": 16.0,
    "pounds": 16.0,
    "kg": 2.20462 * 16,
    "kilogram": 2.20462 * 16,
    "kilograms": 2.20462 * 16,
    "g": 0.00220462 * 16,
    "gram": 0.00220462 * 16,
    "grams": 0.00220462 * 16,
}


def to_ounces(value: float, unit: Optional[str]) -> float:
    factor = OUNCES_PER_UNIT.get((unit or "lb").strip().lower(), 16.0)
    return value * factor


@dataclass
class SkuWeight:
    value: float
    unit: str

    @property
    def ounces(self) -> float:
        return to_ounces(self.value, self.unit)


@dataclass
class SkuWeightTable:
    skus: Dict[str, SkuWeight] = field(default_factory=dict)
    default_weight: Optional[SkuWeight] = None

    def lookup(self, sku: Optional[str]) -> Optional[SkuWeight]:
        if not sku:
            return None
        return self.skus.get(sku)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SkuWeightTable":
        skus = {}
        for sku, entry in (data.get("skus") or {}).items():
            try:
                skus[sku] = SkuWeight(value=float(entry["weight"]), unit=entry.get("unit", "ounce"))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"[MAPPER] Ignoring malformed weight entry for SKU {sku}: {entry!r}")

        default = None
        raw_default = data.get("defaultWeight")
        if isinstance(raw_default, dict) and raw_default.get("value") is not None:
            default = SkuWeight(value=float(raw_default["value"]), unit=raw_default.get("unit", "ounce"))
        return cls(skus=skus, default_weight=default)

    @classmethod
    def load(cls, path: Optional[str]) -> "SkuWeightTable":
        """Load the table from ``path``; a missing or unreadable file yields an empty table."""
        if not path:
            return cls()
        file_path = Path(path)
        if not file_path.exists():
            logger.warning(f"[MAPPER] SKU weight file {path} not found, using defaults only")
            return cls()
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[MAPPER] Could not read SKU weight file {path}: {e}")
            return cls()
        table = cls.from_dict(data)
        logger.info(f"[MAPPER] Loaded {len(table.skus)} SKU weights from {path}")
        return table
