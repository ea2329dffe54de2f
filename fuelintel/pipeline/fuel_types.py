"""Mapping of upstream SubProducto labels onto the closed set of fuel types."""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class FuelType(str, Enum):
    """Fuel product categories tracked per station."""

    REGULAR = "regular"
    PREMIUM = "premium"
    DIESEL = "diesel"


# Checked in order; the first family with a matching pattern wins.
_PATTERNS: list[tuple[FuelType, list[re.Pattern]]] = [
    (
        FuelType.REGULAR,
        [
            re.compile(r"Regular.*87", re.IGNORECASE),
            re.compile(r"Regular.*menos.*92", re.IGNORECASE),
            re.compile(r"Regular", re.IGNORECASE),
        ],
    ),
    (
        FuelType.PREMIUM,
        [
            re.compile(r"Premium.*91", re.IGNORECASE),
            re.compile(r"Premium.*92", re.IGNORECASE),
            re.compile(r"Premium", re.IGNORECASE),
        ],
    ),
    (
        FuelType.DIESEL,
        [
            re.compile(r"Di[eé]sel", re.IGNORECASE),
        ],
    ),
]

_GASOLINE = re.compile(r"Gasolina", re.IGNORECASE)
_DIESEL = re.compile(r"Di[eé]sel", re.IGNORECASE)


def map_subproducto_to_fuel_type(label: Optional[str]) -> Optional[FuelType]:
    """Map an upstream SubProducto label to a FuelType.

    Args:
        label: Raw label, e.g. "Regular (con un índice de octano ([RON+MON]/2) mínimo de 87)"

    Returns:
        FuelType, or None for empty or unrecognised labels
    """
    if not label:
        return None

    normalized = label.strip()
    for fuel_type, patterns in _PATTERNS:
        if any(pattern.search(normalized) for pattern in patterns):
            return fuel_type

    logger.warning(f'Unknown fuel type for SubProducto: "{label}"')
    return None


def is_gasoline(producto: str) -> bool:
    return bool(producto and _GASOLINE.search(producto))


def is_diesel(producto: str) -> bool:
    return bool(producto and _DIESEL.search(producto))


def validate_fuel_type(value: str | FuelType) -> bool:
    """Whether ``value`` names one of the known fuel types."""
    return getattr(value, "value", value) in {fuel.value for fuel in FuelType}
