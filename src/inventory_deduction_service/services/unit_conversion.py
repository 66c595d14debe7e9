"""Unit normalization and conversion for ingredient quantities.

Recipes, extras and stock rows are each tagged with their own unit. Quantities
are converted within a dimension (mass, volume, count) and through the café's
standard bar measurements (a shot, a pump, ...). Anything else is an error
rather than a silent pass-through, since deducting 2 "cups" as 2 ml is worse
than not deducting at all.
"""

from decimal import Decimal

from inventory_deduction_service.errors import UnitConversionError

UNIT_ALIASES: dict[str, str] = {
    "milligram": "mg",
    "milligrams": "mg",
    "gram": "g",
    "grams": "g",
    "gr": "g",
    "kilogram": "kg",
    "kilograms": "kg",
    "ounce": "oz",
    "ounces": "oz",
    "pound": "lb",
    "pounds": "lb",
    "lbs": "lb",
    "milliliter": "ml",
    "milliliters": "ml",
    "millilitre": "ml",
    "millilitres": "ml",
    "centiliter": "cl",
    "centilitre": "cl",
    "liter": "l",
    "liters": "l",
    "litre": "l",
    "litres": "l",
    "fl oz": "fl_oz",
    "floz": "fl_oz",
    "fluid_ounce": "fl_oz",
    "fluid ounce": "fl_oz",
    "piece": "pc",
    "pieces": "pc",
    "pcs": "pc",
    "unit": "pc",
    "units": "pc",
    "each": "pc",
    "ea": "pc",
    "shots": "shot",
    "pumps": "pump",
    "cups": "cup",
    "sprinkles": "sprinkle",
}

# Factor to the base unit of each dimension: g, ml, pc.
MASS_UNITS: dict[str, Decimal] = {
    "mg": Decimal("0.001"),
    "g": Decimal("1"),
    "kg": Decimal("1000"),
    "oz": Decimal("28.35"),
    "lb": Decimal("453.6"),
}

VOLUME_UNITS: dict[str, Decimal] = {
    "ml": Decimal("1"),
    "cl": Decimal("10"),
    "l": Decimal("1000"),
    "fl_oz": Decimal("29.57"),
}

COUNT_UNITS: dict[str, Decimal] = {
    "pc": Decimal("1"),
}

DIMENSIONS: dict[str, dict[str, Decimal]] = {
    "mass": MASS_UNITS,
    "volume": VOLUME_UNITS,
    "count": COUNT_UNITS,
}

BASE_UNITS = {"mass": "g", "volume": "ml", "count": "pc"}

# Bar measurements, expressed in base units of the dimensions they can become.
STANDARD_MEASUREMENTS: dict[str, dict[str, Decimal]] = {
    "shot": {"ml": Decimal("25"), "g": Decimal("18")},
    "pump": {"ml": Decimal("15")},
    "cup": {"ml": Decimal("240")},
    "sprinkle": {"g": Decimal("0.5")},
}


def normalize_unit(unit: str) -> str:
    """Lower-case a unit and resolve known aliases.

    Args:
        unit: Unit as written in a recipe, extra or stock row

    Returns:
        str: Normalized unit symbol (unknown units are returned lower-cased)
    """
    cleaned = unit.strip().lower()
    return UNIT_ALIASES.get(cleaned, cleaned)


def dimension_of(unit: str) -> str | None:
    """Return the dimension name of a normalized unit, or None for measurements and unknowns."""
    for dimension, units in DIMENSIONS.items():
        if unit in units:
            return dimension
    return None


def canonical_unit(unit: str) -> str:
    """Return the unit quantities of this unit are aggregated in.

    Dimensioned units aggregate in their base unit; standard measurements and
    unknown units aggregate as themselves.
    """
    normalized = normalize_unit(unit)
    dimension = dimension_of(normalized)
    return BASE_UNITS[dimension] if dimension else normalized


def convert(
    quantity: Decimal, from_unit: str, to_unit: str, ingredient_id: str | None = None
) -> Decimal:
    """Convert a quantity between two units.

    Args:
        quantity: Amount in ``from_unit``
        from_unit: Source unit
        to_unit: Target unit
        ingredient_id: Ingredient being converted, for error reporting

    Returns:
        Decimal: Amount in ``to_unit``

    Raises:
        UnitConversionError: If the units are unknown or belong to different dimensions
    """
    source = normalize_unit(from_unit)
    target = normalize_unit(to_unit)

    if source == target:
        return quantity

    source_dimension = dimension_of(source)
    target_dimension = dimension_of(target)

    if source_dimension and source_dimension == target_dimension:
        units = DIMENSIONS[source_dimension]
        return quantity * units[source] / units[target]

    if source in STANDARD_MEASUREMENTS and target_dimension:
        base = BASE_UNITS[target_dimension]
        per_measure = STANDARD_MEASUREMENTS[source].get(base)
        if per_measure is not None:
            return quantity * per_measure / DIMENSIONS[target_dimension][target]

    if target in STANDARD_MEASUREMENTS and source_dimension:
        base = BASE_UNITS[source_dimension]
        per_measure = STANDARD_MEASUREMENTS[target].get(base)
        if per_measure is not None:
            return quantity * DIMENSIONS[source_dimension][source] / per_measure

    raise UnitConversionError(from_unit, to_unit, ingredient_id=ingredient_id)
