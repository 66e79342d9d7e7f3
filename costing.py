"""
Costing Engine
==============
Unit conversion, pack-based ingredient costing, VAT handling and recipe
scaling for the retail ops system. Everything here is pure computation:
no database access and no printing.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence


class CostingError(ValueError):
    """Base class for validation failures in cost calculations."""


class InvalidQuantityError(CostingError):
    """Non-positive pack/batch size, or a negative price or quantity."""


class IncompatibleUnitsError(CostingError):
    """Conversion requested between unrelated unit families (mass <-> volume)."""


class InvalidRecipeError(CostingError):
    """Recipe batch size cannot be used as a scaling divisor."""


class UnknownUnitError(CostingError):
    """Unit name that is not part of the supported unit set."""


MASS = "mass"
VOLUME = "volume"
COUNT = "count"


class UnitConverter:
    """Converts quantities between units of the same family.

    Each family routes through a base unit: grams for mass and millilitres
    for volume. The generic count unit only converts to itself.
    """

    # unit -> (family, factor to the family base unit)
    UNITS = {
        "kg": (MASS, 1000.0),
        "g": (MASS, 1.0),
        "l": (VOLUME, 1000.0),
        "ml": (VOLUME, 1.0),
        "unit": (COUNT, 1.0),
    }

    BASE_UNITS = {MASS: "g", VOLUME: "ml", COUNT: "unit"}

    UNIT_ALIASES = {
        # Mass
        "kilogram": "kg", "kilograms": "kg", "kgs": "kg",
        "gram": "g", "grams": "g", "gr": "g",
        # Volume
        "litre": "l", "litres": "l", "liter": "l", "liters": "l", "lt": "l",
        "millilitre": "ml", "millilitres": "ml", "milliliter": "ml", "milliliters": "ml",
        # Count
        "units": "unit", "piece": "unit", "pieces": "unit", "pc": "unit", "pcs": "unit",
        "each": "unit", "ea": "unit",
    }

    def normalize_unit(self, unit: str) -> str:
        """Return the canonical name for a unit, e.g. 'Litres' -> 'l'."""
        if unit is None:
            raise UnknownUnitError("Unit is required")
        key = str(unit).strip().lower()
        key = self.UNIT_ALIASES.get(key, key)
        if key not in self.UNITS:
            raise UnknownUnitError(f"Unknown unit '{unit}'")
        return key

    def family(self, unit: str) -> str:
        return self.UNITS[self.normalize_unit(unit)][0]

    def base_unit(self, unit: str) -> str:
        return self.BASE_UNITS[self.family(unit)]

    def compatible(self, unit_a: str, unit_b: str) -> bool:
        return self.family(unit_a) == self.family(unit_b)

    def convert(self, value: float, from_unit: str, to_unit: str) -> float:
        """Convert value from one unit to another within the same family."""
        from_unit = self.normalize_unit(from_unit)
        to_unit = self.normalize_unit(to_unit)
        value = _require_finite(value, "Value")

        if from_unit == to_unit:
            return value

        from_family, from_factor = self.UNITS[from_unit]
        to_family, to_factor = self.UNITS[to_unit]
        if from_family != to_family:
            raise IncompatibleUnitsError(
                f"Cannot convert {from_unit} ({from_family}) to {to_unit} ({to_family})"
            )

        value_in_base = value * from_factor
        return value_in_base / to_factor

    def supported_units(self) -> Dict[str, str]:
        """Map of canonical unit -> family."""
        return {unit: family for unit, (family, _) in self.UNITS.items()}


_converter = UnitConverter()


def normalize_unit(unit: str) -> str:
    return _converter.normalize_unit(unit)


def unit_family(unit: str) -> str:
    return _converter.family(unit)


def base_unit(unit: str) -> str:
    return _converter.base_unit(unit)


def compatible(unit_a: str, unit_b: str) -> bool:
    return _converter.compatible(unit_a, unit_b)


def convert(value: float, from_unit: str, to_unit: str) -> float:
    """Module-level shortcut for UnitConverter.convert."""
    return _converter.convert(value, from_unit, to_unit)


# ============================================================
# INGREDIENT COSTING
# ============================================================

def _require_finite(value: float, label: str, error=None) -> float:
    error = error or InvalidQuantityError
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise error(f"{label} must be a number (got {value!r})")
    if not math.isfinite(value):
        raise error(f"{label} must be a finite number (got {value})")
    return value


def _require_non_negative(value: float, label: str) -> float:
    value = _require_finite(value, label)
    if value < 0:
        raise InvalidQuantityError(f"{label} cannot be negative (got {value})")
    return value


def _require_positive(value: float, label: str) -> float:
    value = _require_finite(value, label)
    if value <= 0:
        raise InvalidQuantityError(f"{label} must be greater than zero (got {value})")
    return value


def _require_batch_size(batch_size: float) -> float:
    batch_size = _require_finite(batch_size, "Recipe batch size", InvalidRecipeError)
    if batch_size <= 0:
        raise InvalidRecipeError(
            f"Recipe batch size must be greater than zero (got {batch_size})"
        )
    return batch_size


def cost_per_base_unit(pack_size: float, pack_price: float) -> float:
    """Cost of one pack unit, e.g. R45.00 for a 5 kg bag -> R9.00 per kg."""
    pack_size = _require_positive(pack_size, "Pack size")
    pack_price = _require_non_negative(pack_price, "Pack price")
    return pack_price / pack_size


def cost_per_used_unit(pack_size: float, pack_price: float, pack_unit: str,
                       used_unit: str) -> float:
    """Cost of a single used_unit of an ingredient bought in packs."""
    return cost_per_base_unit(pack_size, pack_price) * convert(1.0, used_unit, pack_unit)


def total_cost(pack_size: float, pack_price: float, pack_unit: str,
               used_quantity: float, used_unit: str) -> float:
    """Cost of the used quantity, priced from the pack it came out of."""
    used_quantity = _require_non_negative(used_quantity, "Used quantity")
    unit_cost = cost_per_base_unit(pack_size, pack_price)
    return unit_cost * convert(used_quantity, used_unit, pack_unit)


@dataclass
class TaxBreakdown:
    """Price split into its tax-exclusive part and the tax on top."""
    price_ex_tax: float
    tax_amount: float
    total_price: float
    rate: float

    def to_dict(self) -> Dict[str, float]:
        return {
            'price_ex_tax': self.price_ex_tax,
            'tax_amount': self.tax_amount,
            'total_price': self.total_price,
            'tax_rate': self.rate,
        }


def to_inclusive(price: float, rate: float) -> float:
    """Add tax to a tax-exclusive price."""
    price = _require_non_negative(price, "Price")
    rate = _require_non_negative(rate, "Tax rate")
    return price + price * rate


def to_exclusive(price: float, rate: float) -> float:
    """Strip tax from a tax-inclusive price."""
    price = _require_non_negative(price, "Price")
    rate = _require_non_negative(rate, "Tax rate")
    return price / (1 + rate)


def tax_breakdown(price: float, rate: float, price_includes_tax: bool) -> TaxBreakdown:
    """Split a stored price into ex-tax price, tax amount and total.

    The tax rate is always supplied by the caller: ingredient screens and
    the POS use different rates.
    """
    price = _require_non_negative(price, "Price")
    rate = _require_non_negative(rate, "Tax rate")
    if price_includes_tax:
        price_ex_tax = to_exclusive(price, rate)
        return TaxBreakdown(price_ex_tax, price - price_ex_tax, price, rate)
    tax_amount = price * rate
    return TaxBreakdown(price, tax_amount, price + tax_amount, rate)


# ============================================================
# RECIPE SCALING
# ============================================================

@dataclass
class ScaledIngredient:
    """One recipe line scaled to a production quantity."""
    ingredient: Any
    scaled_quantity: float
    scaled_cost: float


def _line_cost(ingredient: Any) -> float:
    return float(ingredient.calculated_cost)


def recipe_total_cost(recipe_ingredients: Iterable[Any]) -> float:
    """Sum of calculated costs of all recipe lines."""
    return sum(_line_cost(ing) for ing in recipe_ingredients)


def scaling_factor(recipe_batch_size: float, target_quantity: float) -> float:
    recipe_batch_size = _require_batch_size(recipe_batch_size)
    target_quantity = _require_non_negative(target_quantity, "Target quantity")
    return target_quantity / recipe_batch_size


def cost_per_batch_unit(recipe_ingredients: Iterable[Any], batch_size: float) -> float:
    """Recipe cost divided over the units one batch yields."""
    batch_size = _require_batch_size(batch_size)
    return recipe_total_cost(recipe_ingredients) / batch_size


def scale_ingredients(recipe_ingredients: Sequence[Any], recipe_batch_size: float,
                      target_quantity: float) -> List[ScaledIngredient]:
    """Scale every recipe line by target_quantity / recipe_batch_size.

    Lines must expose ``used_quantity`` and ``calculated_cost``. Quantity and
    cost both scale linearly.
    """
    factor = scaling_factor(recipe_batch_size, target_quantity)
    return [
        ScaledIngredient(
            ingredient=ing,
            scaled_quantity=float(ing.used_quantity) * factor,
            scaled_cost=_line_cost(ing) * factor,
        )
        for ing in recipe_ingredients
    ]


def scaled_total_cost(recipe_ingredients: Sequence[Any], recipe_batch_size: float,
                      target_quantity: float) -> float:
    scaled = scale_ingredients(recipe_ingredients, recipe_batch_size, target_quantity)
    return sum(line.scaled_cost for line in scaled)


def cost_per_unit(recipe_ingredients: Sequence[Any], recipe_batch_size: float,
                  target_quantity: float) -> float:
    """Scaled total cost per produced unit; 0 when nothing is produced."""
    total = scaled_total_cost(recipe_ingredients, recipe_batch_size, target_quantity)
    if float(target_quantity) == 0:
        return 0.0
    return total / float(target_quantity)


# ============================================================
# POS
# ============================================================

@dataclass
class SaleQuote:
    subtotal: float
    discount: float
    tax_amount: float
    total: float
    rate: float

    def to_dict(self) -> Dict[str, float]:
        return {
            'subtotal': self.subtotal,
            'discount': self.discount,
            'tax_amount': self.tax_amount,
            'total': self.total,
            'tax_rate': self.rate,
        }


def quote_sale(lines: Iterable[Any], rate: float, discount: float = 0.0) -> SaleQuote:
    """Total a basket of (unit_price, quantity) pairs and add VAT.

    Prices are tax-exclusive; the discount comes off before tax.
    """
    subtotal = 0.0
    for unit_price, quantity in lines:
        subtotal += (_require_non_negative(unit_price, "Unit price")
                     * _require_non_negative(quantity, "Quantity"))
    discount = _require_non_negative(discount, "Discount")
    if discount > subtotal:
        raise InvalidQuantityError(
            f"Discount {discount} exceeds subtotal {subtotal}"
        )
    taxed = tax_breakdown(subtotal - discount, rate, price_includes_tax=False)
    return SaleQuote(subtotal, discount, taxed.tax_amount, taxed.total_price, rate)


# ============================================================
# DISPLAY & NAME MATCHING
# ============================================================

def format_currency(value: float, symbol: str = "R") -> str:
    """Currency for display, 2 decimal places."""
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def format_unit_cost(value: float, symbol: str = "R") -> str:
    """Unit cost for display, 4 decimal places."""
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.4f}"


def similarity(first: str, second: str) -> float:
    """Normalised Levenshtein similarity in [0, 1], ignoring case and padding."""
    s1 = (first or "").strip().lower()
    s2 = (second or "").strip().lower()
    if s1 == s2:
        return 1.0

    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            if c1 == c2:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j - 1], current[j - 1], previous[j]) + 1)
        previous = current

    distance = previous[-1]
    return 1 - distance / max(len(s1), len(s2))


def find_similar(name: str, items: Iterable[Dict[str, Any]],
                 threshold: float = 0.7) -> List[Dict[str, Any]]:
    """Items whose 'name' is at least `threshold` similar, best match first."""
    matches = []
    for item in items:
        score = similarity(name, item['name'])
        if score >= threshold:
            match = dict(item)
            match['similarity'] = round(score, 4)
            matches.append(match)
    matches.sort(key=lambda m: m['similarity'], reverse=True)
    return matches


def find_by_code(code: str, items: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """First item whose 'code' matches, ignoring case and padding."""
    wanted = (code or "").strip().lower()
    for item in items:
        if (item.get('code') or "").strip().lower() == wanted:
            return item
    return None
