import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
import costing
from costing import (
    IncompatibleUnitsError,
    InvalidQuantityError,
    InvalidRecipeError,
    UnknownUnitError,
)


def line(used_quantity, calculated_cost):
    return SimpleNamespace(used_quantity=used_quantity, calculated_cost=calculated_cost)


@pytest.mark.parametrize("price", [0.01, 1.0, 45.0, 199.99, 12345.678])
@pytest.mark.parametrize("rate", [0.01, 0.14, 0.15, 0.5, 0.99])
def test_tax_round_trip(price, rate):
    assert costing.to_exclusive(costing.to_inclusive(price, rate), rate) == pytest.approx(price, abs=1e-9)


def test_tax_breakdown_exclusive_price():
    tax = costing.tax_breakdown(45.0, 0.14, price_includes_tax=False)
    assert tax.price_ex_tax == pytest.approx(45.0)
    assert tax.tax_amount == pytest.approx(6.30)
    assert tax.total_price == pytest.approx(51.30)


def test_tax_breakdown_inclusive_price():
    tax = costing.tax_breakdown(115.0, 0.15, price_includes_tax=True)
    assert tax.price_ex_tax == pytest.approx(100.0)
    assert tax.tax_amount == pytest.approx(15.0)
    assert tax.total_price == pytest.approx(115.0)


def test_tax_breakdown_branches_agree():
    exclusive = costing.tax_breakdown(80.0, 0.14, price_includes_tax=False)
    inclusive = costing.tax_breakdown(exclusive.total_price, 0.14, price_includes_tax=True)
    assert inclusive.price_ex_tax == pytest.approx(80.0)
    assert inclusive.tax_amount == pytest.approx(exclusive.tax_amount)


def test_negative_price_rejected():
    with pytest.raises(InvalidQuantityError):
        costing.tax_breakdown(-1.0, 0.14, price_includes_tax=False)


@pytest.mark.parametrize("unit", ["kg", "g", "l", "ml", "unit"])
@pytest.mark.parametrize("value", [0.0, 0.3, 1.0, 250.0])
def test_convert_identity(unit, value):
    assert costing.convert(value, unit, unit) == value


@pytest.mark.parametrize("a,b,c", [
    ("kg", "g", "kg"),
    ("g", "kg", "g"),
    ("kg", "kg", "g"),
    ("l", "ml", "l"),
    ("ml", "l", "ml"),
])
def test_convert_composition(a, b, c):
    value = 2.375
    assert costing.convert(costing.convert(value, a, b), b, c) == pytest.approx(
        costing.convert(value, a, c)
    )


def test_convert_known_values():
    assert costing.convert(500, "g", "kg") == pytest.approx(0.5)
    assert costing.convert(1.5, "l", "ml") == pytest.approx(1500)
    assert costing.convert(3, "Litres", "millilitre") == pytest.approx(3000)


@pytest.mark.parametrize("a,b", [("kg", "l"), ("ml", "g"), ("unit", "kg"), ("l", "unit")])
def test_convert_across_families_raises(a, b):
    with pytest.raises(IncompatibleUnitsError):
        costing.convert(1, a, b)


def test_unknown_unit_raises():
    with pytest.raises(UnknownUnitError):
        costing.convert(1, "cup", "ml")


def test_unit_aliases_and_families():
    assert costing.normalize_unit(" Kilograms ") == "kg"
    assert costing.normalize_unit("pcs") == "unit"
    assert costing.unit_family("ml") == costing.VOLUME
    assert costing.base_unit("kg") == "g"
    assert costing.compatible("kg", "g")
    assert not costing.compatible("kg", "ml")


def test_pack_cost_scenario():
    assert costing.cost_per_base_unit(5, 45.00) == pytest.approx(9.00)
    assert costing.total_cost(5, 45.00, "kg", 500, "g") == pytest.approx(4.50)
    assert costing.cost_per_used_unit(5, 45.00, "kg", "g") == pytest.approx(0.009)


@pytest.mark.parametrize("pack_size", [0, -5])
def test_non_positive_pack_size_rejected(pack_size):
    with pytest.raises(InvalidQuantityError):
        costing.cost_per_base_unit(pack_size, 45.0)


def test_negative_used_quantity_rejected():
    with pytest.raises(InvalidQuantityError):
        costing.total_cost(5, 45.0, "kg", -1, "g")


def test_linear_scaling():
    ings = [line(2.0, 30.0), line(0.5, 12.5), line(100, 0.75)]
    k = 3.5
    scaled = costing.scale_ingredients(ings, 20, k * 20)
    for item, ing in zip(scaled, ings):
        assert item.ingredient is ing
        assert item.scaled_cost == pytest.approx(k * ing.calculated_cost)
        assert item.scaled_quantity == pytest.approx(k * ing.used_quantity)


def test_degenerate_production():
    ings = [line(1, 40.0), line(2, 60.0)]
    assert costing.cost_per_unit(ings, 50, 0) == 0
    assert costing.scaled_total_cost(ings, 50, 0) == 0


def test_recipe_scenario_cost_per_unit_is_scale_invariant():
    ings = [line(10, 60.0), line(4, 40.0)]
    assert costing.recipe_total_cost(ings) == pytest.approx(100.0)
    assert costing.cost_per_batch_unit(ings, 50) == pytest.approx(2.0)
    assert costing.scaling_factor(50, 125) == pytest.approx(2.5)
    assert costing.scaled_total_cost(ings, 50, 125) == pytest.approx(250.0)
    assert costing.cost_per_unit(ings, 50, 125) == pytest.approx(2.0)


@pytest.mark.parametrize("batch_size", [0, -10])
def test_invalid_batch_size(batch_size):
    with pytest.raises(InvalidRecipeError):
        costing.scale_ingredients([line(1, 1.0)], batch_size, 10)
    with pytest.raises(InvalidRecipeError):
        costing.cost_per_batch_unit([line(1, 1.0)], batch_size)


def test_negative_target_rejected():
    with pytest.raises(InvalidQuantityError):
        costing.scaling_factor(10, -1)


def test_errors_are_value_errors():
    with pytest.raises(ValueError):
        costing.convert(1, "kg", "l")


def test_quote_sale_with_discount():
    quote = costing.quote_sale([(10.0, 3), (5.0, 2)], rate=0.15, discount=5.0)
    assert quote.subtotal == pytest.approx(40.0)
    assert quote.tax_amount == pytest.approx(5.25)
    assert quote.total == pytest.approx(40.25)
    assert quote.to_dict()['tax_rate'] == 0.15


def test_quote_sale_discount_larger_than_subtotal():
    with pytest.raises(InvalidQuantityError):
        costing.quote_sale([(10.0, 1)], rate=0.15, discount=11)


def test_display_formatting():
    assert costing.format_currency(4.5) == "R4.50"
    assert costing.format_currency(1234.567, "$") == "$1,234.57"
    assert costing.format_currency(-2) == "-R2.00"
    assert costing.format_unit_cost(0.009) == "R0.0090"


def test_similarity():
    assert costing.similarity("Flour", " flour ") == 1.0
    assert costing.similarity("abc", "xyz") == 0.0
    assert costing.similarity("Cake Flour", "Cake Flower") == pytest.approx(1 - 2 / 11)


def test_find_similar_sorted_best_first():
    items = [{'name': 'Bread Flour'}, {'name': 'Sugar'}, {'name': 'Cake Flour'}]
    matches = costing.find_similar("Cake Flours", items)
    assert [m['name'] for m in matches] == ['Cake Flour']
    matches = costing.find_similar("Cake Flour", items, threshold=0.5)
    assert [m['name'] for m in matches] == ['Cake Flour', 'Bread Flour']
    assert matches[0]['similarity'] == 1.0


def test_find_by_code():
    items = [{'name': 'Rye', 'code': 'RYE-01'}, {'name': 'White', 'code': 'WHT-01'}]
    assert costing.find_by_code(" wht-01 ", items)['name'] == 'White'
    assert costing.find_by_code("XXX", items) is None


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_pack_values_rejected(bad):
    with pytest.raises(InvalidQuantityError):
        costing.cost_per_base_unit(bad, 45.0)
    with pytest.raises(InvalidQuantityError):
        costing.cost_per_base_unit(5, bad)
    with pytest.raises(InvalidQuantityError):
        costing.total_cost(5, 45.0, "kg", bad, "g")
    with pytest.raises(InvalidQuantityError):
        costing.tax_breakdown(bad, 0.14, price_includes_tax=False)


@pytest.mark.parametrize("bad", [float("nan"), float("inf")])
def test_non_finite_batch_size_or_target_rejected(bad):
    with pytest.raises(InvalidRecipeError):
        costing.scaling_factor(bad, 10)
    with pytest.raises(InvalidRecipeError):
        costing.cost_per_batch_unit([line(1, 1.0)], bad)
    with pytest.raises(InvalidQuantityError):
        costing.scaling_factor(10, bad)


def test_non_finite_conversion_rejected():
    with pytest.raises(InvalidQuantityError):
        costing.convert(float("nan"), "kg", "g")
