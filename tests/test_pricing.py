"""Tests for the pricing calculator."""

import pytest

from errors import ValidationError
from pricing import LineItem, calculate_pricing, line_total, shipping_for, sum_pricing


class TestCalculatePricing:
    def test_small_order_pays_shipping(self):
        pricing = calculate_pricing([LineItem(unit_price=100, quantity=3)])
        assert pricing == {"subtotal": 300.0, "discount": 0.0, "tax": 54.0, "shipping": 50.0, "total": 404.0}

    def test_shipping_waived_above_threshold(self):
        pricing = calculate_pricing([LineItem(unit_price=300, quantity=2)])
        assert pricing["subtotal"] == 600.0
        assert pricing["shipping"] == 0.0
        assert pricing["tax"] == 108.0
        assert pricing["total"] == 708.0

    def test_exactly_threshold_still_pays_shipping(self):
        assert shipping_for(500) == 50.0
        assert shipping_for(500.01) == 0.0

    def test_waive_shipping_flag(self):
        pricing = calculate_pricing([LineItem(unit_price=10, quantity=1)], waive_shipping=True)
        assert pricing["shipping"] == 0.0
        assert pricing["total"] == 11.8

    def test_variant_modifier_added_per_unit(self):
        assert line_total(LineItem(unit_price=250, quantity=2, price_modifier=25)) == 550.0

    def test_discount_reduces_total(self):
        pricing = calculate_pricing([LineItem(unit_price=100, quantity=1)], discount=20)
        assert pricing["total"] == 100 - 20 + 18 + 50

    def test_total_identity_holds(self):
        items = [LineItem(19.99, 3), LineItem(7.5, 1, 0.25), LineItem(120, 2)]
        p = calculate_pricing(items, discount=5)
        assert p["subtotal"] == round(59.97 + 7.75 + 240, 2)
        assert p["total"] == round(p["subtotal"] - p["discount"] + p["tax"] + p["shipping"], 2)

    def test_tax_rounds_half_up_to_cents(self):
        # 0.25 * 0.18 = 0.045 -> 0.05
        assert calculate_pricing([LineItem(0.25, 1)])["tax"] == 0.05


class TestValidation:
    def test_zero_quantity_rejected(self):
        with pytest.raises(ValidationError):
            calculate_pricing([LineItem(unit_price=10, quantity=0)])

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            line_total(LineItem(unit_price=-1, quantity=1))

    def test_negative_discount_rejected(self):
        with pytest.raises(ValidationError):
            calculate_pricing([LineItem(10, 1)], discount=-1)

    def test_discount_larger_than_order_rejected(self):
        with pytest.raises(ValidationError):
            calculate_pricing([LineItem(10, 1)], discount=1000)


class TestSumPricing:
    def test_elementwise_sum(self):
        blocks = [
            {"subtotal": 300, "discount": 0, "tax": 54, "shipping": 0, "total": 354},
            {"subtotal": 100.5, "discount": 10, "tax": 18.09, "shipping": 0, "total": 108.59},
        ]
        assert sum_pricing(blocks) == {
            "subtotal": 400.5, "discount": 10.0, "tax": 72.09, "shipping": 0.0, "total": 462.59,
        }

    def test_empty_is_zero(self):
        assert sum_pricing([]) == {"subtotal": 0.0, "discount": 0.0, "tax": 0.0, "shipping": 0.0, "total": 0.0}

    def test_missing_blocks_skipped(self):
        assert sum_pricing([None, {"subtotal": 10, "tax": 1.8}])["total"] == 11.8
