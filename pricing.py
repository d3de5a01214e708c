"""Order pricing: line totals, 18% GST, flat shipping waived above a threshold."""

from dataclasses import dataclass
from typing import Iterable

from errors import ValidationError
from utils import round_money

TAX_RATE = 0.18
FREE_SHIPPING_THRESHOLD = 500
SHIPPING_FEE = 50


@dataclass
class LineItem:
    unit_price: float
    quantity: int
    price_modifier: float = 0.0


def line_total(item: LineItem) -> float:
    if item.quantity < 1:
        raise ValidationError(f"Quantity must be at least 1, got {item.quantity}", field="quantity")
    if item.unit_price < 0:
        raise ValidationError(f"Unit price must not be negative, got {item.unit_price}", field="price")
    return round_money((item.unit_price + item.price_modifier) * item.quantity)


def shipping_for(subtotal: float, waived: bool = False) -> float:
    if waived or subtotal > FREE_SHIPPING_THRESHOLD:
        return 0.0
    return float(SHIPPING_FEE)


def calculate_pricing(items: Iterable[LineItem], discount: float = 0.0, waive_shipping: bool = False) -> dict:
    """Return the pricing block {subtotal, discount, tax, shipping, total}.

    Group orders pass ``waive_shipping`` since they are distributed in bulk.
    """
    if discount < 0:
        raise ValidationError("Discount must not be negative", field="discount")
    subtotal = round_money(sum(line_total(item) for item in items))
    tax = round_money(subtotal * TAX_RATE)
    shipping = shipping_for(subtotal, waived=waive_shipping)
    total = round_money(subtotal - discount + tax + shipping)
    if total < 0:
        raise ValidationError("Discount exceeds order value", field="discount")
    return {
        "subtotal": subtotal,
        "discount": round_money(discount),
        "tax": tax,
        "shipping": shipping,
        "total": total,
    }


def sum_pricing(blocks: Iterable[dict]) -> dict:
    """Elementwise sum of pricing blocks; total is re-derived from the parts."""
    totals = {"subtotal": 0.0, "discount": 0.0, "tax": 0.0, "shipping": 0.0}
    for block in blocks:
        if not block:
            continue
        for key in totals:
            totals[key] += block.get(key) or 0
    result = {key: round_money(value) for key, value in totals.items()}
    result["total"] = round_money(result["subtotal"] - result["discount"] + result["tax"] + result["shipping"])
    return result
