from decimal import Decimal
from typing import Iterable

from shared.utils import to_money


def customization_total(item: dict) -> Decimal:
    return sum(
        (to_money(c.get("price") or 0) for c in item.get("customizations") or []),
        Decimal(0),
    )


def line_total(item: dict) -> Decimal:
    return (to_money(item["price"]) + customization_total(item)) * item["quantity"]


def subtotal_of(items: Iterable[dict]) -> Decimal:
    return to_money(sum((line_total(item) for item in items), Decimal(0)))


def tax_on(subtotal: Decimal, tax_rate: float) -> Decimal:
    return to_money(subtotal * to_money_rate(tax_rate))


def to_money_rate(rate: float) -> Decimal:
    # Rates keep their own precision; only amounts are quantized to cents
    return Decimal(str(rate))


def cart_totals(items: Iterable[dict], tax_rate: float) -> dict:
    """Derived cart fields; stored alongside the items on every write."""
    subtotal = subtotal_of(items)
    tax = tax_on(subtotal, tax_rate)
    return {
        "subtotal": float(subtotal),
        "tax": float(tax),
        "total": float(to_money(subtotal + tax)),
    }
