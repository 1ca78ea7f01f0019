"""
Pricing & Tax Calculator

Pure money arithmetic for quotations. Every amount is a Decimal rounded to
two places (half-up) at the step where it is computed.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, List, Optional

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

PERCENTAGE = "percentage"
FIXED = "fixed"
DISCOUNT_TYPES = (PERCENTAGE, FIXED)


def to_decimal(value) -> Decimal:
    """Coerce numbers, numeric strings and None into a Decimal."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid monetary value: {value!r}")


def round_money(value) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def line_total(quantity, unit_price) -> Decimal:
    return round_money(to_decimal(quantity) * to_decimal(unit_price))


def normalize_expenses(raw, default_currency: Optional[str] = None) -> List[dict]:
    """
    Normalize additional expenses into a list of
    {category, description, amount, currency} dicts.

    Accepts None, a single expense object (older documents stored one object,
    some with the misspelled ``expenceType`` key) or a list of either.
    Entries without a positive amount are dropped.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = [raw]

    normalized = []
    for entry in raw:
        if hasattr(entry, "model_dump"):
            entry = entry.model_dump()
        if not isinstance(entry, dict):
            raise ValueError(f"Invalid additional expense entry: {entry!r}")

        amount = round_money(entry.get("amount"))
        if amount <= 0:
            continue
        category = (
            entry.get("category")
            or entry.get("expenseType")
            or entry.get("expenceType")
            or "other"
        )
        normalized.append({
            "category": str(category),
            "description": entry.get("description") or "",
            "amount": amount,
            "currency": entry.get("currency") or default_currency,
        })
    return normalized


def serialize_expenses(expenses: Iterable[dict]) -> List[dict]:
    """JSON-safe copy of normalized expenses (amounts as strings)."""
    return [dict(e, amount=str(round_money(e.get("amount")))) for e in expenses]


def expenses_total(expenses: Iterable[dict]) -> Decimal:
    return round_money(sum((to_decimal(e.get("amount")) for e in expenses), Decimal("0")))


def calculate_discount(subtotal, discount_value, discount_type: str) -> Decimal:
    discount_value = to_decimal(discount_value)
    if discount_value < 0:
        raise ValueError("Discount cannot be negative")
    if discount_type == PERCENTAGE:
        if discount_value > HUNDRED:
            raise ValueError("Percentage discount cannot exceed 100")
        return round_money(to_decimal(subtotal) * discount_value / HUNDRED)
    if discount_type == FIXED:
        return round_money(discount_value)
    raise ValueError(f"Unknown discount type '{discount_type}'")


def calculate_quotation_totals(
    items: List[dict],
    discount_value=0,
    discount_type: str = PERCENTAGE,
    additional_expenses: Optional[List[dict]] = None,
    vat_percent=0,
) -> dict:
    """
    Calculate quotation totals.

    ``items`` are dicts with ``quantity`` and ``unit_price``;
    ``additional_expenses`` must already be normalized.
    """
    subtotal = round_money(sum(
        (line_total(item["quantity"], item["unit_price"]) for item in items),
        Decimal("0")
    ))
    discount_amount = calculate_discount(subtotal, discount_value, discount_type)
    expenses_amount = expenses_total(additional_expenses or [])
    taxable_amount = round_money(subtotal + expenses_amount - discount_amount)

    vat_percent = to_decimal(vat_percent)
    if vat_percent < 0:
        raise ValueError("VAT percent cannot be negative")
    vat_amount = round_money(taxable_amount * vat_percent / HUNDRED)
    total_amount = round_money(taxable_amount + vat_amount)

    return {
        "subtotal": subtotal,
        "discount_amount": discount_amount,
        "additional_expenses_total": expenses_amount,
        "taxable_amount": taxable_amount,
        "vat_percent": vat_percent,
        "vat_amount": vat_amount,
        "total_amount": total_amount,
    }
