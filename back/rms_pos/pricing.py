"""
Pricing Engine

Pure monetary calculations for orders and bills.

Money is carried as integer cents between calculations. Rounding is
half-up to 2 decimals and happens at fixed points only:
- the order subtotal (once, not per line)
- tax computed on the rounded subtotal
- each discount, service charge and bill tax line
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Sequence

from .errors import ValidationError
from .models import DiscountType

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: object, field: str = "amount") -> Decimal:
    """Coerce numbers and numeric strings to Decimal (floats via their repr)."""
    if isinstance(value, Decimal):
        result = value
    else:
        if isinstance(value, bool) or value is None:
            raise ValidationError(f"Invalid {field}: {value!r}")
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"Invalid {field}: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    return result


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: object) -> int:
    """Round to 2 decimals (half-up) and convert to integer cents."""
    return int(round_money(to_decimal(amount)) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / HUNDRED).quantize(CENT)


def cents_to_float(cents: int) -> float:
    """API payloads carry amounts as JSON numbers"""
    return float(from_cents(cents))


def allocate_cents(weights: Sequence[int], total_cents: int) -> list[int]:
    """
    Distribute total_cents across weights proportionally.

    Each share is floored, then the remaining cents go to the largest
    fractional residuals (ties broken by position). The result always sums
    to exactly total_cents.
    """
    total_weight = sum(weights)
    if total_weight == 0 or total_cents == 0:
        return [0] * len(weights)

    shares = [Decimal(w) * total_cents / total_weight for w in weights]
    floors = [int(share.to_integral_value(rounding=ROUND_FLOOR)) for share in shares]
    remainder = total_cents - sum(floors)

    by_residual = sorted(
        range(len(weights)),
        key=lambda i: (-(shares[i] - floors[i]), i),
    )
    for i in by_residual[:remainder]:
        floors[i] += 1
    return floors


# ============ ORDER TOTALS ============

@dataclass(frozen=True)
class PricedLine:
    unit_price: Decimal
    quantity: int
    total_cents: int


@dataclass(frozen=True)
class OrderTotals:
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    lines: tuple[PricedLine, ...] = ()

    @property
    def subtotal(self) -> Decimal:
        return from_cents(self.subtotal_cents)

    @property
    def tax(self) -> Decimal:
        return from_cents(self.tax_cents)

    @property
    def total(self) -> Decimal:
        return from_cents(self.total_cents)


def _line_values(item: object) -> tuple[object, object]:
    if isinstance(item, dict):
        return item.get("unit_price"), item.get("quantity")
    return getattr(item, "unit_price"), getattr(item, "quantity")


def calculate_totals(items: Iterable[object], tax_rate: object) -> OrderTotals:
    """
    Compute subtotal, tax and total for a list of items.

    Items are dicts or objects exposing `unit_price` and `quantity`.
    tax_rate is a fraction (0.18 for 18%).
    """
    rate = to_decimal(tax_rate, "tax rate")
    if rate < 0:
        raise ValidationError(f"Tax rate cannot be negative: {rate}")

    exact_lines: list[tuple[Decimal, int, Decimal]] = []
    for index, item in enumerate(items):
        raw_price, raw_quantity = _line_values(item)
        unit_price = to_decimal(raw_price, "unit price")
        if unit_price < 0:
            raise ValidationError(f"Unit price cannot be negative at item {index}: {unit_price}")
        if isinstance(raw_quantity, bool) or not isinstance(raw_quantity, int):
            raise ValidationError(f"Quantity must be a whole number at item {index}: {raw_quantity!r}")
        if raw_quantity < 1:
            raise ValidationError(f"Quantity must be at least 1 at item {index}: {raw_quantity}")
        exact_lines.append((unit_price, raw_quantity, unit_price * raw_quantity))

    exact_subtotal = sum((line[2] for line in exact_lines), Decimal("0"))
    subtotal_cents = to_cents(exact_subtotal)
    tax_cents = to_cents(from_cents(subtotal_cents) * rate)
    total_cents = to_cents(from_cents(subtotal_cents) + from_cents(tax_cents))

    # Line totals are shares of the once-rounded subtotal, so they add up exactly
    line_cents = _allocate_exact(
        [line[2] for line in exact_lines], subtotal_cents
    )
    lines = tuple(
        PricedLine(unit_price=price, quantity=qty, total_cents=cents)
        for (price, qty, _), cents in zip(exact_lines, line_cents)
    )
    return OrderTotals(subtotal_cents, tax_cents, total_cents, lines)


def _allocate_exact(exact_amounts: list[Decimal], total_cents: int) -> list[int]:
    rounded = [to_cents(amount) for amount in exact_amounts]
    drift = total_cents - sum(rounded)
    if drift == 0:
        return rounded
    # Sub-cent lines: hand the drift to the lines whose rounding lost the most
    residuals = [amount * 100 - cents for amount, cents in zip(exact_amounts, rounded)]
    step = 1 if drift > 0 else -1
    order = sorted(
        range(len(rounded)),
        key=lambda i: (-residuals[i] * step, i),
    )
    for i in order[: abs(drift)]:
        rounded[i] += step
    return rounded


# ============ BILL TOTALS ============

@dataclass(frozen=True)
class BillTotals:
    subtotal_cents: int
    discounts: list[dict]
    discount_cents: int
    service_charge_cents: int
    taxes: list[dict]
    tax_cents: int
    total_cents: int


def calculate_bill_totals(
    subtotal_cents: int,
    discounts: Iterable[dict] = (),
    taxes: Iterable[dict] = (),
    service_charge_percent: object = 0,
) -> BillTotals:
    """
    Apply discounts, service charge and taxes to a bill subtotal.

    Discounts and the service charge are both computed off the pre-tax
    subtotal; each tax applies to (subtotal + service charge - discounts).
    Discount dicts: {"name", "type": PERCENTAGE|FIXED, "value"}.
    Tax dicts: {"name", "rate"} with rate in percent.
    """
    subtotal = from_cents(subtotal_cents)

    processed_discounts = []
    discount_cents = 0
    for index, discount in enumerate(discounts):
        value = to_decimal(discount.get("value"), "discount value")
        if value < 0:
            raise ValidationError(f"Discount value cannot be negative at index {index}: {value}")
        try:
            discount_type = DiscountType(discount.get("type"))
        except ValueError:
            raise ValidationError(
                f"Invalid discount type at index {index}: {discount.get('type')}. "
                f"Must be one of: {', '.join(t.value for t in DiscountType)}"
            )
        if discount_type == DiscountType.PERCENTAGE:
            if value > 100:
                raise ValidationError(f"Percentage discount cannot exceed 100 at index {index}")
            amount_cents = to_cents(subtotal * value / HUNDRED)
        else:
            amount_cents = to_cents(value)
        discount_cents += amount_cents
        processed_discounts.append({
            "name": discount.get("name") or f"Discount {index + 1}",
            "type": discount_type.value,
            "value": str(value),
            "amount_cents": amount_cents,
        })

    service_percent = to_decimal(service_charge_percent, "service charge")
    if service_percent < 0:
        raise ValidationError(f"Service charge cannot be negative: {service_percent}")
    service_charge_cents = to_cents(subtotal * service_percent / HUNDRED)

    if discount_cents > subtotal_cents + service_charge_cents:
        raise ValidationError(
            f"Discounts ({from_cents(discount_cents)}) exceed the billable amount "
            f"({from_cents(subtotal_cents + service_charge_cents)})"
        )

    taxable = from_cents(subtotal_cents + service_charge_cents - discount_cents)
    processed_taxes = []
    tax_cents = 0
    for index, tax in enumerate(taxes):
        rate = to_decimal(tax.get("rate"), "tax rate")
        if rate < 0:
            raise ValidationError(f"Tax rate cannot be negative at index {index}: {rate}")
        amount_cents = to_cents(taxable * rate / HUNDRED)
        tax_cents += amount_cents
        processed_taxes.append({
            "name": tax.get("name") or f"Tax {index + 1}",
            "rate": str(rate),
            "amount_cents": amount_cents,
        })

    total_cents = subtotal_cents + service_charge_cents + tax_cents - discount_cents
    return BillTotals(
        subtotal_cents=subtotal_cents,
        discounts=processed_discounts,
        discount_cents=discount_cents,
        service_charge_cents=service_charge_cents,
        taxes=processed_taxes,
        tax_cents=tax_cents,
        total_cents=total_cents,
    )
