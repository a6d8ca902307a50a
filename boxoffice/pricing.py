"""
Order pricing.

Everything here is pure arithmetic on integer cents. Totals are computed
once, at checkout, and stored on the order and its items:

    subtotal = sum(unit price x qty) - discount      (discount clamped)
    fee      = subtotal x fee_bp / 10000 + tickets x fee_per_ticket,
               at most the subtotal
    tax      = GST on subtotal (+ PST when the event is in BC)
    total    = subtotal + tax

The platform fee is not added to what the buyer pays; it is withheld from
the organizer's share (net to organizer = subtotal - fee). Discount, tax
and fee are spread over the items with the largest-remainder method so the
per-item allocations add up exactly to the order figures.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from .errors import ValidationError
from .model.status import DISCOUNT_PERCENT, DISCOUNT_FIXED


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def allocate(total: int, weights: Sequence[int]) -> List[int]:
    """Split `total` cents proportionally to `weights`, summing exactly."""
    if not weights:
        return []
    if sum(weights) <= 0:
        weights = [1] * len(weights)
    wsum = sum(weights)
    shares = [total * w // wsum for w in weights]
    remainders = [total * w % wsum for w in weights]
    left = total - sum(shares)
    # biggest remainder first, earlier line wins ties
    order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
    for i in order[:left]:
        shares[i] += 1
    return shares


@dataclass
class Line:
    tier_id: str
    unit_price_cents: int
    quantity: int


@dataclass
class FeeModel:
    fee_percent_bp: int = 250
    fee_per_ticket_cents: int = 50


@dataclass
class TaxRule:
    collect_tax: bool = True
    gst_percent: float = 5.0
    pst_percent: float = 7.0
    province: Optional[str] = None


@dataclass
class ItemPricing:
    tier_id: str
    quantity: int
    unit_price_cents: int
    discount_cents: int
    tax_cents: int
    fee_cents: int

    @property
    def line_total_cents(self) -> int:
        # what the buyer paid for this line
        return (self.unit_price_cents * self.quantity - self.discount_cents
                + self.tax_cents)


@dataclass
class Pricing:
    raw_subtotal_cents: int
    discount_cents: int
    subtotal_cents: int
    fees_cents: int
    gst_cents: int
    pst_cents: int
    tax_cents: int
    total_cents: int
    items: List[ItemPricing] = field(default_factory=list)

    @property
    def ticket_count(self) -> int:
        return sum(i.quantity for i in self.items)

    @property
    def net_to_organizer_cents(self) -> int:
        return max(0, self.subtotal_cents - self.fees_cents)


def discount_amount(discount_type: str, value: int, raw_subtotal: int) -> int:
    if discount_type == DISCOUNT_PERCENT:
        amount = round_half_up(Decimal(raw_subtotal) * Decimal(value) / 100)
    elif discount_type == DISCOUNT_FIXED:
        amount = int(value)
    else:
        raise ValidationError(f"unknown discount type {discount_type!r}")
    return max(0, min(amount, raw_subtotal))


def calculate_pricing(
    lines: Sequence[Line],
    fee_model: FeeModel,
    tax_rule: TaxRule,
    discount_cents: int = 0,
) -> Pricing:
    if not lines:
        raise ValidationError("an order needs at least one item")
    for ln in lines:
        if ln.quantity <= 0:
            raise ValidationError("quantity must be positive",
                                  tier_id=ln.tier_id)
        if ln.unit_price_cents < 0:
            raise ValidationError("negative price", tier_id=ln.tier_id)

    gross = [ln.unit_price_cents * ln.quantity for ln in lines]
    raw_subtotal = sum(gross)
    discount = max(0, min(int(discount_cents), raw_subtotal))
    subtotal = raw_subtotal - discount
    tickets = sum(ln.quantity for ln in lines)

    fees = round_half_up(
        Decimal(subtotal) * fee_model.fee_percent_bp / 10000
        + tickets * fee_model.fee_per_ticket_cents
    )
    # the organizer share never goes negative
    fees = min(fees, subtotal)

    gst = pst = 0
    if tax_rule.collect_tax:
        gst = round_half_up(
            Decimal(subtotal) * Decimal(str(tax_rule.gst_percent)) / 100
        )
        if (tax_rule.province or "").upper() == "BC":
            pst = round_half_up(
                Decimal(subtotal) * Decimal(str(tax_rule.pst_percent)) / 100
            )
    tax = gst + pst

    item_discounts = allocate(discount, gross)
    net = [g - d for g, d in zip(gross, item_discounts)]
    item_taxes = allocate(tax, net)
    item_fees = allocate(fees, net)

    items = [
        ItemPricing(
            tier_id=ln.tier_id,
            quantity=ln.quantity,
            unit_price_cents=ln.unit_price_cents,
            discount_cents=d,
            tax_cents=t,
            fee_cents=f,
        )
        for ln, d, t, f in zip(lines, item_discounts, item_taxes, item_fees)
    ]
    return Pricing(
        raw_subtotal_cents=raw_subtotal,
        discount_cents=discount,
        subtotal_cents=subtotal,
        fees_cents=fees,
        gst_cents=gst,
        pst_cents=pst,
        tax_cents=tax,
        total_cents=subtotal + tax,
        items=items,
    )


def ticket_refund_ceiling(
    unit_price_cents: int, quantity: int, discount_cents: int, tax_cents: int
) -> int:
    """The most a single ticket of an item can be refunded for."""
    line = unit_price_cents * quantity - discount_cents + tax_cents
    return round_half_up(Decimal(line) / quantity)


def proportional_clawback(
    sale_cents: int, refunded_cents: int, total_cents: int
) -> int:
    """Cumulative organizer clawback once `refunded_cents` of the order
    total has gone back to the buyer; never more than the sale itself."""
    if total_cents <= 0 or sale_cents <= 0:
        return 0
    if refunded_cents >= total_cents:
        return sale_cents
    share = round_half_up(Decimal(sale_cents) * refunded_cents / total_cents)
    return min(sale_cents, share)
