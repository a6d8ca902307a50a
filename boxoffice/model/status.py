"""
Status vocabularies and the order state machine.

Every status string the service writes comes from this module; the tables
carry CHECK constraints built from the same sets.
"""
from typing import Dict, FrozenSet, Optional, Tuple

# ----------------------------
# Orders
# ----------------------------
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
ORDER_PARTIALLY_REFUNDED = "partially_refunded"
ORDER_REFUNDED = "refunded"

ORDER_STATUSES = frozenset({
    ORDER_PENDING, ORDER_PAID, ORDER_FAILED, ORDER_PARTIALLY_REFUNDED,
    ORDER_REFUNDED,
})

# statuses in which an order has been paid for at some point
ORDER_SETTLED = frozenset({
    ORDER_PAID, ORDER_PARTIALLY_REFUNDED, ORDER_REFUNDED,
})

# events driving the machine
PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
PARTIAL_REFUND = "partial_refund"
FULL_REFUND = "full_refund"

# event -> (legal source statuses, target status)
TRANSITIONS: Dict[str, Tuple[FrozenSet[str], str]] = {
    PAYMENT_SUCCEEDED: (frozenset({ORDER_PENDING}), ORDER_PAID),
    PAYMENT_FAILED: (frozenset({ORDER_PENDING}), ORDER_FAILED),
    PARTIAL_REFUND: (
        frozenset({ORDER_PAID, ORDER_PARTIALLY_REFUNDED}),
        ORDER_PARTIALLY_REFUNDED,
    ),
    FULL_REFUND: (
        frozenset({ORDER_PAID, ORDER_PARTIALLY_REFUNDED}),
        ORDER_REFUNDED,
    ),
}


def next_status(current: str, order_event: str) -> Optional[str]:
    """Target status, or None when the event does not apply to `current`."""
    if current not in ORDER_STATUSES:
        raise ValueError(f"unknown order status {current!r}")
    if order_event not in TRANSITIONS:
        raise ValueError(f"unknown order event {order_event!r}")
    sources, target = TRANSITIONS[order_event]
    if current not in sources:
        return None
    return target


def refund_event(refunded_cents: int, total_cents: int) -> str:
    return FULL_REFUND if refunded_cents >= total_cents else PARTIAL_REFUND


# ----------------------------
# Tickets
# ----------------------------
TICKET_VALID = "valid"
TICKET_USED = "used"
TICKET_REFUNDED = "refunded"
TICKET_TRANSFERRED = "transferred"
TICKET_CANCELED = "canceled"

TICKET_STATUSES = frozenset({
    TICKET_VALID, TICKET_USED, TICKET_REFUNDED, TICKET_TRANSFERRED,
    TICKET_CANCELED,
})
# statuses that hold a seat, counted in tiers.sold_count
TICKET_HOLDS_SEAT = frozenset({TICKET_VALID, TICKET_USED})

# ----------------------------
# Ledger & payouts
# ----------------------------
ENTRY_SALE = "sale"
ENTRY_REFUND = "refund"
ENTRY_ADJUSTMENT = "adjustment"
ENTRY_TYPES = frozenset({ENTRY_SALE, ENTRY_REFUND, ENTRY_ADJUSTMENT})

ENTRY_PENDING = "pending"
ENTRY_PAID = "paid"
ENTRY_STATUSES = frozenset({ENTRY_PENDING, ENTRY_PAID})

FEE_ESTIMATED = "estimated"
FEE_ACTUAL = "actual"
FEE_STATUSES = frozenset({FEE_ESTIMATED, FEE_ACTUAL})

PAYOUT_DRAFT = "draft"
PAYOUT_PAID = "paid"
PAYOUT_STATUSES = frozenset({PAYOUT_DRAFT, PAYOUT_PAID})
PAYOUT_METHODS = frozenset({"etransfer", "paypal", "manual"})

# ----------------------------
# Webhook log
# ----------------------------
WEBHOOK_PENDING = "pending"
WEBHOOK_PROCESSED = "processed"
WEBHOOK_FAILED = "failed"
WEBHOOK_STATUSES = frozenset({
    WEBHOOK_PENDING, WEBHOOK_PROCESSED, WEBHOOK_FAILED,
})

# ----------------------------
# Catalog
# ----------------------------
EVENT_DRAFT = "draft"
EVENT_PUBLISHED = "published"
EVENT_ARCHIVED = "archived"

ORGANIZER_ACTIVE = "active"
ORGANIZER_SUSPENDED = "suspended"

DISCOUNT_PERCENT = "percent"
DISCOUNT_FIXED = "fixed"
DISCOUNT_ACTIVE = "active"
DISCOUNT_DISABLED = "disabled"


def sql_in(values) -> str:
    """Literal IN list for CHECK constraints built from the sets above."""
    return ", ".join(f"'{v}'" for v in sorted(values))
