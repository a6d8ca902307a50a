from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
)

from .status import (
    ORDER_STATUSES, TICKET_STATUSES, ENTRY_TYPES, ENTRY_STATUSES,
    FEE_STATUSES, PAYOUT_STATUSES, WEBHOOK_STATUSES, ORDER_PENDING,
    TICKET_VALID, ENTRY_PENDING, PAYOUT_DRAFT, WEBHOOK_PENDING,
    EVENT_DRAFT, ORGANIZER_ACTIVE, DISCOUNT_ACTIVE, sql_in,
)


Base = declarative_base()


# ----------------------------
# Catalog
# ----------------------------
class Organizer(Base):
    __tablename__ = "organizers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    api_key_hash = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=ORGANIZER_ACTIVE)
    # fee model: basis points of the subtotal + flat amount per ticket
    fee_percent_bp = Column(Integer, nullable=False, default=250)
    fee_per_ticket_cents = Column(Integer, nullable=False, default=50)
    payout_method = Column(String, nullable=False, default="etransfer")
    payout_email = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, ForeignKey("organizers.id"),
                          nullable=False, index=True)
    title = Column(String, nullable=False)
    # draft | published | archived
    status = Column(String, nullable=False, default=EVENT_DRAFT)
    collect_tax = Column(Boolean, nullable=False, default=True)
    gst_percent = Column(Float, nullable=False, default=5.0)
    pst_percent = Column(Float, nullable=False, default=7.0)
    province = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Tier(Base):
    __tablename__ = "tiers"
    __table_args__ = (
        CheckConstraint("sold_count >= 0", name="tier_sold_nonneg"),
        CheckConstraint("reserved_count >= 0", name="tier_reserved_nonneg"),
        CheckConstraint(
            "capacity IS NULL OR sold_count + reserved_count <= capacity",
            name="tier_capacity",
        ),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price_cents = Column(Integer, nullable=False)
    # NULL = unlimited
    capacity = Column(Integer, nullable=True)
    max_per_order = Column(Integer, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    sold_count = Column(Integer, nullable=False, default=0)
    reserved_count = Column(Integer, nullable=False, default=0)
    archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class Discount(Base):
    __tablename__ = "discounts"
    __table_args__ = (
        UniqueConstraint("event_id", "code", name="discount_event_code"),
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses",
            name="discount_cap",
        ),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    code = Column(String, nullable=False)
    # percent | fixed
    discount_type = Column(String, nullable=False)
    # whole percent, or cents for fixed
    value = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=DISCOUNT_ACTIVE)
    starts_at = Column(Float, nullable=True)
    ends_at = Column(Float, nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)


# ----------------------------
# Orders & tickets
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(f"status IN ({sql_in(ORDER_STATUSES)})",
                        name="order_status"),
        CheckConstraint("refunded_cents >= 0", name="order_refund_nonneg"),
        CheckConstraint("refunded_cents <= total_cents",
                        name="order_refund_le_total"),
        CheckConstraint(
            f"fee_status IS NULL OR fee_status IN ({sql_in(FEE_STATUSES)})",
            name="order_fee_status",
        ),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    buyer_email = Column(String, nullable=False)
    buyer_name = Column(String, nullable=True)
    buyer_phone = Column(String, nullable=True)

    subtotal_cents = Column(Integer, nullable=False)
    discount_id = Column(String, ForeignKey("discounts.id"), nullable=True)
    discount_code = Column(String, nullable=True)
    discount_cents = Column(Integer, nullable=False, default=0)
    discount_claimed = Column(Boolean, nullable=False, default=False)
    # platform fee, taken from the organizer share
    fees_cents = Column(Integer, nullable=False)
    tax_cents = Column(Integer, nullable=False)
    total_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="cad")

    status = Column(String, nullable=False, default=ORDER_PENDING)

    # provider correlation ids, supplied over the payment lifecycle
    checkout_session_id = Column(String, nullable=True, unique=True)
    payment_intent_id = Column(String, nullable=True, unique=True)
    charge_id = Column(String, nullable=True, unique=True)

    provider_fee_cents = Column(Integer, nullable=True)
    fee_status = Column(String, nullable=True)
    net_to_organizer_cents = Column(Integer, nullable=True)

    refunded_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="item_quantity_pos"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    tier_id = Column(String, ForeignKey("tiers.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    discount_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    fee_cents = Column(Integer, nullable=False, default=0)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        CheckConstraint(f"status IN ({sql_in(TICKET_STATUSES)})",
                        name="ticket_status"),
    )
    id = Column(String, primary_key=True)
    order_item_id = Column(String, ForeignKey("order_items.id"),
                           nullable=False, index=True)
    tier_id = Column(String, ForeignKey("tiers.id"), nullable=False,
                     index=True)
    serial = Column(String, nullable=False, unique=True)
    scan_token = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=TICKET_VALID)
    holder_email = Column(String, nullable=True)
    holder_name = Column(String, nullable=True)
    holder_phone = Column(String, nullable=True)
    checked_in_at = Column(Float, nullable=True)
    checked_in_by = Column(String, nullable=True)
    refunded_at = Column(Float, nullable=True)
    refunded_cents = Column(Integer, nullable=True)
    refund_reason = Column(String, nullable=True)
    # idempotency key of the refund that claimed this ticket
    refund_claim = Column(String, nullable=True)
    transferred_to = Column(String, nullable=True)
    transferred_from = Column(String, nullable=True)
    transferred_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class CapacityReservation(Base):
    __tablename__ = "capacity_reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="reservation_quantity_pos"),
        Index("reservations_tier_expiry_idx", "tier_id", "expires_at"),
    )
    id = Column(String, primary_key=True)
    tier_id = Column(String, ForeignKey("tiers.id"), nullable=False)
    # correlation id: the pending order
    order_id = Column(String, nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)


# ----------------------------
# Webhooks, money, audit
# ----------------------------
class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        CheckConstraint(f"status IN ({sql_in(WEBHOOK_STATUSES)})",
                        name="webhook_status"),
    )
    id = Column(String, primary_key=True)
    provider_event_id = Column(String, nullable=False, unique=True)
    kind = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=WEBHOOK_PENDING)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    processed_at = Column(Float, nullable=True)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint(f"entry_type IN ({sql_in(ENTRY_TYPES)})",
                        name="entry_type"),
        CheckConstraint(f"status IN ({sql_in(ENTRY_STATUSES)})",
                        name="entry_status"),
        Index("ledger_organizer_status_idx", "organizer_id", "status"),
    )
    id = Column(String, primary_key=True)
    organizer_id = Column(String, ForeignKey("organizers.id"),
                          nullable=False)
    # NULL for manual adjustments
    order_id = Column(String, ForeignKey("orders.id"), nullable=True,
                      index=True)
    # sale | refund | adjustment
    entry_type = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=ENTRY_PENDING)
    fee_status = Column(String, nullable=True)
    # set to the order id on sale entries only: one sale per order
    sale_key = Column(String, nullable=True, unique=True)
    payout_id = Column(String, ForeignKey("payouts.id"), nullable=True,
                       index=True)
    description = Column(String, nullable=False, default="")
    created_at = Column(Float, nullable=False)


class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        CheckConstraint(f"status IN ({sql_in(PAYOUT_STATUSES)})",
                        name="payout_status"),
    )
    id = Column(String, primary_key=True)
    organizer_id = Column(String, ForeignKey("organizers.id"),
                          nullable=False, index=True)
    period_start = Column(Float, nullable=False)
    period_end = Column(Float, nullable=False)
    method = Column(String, nullable=False)
    total_cents = Column(Integer, nullable=False)
    entry_count = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=PAYOUT_DRAFT)
    reference = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id = Column(String, primary_key=True)
    # system | organizer | staff | admin
    actor_type = Column(String, nullable=False)
    actor_id = Column(String, nullable=False)
    action = Column(String, nullable=False)
    target_type = Column(String, nullable=False)
    target_id = Column(String, nullable=False, index=True)
    meta = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
