from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import bindparam, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound, ValidationError
from .helpers import is_valid_email, new_id, now_ts, to_iso
from .infra.logs import get_logger
from .infra.sql import Database
from .infra.timings import timeit
from .model.db import Discount, Order, OrderItem
from .model.status import (
    FULL_REFUND, ORDER_PAID, ORDER_PARTIALLY_REFUNDED, ORDER_PENDING,
    ORDER_REFUNDED, ORDER_STATUSES, TRANSITIONS, next_status,
)
from .pricing import Pricing

log = get_logger("orders")

# provider correlation ids, in the order they usually show up
PROVIDER_FIELDS = ("checkout_session_id", "payment_intent_id", "charge_id")


@dataclass
class Buyer:
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None

    def validate(self) -> None:
        if not is_valid_email(self.email):
            raise ValidationError(
                "buyer_email is required and must be a valid email address"
            )


def order_dict(o: Order) -> Dict[str, Any]:
    return {
        "order_id": o.id,
        "event_id": o.event_id,
        "status": o.status,
        "subtotal_cents": o.subtotal_cents,
        "discount_cents": o.discount_cents,
        "tax_cents": o.tax_cents,
        "total_cents": o.total_cents,
        "refunded_cents": o.refunded_cents,
        "currency": o.currency,
        "created_at": to_iso(o.created_at),
        "paid_at": to_iso(o.paid_at),
    }


def _check_field(field: str) -> None:
    # field names are spliced into SQL below
    if field not in PROVIDER_FIELDS:
        raise ValueError(f"unknown provider reference {field!r}")


class OrderStore:
    def __init__(self, db: Database):
        self.db = db

    # --------------------------------------------------------------------------
    # create
    # --------------------------------------------------------------------------
    # UN-GATED internal function
    async def create_order_in(
        self,
        db: AsyncSession,
        event_id: str,
        buyer: Buyer,
        pricing: Pricing,
        discount: Optional[Discount] = None,
        *,
        order_id: Optional[str] = None,
        currency: str = "cad",
        discount_claimed: bool = False,
        now: Optional[float] = None,
    ) -> Order:
        buyer.validate()
        now = now_ts() if now is None else now
        order = Order(
            id=order_id or new_id(),
            event_id=event_id,
            buyer_email=buyer.email.strip(),
            buyer_name=buyer.name,
            buyer_phone=buyer.phone,
            subtotal_cents=pricing.subtotal_cents,
            discount_id=discount.id if discount is not None else None,
            discount_code=discount.code if discount is not None else None,
            discount_cents=pricing.discount_cents,
            discount_claimed=discount_claimed,
            fees_cents=pricing.fees_cents,
            tax_cents=pricing.tax_cents,
            total_cents=pricing.total_cents,
            currency=currency,
            status=ORDER_PENDING,
            refunded_cents=0,
            created_at=now,
        )
        db.add(order)
        for it in pricing.items:
            db.add(OrderItem(
                id=new_id(),
                order_id=order.id,
                tier_id=it.tier_id,
                quantity=it.quantity,
                unit_price_cents=it.unit_price_cents,
                discount_cents=it.discount_cents,
                tax_cents=it.tax_cents,
                fee_cents=it.fee_cents,
            ))
        await db.flush()
        return order

    async def create_order(
        self,
        event_id: str,
        buyer: Buyer,
        pricing: Pricing,
        discount: Optional[Discount] = None,
        **kw,
    ) -> Order:
        async with timeit("orders.create"):
            async with self.db.tx() as db:
                return await self.create_order_in(db, event_id, buyer,
                                                  pricing, discount, **kw)

    # --------------------------------------------------------------------------
    # reads
    # --------------------------------------------------------------------------
    # UN-GATED internal function
    async def get_in(self, db: AsyncSession, order_id: str) -> Optional[Order]:
        return await db.get(Order, order_id, populate_existing=True)

    async def get(self, order_id: str) -> Order:
        async with self.db.tx() as db:
            order = await self.get_in(db, order_id)
        if order is None:
            raise NotFound("order not found", order_id=order_id)
        return order

    async def for_event(
        self, event_id: str, status: Optional[str] = None, limit: int = 200
    ) -> List[Order]:
        stmt = select(Order).where(Order.event_id == event_id)
        if status:
            if status not in ORDER_STATUSES:
                raise ValidationError(f"unknown order status {status!r}")
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc()) \
            .limit(max(1, min(limit, 1000)))
        async with self.db.tx() as db:
            return list((await db.execute(stmt)).scalars())

    # UN-GATED internal function
    async def items_in(
        self, db: AsyncSession, order_id: str
    ) -> List[OrderItem]:
        rows = await db.execute(
            select(OrderItem)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.id)
        )
        return list(rows.scalars())

    # UN-GATED internal function
    async def find_by_provider_reference_in(
        self, db: AsyncSession, field: str, value: Optional[str]
    ) -> Optional[Order]:
        _check_field(field)
        if not value:
            return None
        rows = await db.execute(
            select(Order)
            .where(getattr(Order, field) == value)
            .execution_options(populate_existing=True)
        )
        return rows.scalar_one_or_none()

    async def find_by_provider_reference(
        self, field: str, value: str
    ) -> Optional[Order]:
        async with self.db.tx() as db:
            return await self.find_by_provider_reference_in(db, field, value)

    # --------------------------------------------------------------------------
    # state machine
    # --------------------------------------------------------------------------
    # UN-GATED internal function
    async def transition_in(
        self, db: AsyncSession, order_id: str, order_event: str,
        now: Optional[float] = None,
    ) -> Tuple[Order, bool]:
        """
        Compare-and-swap on the status column. Returns (order, changed);
        illegal and repeated transitions come back unchanged.
        """
        now = now_ts() if now is None else now
        order = await self.get_in(db, order_id)
        if order is None:
            raise NotFound("order not found", order_id=order_id)

        target = next_status(order.status, order_event)
        if target is None:
            log.info(f"order {order_id}: {order_event} ignored "
                     f"in status {order.status}")
            return order, False

        sources, _ = TRANSITIONS[order_event]
        stmt = text("""
            UPDATE orders
            SET status = :target,
                paid_at = COALESCE(:paid_at, paid_at),
                refunded_at = COALESCE(:refunded_at, refunded_at)
            WHERE id = :id AND status IN :sources
            RETURNING id
        """).bindparams(bindparam("sources", expanding=True))
        row = (await db.execute(stmt, {
            "id": order_id,
            "target": target,
            "paid_at": now if target == ORDER_PAID else None,
            "refunded_at": now if target == ORDER_REFUNDED else None,
            "sources": sorted(sources),
        })).first()
        order = await self.get_in(db, order_id)
        if row is None:
            # somebody else moved it first
            log.info(f"order {order_id}: {order_event} lost the race, "
                     f"now {order.status}")
            return order, False
        log.info(f"order {order_id}: -> {target}")
        return order, True

    async def transition(self, order_id: str, order_event: str) -> Order:
        async with self.db.tx() as db:
            order, _ = await self.transition_in(db, order_id, order_event)
        return order

    # UN-GATED internal function
    async def add_refund_in(
        self, db: AsyncSession, order_id: str, amount_cents: int,
        expected_refunded: Optional[int] = None,
        now: Optional[float] = None,
    ) -> Optional[Order]:
        """
        Add to the cumulative refunded amount and move the status to
        partially_refunded / refunded in the same statement. None when the
        order is not refundable, the amount would exceed the total, or
        `expected_refunded` no longer matches.
        """
        if amount_cents <= 0:
            raise ValidationError("refund amount must be positive")
        now = now_ts() if now is None else now
        sources, _ = TRANSITIONS[FULL_REFUND]
        sql = """
            UPDATE orders
            SET refunded_cents = refunded_cents + :a,
                status = CASE WHEN refunded_cents + :a >= total_cents
                              THEN :full ELSE :partial END,
                refunded_at = :now
            WHERE id = :id
              AND status IN :sources
              AND refunded_cents + :a <= total_cents
        """
        params = {
            "id": order_id,
            "a": amount_cents,
            "full": ORDER_REFUNDED,
            "partial": ORDER_PARTIALLY_REFUNDED,
            "now": now,
            "sources": sorted(sources),
        }
        if expected_refunded is not None:
            sql += " AND refunded_cents = :expected"
            params["expected"] = expected_refunded
        sql += " RETURNING id"
        stmt = text(sql).bindparams(bindparam("sources", expanding=True))
        row = (await db.execute(stmt, params)).first()
        if row is None:
            return None
        return await self.get_in(db, order_id)

    # --------------------------------------------------------------------------
    # provider references
    # --------------------------------------------------------------------------
    # UN-GATED internal function
    async def record_provider_reference_in(
        self, db: AsyncSession, order_id: str, field: str, value: str
    ) -> bool:
        """Set once; the same value again is a no-op, a different one is
        refused."""
        _check_field(field)
        if not value:
            return False
        row = (await db.execute(text(f"""
            UPDATE orders SET {field} = :v
            WHERE id = :id AND ({field} IS NULL OR {field} = :v)
            RETURNING id
        """), {"id": order_id, "v": value})).first()
        if row is None:
            current = (await db.execute(text(f"""
                SELECT {field} FROM orders WHERE id = :id
            """), {"id": order_id})).first()
            if current is None:
                raise NotFound("order not found", order_id=order_id)
            log.warning(f"order {order_id}: {field} already {current[0]}, "
                        f"refusing {value}")
            return False
        return True

    async def record_provider_reference(
        self, order_id: str, field: str, value: str
    ) -> bool:
        async with self.db.tx() as db:
            return await self.record_provider_reference_in(
                db, order_id, field, value
            )
