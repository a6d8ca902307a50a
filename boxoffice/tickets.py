from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit
from .errors import Conflict, NotFound
from .helpers import new_id, new_scan_token, new_serial, now_ts
from .infra.logs import get_logger
from .infra.sql import Database
from .infra.timings import timeit
from .model.db import Order, OrderItem, Ticket
from .model.status import (
    ORDER_PAID, ORDER_PARTIALLY_REFUNDED, TICKET_USED, TICKET_VALID,
)

log = get_logger("tickets")

# orders whose remaining valid tickets still admit
ADMITTING_ORDER_STATUSES = frozenset({ORDER_PAID, ORDER_PARTIALLY_REFUNDED})


# UN-GATED internal function
async def _with_order(
    db: AsyncSession, scan_token: str
) -> Optional[Tuple[Ticket, Order]]:
    row = (await db.execute(
        select(Ticket, Order)
        .join(OrderItem, OrderItem.id == Ticket.order_item_id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(Ticket.scan_token == scan_token)
        .execution_options(populate_existing=True)
    )).first()
    if row is None:
        return None
    return row[0], row[1]


def _refusal(ticket: Ticket, order: Order, event_id: str) -> Optional[str]:
    if order.event_id != event_id:
        return "ticket is for another event"
    if order.status not in ADMITTING_ORDER_STATUSES:
        return f"order is {order.status}"
    if ticket.status == TICKET_USED:
        return "ticket already checked in"
    if ticket.status != TICKET_VALID:
        return f"ticket is {ticket.status}"
    return None


def ticket_dict(t: Ticket) -> Dict[str, Any]:
    return {
        "ticket_id": t.id,
        "serial": t.serial,
        "tier_id": t.tier_id,
        "status": t.status,
        "holder_email": t.holder_email,
        "holder_name": t.holder_name,
        "checked_in_at": t.checked_in_at,
        "transferred_to": t.transferred_to,
        "transferred_from": t.transferred_from,
    }


class TicketIssuer:
    def __init__(self, db: Database):
        self.db = db

    # UN-GATED internal function
    async def issue_in(
        self, db: AsyncSession, order: Order, now: Optional[float] = None
    ) -> List[Ticket]:
        """
        Mint the tickets an order is still missing. Tickets minted by a
        transfer do not count: they replace one of the originals.
        """
        if order.status != ORDER_PAID:
            raise Conflict("tickets are only issued for paid orders",
                           order_id=order.id, status=order.status)
        now = now_ts() if now is None else now
        items = (await db.execute(
            select(OrderItem)
            .where(OrderItem.order_id == order.id)
            .order_by(OrderItem.id)
        )).scalars().all()
        minted: List[Ticket] = []
        for item in items:
            existing = (await db.execute(
                select(func.count(Ticket.id)).where(
                    Ticket.order_item_id == item.id,
                    Ticket.transferred_from.is_(None),
                )
            )).scalar_one()
            for _ in range(item.quantity - int(existing)):
                t = Ticket(
                    id=new_id(),
                    order_item_id=item.id,
                    tier_id=item.tier_id,
                    serial=new_serial(),
                    scan_token=new_scan_token(),
                    status=TICKET_VALID,
                    holder_email=order.buyer_email,
                    holder_name=order.buyer_name,
                    holder_phone=order.buyer_phone,
                    created_at=now,
                )
                db.add(t)
                minted.append(t)
        if minted:
            await db.flush()
            log.info(f"order {order.id}: issued {len(minted)} tickets")
        return minted

    async def issue_for_order(self, order_id: str) -> List[Ticket]:
        async with timeit("tickets.issue"):
            async with self.db.tx() as db:
                order = await db.get(Order, order_id, populate_existing=True)
                if order is None:
                    raise NotFound("order not found", order_id=order_id)
                return await self.issue_in(db, order)

    # UN-GATED internal function
    async def tickets_for_order_in(
        self, db: AsyncSession, order_id: str
    ) -> List[Ticket]:
        rows = await db.execute(
            select(Ticket)
            .join(OrderItem, OrderItem.id == Ticket.order_item_id)
            .where(OrderItem.order_id == order_id)
            .order_by(Ticket.created_at, Ticket.serial)
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars())

    async def tickets_for_order(self, order_id: str) -> List[Ticket]:
        async with self.db.tx() as db:
            return await self.tickets_for_order_in(db, order_id)

    # --------------------------------------------------------------------------
    # door
    # --------------------------------------------------------------------------
    async def lookup(self, scan_token: str, event_id: str) -> Dict[str, Any]:
        """Validate a scan without admitting anyone."""
        async with self.db.tx() as db:
            found = await _with_order(db, scan_token)
        if found is None:
            raise NotFound("ticket not found")
        ticket, order = found
        reason = _refusal(ticket, order, event_id)
        return {
            **ticket_dict(ticket),
            "order_id": order.id,
            "admissible": reason is None,
            "reason": reason,
        }

    async def check_in(
        self, scan_token: str, event_id: str, actor: str
    ) -> Ticket:
        now = now_ts()
        async with timeit("tickets.check_in"):
            async with self.db.tx() as db:
                found = await _with_order(db, scan_token)
                if found is None:
                    raise NotFound("ticket not found")
                ticket, order = found
                reason = _refusal(ticket, order, event_id)
                if reason is not None:
                    raise Conflict(reason, ticket_id=ticket.id,
                                   status=ticket.status)
                row = (await db.execute(text("""
                    UPDATE tickets
                    SET status = :used, checked_in_at = :now,
                        checked_in_by = :actor
                    WHERE id = :id AND status = :valid
                    RETURNING id
                """), {"id": ticket.id, "used": TICKET_USED,
                       "valid": TICKET_VALID, "now": now,
                       "actor": actor})).first()
                if row is None:
                    # a concurrent scan won
                    raise Conflict("ticket already checked in",
                                   ticket_id=ticket.id)
                await audit.record(db, audit.ACTOR_STAFF, actor, "check_in",
                                   "ticket", ticket.id, event_id=event_id)
                await db.refresh(ticket)
        log.info(f"ticket {ticket.serial} checked in by {actor}")
        return ticket
