from __future__ import annotations
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit
from . import ledger as ledger_mod
from .capacity import CapacityLedger
from .errors import (
    Conflict, Forbidden, IntegrityViolation, NotFound, ProviderError,
    ValidationError,
)
from .helpers import (
    is_valid_email, new_id, new_scan_token, new_serial, now_ts,
)
from .infra.logs import get_logger
from .infra.sql import Database
from .infra.timings import timeit
from .mockpay import PaymentAdapter
from .model.db import Event, Order, OrderItem, Ticket
from .model.status import (
    TICKET_REFUNDED, TICKET_TRANSFERRED, TICKET_USED, TICKET_VALID,
)
from .orders import Buyer, OrderStore
from .pricing import allocate, ticket_refund_ceiling
from .tickets import ADMITTING_ORDER_STATUSES

log = get_logger("refunds")

HOLDING = {"valid": TICKET_VALID, "used": TICKET_USED}


@dataclass
class RefundResult:
    ticket_id: str
    order_id: str
    amount_cents: int
    refund_id: str
    order_status: str
    order_refunded_cents: int
    ledger_entry_id: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class OrderRefundResult:
    order_id: str
    amount_cents: int
    refund_id: str
    tickets_refunded: int
    order_status: str
    order_refunded_cents: int
    ledger_entry_id: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def _refund_key() -> str:
    return f"rf_{new_id()}"


# UN-GATED internal function
async def _load(
    db: AsyncSession, ticket_id: str, organizer_id: Optional[str]
) -> Tuple[Ticket, OrderItem, Order, Event]:
    ticket = await db.get(Ticket, ticket_id, populate_existing=True)
    if ticket is None:
        raise NotFound("ticket not found", ticket_id=ticket_id)
    item = await db.get(OrderItem, ticket.order_item_id)
    order = await db.get(Order, item.order_id, populate_existing=True) \
        if item is not None else None
    event = await db.get(Event, order.event_id) if order is not None \
        else None
    if item is None or order is None or event is None:
        raise IntegrityViolation("ticket without order or event",
                                 ticket_id=ticket_id)
    if organizer_id is not None and event.organizer_id != organizer_id:
        raise Forbidden("not your event", ticket_id=ticket_id)
    return ticket, item, order, event


# UN-GATED internal function
async def _refundable_in(db: AsyncSession, order: Order) -> None:
    if order.status not in ADMITTING_ORDER_STATUSES:
        raise Conflict(f"order is {order.status}", order_id=order.id)
    if not order.charge_id or \
            await ledger_mod.sale_entry_in(db, order.id) is None:
        raise Conflict("payment for this order is not reconciled yet",
                       order_id=order.id)


class RefundProcessor:
    """
    Organizer-side changes to sold tickets: refunds, transfers and attendee
    details.

    A refund first claims its tickets (`tickets.refund_claim`) in a short
    transaction, then asks the provider, then records the outcome. The claim
    key doubles as the provider's idempotency key; a second refund of the
    same ticket finds the claim taken and is refused before any money moves.
    """

    def __init__(
        self,
        db: Database,
        provider: PaymentAdapter,
        *,
        orders: OrderStore,
        capacity: CapacityLedger,
    ):
        self.db = db
        self.provider = provider
        self.orders = orders
        self.capacity = capacity

    async def _release_claim(self, key: str) -> None:
        async with self.db.tx() as db:
            await db.execute(text("""
                UPDATE tickets SET refund_claim = NULL
                WHERE refund_claim = :key AND status IN (:valid, :used)
            """), {"key": key, **HOLDING})

    async def _provider_refund(
        self, order: Order, amount_cents: int, reason: str, key: str,
        what: str,
    ) -> str:
        async with timeit("provider.refund"):
            try:
                return await self.provider.refund(
                    order.charge_id, amount_cents, reason,
                    idempotency_key=key,
                )
            except ProviderError:
                log.warning(f"provider refused refund of {amount_cents} "
                            f"for {what}")
                await self._release_claim(key)
                raise
            except Exception as e:
                log.exception(f"provider refund for {what} failed")
                await self._release_claim(key)
                raise ProviderError("refund failed at the provider",
                                    order_id=order.id) from e

    # --------------------------------------------------------------------------
    # one ticket
    # --------------------------------------------------------------------------
    async def refund(
        self,
        ticket_id: str,
        amount_cents: Optional[int] = None,
        reason: str = "",
        *,
        organizer_id: Optional[str] = None,
        actor_id: str = "organizer",
    ) -> RefundResult:
        """
        Refund one ticket, fully or partially. The provider is asked first;
        nothing but the claim changes locally unless it succeeded.
        """
        key = _refund_key()
        async with self.db.tx() as db:
            ticket, item, order, event = await _load(db, ticket_id,
                                                     organizer_id)
            if ticket.status == TICKET_REFUNDED:
                raise Conflict("ticket already refunded", ticket_id=ticket_id)
            if ticket.status not in (TICKET_VALID, TICKET_USED):
                raise Conflict(f"ticket is {ticket.status}",
                               ticket_id=ticket_id)
            await _refundable_in(db, order)

            ceiling = ticket_refund_ceiling(item.unit_price_cents,
                                            item.quantity,
                                            item.discount_cents,
                                            item.tax_cents)
            remaining = order.total_cents - order.refunded_cents
            if amount_cents is None:
                amount_cents = min(ceiling, remaining)
            if amount_cents <= 0:
                raise ValidationError("nothing left to refund",
                                      ticket_id=ticket_id)
            if amount_cents > ceiling:
                raise ValidationError(
                    f"at most {ceiling} can be refunded for this ticket",
                    ticket_id=ticket_id, max_cents=ceiling,
                )
            if amount_cents > remaining:
                raise ValidationError(
                    f"only {remaining} of the order is left to refund",
                    order_id=order.id, max_cents=remaining,
                )

            claimed = (await db.execute(text("""
                UPDATE tickets SET refund_claim = :key
                WHERE id = :id AND status IN (:valid, :used)
                  AND refund_claim IS NULL
                RETURNING id
            """), {"id": ticket_id, "key": key, **HOLDING})).first()
            if claimed is None:
                raise Conflict("a refund for this ticket is already in "
                               "progress", ticket_id=ticket_id)

        refund_id = await self._provider_refund(
            order, amount_cents, reason, key, f"ticket {ticket_id}"
        )

        now = now_ts()
        async with self.db.tx() as db:
            updated = await self.orders.add_refund_in(
                db, order.id, amount_cents, now=now
            )
            if updated is None:
                # money already went back at the provider
                log.error(f"order {order.id}: provider refund {refund_id} "
                          f"of {amount_cents} could not be recorded")
                raise IntegrityViolation(
                    "refund executed but the order cannot absorb it",
                    order_id=order.id, refund_id=refund_id,
                )
            row = (await db.execute(text("""
                UPDATE tickets
                SET status = :refunded, refunded_at = :now,
                    refunded_cents = :amount, refund_reason = :reason
                WHERE id = :id AND refund_claim = :key
                  AND status IN (:valid, :used)
                RETURNING tier_id
            """), {"id": ticket_id, "key": key, "refunded": TICKET_REFUNDED,
                   "now": now, "amount": amount_cents,
                   "reason": reason or None, **HOLDING})).first()
            if row is not None:
                await self.capacity.unsell_in(db, row[0], 1)
            else:
                # the provider's own refund webhook cascaded first
                log.error(f"ticket {ticket_id} was refunded concurrently; "
                          f"provider refund {refund_id} needs review")
            entry_id = await ledger_mod.record_refund_in(
                db, updated, event.organizer_id, updated.refunded_cents,
                f"Refund, ticket {ticket.serial}"
                + (f": {reason}" if reason else ""),
                now,
            )
            await audit.record(db, audit.ACTOR_ORGANIZER, actor_id,
                               "ticket_refunded", "ticket", ticket_id,
                               order_id=order.id, amount_cents=amount_cents,
                               refund_id=refund_id, reason=reason)

        log.info(f"ticket {ticket_id}: refunded {amount_cents}, order "
                 f"{order.id} now {updated.status}")
        return RefundResult(
            ticket_id=ticket_id,
            order_id=order.id,
            amount_cents=amount_cents,
            refund_id=refund_id,
            order_status=updated.status,
            order_refunded_cents=updated.refunded_cents,
            ledger_entry_id=entry_id,
        )

    # --------------------------------------------------------------------------
    # whole order
    # --------------------------------------------------------------------------
    async def refund_order(
        self,
        order_id: str,
        reason: str = "",
        *,
        organizer_id: Optional[str] = None,
        actor_id: str = "organizer",
    ) -> OrderRefundResult:
        """
        Cancel an order: one provider refund for everything not refunded
        yet, and every ticket still holding a seat becomes refunded.
        """
        key = _refund_key()
        async with self.db.tx() as db:
            order = await self.orders.get_in(db, order_id)
            if order is None:
                raise NotFound("order not found", order_id=order_id)
            event = await db.get(Event, order.event_id)
            if event is None:
                raise IntegrityViolation("order without event",
                                         order_id=order_id)
            if organizer_id is not None and event.organizer_id != organizer_id:
                raise Forbidden("not your event", order_id=order_id)
            await _refundable_in(db, order)
            amount_cents = order.total_cents - order.refunded_cents
            if amount_cents <= 0:
                raise ValidationError("nothing left to refund",
                                      order_id=order_id)

            holding = (await db.execute(text("""
                SELECT COUNT(*) FROM tickets
                WHERE order_item_id IN (
                    SELECT id FROM order_items WHERE order_id = :o
                ) AND status IN (:valid, :used)
            """), {"o": order_id, **HOLDING})).scalar_one()
            claimed: List[str] = [r[0] for r in (await db.execute(text("""
                UPDATE tickets SET refund_claim = :key
                WHERE order_item_id IN (
                    SELECT id FROM order_items WHERE order_id = :o
                ) AND status IN (:valid, :used) AND refund_claim IS NULL
                RETURNING id
            """), {"o": order_id, "key": key, **HOLDING})).all()]
            if not holding:
                raise Conflict("order has no tickets left to refund",
                               order_id=order_id)
            if len(claimed) != holding:
                # leaving the block rolls the partial claim back
                raise Conflict("a refund for this order is already in "
                               "progress", order_id=order_id)

        refund_id = await self._provider_refund(
            order, amount_cents, reason, key, f"order {order_id}"
        )

        now = now_ts()
        claimed.sort()
        shares = allocate(amount_cents, [1] * len(claimed))
        async with self.db.tx() as db:
            updated = await self.orders.add_refund_in(
                db, order_id, amount_cents, now=now
            )
            if updated is None:
                log.error(f"order {order_id}: provider refund {refund_id} "
                          f"of {amount_cents} could not be recorded")
                raise IntegrityViolation(
                    "refund executed but the order cannot absorb it",
                    order_id=order_id, refund_id=refund_id,
                )
            freed: Counter = Counter()
            for ticket_id, share in zip(claimed, shares):
                row = (await db.execute(text("""
                    UPDATE tickets
                    SET status = :refunded, refunded_at = :now,
                        refunded_cents = :amount, refund_reason = :reason
                    WHERE id = :id AND refund_claim = :key
                      AND status IN (:valid, :used)
                    RETURNING tier_id
                """), {"id": ticket_id, "key": key,
                       "refunded": TICKET_REFUNDED, "now": now,
                       "amount": share, "reason": reason or None,
                       **HOLDING})).first()
                if row is not None:
                    freed[row[0]] += 1
            for tier_id, n in sorted(freed.items()):
                await self.capacity.unsell_in(db, tier_id, n)
            entry_id = await ledger_mod.record_refund_in(
                db, updated, event.organizer_id, updated.refunded_cents,
                f"Refund, order {order_id}"
                + (f": {reason}" if reason else ""),
                now,
            )
            await audit.record(db, audit.ACTOR_ORGANIZER, actor_id,
                               "order_refunded", "order", order_id,
                               amount_cents=amount_cents,
                               refund_id=refund_id,
                               tickets=sum(freed.values()), reason=reason)

        log.info(f"order {order_id}: refunded {amount_cents} over "
                 f"{sum(freed.values())} tickets, now {updated.status}")
        return OrderRefundResult(
            order_id=order_id,
            amount_cents=amount_cents,
            refund_id=refund_id,
            tickets_refunded=sum(freed.values()),
            order_status=updated.status,
            order_refunded_cents=updated.refunded_cents,
            ledger_entry_id=entry_id,
        )

    # --------------------------------------------------------------------------
    # holders
    # --------------------------------------------------------------------------
    async def transfer(
        self,
        ticket_id: str,
        new_holder: Buyer,
        *,
        organizer_id: Optional[str] = None,
        actor_id: str = "organizer",
    ) -> Ticket:
        new_holder.validate()
        now = now_ts()
        async with self.db.tx() as db:
            ticket, item, order, event = await _load(db, ticket_id,
                                                     organizer_id)
            if ticket.status != TICKET_VALID:
                raise Conflict(f"only valid tickets can be transferred, "
                               f"this one is {ticket.status}",
                               ticket_id=ticket_id)
            if ticket.refund_claim is not None:
                raise Conflict("ticket is being refunded",
                               ticket_id=ticket_id)
            if order.status not in ADMITTING_ORDER_STATUSES:
                raise Conflict(f"order is {order.status}", order_id=order.id)

            fresh = Ticket(
                id=new_id(),
                order_item_id=ticket.order_item_id,
                tier_id=ticket.tier_id,
                serial=new_serial(),
                scan_token=new_scan_token(),
                status=TICKET_VALID,
                holder_email=new_holder.email.strip(),
                holder_name=new_holder.name,
                holder_phone=new_holder.phone,
                transferred_from=ticket.id,
                created_at=now,
            )
            db.add(fresh)
            await db.flush()
            row = (await db.execute(text("""
                UPDATE tickets
                SET status = :transferred, transferred_to = :to,
                    transferred_at = :now
                WHERE id = :id AND status = :valid AND refund_claim IS NULL
                RETURNING id
            """), {"id": ticket_id, "to": fresh.id, "now": now,
                   "transferred": TICKET_TRANSFERRED,
                   "valid": TICKET_VALID})).first()
            if row is None:
                raise Conflict("ticket changed while transferring",
                               ticket_id=ticket_id)
            await audit.record(db, audit.ACTOR_ORGANIZER, actor_id,
                               "ticket_transferred", "ticket", ticket_id,
                               new_ticket_id=fresh.id,
                               new_holder=fresh.holder_email)
        log.info(f"ticket {ticket.serial} transferred as {fresh.serial}")
        return fresh

    async def update_attendee(
        self,
        ticket_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        organizer_id: Optional[str] = None,
        actor_id: str = "organizer",
    ) -> Ticket:
        """Correct the holder's contact details on a ticket. The holder
        stays the same person; use `transfer` to hand the ticket on."""
        changes: Dict[str, Optional[str]] = {}
        if email is not None:
            email = email.strip()
            if not is_valid_email(email):
                raise ValidationError("email must be a valid email address")
            changes["holder_email"] = email
        if name is not None:
            changes["holder_name"] = name.strip() or None
        if phone is not None:
            changes["holder_phone"] = phone.strip() or None
        if not changes:
            raise ValidationError("nothing to update", ticket_id=ticket_id)

        async with self.db.tx() as db:
            ticket, _, _, _ = await _load(db, ticket_id, organizer_id)
            if ticket.status not in (TICKET_VALID, TICKET_USED):
                raise Conflict(f"ticket is {ticket.status}",
                               ticket_id=ticket_id)
            for field, value in changes.items():
                setattr(ticket, field, value)
            await db.flush()
            await audit.record(db, audit.ACTOR_ORGANIZER, actor_id,
                               "attendee_updated", "ticket", ticket_id,
                               **changes)
        log.info(f"ticket {ticket.serial}: attendee updated "
                 f"({', '.join(sorted(changes))})")
        return ticket
