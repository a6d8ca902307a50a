# boxoffice/ledger.py
"""
Organizer money.

Append-only ledger entries (sale positive, refund and adjustment signed) are
the only source of what an organizer is owed. A sale is written once per
order (unique sale_key), refunds claw back the refunded fraction of that
sale and can never sum past it. Payouts batch pending entries and always
take their total from the database, never from a caller.

Fee status:
- estimated : provider fee guessed as 2.9% + 30 because the lookup failed
- actual    : provider fee confirmed by the provider
A payout is not finalized while any sale it would include is estimated;
`refresh_estimated_fees()` retries the lookups.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import bindparam, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit
from .errors import (
    Conflict, NotFound, OutOfOrderEvent, ProviderError, ValidationError,
)
from .helpers import new_id, now_ts, to_iso
from .infra.logs import get_logger
from .infra.sql import Database
from .infra.timings import timeit
from .mockpay import PaymentAdapter
from .model.db import LedgerEntry, Order, Organizer, Payout
from .model.status import (
    ENTRY_ADJUSTMENT, ENTRY_PAID, ENTRY_PENDING, ENTRY_REFUND, ENTRY_SALE,
    FEE_ACTUAL, FEE_ESTIMATED, PAYOUT_DRAFT, PAYOUT_METHODS, PAYOUT_PAID,
)
from .pricing import proportional_clawback, round_half_up

log = get_logger("ledger")

# fallback when the provider cannot tell us the fee yet
ESTIMATED_FEE_PERCENT = Decimal("0.029")
ESTIMATED_FEE_FLAT_CENTS = 30


def estimate_provider_fee(amount_cents: int) -> int:
    return round_half_up(
        Decimal(amount_cents) * ESTIMATED_FEE_PERCENT
        + ESTIMATED_FEE_FLAT_CENTS
    )


def entry_dict(e: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": e.id,
        "order_id": e.order_id,
        "type": e.entry_type,
        "amount_cents": e.amount_cents,
        "status": e.status,
        "fee_status": e.fee_status,
        "payout_id": e.payout_id,
        "description": e.description,
        "created_at": to_iso(e.created_at),
    }


def payout_dict(p: Payout) -> Dict[str, Any]:
    return {
        "id": p.id,
        "organizer_id": p.organizer_id,
        "period_start": to_iso(p.period_start),
        "period_end": to_iso(p.period_end),
        "method": p.method,
        "total_cents": p.total_cents,
        "entry_count": p.entry_count,
        "status": p.status,
        "reference": p.reference,
        "created_at": to_iso(p.created_at),
        "paid_at": to_iso(p.paid_at),
    }


# ------------------------------------------------------------------------------
# UN-GATED internal functions: the caller owns the transaction
# ------------------------------------------------------------------------------

async def sale_entry_in(
    db: AsyncSession, order_id: str
) -> Optional[LedgerEntry]:
    return (await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.sale_key == order_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


def sale_amount(order: Order) -> int:
    """Net to organizer: subtotal less the platform fee, never below zero."""
    return max(0, order.subtotal_cents - order.fees_cents)


async def record_sale_in(
    db: AsyncSession,
    order: Order,
    organizer_id: str,
    fee_status: str,
    now: Optional[float] = None,
) -> Optional[str]:
    """
    Net to organizer = subtotal - platform fee; tax never reaches the
    organizer. Returns the new entry id, or None when the order already has
    its sale.
    """
    now = now_ts() if now is None else now
    amount = sale_amount(order)
    row = (await db.execute(text("""
        INSERT INTO ledger_entries(
            id, organizer_id, order_id, entry_type, amount_cents, status,
            fee_status, sale_key, payout_id, description, created_at
        ) VALUES (
            :id, :org, :order_id, :type, :amount, :status,
            :fee_status, :order_id, NULL, :descr, :now
        )
        ON CONFLICT (sale_key) DO NOTHING
        RETURNING id
    """), {
        "id": new_id(),
        "org": organizer_id,
        "order_id": order.id,
        "type": ENTRY_SALE,
        "amount": amount,
        "status": ENTRY_PENDING,
        "fee_status": fee_status,
        "descr": f"Sale, order {order.id}",
        "now": now,
    })).first()
    if row is None:
        return None
    log.info(f"order {order.id}: sale {amount} for organizer {organizer_id} "
             f"(fee {fee_status})")
    return row[0]


async def refunded_so_far_in(db: AsyncSession, order_id: str) -> int:
    """Magnitude of every refund entry already written for the order."""
    total = (await db.execute(text("""
        SELECT COALESCE(SUM(amount_cents), 0) FROM ledger_entries
        WHERE order_id = :o AND entry_type = :refund
    """), {"o": order_id, "refund": ENTRY_REFUND})).scalar_one()
    return -int(total)


async def record_refund_in(
    db: AsyncSession,
    order: Order,
    organizer_id: str,
    refunded_total_cents: int,
    description: str,
    now: Optional[float] = None,
) -> Optional[str]:
    """
    Bring the order's clawback up to the share of the sale matching
    `refunded_total_cents` of the buyer total. Entries are deltas over what
    was clawed back before, so summed they never exceed the sale.
    """
    now = now_ts() if now is None else now
    sale = await sale_entry_in(db, order.id)
    if sale is None:
        raise OutOfOrderEvent("refund before the sale was recorded",
                              order_id=order.id)
    target = proportional_clawback(sale.amount_cents, refunded_total_cents,
                                   order.total_cents)
    delta = target - await refunded_so_far_in(db, order.id)
    if delta <= 0:
        return None
    entry = LedgerEntry(
        id=new_id(),
        organizer_id=organizer_id,
        order_id=order.id,
        entry_type=ENTRY_REFUND,
        amount_cents=-delta,
        status=ENTRY_PENDING,
        description=description,
        created_at=now,
    )
    db.add(entry)
    await db.flush()
    log.info(f"order {order.id}: refund entry -{delta}")
    return entry.id


class FinancialLedger:
    def __init__(self, db: Database, provider: PaymentAdapter):
        self.db = db
        self.provider = provider

    async def organizer_balance(self, organizer_id: str) -> int:
        async with self.db.tx() as db:
            total = (await db.execute(text("""
                SELECT COALESCE(SUM(amount_cents), 0) FROM ledger_entries
                WHERE organizer_id = :org AND status = :pending
            """), {"org": organizer_id, "pending": ENTRY_PENDING})
            ).scalar_one()
        return int(total)

    async def entries(
        self, organizer_id: str, limit: int = 200
    ) -> List[LedgerEntry]:
        async with self.db.tx() as db:
            rows = await db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.organizer_id == organizer_id)
                .order_by(LedgerEntry.created_at.desc())
                .limit(max(1, min(limit, 1000)))
            )
            return list(rows.scalars())

    async def payouts(
        self, organizer_id: str, limit: int = 100
    ) -> List[Payout]:
        async with self.db.tx() as db:
            rows = await db.execute(
                select(Payout)
                .where(Payout.organizer_id == organizer_id)
                .order_by(Payout.created_at.desc())
                .limit(max(1, min(limit, 1000)))
            )
            return list(rows.scalars())

    async def get_payout(self, payout_id: str) -> Payout:
        async with self.db.tx() as db:
            p = await db.get(Payout, payout_id)
        if p is None:
            raise NotFound("payout not found", payout_id=payout_id)
        return p

    # --------------------------------------------------------------------------
    # payouts
    # --------------------------------------------------------------------------
    async def finalize_payout(
        self,
        organizer_id: str,
        period_start: float,
        period_end: float,
        method: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Payout:
        if period_end < period_start:
            raise ValidationError("period_end is before period_start")
        if method is not None and method not in PAYOUT_METHODS:
            raise ValidationError(f"unknown payout method {method!r}")
        now = now_ts()
        async with timeit("ledger.finalize_payout"):
            async with self.db.tx() as db:
                org = await db.get(Organizer, organizer_id)
                if org is None:
                    raise NotFound("organizer not found",
                                   organizer_id=organizer_id)
                picked = (await db.execute(
                    select(LedgerEntry.id, LedgerEntry.entry_type,
                           LedgerEntry.fee_status)
                    .where(
                        LedgerEntry.organizer_id == organizer_id,
                        LedgerEntry.status == ENTRY_PENDING,
                        LedgerEntry.payout_id.is_(None),
                        LedgerEntry.created_at >= period_start,
                        LedgerEntry.created_at <= period_end,
                    )
                )).all()
                if not picked:
                    raise ValidationError("no unpaid entries in that period")
                estimated = [r.id for r in picked
                             if r.entry_type == ENTRY_SALE
                             and r.fee_status == FEE_ESTIMATED]
                if estimated:
                    raise Conflict(
                        "provider fees are still estimated for "
                        f"{len(estimated)} sales; refresh fees first",
                        entry_ids=estimated,
                    )

                payout = Payout(
                    id=new_id(),
                    organizer_id=organizer_id,
                    period_start=period_start,
                    period_end=period_end,
                    method=method or org.payout_method,
                    total_cents=0,
                    entry_count=0,
                    status=PAYOUT_DRAFT,
                    created_at=now,
                )
                db.add(payout)
                await db.flush()

                ids = [r.id for r in picked]
                attached = (await db.execute(text("""
                    UPDATE ledger_entries SET payout_id = :p
                    WHERE id IN :ids AND payout_id IS NULL AND status = :st
                    RETURNING id
                """).bindparams(bindparam("ids", expanding=True)), {
                    "p": payout.id, "ids": ids, "st": ENTRY_PENDING,
                })).all()
                if len(attached) != len(ids):
                    raise Conflict("entries were attached to another payout "
                                   "concurrently; try again")

                total = (await db.execute(text("""
                    SELECT COALESCE(SUM(amount_cents), 0), COUNT(*)
                    FROM ledger_entries WHERE payout_id = :p
                """), {"p": payout.id})).first()
                payout.total_cents = int(total[0])
                payout.entry_count = int(total[1])
                await audit.record(
                    db, audit.ACTOR_ORGANIZER, actor_id or organizer_id,
                    "payout_finalized", "payout", payout.id,
                    total_cents=payout.total_cents,
                    entry_count=payout.entry_count,
                )
        log.info(f"payout {payout.id}: {payout.entry_count} entries, "
                 f"{payout.total_cents} for organizer {organizer_id}")
        return payout

    async def mark_payout_paid(
        self, payout_id: str, reference: str, actor_id: str = "admin"
    ) -> Payout:
        if not reference:
            raise ValidationError("a payment reference is required")
        now = now_ts()
        async with self.db.tx() as db:
            row = (await db.execute(text("""
                UPDATE payouts
                SET status = :paid, reference = :ref, paid_at = :now
                WHERE id = :id AND status = :draft
                RETURNING id
            """), {"id": payout_id, "paid": PAYOUT_PAID,
                   "draft": PAYOUT_DRAFT, "ref": reference, "now": now})
            ).first()
            payout = await db.get(Payout, payout_id, populate_existing=True)
            if payout is None:
                raise NotFound("payout not found", payout_id=payout_id)
            if row is None:
                if payout.reference == reference:
                    log.info(f"payout {payout_id}: already paid")
                    return payout
                raise Conflict("payout already paid with another reference",
                               payout_id=payout_id)
            await db.execute(text("""
                UPDATE ledger_entries SET status = :paid
                WHERE payout_id = :p AND status = :pending
            """), {"p": payout_id, "paid": ENTRY_PAID,
                   "pending": ENTRY_PENDING})
            await audit.record(db, audit.ACTOR_ADMIN, actor_id,
                               "payout_paid", "payout", payout_id,
                               reference=reference)
        log.info(f"payout {payout_id}: paid ({reference})")
        return payout

    # --------------------------------------------------------------------------
    # corrections
    # --------------------------------------------------------------------------
    async def add_adjustment(
        self, organizer_id: str, amount_cents: int, description: str,
        actor_id: str = "admin",
    ) -> LedgerEntry:
        if amount_cents == 0:
            raise ValidationError("adjustment amount must not be zero")
        if not description:
            raise ValidationError("an adjustment needs a description")
        async with self.db.tx() as db:
            if await db.get(Organizer, organizer_id) is None:
                raise NotFound("organizer not found",
                               organizer_id=organizer_id)
            entry = LedgerEntry(
                id=new_id(),
                organizer_id=organizer_id,
                order_id=None,
                entry_type=ENTRY_ADJUSTMENT,
                amount_cents=amount_cents,
                status=ENTRY_PENDING,
                description=description,
                created_at=now_ts(),
            )
            db.add(entry)
            await audit.record(db, audit.ACTOR_ADMIN, actor_id,
                               "ledger_adjustment", "organizer", organizer_id,
                               amount_cents=amount_cents)
        return entry

    async def refresh_estimated_fees(self, limit: int = 100) -> int:
        async with self.db.tx() as db:
            todo = (await db.execute(text("""
                SELECT o.id, o.charge_id FROM orders o
                JOIN ledger_entries e ON e.sale_key = o.id
                WHERE e.fee_status = :est AND o.charge_id IS NOT NULL
                ORDER BY e.created_at
                LIMIT :limit
            """), {"est": FEE_ESTIMATED, "limit": limit})).all()

        # provider calls happen outside any transaction
        fees = {}
        for order_id, charge_id in todo:
            try:
                fee = await self.provider.fetch_fee(charge_id)
            except ProviderError as e:
                log.warning(f"fee lookup for {charge_id} failed: {e}")
                continue
            if fee is not None:
                fees[order_id] = fee

        updated = 0
        for order_id, fee in fees.items():
            async with self.db.tx() as db:
                row = (await db.execute(text("""
                    UPDATE orders
                    SET provider_fee_cents = :fee, fee_status = :actual
                    WHERE id = :id AND fee_status = :est
                    RETURNING id
                """), {"id": order_id, "fee": fee, "actual": FEE_ACTUAL,
                       "est": FEE_ESTIMATED})).first()
                await db.execute(text("""
                    UPDATE ledger_entries SET fee_status = :actual
                    WHERE sale_key = :id AND fee_status = :est
                """), {"id": order_id, "actual": FEE_ACTUAL,
                       "est": FEE_ESTIMATED})
                if row is not None:
                    updated += 1
        if updated:
            log.info(f"confirmed provider fees of {updated} orders")
        return updated
