# boxoffice/capacity.py
"""
Tier capacity ledger.

Every tier row carries two counters:
- sold_count      : units of tickets that hold a seat (valid / used)
- reserved_count  : units held by capacity_reservations rows

and the invariant `sold_count + reserved_count <= capacity` (capacity NULL =
unlimited). Counters only ever move through conditional UPDATEs that
re-check the invariant in the same statement, so two checkouts racing for
the last seat cannot both win. Reservations carry an expiry; expired rows
are deleted with DELETE ... RETURNING and the counters are decremented by
exactly what was deleted, so concurrent sweeps never double-release.
"""
from __future__ import annotations
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import discounts
from .config import RESERVATION_TTL_SECONDS
from .errors import NotFound, SoldOut, ValidationError
from .helpers import new_id, now_ts
from .infra.logs import get_logger
from .infra.sql import Database
from .infra.timings import timeit
from .model.db import CapacityReservation, Tier

log = get_logger("capacity")

# (tier_id, quantity)
Want = Tuple[str, int]


def _merge(items: Iterable[Want]) -> Dict[str, int]:
    out: Dict[str, int] = defaultdict(int)
    for tier_id, qty in items:
        if qty <= 0:
            raise ValidationError("quantity must be positive", tier_id=tier_id)
        out[tier_id] += qty
    return dict(out)


# ------------------------------------------------------------------------------
# UN-GATED internal functions: the caller owns the transaction
# ------------------------------------------------------------------------------

async def _reserved_unexpired(
    db: AsyncSession, tier_id: str, now: float
) -> int:
    return int((await db.execute(text("""
        SELECT COALESCE(SUM(quantity), 0) FROM capacity_reservations
        WHERE tier_id = :t AND expires_at > :now
    """), {"t": tier_id, "now": now})).scalar_one())


async def _free_rows(db: AsyncSession, rows: Sequence[Any]) -> Dict[str, int]:
    """Give back the reserved units of reservation rows we just deleted."""
    per_tier: Dict[str, int] = defaultdict(int)
    for r in rows:
        per_tier[r.tier_id] += int(r.quantity)
    # fixed order keeps concurrent writers from deadlocking on tier rows
    for tier_id in sorted(per_tier):
        await db.execute(text("""
            UPDATE tiers SET reserved_count = reserved_count - :q
            WHERE id = :id
        """), {"q": per_tier[tier_id], "id": tier_id})
    return dict(per_tier)


async def _free_expired(
    db: AsyncSession, now: float, tier_id: Optional[str] = None
) -> int:
    sql = """
        DELETE FROM capacity_reservations
        WHERE expires_at <= :now
    """
    params: Dict[str, Any] = {"now": now}
    if tier_id is not None:
        sql += " AND tier_id = :t"
        params["t"] = tier_id
    sql += " RETURNING tier_id, order_id, quantity"
    rows = (await db.execute(text(sql), params)).all()
    if not rows:
        return 0
    await _free_rows(db, rows)
    # pending orders that lost every hold give their discount use back
    for order_id in sorted({r.order_id for r in rows}):
        await discounts.release_for_order(db, order_id,
                                          only_if_unreserved=True)
    return len(rows)


class CapacityLedger:
    def __init__(self, db: Database,
                 ttl_seconds: int = RESERVATION_TTL_SECONDS):
        self.db = db
        self.ttl_seconds = ttl_seconds

    # --------------------------------------------------------------------------
    # reads
    # --------------------------------------------------------------------------
    async def check_availability(self, tier_id: str, quantity: int) -> bool:
        """Advisory: the answer may be stale by the time you reserve."""
        now = now_ts()
        async with self.db.tx() as db:
            tier = await db.get(Tier, tier_id)
            if tier is None:
                raise NotFound("tier not found", tier_id=tier_id)
            if tier.capacity is None:
                return True
            held = await _reserved_unexpired(db, tier_id, now)
        return tier.sold_count + held + quantity <= tier.capacity

    async def inventory(self, event_id: str) -> List[Dict[str, Any]]:
        now = now_ts()
        out = []
        async with self.db.tx() as db:
            tiers = (await db.execute(
                select(Tier)
                .where(Tier.event_id == event_id, Tier.archived.is_(False))
                .order_by(Tier.sort_order, Tier.created_at)
            )).scalars().all()
            for t in tiers:
                held = await _reserved_unexpired(db, t.id, now)
                available = (
                    None if t.capacity is None
                    else max(0, t.capacity - t.sold_count - held)
                )
                out.append({
                    "tier_id": t.id,
                    "name": t.name,
                    "price_cents": t.price_cents,
                    "capacity": t.capacity,
                    "sold": t.sold_count,
                    "held": held,
                    "available": available,
                    "sold_out": available is not None and available <= 0,
                })
        return out

    # --------------------------------------------------------------------------
    # reservations
    # --------------------------------------------------------------------------
    # UN-GATED internal function
    async def reserve_in(
        self, db: AsyncSession, tier_id: str, quantity: int,
        correlation_id: str, now: float,
    ) -> bool:
        if quantity <= 0:
            raise ValidationError("quantity must be positive", tier_id=tier_id)
        await _free_expired(db, now, tier_id=tier_id)
        row = (await db.execute(text("""
            UPDATE tiers
            SET reserved_count = reserved_count + :q
            WHERE id = :id
              AND archived = :no
              AND (capacity IS NULL
                   OR sold_count + reserved_count + :q <= capacity)
            RETURNING id
        """), {"id": tier_id, "q": quantity, "no": False})).first()
        if row is None:
            return False
        db.add(CapacityReservation(
            id=new_id(),
            tier_id=tier_id,
            order_id=correlation_id,
            quantity=quantity,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        ))
        return True

    async def reserve(
        self, tier_id: str, quantity: int, correlation_id: str
    ) -> bool:
        async with timeit("capacity.reserve"):
            async with self.db.tx() as db:
                ok = await self.reserve_in(db, tier_id, quantity,
                                           correlation_id, now_ts())
        if not ok:
            log.info(f"tier {tier_id}: no room for {quantity}")
        return ok

    # UN-GATED internal function
    async def reserve_all_in(
        self, db: AsyncSession, items: Sequence[Want], correlation_id: str,
        now: float,
    ) -> None:
        """
        Reserve every (tier, qty) or raise SoldOut naming the first tier that
        has no room. Raising inside the caller's transaction rolls back the
        tiers reserved before it.
        """
        for tier_id, qty in sorted(_merge(items).items()):
            ok = await self.reserve_in(db, tier_id, qty, correlation_id, now)
            if not ok:
                tier = await db.get(Tier, tier_id)
                raise SoldOut(tier_id, tier.name if tier else None)

    async def reserve_all(
        self, items: Sequence[Want], correlation_id: str
    ) -> None:
        async with timeit("capacity.reserve_all"):
            async with self.db.tx() as db:
                await self.reserve_all_in(db, items, correlation_id, now_ts())

    # UN-GATED internal function
    async def release_in(self, db: AsyncSession, correlation_id: str) -> int:
        rows = (await db.execute(text("""
            DELETE FROM capacity_reservations
            WHERE order_id = :o
            RETURNING tier_id, order_id, quantity
        """), {"o": correlation_id})).all()
        freed = await _free_rows(db, rows)
        return sum(freed.values())

    async def release(self, correlation_id: str) -> int:
        async with self.db.tx() as db:
            n = await self.release_in(db, correlation_id)
        if n:
            log.info(f"released {n} held units of {correlation_id}")
        return n

    # UN-GATED internal function
    async def convert_in(
        self, db: AsyncSession, correlation_id: str, items: Sequence[Want]
    ) -> bool:
        """
        Turn the correlation's holds into sold units. A hold the sweeper
        already removed is re-acquired with a conditional sold increment.
        On False nothing is sold and every hold of the correlation is gone.
        """
        rows = (await db.execute(text("""
            DELETE FROM capacity_reservations
            WHERE order_id = :o
            RETURNING tier_id, order_id, quantity
        """), {"o": correlation_id})).all()
        held: Dict[str, int] = defaultdict(int)
        for r in rows:
            held[r.tier_id] += int(r.quantity)
        need = _merge(items)

        # units that lost their hold must fit next to everyone else's
        topped_up: List[Want] = []
        ok = True
        for tier_id in sorted(need):
            short = need[tier_id] - held.get(tier_id, 0)
            if short <= 0:
                continue
            row = (await db.execute(text("""
                UPDATE tiers
                SET sold_count = sold_count + :q
                WHERE id = :id
                  AND (capacity IS NULL
                       OR sold_count + reserved_count + :q <= capacity)
                RETURNING id
            """), {"id": tier_id, "q": short})).first()
            if row is None:
                ok = False
                break
            topped_up.append((tier_id, short))

        if not ok:
            for tier_id, q in topped_up:
                await db.execute(text("""
                    UPDATE tiers SET sold_count = sold_count - :q
                    WHERE id = :id
                """), {"id": tier_id, "q": q})
            await _free_rows(db, rows)
            log.warning(f"{correlation_id}: capacity gone before payment "
                        "was confirmed")
            return False

        for tier_id in sorted(held):
            moved = min(held[tier_id], need.get(tier_id, 0))
            extra = held[tier_id] - moved
            await db.execute(text("""
                UPDATE tiers
                SET reserved_count = reserved_count - :h,
                    sold_count = sold_count + :m
                WHERE id = :id
            """), {"id": tier_id, "h": moved + extra, "m": moved})
        return True

    # UN-GATED internal function
    async def unsell_in(
        self, db: AsyncSession, tier_id: str, quantity: int
    ) -> None:
        row = (await db.execute(text("""
            UPDATE tiers SET sold_count = sold_count - :q
            WHERE id = :id AND sold_count >= :q
            RETURNING id
        """), {"id": tier_id, "q": quantity})).first()
        if row is None:
            # counters drifted from the tickets; leave it for an operator
            log.error(f"tier {tier_id}: sold_count below {quantity} "
                      "on unsell")

    # --------------------------------------------------------------------------
    # sweeper
    # --------------------------------------------------------------------------
    async def sweep_expired(self) -> int:
        async with timeit("capacity.sweep"):
            async with self.db.tx() as db:
                n = await _free_expired(db, now_ts())
        if n:
            log.info(f"swept {n} expired reservations")
        return n
