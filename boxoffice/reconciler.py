# boxoffice/reconciler.py
"""
Webhook reconciliation.

Provider events arrive at least once and in any order. Each delivery goes
through the same steps:

1. log     : the event is stored (webhook_events, unique provider event id)
             as `pending` before anything else happens; an id already
             `processed` short-circuits as an idempotent duplicate
2. decide  : a pure function of (order snapshot, event, fee quote) returns a
             Decision; no I/O, unit-testable without a provider
3. apply   : the Decision runs in ONE transaction together with marking the
             log entry `processed`; compare-and-swap updates and unique keys
             guard every money- and inventory-affecting write
4. notify  : after commit, newly issued tickets go to the mailer; mailer
             failures are logged and never undo anything

A failure in decide/apply marks the log entry `failed` with the error and
re-raises so the provider redelivers. Losing a race (a CAS that matched no
row, a unique key that already exists) rolls back and decides once more on
fresh state.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import orjson
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit, discounts
from . import ledger as ledger_mod
from .capacity import CapacityLedger
from .errors import (
    BoxOfficeError, IntegrityViolation, OutOfOrderEvent, ProviderError,
)
from .helpers import new_id, now_ts
from .infra.logs import get_logger
from .infra.sql import Database
from .infra.timings import timeit
from .mockpay import (
    CHARGE_REFUNDED, CHARGE_SUCCEEDED, PAYMENT_FAILED, PAYMENT_SUCCEEDED,
    PaymentAdapter, ProviderEvent,
)
from .model.db import Event, Order, Ticket, WebhookEvent
from .model.status import (
    FEE_ACTUAL, FEE_ESTIMATED, ORDER_FAILED, ORDER_PENDING, ORDER_SETTLED,
    TICKET_REFUNDED, WEBHOOK_FAILED, WEBHOOK_PENDING,
    WEBHOOK_PROCESSED,
)
from .model import status as st
from .notify import TicketMailer
from .orders import OrderStore
from .tickets import TicketIssuer

log = get_logger("reconciler")


# ------------------------------------------------------------------------------
# decide: pure
# ------------------------------------------------------------------------------
@dataclass
class OrderSnapshot:
    order_id: str
    event_id: str
    organizer_id: str
    status: str
    subtotal_cents: int
    fees_cents: int
    total_cents: int
    refunded_cents: int
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    discount_id: Optional[str] = None
    discount_claimed: bool = False
    has_sale: bool = False


@dataclass
class Decision:
    # set => nothing to do, and why
    noop: Optional[str] = None
    order_event: Optional[str] = None
    references: Dict[str, str] = field(default_factory=dict)
    convert_reservation: bool = False
    issue_tickets: bool = False
    reclaim_discount: bool = False
    release_reservation: bool = False
    release_discount: bool = False
    record_sale: bool = False
    provider_fee_cents: Optional[int] = None
    fee_status: Optional[str] = None
    # new cumulative refunded amount of the order
    refund_to_cents: Optional[int] = None
    cascade_refund: bool = False

    @classmethod
    def skip(cls, reason: str) -> "Decision":
        return cls(noop=reason)


def _refs(**kw: Optional[str]) -> Dict[str, str]:
    return {k: v for k, v in kw.items() if v}


def decide_payment_succeeded(
    snap: Optional[OrderSnapshot], ev: ProviderEvent,
    fee: Optional[int] = None,
) -> Decision:
    if snap is None:
        return Decision.skip("no matching order")
    if snap.status in ORDER_SETTLED:
        return Decision.skip(f"order already {snap.status}")
    if snap.status == ORDER_FAILED:
        return Decision.skip("payment succeeded on a failed order")
    if ev.amount_cents is not None and ev.amount_cents != snap.total_cents:
        raise IntegrityViolation(
            f"paid {ev.amount_cents} for an order of {snap.total_cents}",
            order_id=snap.order_id,
        )
    return Decision(
        order_event=st.PAYMENT_SUCCEEDED,
        references=_refs(checkout_session_id=ev.checkout_session_id,
                         payment_intent_id=ev.payment_intent_id),
        convert_reservation=True,
        issue_tickets=True,
        reclaim_discount=bool(snap.discount_id and not snap.discount_claimed),
    )


def decide_charge_succeeded(
    snap: Optional[OrderSnapshot], ev: ProviderEvent,
    fee: Optional[int] = None,
) -> Decision:
    if snap is None:
        return Decision.skip("no matching order")
    if not ev.charge_id:
        raise IntegrityViolation("charge event without a charge id",
                                 order_id=snap.order_id)
    if snap.has_sale:
        if snap.charge_id == ev.charge_id:
            return Decision.skip("sale already recorded for this charge")
        return Decision.skip(
            f"sale already recorded for charge {snap.charge_id}"
        )
    if snap.status == ORDER_FAILED:
        return Decision.skip("charge succeeded on a failed order")
    amount = ev.amount_cents if ev.amount_cents is not None \
        else snap.total_cents
    if fee is None:
        fee, fee_status = ledger_mod.estimate_provider_fee(amount), \
            FEE_ESTIMATED
    else:
        fee_status = FEE_ACTUAL
    return Decision(
        references=_refs(charge_id=ev.charge_id,
                         payment_intent_id=ev.payment_intent_id),
        record_sale=True,
        provider_fee_cents=fee,
        fee_status=fee_status,
    )


def decide_payment_failed(
    snap: Optional[OrderSnapshot], ev: ProviderEvent,
    fee: Optional[int] = None,
) -> Decision:
    if snap is None:
        return Decision.skip("no matching order")
    if snap.status != ORDER_PENDING:
        return Decision.skip(f"order already {snap.status}")
    return Decision(
        order_event=st.PAYMENT_FAILED,
        references=_refs(checkout_session_id=ev.checkout_session_id,
                         payment_intent_id=ev.payment_intent_id),
        release_reservation=True,
        release_discount=True,
    )


def decide_charge_refunded(
    snap: Optional[OrderSnapshot], ev: ProviderEvent,
    fee: Optional[int] = None,
) -> Decision:
    if snap is None:
        return Decision.skip("no matching order")
    if ev.amount_refunded_cents is None:
        raise IntegrityViolation("refund event without amount_refunded",
                                 order_id=snap.order_id)
    if snap.status == ORDER_FAILED:
        return Decision.skip("refund on a failed order")
    if snap.status == ORDER_PENDING or not snap.has_sale:
        raise OutOfOrderEvent("refund arrived before the sale was recorded",
                              order_id=snap.order_id)
    refunded = min(ev.amount_refunded_cents, snap.total_cents)
    if refunded <= snap.refunded_cents:
        return Decision.skip("refund already recorded")
    return Decision(
        references=_refs(charge_id=ev.charge_id),
        refund_to_cents=refunded,
        cascade_refund=refunded >= snap.total_cents,
    )


Decide = Callable[[Optional[OrderSnapshot], ProviderEvent, Optional[int]],
                  Decision]

DISPATCH: Dict[str, Decide] = {
    PAYMENT_SUCCEEDED: decide_payment_succeeded,
    CHARGE_SUCCEEDED: decide_charge_succeeded,
    PAYMENT_FAILED: decide_payment_failed,
    CHARGE_REFUNDED: decide_charge_refunded,
}

# where to look for the order, per kind, first hit wins
RESOLUTION: Dict[str, tuple] = {
    PAYMENT_SUCCEEDED: ("checkout_session_id", "payment_intent_id",
                        "order_id"),
    PAYMENT_FAILED: ("checkout_session_id", "payment_intent_id", "order_id"),
    CHARGE_SUCCEEDED: ("payment_intent_id", "order_id"),
    CHARGE_REFUNDED: ("charge_id", "payment_intent_id", "order_id"),
}


class _Superseded(Exception):
    """A compare-and-swap lost against a concurrent delivery."""


# ------------------------------------------------------------------------------
# apply
# ------------------------------------------------------------------------------
@dataclass
class Outcome:
    event_id: str
    kind: str
    idempotent: bool = False
    noop: Optional[str] = None
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    tickets_issued: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, **{k: v for k, v in self.__dict__.items()
                               if v is not None}}


class WebhookReconciler:
    def __init__(
        self,
        db: Database,
        provider: PaymentAdapter,
        *,
        orders: OrderStore,
        capacity: CapacityLedger,
        tickets: TicketIssuer,
        mailer: Optional[TicketMailer] = None,
    ):
        self.db = db
        self.provider = provider
        self.orders = orders
        self.capacity = capacity
        self.tickets = tickets
        self.mailer = mailer or TicketMailer()

    # UN-GATED internal function
    async def _resolve(
        self, db: AsyncSession, ev: ProviderEvent
    ) -> Optional[Order]:
        for fld in RESOLUTION.get(ev.kind, ()):
            value = getattr(ev, fld)
            if not value:
                continue
            if fld == "order_id":
                order = await self.orders.get_in(db, value)
            else:
                order = await self.orders.find_by_provider_reference_in(
                    db, fld, value
                )
            if order is not None:
                if ev.order_id and order.id != ev.order_id:
                    raise IntegrityViolation(
                        f"{fld} {value} belongs to order {order.id}, "
                        f"event says {ev.order_id}"
                    )
                return order
        return None

    # UN-GATED internal function
    async def snapshot_in(
        self, db: AsyncSession, ev: ProviderEvent
    ) -> Optional[OrderSnapshot]:
        order = await self._resolve(db, ev)
        if order is None:
            return None
        organizer_id = (await db.execute(
            select(Event.organizer_id).where(Event.id == order.event_id)
        )).scalar_one_or_none()
        if organizer_id is None:
            raise IntegrityViolation("order references a missing event",
                                     order_id=order.id,
                                     event_id=order.event_id)
        sale = await ledger_mod.sale_entry_in(db, order.id)
        return OrderSnapshot(
            order_id=order.id,
            event_id=order.event_id,
            organizer_id=organizer_id,
            status=order.status,
            subtotal_cents=order.subtotal_cents,
            fees_cents=order.fees_cents,
            total_cents=order.total_cents,
            refunded_cents=order.refunded_cents,
            checkout_session_id=order.checkout_session_id,
            payment_intent_id=order.payment_intent_id,
            charge_id=order.charge_id,
            discount_id=order.discount_id,
            discount_claimed=bool(order.discount_claimed),
            has_sale=sale is not None,
        )

    # UN-GATED internal function
    async def _apply(
        self, db: AsyncSession, snap: OrderSnapshot, d: Decision,
        ev: ProviderEvent, now: float,
    ) -> List[Ticket]:
        oid = snap.order_id
        issued: List[Ticket] = []

        for fld, value in d.references.items():
            await self.orders.record_provider_reference_in(db, oid, fld,
                                                           value)

        # releases need the order still pending
        if d.release_reservation:
            await self.capacity.release_in(db, oid)
        if d.release_discount:
            await discounts.release_for_order(db, oid)

        if d.order_event is not None:
            order, changed = await self.orders.transition_in(
                db, oid, d.order_event, now
            )
            if not changed:
                raise _Superseded(f"order {oid} moved to {order.status}")

        if d.convert_reservation:
            items = await self.orders.items_in(db, oid)
            wants = [(i.tier_id, i.quantity) for i in items]
            if not items:
                raise IntegrityViolation("paid order has no items",
                                         order_id=oid)
            if await self.capacity.convert_in(db, oid, wants):
                if d.reclaim_discount:
                    await discounts.reclaim_for_order(db, oid, now)
                if d.issue_tickets:
                    order = await self.orders.get_in(db, oid)
                    issued = await self.tickets.issue_in(db, order, now)
            else:
                log.error(f"order {oid}: paid after its hold expired and the "
                          "tiers sold out; needs a manual refund")
                await audit.record(db, audit.ACTOR_SYSTEM, "reconciler",
                                   "capacity_exhausted_after_payment",
                                   "order", oid, event_id=ev.event_id)

        if d.record_sale:
            order = await self.orders.get_in(db, oid)
            await db.execute(text("""
                UPDATE orders
                SET provider_fee_cents = :fee, fee_status = :fs,
                    net_to_organizer_cents = :net
                WHERE id = :id
            """), {"id": oid, "fee": d.provider_fee_cents,
                   "fs": d.fee_status,
                   "net": ledger_mod.sale_amount(order)})
            order = await self.orders.get_in(db, oid)
            entry_id = await ledger_mod.record_sale_in(
                db, order, snap.organizer_id, d.fee_status, now
            )
            if entry_id is None:
                raise _Superseded(f"order {oid} already has its sale")
            await audit.record(db, audit.ACTOR_SYSTEM, "reconciler",
                               "sale_recorded", "order", oid,
                               entry_id=entry_id,
                               provider_fee_cents=d.provider_fee_cents,
                               fee_status=d.fee_status)

        if d.refund_to_cents is not None:
            delta = d.refund_to_cents - snap.refunded_cents
            order = await self.orders.add_refund_in(
                db, oid, delta, expected_refunded=snap.refunded_cents, now=now
            )
            if order is None:
                raise _Superseded(f"order {oid} refunded concurrently")
            await ledger_mod.record_refund_in(
                db, order, snap.organizer_id, order.refunded_cents,
                f"Provider refund, order {oid}", now,
            )
            if d.cascade_refund:
                await _cascade_refund(db, self.capacity, oid, now)
            await audit.record(db, audit.ACTOR_SYSTEM, "reconciler",
                               "refund_recorded", "order", oid,
                               amount_cents=delta,
                               refunded_cents=order.refunded_cents)
        return issued

    # --------------------------------------------------------------------------
    # webhook log
    # --------------------------------------------------------------------------
    async def _log_event(self, ev: ProviderEvent, raw: dict) -> str:
        """Store the delivery; returns the status it is in afterwards."""
        async with self.db.tx() as db:
            row = (await db.execute(text("""
                INSERT INTO webhook_events(
                    id, provider_event_id, kind, payload, status, attempts,
                    created_at
                ) VALUES (:id, :pid, :kind, :payload, :st, 0, :now)
                ON CONFLICT (provider_event_id) DO NOTHING
                RETURNING status
            """), {"id": new_id(), "pid": ev.event_id, "kind": ev.kind,
                   "payload": orjson.dumps(raw).decode(),
                   "st": WEBHOOK_PENDING, "now": now_ts()})).first()
            if row is not None:
                return row[0]
            return (await db.execute(text("""
                SELECT status FROM webhook_events WHERE provider_event_id = :p
            """), {"p": ev.event_id})).scalar_one()

    async def _mark_failed(self, ev: ProviderEvent, error: str) -> None:
        async with self.db.tx() as db:
            await db.execute(text("""
                UPDATE webhook_events
                SET status = :failed, error = :err, attempts = attempts + 1
                WHERE provider_event_id = :p AND status != :done
            """), {"p": ev.event_id, "failed": WEBHOOK_FAILED,
                   "done": WEBHOOK_PROCESSED, "err": error[:2000]})

    # UN-GATED internal function
    async def _mark_processed_in(
        self, db: AsyncSession, ev: ProviderEvent, note: Optional[str]
    ) -> None:
        row = (await db.execute(text("""
            UPDATE webhook_events
            SET status = :done, error = :note, attempts = attempts + 1,
                processed_at = :now
            WHERE provider_event_id = :p AND status != :done
            RETURNING id
        """), {"p": ev.event_id, "done": WEBHOOK_PROCESSED,
               "note": note, "now": now_ts()})).first()
        if row is None:
            # a concurrent delivery of the same event finished first
            raise _Superseded(f"event {ev.event_id} already processed")

    # --------------------------------------------------------------------------
    # entry points
    # --------------------------------------------------------------------------
    async def _quote_fee(self, ev: ProviderEvent) -> Optional[int]:
        if ev.kind != CHARGE_SUCCEEDED or not ev.charge_id:
            return None
        try:
            return await self.provider.fetch_fee(ev.charge_id)
        except ProviderError as e:
            log.warning(f"fee lookup for {ev.charge_id} failed, "
                        f"estimating: {e}")
            return None

    async def process(self, raw: dict) -> Outcome:
        """Reconcile one verified provider event."""
        ev = self.provider.parse_event(raw)
        async with timeit("webhook.log"):
            status = await self._log_event(ev, raw)
        if status == WEBHOOK_PROCESSED:
            log.info(f"event {ev.event_id} ({ev.kind}) already processed")
            return Outcome(ev.event_id, ev.kind, idempotent=True)

        decide = DISPATCH.get(ev.kind)
        fee = await self._quote_fee(ev)
        for attempt in (1, 2):
            try:
                async with timeit(f"webhook.{ev.kind}"):
                    outcome, issued = await self._process_once(
                        ev, decide, fee
                    )
                break
            except (_Superseded, IntegrityError) as e:
                if attempt == 2:
                    await self._mark_failed(ev, f"race: {e}")
                    raise OutOfOrderEvent(
                        "event kept losing races; redeliver later",
                        event_id=ev.event_id,
                    ) from e
                log.info(f"event {ev.event_id}: lost a race ({e}), "
                         "deciding again")
            except BoxOfficeError as e:
                if isinstance(e, IntegrityViolation):
                    log.error(f"event {ev.event_id} ({ev.kind}): {e}")
                else:
                    log.warning(f"event {ev.event_id} ({ev.kind}): {e}")
                await self._mark_failed(ev, f"{e.code}: {e}")
                raise
            except Exception as e:
                log.exception(f"event {ev.event_id} ({ev.kind}) failed")
                await self._mark_failed(ev, repr(e))
                raise

        if issued:
            await self._deliver(outcome.order_id, issued)
        return outcome

    async def _process_once(self, ev, decide, fee):
        now = now_ts()
        issued: List[Ticket] = []
        async with self.db.tx() as db:
            status = (await db.execute(text("""
                SELECT status FROM webhook_events WHERE provider_event_id = :p
            """), {"p": ev.event_id})).scalar_one()
            if status == WEBHOOK_PROCESSED:
                # a concurrent delivery of the same event got here first
                return Outcome(ev.event_id, ev.kind, idempotent=True), issued

            if decide is None:
                note = f"unhandled event type {ev.type!r}"
                await self._mark_processed_in(db, ev, note)
                log.info(f"event {ev.event_id}: {note}")
                return Outcome(ev.event_id, ev.kind, noop=note), issued

            snap = await self.snapshot_in(db, ev)
            d = decide(snap, ev, fee)
            if d.noop is None:
                issued = await self._apply(db, snap, d, ev, now)
            await self._mark_processed_in(db, ev, d.noop)
            order = (await self.orders.get_in(db, snap.order_id)
                     if snap is not None else None)

        if d.noop is not None:
            log.info(f"event {ev.event_id} ({ev.kind}): no-op, {d.noop}")
        else:
            log.info(f"event {ev.event_id} ({ev.kind}) applied to order "
                     f"{snap.order_id}")
        return Outcome(
            ev.event_id, ev.kind,
            noop=d.noop,
            order_id=order.id if order is not None else None,
            order_status=order.status if order is not None else None,
            tickets_issued=len(issued),
        ), issued

    async def _deliver(self, order_id: str, issued: List[Ticket]) -> None:
        try:
            async with self.db.tx() as db:
                order = await db.get(Order, order_id)
                event = await db.get(Event, order.event_id)
            ok = await self.mailer.send_tickets(order, event, issued)
            if not ok:
                log.warning(f"order {order_id}: ticket mail not delivered")
        except Exception:
            # tickets stay issued; resend is a separate action
            log.exception(f"order {order_id}: ticket mail failed")

    async def replay_failed(self, limit: int = 50) -> Dict[str, int]:
        """Re-run logged events stuck in pending or failed."""
        async with self.db.tx() as db:
            rows = (await db.execute(
                select(WebhookEvent.provider_event_id, WebhookEvent.payload)
                .where(WebhookEvent.status.in_([WEBHOOK_PENDING,
                                                WEBHOOK_FAILED]))
                .order_by(WebhookEvent.created_at)
                .limit(limit)
            )).all()
        counts = {"replayed": 0, "processed": 0, "failed": 0}
        for pid, payload in rows:
            counts["replayed"] += 1
            try:
                await self.process(orjson.loads(payload))
                counts["processed"] += 1
            except Exception as e:
                # already marked failed by process()
                log.warning(f"replay of {pid} failed again: {e}")
                counts["failed"] += 1
        return counts


# UN-GATED internal function
async def _cascade_refund(
    db: AsyncSession, capacity: CapacityLedger, order_id: str, now: float
) -> int:
    """Every seat-holding ticket of a fully refunded order becomes
    refunded and gives its seat back."""
    rows = (await db.execute(text("""
        UPDATE tickets
        SET status = :refunded, refunded_at = :now,
            refund_reason = :reason
        WHERE status IN (:valid, :used)
          AND order_item_id IN (
              SELECT id FROM order_items WHERE order_id = :o
          )
        RETURNING tier_id
    """), {"o": order_id, "refunded": TICKET_REFUNDED, "now": now,
           "reason": "order refunded",
           "valid": st.TICKET_VALID, "used": st.TICKET_USED})).all()
    per_tier: Dict[str, int] = {}
    for (tier_id,) in rows:
        per_tier[tier_id] = per_tier.get(tier_id, 0) + 1
    for tier_id in sorted(per_tier):
        await capacity.unsell_in(db, tier_id, per_tier[tier_id])
    if rows:
        log.info(f"order {order_id}: {len(rows)} tickets refunded")
    return len(rows)
