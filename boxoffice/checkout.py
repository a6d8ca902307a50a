from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from . import audit, discounts
from .capacity import CapacityLedger
from .errors import (
    DiscountInvalid, IntegrityViolation, NotFound, ProviderError,
    ValidationError,
)
from .helpers import new_id, now_ts
from .infra.logs import get_logger
from .infra.sql import Database
from .infra.timings import timeit
from .mockpay import PaymentAdapter
from .model.db import Event, Organizer, Tier
from .model.status import EVENT_PUBLISHED, PAYMENT_FAILED
from .orders import Buyer, OrderStore
from .pricing import (
    FeeModel, Line, TaxRule, calculate_pricing, discount_amount,
)

log = get_logger("checkout")

MAX_TICKETS_PER_ORDER = 50


@dataclass
class CheckoutLine:
    tier_id: str
    quantity: int


@dataclass
class CheckoutRequest:
    event_id: str
    items: List[CheckoutLine]
    buyer: Buyer
    discount_code: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CheckoutRequest":
        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("items must be a non-empty list")
        items = []
        for it in raw_items:
            if not isinstance(it, dict):
                raise ValidationError("each item needs tier_id and quantity")
            try:
                qty = int(it.get("quantity", 0))
            except (TypeError, ValueError):
                raise ValidationError("quantity must be an integer")
            items.append(CheckoutLine(tier_id=str(it.get("tier_id") or ""),
                                      quantity=qty))
        return cls(
            event_id=str(payload.get("event_id") or ""),
            items=items,
            buyer=Buyer(
                email=(payload.get("buyer_email") or "").strip(),
                name=payload.get("buyer_name"),
                phone=payload.get("buyer_phone"),
            ),
            discount_code=(payload.get("discount_code") or "").strip()
            or None,
        )


@dataclass
class CheckoutResult:
    order_id: str
    payment_session_id: str
    redirect_url: str
    amount: int
    currency: str
    expires_at: float
    breakdown: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def _merged(items: List[CheckoutLine]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for it in items:
        if not it.tier_id:
            raise ValidationError("tier_id is required")
        if it.quantity <= 0:
            raise ValidationError("quantity must be positive",
                                  tier_id=it.tier_id)
        out[it.tier_id] = out.get(it.tier_id, 0) + it.quantity
    return out


class CheckoutService:
    def __init__(
        self,
        db: Database,
        provider: PaymentAdapter,
        *,
        orders: OrderStore,
        capacity: CapacityLedger,
        currency: str = "cad",
    ):
        self.db = db
        self.provider = provider
        self.orders = orders
        self.capacity = capacity
        self.currency = currency

    async def checkout(self, req: CheckoutRequest) -> CheckoutResult:
        req.buyer.validate()
        wanted = _merged(req.items)
        if sum(wanted.values()) > MAX_TICKETS_PER_ORDER:
            raise ValidationError(
                f"at most {MAX_TICKETS_PER_ORDER} tickets per order"
            )

        order_id = new_id()
        now = now_ts()
        async with timeit("checkout.reserve_and_create"):
            async with self.db.tx() as db:
                event = await db.get(Event, req.event_id)
                if event is None:
                    raise NotFound("event not found", event_id=req.event_id)
                if event.status != EVENT_PUBLISHED:
                    raise ValidationError("event is not on sale",
                                          event_id=event.id)
                org = await db.get(Organizer, event.organizer_id)
                if org is None:
                    raise IntegrityViolation("event without organizer",
                                             event_id=event.id)

                tiers = {t.id: t for t in (await db.execute(
                    select(Tier).where(Tier.id.in_(list(wanted)))
                )).scalars()}
                lines = []
                for tier_id, qty in wanted.items():
                    tier = tiers.get(tier_id)
                    if tier is None or tier.event_id != event.id \
                            or tier.archived:
                        raise ValidationError("unknown tier for this event",
                                              tier_id=tier_id)
                    if tier.max_per_order is not None \
                            and qty > tier.max_per_order:
                        raise ValidationError(
                            f"at most {tier.max_per_order} of {tier.name} "
                            "per order", tier_id=tier_id,
                        )
                    lines.append(Line(tier_id, tier.price_cents, qty))

                raw_subtotal = sum(ln.unit_price_cents * ln.quantity
                                   for ln in lines)
                discount = None
                discount_cents = 0
                if req.discount_code:
                    discount = await discounts.find_applicable(
                        db, event.id, req.discount_code, now
                    )
                    discount_cents = discount_amount(
                        discount.discount_type, discount.value, raw_subtotal
                    )

                pricing = calculate_pricing(
                    lines,
                    FeeModel(org.fee_percent_bp, org.fee_per_ticket_cents),
                    TaxRule(event.collect_tax, event.gst_percent,
                            event.pst_percent, event.province),
                    discount_cents,
                )
                if pricing.total_cents <= 0:
                    raise ValidationError("free orders are not supported")

                # cap checked and consumed in one statement
                if discount is not None and \
                        not await discounts.claim(db, discount.id, now):
                    raise DiscountInvalid("discount code is used up",
                                          discount_code=req.discount_code)

                # raises SoldOut, rolling back the claim with it
                await self.capacity.reserve_all_in(
                    db, list(wanted.items()), order_id, now
                )
                order = await self.orders.create_order_in(
                    db, event.id, req.buyer, pricing, discount,
                    order_id=order_id, currency=self.currency,
                    discount_claimed=discount is not None, now=now,
                )

        # no transaction is held across the provider call
        try:
            async with timeit("provider.create_session"):
                session = await self.provider.create_session(
                    order.id, order.total_cents, order.currency,
                    {"order_id": order.id, "event_id": event.id},
                )
        except Exception as e:
            log.warning(f"order {order.id}: provider session failed: {e}")
            await self._abandon(order.id)
            if isinstance(e, ProviderError):
                raise
            raise ProviderError("could not start payment",
                                order_id=order.id) from e

        async with self.db.tx() as db:
            await self.orders.record_provider_reference_in(
                db, order.id, "checkout_session_id",
                session["payment_session_id"],
            )
            await self.orders.record_provider_reference_in(
                db, order.id, "payment_intent_id",
                session["payment_intent_id"],
            )
            await audit.record(db, audit.ACTOR_SYSTEM, "checkout",
                               "order_created", "order", order.id,
                               total_cents=order.total_cents,
                               discount_code=order.discount_code)

        log.info(f"order {order.id}: {sum(wanted.values())} tickets, "
                 f"total {order.total_cents} {order.currency}")
        return CheckoutResult(
            order_id=order.id,
            payment_session_id=session["payment_session_id"],
            redirect_url=session["redirect_url"],
            amount=order.total_cents,
            currency=order.currency,
            expires_at=now + self.capacity.ttl_seconds,
            breakdown={
                "subtotal_cents": pricing.subtotal_cents,
                "discount_cents": pricing.discount_cents,
                "tax_cents": pricing.tax_cents,
                "fees_cents": pricing.fees_cents,
            },
        )

    async def _abandon(self, order_id: str) -> None:
        async with self.db.tx() as db:
            await self.capacity.release_in(db, order_id)
            await discounts.release_for_order(db, order_id)
            await self.orders.transition_in(db, order_id, PAYMENT_FAILED)
