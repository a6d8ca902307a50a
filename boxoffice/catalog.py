from __future__ import annotations
import secrets
from typing import List, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from . import audit
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .helpers import hash_api_key, is_valid_email, new_id, now_ts
from .infra.logs import get_logger
from .infra.sql import Database
from .model.db import Discount, Event, Organizer, Tier
from .model.status import (
    DISCOUNT_ACTIVE, DISCOUNT_FIXED, DISCOUNT_PERCENT, EVENT_ARCHIVED,
    EVENT_DRAFT, EVENT_PUBLISHED, ORGANIZER_ACTIVE, PAYOUT_METHODS,
)

log = get_logger("catalog")


class Catalog:
    """Organizers, events, tiers and discount codes."""

    def __init__(self, db: Database):
        self.db = db

    # ----------------------------
    # organizers
    # ----------------------------
    async def create_organizer(
        self,
        name: str,
        email: str,
        *,
        fee_percent_bp: int = 250,
        fee_per_ticket_cents: int = 50,
        payout_method: str = "etransfer",
        payout_email: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> Tuple[Organizer, str]:
        """Returns the organizer and its API key; only the hash is kept."""
        if not is_valid_email(email):
            raise ValidationError("organizer email is invalid")
        if payout_method not in PAYOUT_METHODS:
            raise ValidationError(f"unknown payout method {payout_method!r}")
        if fee_percent_bp < 0 or fee_per_ticket_cents < 0:
            raise ValidationError("fees cannot be negative")
        api_key = api_key or f"bo_{secrets.token_urlsafe(24)}"
        org = Organizer(
            id=new_id(),
            name=name,
            email=email.strip(),
            api_key_hash=hash_api_key(api_key),
            status=ORGANIZER_ACTIVE,
            fee_percent_bp=fee_percent_bp,
            fee_per_ticket_cents=fee_per_ticket_cents,
            payout_method=payout_method,
            payout_email=payout_email or email.strip(),
            created_at=now_ts(),
        )
        async with self.db.tx() as db:
            db.add(org)
        log.info(f"organizer {org.id} ({name}) created")
        return org, api_key

    async def authenticate(self, api_key: str) -> Organizer:
        async with self.db.tx() as db:
            org = (await db.execute(
                select(Organizer)
                .where(Organizer.api_key_hash == hash_api_key(api_key))
            )).scalar_one_or_none()
        if org is None or org.status != ORGANIZER_ACTIVE:
            raise Forbidden("invalid API key")
        return org

    async def get_organizer(self, organizer_id: str) -> Organizer:
        async with self.db.tx() as db:
            org = await db.get(Organizer, organizer_id)
        if org is None:
            raise NotFound("organizer not found", organizer_id=organizer_id)
        return org

    # ----------------------------
    # events
    # ----------------------------
    async def create_event(
        self,
        organizer_id: str,
        title: str,
        *,
        collect_tax: bool = True,
        gst_percent: float = 5.0,
        pst_percent: float = 7.0,
        province: Optional[str] = None,
    ) -> Event:
        if not title:
            raise ValidationError("an event needs a title")
        ev = Event(
            id=new_id(),
            organizer_id=organizer_id,
            title=title,
            status=EVENT_DRAFT,
            collect_tax=collect_tax,
            gst_percent=gst_percent,
            pst_percent=pst_percent,
            province=(province or "").upper() or None,
            created_at=now_ts(),
        )
        async with self.db.tx() as db:
            if await db.get(Organizer, organizer_id) is None:
                raise NotFound("organizer not found",
                               organizer_id=organizer_id)
            db.add(ev)
        return ev

    async def get_event(self, event_id: str) -> Event:
        async with self.db.tx() as db:
            ev = await db.get(Event, event_id, populate_existing=True)
        if ev is None:
            raise NotFound("event not found", event_id=event_id)
        return ev

    async def owned_event(self, event_id: str, organizer_id: str) -> Event:
        ev = await self.get_event(event_id)
        if ev.organizer_id != organizer_id:
            raise Forbidden("not your event", event_id=event_id)
        return ev

    async def set_event_status(self, event_id: str, status: str) -> Event:
        if status not in (EVENT_DRAFT, EVENT_PUBLISHED, EVENT_ARCHIVED):
            raise ValidationError(f"unknown event status {status!r}")
        async with self.db.tx() as db:
            ev = await db.get(Event, event_id)
            if ev is None:
                raise NotFound("event not found", event_id=event_id)
            ev.status = status
        return ev

    async def publish_event(self, event_id: str) -> Event:
        return await self.set_event_status(event_id, EVENT_PUBLISHED)

    # ----------------------------
    # tiers
    # ----------------------------
    async def create_tier(
        self,
        event_id: str,
        name: str,
        price_cents: int,
        *,
        capacity: Optional[int] = None,
        max_per_order: Optional[int] = None,
        sort_order: int = 0,
    ) -> Tier:
        if price_cents < 0:
            raise ValidationError("price cannot be negative")
        if capacity is not None and capacity < 0:
            raise ValidationError("capacity cannot be negative")
        if max_per_order is not None and max_per_order <= 0:
            raise ValidationError("max_per_order must be positive")
        tier = Tier(
            id=new_id(),
            event_id=event_id,
            name=name,
            price_cents=price_cents,
            capacity=capacity,
            max_per_order=max_per_order,
            sort_order=sort_order,
            sold_count=0,
            reserved_count=0,
            archived=False,
            created_at=now_ts(),
        )
        async with self.db.tx() as db:
            if await db.get(Event, event_id) is None:
                raise NotFound("event not found", event_id=event_id)
            db.add(tier)
        return tier

    async def tiers(self, event_id: str) -> List[Tier]:
        async with self.db.tx() as db:
            rows = await db.execute(
                select(Tier)
                .where(Tier.event_id == event_id, Tier.archived.is_(False))
                .order_by(Tier.sort_order, Tier.created_at)
            )
            return list(rows.scalars())

    async def update_tier_capacity(
        self, tier_id: str, capacity: Optional[int]
    ) -> Tier:
        """Capacity can shrink only down to what is sold or held."""
        async with self.db.tx() as db:
            if capacity is None:
                row = (await db.execute(text("""
                    UPDATE tiers SET capacity = NULL WHERE id = :id
                    RETURNING id
                """), {"id": tier_id})).first()
            else:
                if capacity < 0:
                    raise ValidationError("capacity cannot be negative")
                row = (await db.execute(text("""
                    UPDATE tiers SET capacity = :c
                    WHERE id = :id AND sold_count + reserved_count <= :c
                    RETURNING id
                """), {"id": tier_id, "c": capacity})).first()
            tier = await db.get(Tier, tier_id, populate_existing=True)
            if tier is None:
                raise NotFound("tier not found", tier_id=tier_id)
            if row is None:
                raise Conflict(
                    f"{tier.sold_count} sold and {tier.reserved_count} held; "
                    f"capacity cannot go to {capacity}",
                    tier_id=tier_id,
                )
        return tier

    async def delete_tier(self, tier_id: str, actor_id: str) -> str:
        """Tiers that ever sold are archived instead of deleted."""
        async with self.db.tx() as db:
            tier = await db.get(Tier, tier_id)
            if tier is None:
                raise NotFound("tier not found", tier_id=tier_id)
            used = (await db.execute(text("""
                SELECT 1 FROM order_items WHERE tier_id = :t
                UNION ALL
                SELECT 1 FROM capacity_reservations WHERE tier_id = :t
                LIMIT 1
            """), {"t": tier_id})).first()
            if used is not None or tier.sold_count > 0:
                tier.archived = True
                outcome = "archived"
            else:
                await db.delete(tier)
                outcome = "deleted"
            await audit.record(db, audit.ACTOR_ORGANIZER, actor_id,
                               f"tier_{outcome}", "tier", tier_id)
        log.info(f"tier {tier_id} {outcome}")
        return outcome

    # ----------------------------
    # discounts
    # ----------------------------
    async def create_discount(
        self,
        event_id: str,
        code: str,
        discount_type: str,
        value: int,
        *,
        starts_at: Optional[float] = None,
        ends_at: Optional[float] = None,
        max_uses: Optional[int] = None,
    ) -> Discount:
        code = (code or "").strip()
        if not code:
            raise ValidationError("a discount needs a code")
        if discount_type not in (DISCOUNT_PERCENT, DISCOUNT_FIXED):
            raise ValidationError(f"unknown discount type {discount_type!r}")
        if value <= 0 or (discount_type == DISCOUNT_PERCENT and value > 100):
            raise ValidationError("discount value out of range")
        if max_uses is not None and max_uses <= 0:
            raise ValidationError("max_uses must be positive")
        d = Discount(
            id=new_id(),
            event_id=event_id,
            code=code,
            discount_type=discount_type,
            value=value,
            status=DISCOUNT_ACTIVE,
            starts_at=starts_at,
            ends_at=ends_at,
            max_uses=max_uses,
            used_count=0,
        )
        try:
            async with self.db.tx() as db:
                if await db.get(Event, event_id) is None:
                    raise NotFound("event not found", event_id=event_id)
                db.add(d)
        except IntegrityError:
            raise Conflict(f"discount code {code!r} already exists",
                           event_id=event_id)
        return d
