from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DiscountInvalid
from .infra.logs import get_logger
from .model.db import Discount
from .model.status import DISCOUNT_ACTIVE, ORDER_PENDING

log = get_logger("discounts")


def is_usable(d: Discount, now: float) -> bool:
    if d.status != DISCOUNT_ACTIVE:
        return False
    if d.starts_at is not None and now < d.starts_at:
        return False
    if d.ends_at is not None and now > d.ends_at:
        return False
    if d.max_uses is not None and d.used_count >= d.max_uses:
        return False
    return True


# UN-GATED internal functions below: the caller owns the transaction

async def find_applicable(
    db: AsyncSession, event_id: str, code: str, now: float
) -> Discount:
    d = (await db.execute(
        select(Discount).where(
            Discount.event_id == event_id,
            Discount.code == code.strip(),
        )
    )).scalar_one_or_none()
    if d is None or not is_usable(d, now):
        raise DiscountInvalid("discount code is not valid",
                              discount_code=code)
    return d


async def claim(db: AsyncSession, discount_id: str, now: float) -> bool:
    """Consume one use; the cap is checked in the same statement."""
    row = (await db.execute(text("""
        UPDATE discounts
        SET used_count = used_count + 1
        WHERE id = :id
          AND status = :active
          AND (starts_at IS NULL OR starts_at <= :now)
          AND (ends_at IS NULL OR ends_at >= :now)
          AND (max_uses IS NULL OR used_count < max_uses)
        RETURNING id
    """), {"id": discount_id, "active": DISCOUNT_ACTIVE, "now": now})).first()
    return row is not None


async def release_for_order(
    db: AsyncSession, order_id: str, only_if_unreserved: bool = False
) -> Optional[str]:
    """
    Give back the use a pending order claimed at checkout. The claim flag
    on the order flips exactly once, so concurrent releases decrement the
    counter at most once. Returns the discount id when a use was released.
    """
    guard = ""
    if only_if_unreserved:
        guard = """
          AND NOT EXISTS (
              SELECT 1 FROM capacity_reservations r
              WHERE r.order_id = orders.id
          )"""
    row = (await db.execute(text(f"""
        UPDATE orders
        SET discount_claimed = :no
        WHERE id = :id
          AND discount_claimed = :yes
          AND discount_id IS NOT NULL
          AND status = :pending{guard}
        RETURNING discount_id
    """), {"id": order_id, "yes": True, "no": False,
          "pending": ORDER_PENDING})).first()
    if row is None:
        return None
    discount_id = row[0]
    await db.execute(text("""
        UPDATE discounts SET used_count = used_count - 1
        WHERE id = :id AND used_count > 0
    """), {"id": discount_id})
    log.info(f"released discount {discount_id} claimed by order {order_id}")
    return discount_id


async def reclaim_for_order(
    db: AsyncSession, order_id: str, now: float
) -> bool:
    """
    Late payment: the order's claim was released when its reservation
    expired. Take a use again if the cap still allows it; the buyer has paid
    the discounted price either way.
    """
    row = (await db.execute(text("""
        SELECT discount_id, discount_claimed FROM orders WHERE id = :id
    """), {"id": order_id})).first()
    if row is None or row[0] is None or row[1]:
        return False
    discount_id = row[0]
    # usage window is not re-checked: the price was fixed at checkout
    ok = (await db.execute(text("""
        UPDATE discounts
        SET used_count = used_count + 1
        WHERE id = :id AND (max_uses IS NULL OR used_count < max_uses)
        RETURNING id
    """), {"id": discount_id})).first() is not None
    if ok:
        await db.execute(text("""
            UPDATE orders SET discount_claimed = :yes WHERE id = :id
        """), {"id": order_id, "yes": True})
    else:
        log.warning(
            f"order {order_id} paid with discount {discount_id} "
            "after its usage cap was reached"
        )
    return ok
