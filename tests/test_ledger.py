import pytest

from boxoffice.errors import Conflict, NotFound, ValidationError
from boxoffice.helpers import now_ts
from boxoffice.ledger import estimate_provider_fee, payout_dict
from boxoffice.model.status import (
    ENTRY_ADJUSTMENT, ENTRY_PAID, FEE_ACTUAL, PAYOUT_DRAFT, PAYOUT_PAID,
)

WIDE = (0.0, 4102444800.0)


def test_estimated_fee():
    assert estimate_provider_fee(11200) == 355
    assert estimate_provider_fee(0) == 30


async def test_balance_follows_sales_and_adjustments(shop):
    await shop.buy_and_pay((shop.ga.id, 2))
    ledger = shop.svc.ledger
    assert await ledger.organizer_balance(shop.org.id) == 9650

    entry = await ledger.add_adjustment(shop.org.id, -650,
                                        "chargeback fee", "admin")
    assert entry.entry_type == ENTRY_ADJUSTMENT
    assert await ledger.organizer_balance(shop.org.id) == 9000


async def test_adjustments_need_amount_and_reason(shop):
    with pytest.raises(ValidationError):
        await shop.svc.ledger.add_adjustment(shop.org.id, 0, "nothing")
    with pytest.raises(ValidationError):
        await shop.svc.ledger.add_adjustment(shop.org.id, 100, "")
    with pytest.raises(NotFound):
        await shop.svc.ledger.add_adjustment("nobody", 100, "bonus")


async def test_payout_total_comes_from_the_ledger(shop):
    await shop.buy_and_pay((shop.ga.id, 2))
    await shop.buy_and_pay((shop.vip.id, 1), email="vip@example.com")
    ledger = shop.svc.ledger

    payout = await ledger.finalize_payout(shop.org.id, *WIDE)
    balance_before = 9650 + (12000 - 350)
    assert payout.status == PAYOUT_DRAFT
    assert payout.total_cents == balance_before
    assert payout.entry_count == 2
    assert payout.method == "etransfer"

    # everything is attached now
    with pytest.raises(ValidationError):
        await ledger.finalize_payout(shop.org.id, *WIDE)


async def test_payout_period_is_validated(shop):
    with pytest.raises(ValidationError):
        await shop.svc.ledger.finalize_payout(shop.org.id, 10.0, 5.0)
    with pytest.raises(ValidationError):
        await shop.svc.ledger.finalize_payout(shop.org.id, *WIDE,
                                              method="carrier pigeon")


async def test_payout_only_takes_entries_in_the_period(shop):
    await shop.buy_and_pay((shop.ga.id, 2))
    cut = now_ts()
    await shop.buy_and_pay((shop.vip.id, 1), email="vip@example.com")
    payout = await shop.svc.ledger.finalize_payout(shop.org.id, 0.0, cut)
    assert payout.total_cents == 9650
    assert payout.entry_count == 1


async def test_estimated_fees_block_the_payout(shop):
    shop.provider.fee_down = True
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ledger = shop.svc.ledger
    with pytest.raises(Conflict):
        await ledger.finalize_payout(shop.org.id, *WIDE)

    # still down: nothing confirmed
    assert await ledger.refresh_estimated_fees() == 0
    shop.provider.fee_down = False
    assert await ledger.refresh_estimated_fees() == 1
    order = await shop.svc.orders.get(order.id)
    assert order.fee_status == FEE_ACTUAL
    [sale] = await shop.entries(order.id)
    assert sale.fee_status == FEE_ACTUAL

    payout = await ledger.finalize_payout(shop.org.id, *WIDE)
    assert payout.total_cents == 9650


async def test_marking_a_payout_paid(shop):
    await shop.buy_and_pay((shop.ga.id, 2))
    ledger = shop.svc.ledger
    payout = await ledger.finalize_payout(shop.org.id, *WIDE)

    paid = await ledger.mark_payout_paid(payout.id, "ET-1001", "admin")
    assert paid.status == PAYOUT_PAID
    assert paid.reference == "ET-1001"
    assert payout_dict(paid)["paid_at"] is not None
    assert all(e.status == ENTRY_PAID
               for e in await ledger.entries(shop.org.id))
    # paid entries no longer count as owed
    assert await ledger.organizer_balance(shop.org.id) == 0

    # same reference again is fine, another one is not
    again = await ledger.mark_payout_paid(payout.id, "ET-1001", "admin")
    assert again.paid_at == paid.paid_at
    with pytest.raises(Conflict):
        await ledger.mark_payout_paid(payout.id, "ET-2002", "admin")
    with pytest.raises(ValidationError):
        await ledger.mark_payout_paid(payout.id, "", "admin")
    with pytest.raises(NotFound):
        await ledger.mark_payout_paid("nope", "ET-1", "admin")


async def test_refund_after_payout_is_owed_next_time(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ledger = shop.svc.ledger
    payout = await ledger.finalize_payout(shop.org.id, *WIDE)
    await ledger.mark_payout_paid(payout.id, "ET-1", "admin")

    ticket, _ = await shop.tickets(order.id)
    await shop.svc.refunds.refund(ticket.id, organizer_id=shop.org.id,
                                  actor_id=shop.org.id)
    assert await ledger.organizer_balance(shop.org.id) == -4825
    nxt = await ledger.finalize_payout(shop.org.id, *WIDE)
    assert nxt.total_cents == -4825
