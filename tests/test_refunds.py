import asyncio

import pytest

from boxoffice import audit
from boxoffice.errors import (
    Conflict, Forbidden, ProviderError, ValidationError,
)
from boxoffice.model.status import (
    ENTRY_REFUND, ORDER_PAID, ORDER_PARTIALLY_REFUNDED, ORDER_REFUNDED,
    TICKET_REFUNDED, TICKET_TRANSFERRED, TICKET_VALID,
)
from boxoffice.orders import Buyer


async def _refund(shop, ticket, amount=None, organizer_id=None):
    return await shop.svc.refunds.refund(
        ticket.id, amount, "cannot attend",
        organizer_id=organizer_id or shop.org.id, actor_id=shop.org.id,
    )


async def test_refunding_one_of_two_tickets(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    first, second = await shop.tickets(order.id)

    result = await _refund(shop, first)
    # (10000 + 1200 tax) / 2
    assert result.amount_cents == 5600
    assert result.order_status == ORDER_PARTIALLY_REFUNDED
    assert shop.provider.refunds == [(order.charge_id, 5600)]

    tickets = {t.id: t for t in await shop.tickets(order.id)}
    assert tickets[first.id].status == TICKET_REFUNDED
    assert tickets[first.id].refunded_cents == 5600
    assert tickets[second.id].status == TICKET_VALID
    assert (await shop.tier(shop.ga.id)).sold_count == 1
    assert await shop.svc.ledger.organizer_balance(shop.org.id) == 4825


async def test_refunds_never_exceed_the_sale(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    first, second = await shop.tickets(order.id)
    await _refund(shop, first)
    result = await _refund(shop, second)
    assert result.order_status == ORDER_REFUNDED
    assert result.order_refunded_cents == 11200

    refunds = [e.amount_cents for e in await shop.entries(order.id)
               if e.entry_type == ENTRY_REFUND]
    assert refunds == [-4825, -4825]
    assert await shop.svc.ledger.organizer_balance(shop.org.id) == 0


async def test_partial_amount_refund(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ticket, _ = await shop.tickets(order.id)
    result = await _refund(shop, ticket, amount=1000)
    assert result.amount_cents == 1000
    assert (await shop.svc.orders.get(order.id)).refunded_cents == 1000


async def test_refunding_twice_is_refused(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ticket, _ = await shop.tickets(order.id)
    await _refund(shop, ticket)
    with pytest.raises(Conflict):
        await _refund(shop, ticket)
    assert len(shop.provider.refunds) == 1


async def test_refund_above_ticket_ceiling_is_refused(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ticket, _ = await shop.tickets(order.id)
    with pytest.raises(ValidationError):
        await _refund(shop, ticket, amount=5601)
    assert shop.provider.refunds == []


async def test_provider_refusal_changes_nothing(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ticket, _ = await shop.tickets(order.id)
    shop.provider.refund_down = True
    with pytest.raises(ProviderError):
        await _refund(shop, ticket)
    order = await shop.svc.orders.get(order.id)
    assert order.status == ORDER_PAID
    assert order.refunded_cents == 0
    assert (await shop.tier(shop.ga.id)).sold_count == 2
    assert len(await shop.entries(order.id)) == 1

    # the failed attempt left no claim behind
    shop.provider.refund_down = False
    result = await _refund(shop, ticket)
    assert result.order_status == ORDER_PARTIALLY_REFUNDED


async def test_other_organizers_cannot_refund(shop):
    order = await shop.buy_and_pay((shop.ga.id, 1))
    [ticket] = await shop.tickets(order.id)
    other, _ = await shop.svc.catalog.create_organizer(
        "Rivals", "rivals@example.com"
    )
    with pytest.raises(Forbidden):
        await _refund(shop, ticket, organizer_id=other.id)


async def test_refund_waits_for_the_charge(shop):
    res = await shop.buy((shop.ga.id, 1))
    completed, _ = await shop.events_for(res.order_id, "succeeded")
    await shop.deliver([completed])
    [ticket] = await shop.tickets(res.order_id)
    with pytest.raises(Conflict):
        await _refund(shop, ticket)


async def test_transfer_reissues_the_ticket(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    old, _ = await shop.tickets(order.id)

    fresh = await shop.svc.refunds.transfer(
        old.id, Buyer(email="friend@example.com", name="Friend"),
        organizer_id=shop.org.id, actor_id=shop.org.id,
    )
    assert fresh.status == TICKET_VALID
    assert fresh.transferred_from == old.id
    assert fresh.holder_email == "friend@example.com"
    assert fresh.scan_token != old.scan_token

    tickets = {t.id: t for t in await shop.tickets(order.id)}
    assert tickets[old.id].status == TICKET_TRANSFERRED
    assert tickets[old.id].transferred_to == fresh.id
    # the seat moved, it was not added
    assert (await shop.tier(shop.ga.id)).sold_count == 2

    with pytest.raises(Conflict):
        await shop.svc.tickets.check_in(old.scan_token, shop.event.id, "door")
    await shop.svc.tickets.check_in(fresh.scan_token, shop.event.id, "door")


async def test_issuing_again_does_not_replace_transferred_tickets(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    old, _ = await shop.tickets(order.id)
    await shop.svc.refunds.transfer(
        old.id, Buyer(email="friend@example.com"),
        organizer_id=shop.org.id, actor_id=shop.org.id,
    )
    assert await shop.svc.tickets.issue_for_order(order.id) == []
    assert len(await shop.tickets(order.id)) == 3


async def test_used_tickets_cannot_be_transferred(shop):
    order = await shop.buy_and_pay((shop.ga.id, 1))
    [ticket] = await shop.tickets(order.id)
    await shop.svc.tickets.check_in(ticket.scan_token, shop.event.id, "door")
    with pytest.raises(Conflict):
        await shop.svc.refunds.transfer(
            ticket.id, Buyer(email="friend@example.com"),
            organizer_id=shop.org.id, actor_id=shop.org.id,
        )


async def test_concurrent_refunds_of_one_ticket_pay_out_once(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ticket, other = await shop.tickets(order.id)
    shop.provider.refund_delay = 0.05

    results = await asyncio.gather(_refund(shop, ticket),
                                   _refund(shop, ticket),
                                   return_exceptions=True)
    done = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(done) == 1
    assert len(refused) == 1 and isinstance(refused[0], Conflict)

    assert shop.provider.refunds == [(order.charge_id, 5600)]
    assert (await shop.svc.orders.get(order.id)).refunded_cents == 5600
    tickets = {t.id: t for t in await shop.tickets(order.id)}
    assert tickets[other.id].status == TICKET_VALID
    assert (await shop.tier(shop.ga.id)).sold_count == 1


async def test_provider_refunds_are_idempotent_per_key(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    first = await shop.provider.refund(order.charge_id, 11200,
                                       idempotency_key="rf_once")
    again = await shop.provider.refund(order.charge_id, 11200,
                                       idempotency_key="rf_once")
    assert first == again
    with pytest.raises(ProviderError):
        await shop.provider.refund(order.charge_id, 1,
                                   idempotency_key="rf_other")


# ----------------------------------------------------------------------------
# whole orders
# ----------------------------------------------------------------------------
async def _refund_order(shop, order_id, organizer_id=None):
    return await shop.svc.refunds.refund_order(
        order_id, "event cancelled",
        organizer_id=organizer_id or shop.org.id, actor_id=shop.org.id,
    )


async def test_order_refund_cancels_every_ticket(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    result = await _refund_order(shop, order.id)

    assert result.amount_cents == 11200
    assert result.tickets_refunded == 2
    assert result.order_status == ORDER_REFUNDED
    assert shop.provider.refunds == [(order.charge_id, 11200)]
    tickets = await shop.tickets(order.id)
    assert {t.status for t in tickets} == {TICKET_REFUNDED}
    assert sorted(t.refunded_cents for t in tickets) == [5600, 5600]
    assert (await shop.tier(shop.ga.id)).sold_count == 0
    assert [e.amount_cents for e in await shop.entries(order.id)] \
        == [9650, -9650]
    assert await shop.svc.ledger.organizer_balance(shop.org.id) == 0

    with pytest.raises(Conflict):
        await _refund_order(shop, order.id)


async def test_order_refund_takes_what_is_left(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ticket, _ = await shop.tickets(order.id)
    await _refund(shop, ticket)

    result = await _refund_order(shop, order.id)
    assert result.amount_cents == 5600
    assert result.tickets_refunded == 1
    assert result.order_refunded_cents == 11200
    assert await shop.svc.ledger.organizer_balance(shop.org.id) == 0
    assert (await shop.tier(shop.ga.id)).sold_count == 0
    async with shop.svc.db.tx() as db:
        actions = [e.action for e in await audit.for_target(db, order.id)]
    assert "order_refunded" in actions


async def test_order_and_ticket_refund_racing_pay_out_once(shop):
    order = await shop.buy_and_pay((shop.ga.id, 2))
    ticket, _ = await shop.tickets(order.id)
    shop.provider.refund_delay = 0.05

    results = await asyncio.gather(_refund(shop, ticket),
                                   _refund_order(shop, order.id),
                                   return_exceptions=True)
    assert sum(1 for r in results if isinstance(r, Conflict)) == 1
    assert len(shop.provider.refunds) == 1
    order = await shop.svc.orders.get(order.id)
    assert order.refunded_cents == shop.provider.refunds[0][1]


async def test_order_refund_rules(shop):
    res = await shop.buy((shop.ga.id, 1))
    with pytest.raises(Conflict):
        await _refund_order(shop, res.order_id)

    order = await shop.buy_and_pay((shop.ga.id, 1), email="x@example.com")
    other, _ = await shop.svc.catalog.create_organizer(
        "Rivals", "rivals@example.com"
    )
    with pytest.raises(Forbidden):
        await _refund_order(shop, order.id, organizer_id=other.id)

    shop.provider.refund_down = True
    with pytest.raises(ProviderError):
        await _refund_order(shop, order.id)
    shop.provider.refund_down = False
    assert (await _refund_order(shop, order.id)).tickets_refunded == 1


# ----------------------------------------------------------------------------
# attendee details
# ----------------------------------------------------------------------------
async def test_update_attendee_contact(shop):
    order = await shop.buy_and_pay((shop.ga.id, 1))
    [ticket] = await shop.tickets(order.id)

    updated = await shop.svc.refunds.update_attendee(
        ticket.id, email=" guest@example.com ", name="Guest",
        organizer_id=shop.org.id, actor_id=shop.org.id,
    )
    assert updated.holder_email == "guest@example.com"
    assert updated.holder_name == "Guest"
    # same ticket, same credential
    assert updated.scan_token == ticket.scan_token
    [stored] = await shop.tickets(order.id)
    assert stored.holder_email == "guest@example.com"
    async with shop.svc.db.tx() as db:
        [entry] = await audit.for_target(db, ticket.id)
    assert entry.action == "attendee_updated"


async def test_update_attendee_rules(shop):
    order = await shop.buy_and_pay((shop.ga.id, 1))
    [ticket] = await shop.tickets(order.id)
    update = shop.svc.refunds.update_attendee

    with pytest.raises(ValidationError):
        await update(ticket.id, email="nope", organizer_id=shop.org.id)
    with pytest.raises(ValidationError):
        await update(ticket.id, organizer_id=shop.org.id)
    other, _ = await shop.svc.catalog.create_organizer(
        "Rivals", "rivals@example.com"
    )
    with pytest.raises(Forbidden):
        await update(ticket.id, name="Mallory", organizer_id=other.id)

    await _refund(shop, ticket)
    with pytest.raises(Conflict):
        await update(ticket.id, name="Late", organizer_id=shop.org.id)
