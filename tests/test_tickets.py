import asyncio

import pytest

from boxoffice import audit
from boxoffice.errors import Conflict, NotFound
from boxoffice.model.status import TICKET_USED
from boxoffice.notify import render_credential


async def test_check_in_admits_once(shop):
    order = await shop.buy_and_pay((shop.ga.id, 1))
    [ticket] = await shop.tickets(order.id)

    admitted = await shop.svc.tickets.check_in(ticket.scan_token,
                                               shop.event.id, "door-1")
    assert admitted.status == TICKET_USED
    assert admitted.checked_in_by == "door-1"

    with pytest.raises(Conflict) as exc:
        await shop.svc.tickets.check_in(ticket.scan_token, shop.event.id,
                                        "door-2")
    assert str(exc.value) == "ticket already checked in"

    seen = await shop.svc.tickets.lookup(ticket.scan_token, shop.event.id)
    assert not seen["admissible"]
    assert seen["reason"] == "ticket already checked in"
    async with shop.svc.db.tx() as db:
        [entry] = await audit.for_target(db, ticket.id)
    assert entry.action == "check_in"


async def test_concurrent_scans_admit_one(shop):
    order = await shop.buy_and_pay((shop.ga.id, 1))
    [ticket] = await shop.tickets(order.id)
    results = await asyncio.gather(*[
        shop.svc.tickets.check_in(ticket.scan_token, shop.event.id, f"d{i}")
        for i in range(3)
    ], return_exceptions=True)
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, Conflict) for r in results
               if isinstance(r, Exception))


async def test_ticket_for_another_event(shop):
    order = await shop.buy_and_pay((shop.ga.id, 1))
    [ticket] = await shop.tickets(order.id)
    other = await shop.svc.catalog.create_event(shop.org.id, "Other")
    with pytest.raises(Conflict):
        await shop.svc.tickets.check_in(ticket.scan_token, other.id, "door")


async def test_refunded_order_does_not_admit(shop):
    order = await shop.buy_and_pay((shop.ga.id, 1))
    [ticket] = await shop.tickets(order.id)
    await shop.deliver(await shop.events_for(order.id, "refunded"))
    seen = await shop.svc.tickets.lookup(ticket.scan_token, shop.event.id)
    assert not seen["admissible"]
    with pytest.raises(Conflict):
        await shop.svc.tickets.check_in(ticket.scan_token, shop.event.id,
                                        "door")


async def test_unknown_token(shop):
    with pytest.raises(NotFound):
        await shop.svc.tickets.check_in("bogus", shop.event.id, "door")


async def test_tickets_only_for_paid_orders(shop):
    res = await shop.buy((shop.ga.id, 1))
    with pytest.raises(Conflict):
        await shop.svc.tickets.issue_for_order(res.order_id)


def test_credential_wraps_the_scan_token():
    assert render_credential("abc") == "boxoffice:ticket:abc"
