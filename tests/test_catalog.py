import pytest

from boxoffice.errors import Conflict, Forbidden, NotFound, ValidationError
from boxoffice.helpers import hash_api_key
from boxoffice.model.status import EVENT_PUBLISHED


async def test_api_key_is_stored_hashed(shop):
    assert shop.org.api_key_hash == hash_api_key(shop.api_key)
    assert shop.api_key not in shop.org.api_key_hash
    org = await shop.svc.catalog.authenticate(shop.api_key)
    assert org.id == shop.org.id
    with pytest.raises(Forbidden):
        await shop.svc.catalog.authenticate("bo_wrong")


async def test_organizer_validation(make_shop):
    shop = await make_shop(seed=False)
    with pytest.raises(ValidationError):
        await shop.svc.catalog.create_organizer("X", "not-an-email")
    with pytest.raises(ValidationError):
        await shop.svc.catalog.create_organizer("X", "x@example.com",
                                                payout_method="cheque")


async def test_event_ownership(shop):
    other, _ = await shop.svc.catalog.create_organizer("Rivals",
                                                       "r@example.com")
    assert (await shop.svc.catalog.owned_event(
        shop.event.id, shop.org.id)).status == EVENT_PUBLISHED
    with pytest.raises(Forbidden):
        await shop.svc.catalog.owned_event(shop.event.id, other.id)
    with pytest.raises(NotFound):
        await shop.svc.catalog.get_event("missing")


async def test_capacity_cannot_drop_below_sold_and_held(shop):
    await shop.buy_and_pay((shop.ga.id, 3))
    await shop.buy((shop.ga.id, 2), email="second@example.com")
    with pytest.raises(Conflict):
        await shop.svc.catalog.update_tier_capacity(shop.ga.id, 4)
    tier = await shop.svc.catalog.update_tier_capacity(shop.ga.id, 5)
    assert tier.capacity == 5
    tier = await shop.svc.catalog.update_tier_capacity(shop.ga.id, None)
    assert tier.capacity is None


async def test_delete_tier_archives_when_it_has_orders(shop):
    await shop.buy((shop.ga.id, 1))
    assert await shop.svc.catalog.delete_tier(shop.ga.id, "org") \
        == "archived"
    assert await shop.svc.catalog.delete_tier(shop.vip.id, "org") \
        == "deleted"
    names = [t.name for t in await shop.svc.catalog.tiers(shop.event.id)]
    assert names == []


async def test_discount_codes_are_unique_per_event(shop):
    await shop.svc.catalog.create_discount(shop.event.id, "EARLY", "fixed",
                                           500)
    with pytest.raises(Conflict):
        await shop.svc.catalog.create_discount(shop.event.id, "EARLY",
                                               "percent", 10)
    with pytest.raises(ValidationError):
        await shop.svc.catalog.create_discount(shop.event.id, "BIG",
                                               "percent", 150)
