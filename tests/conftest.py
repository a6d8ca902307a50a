import asyncio
from typing import List, Optional

import pytest
from sqlalchemy import select

from boxoffice.checkout import CheckoutLine, CheckoutRequest, CheckoutResult
from boxoffice.config import Settings
from boxoffice.errors import ProviderError
from boxoffice.infra.sql import Database
from boxoffice.mockpay import MockPay
from boxoffice.model.db import LedgerEntry, Order, Ticket, Tier, WebhookEvent
from boxoffice.notify import TicketMailer
from boxoffice.orders import Buyer
from boxoffice.server import Services


class FakePay(MockPay):
    """MockPay with switches for provider outages."""

    def __init__(self):
        super().__init__("test-secret")
        self.session_down = False
        self.fee_down = False
        self.refund_down = False
        # seconds the provider takes to answer a refund
        self.refund_delay = 0.0
        self.refunds: List[tuple] = []

    async def create_session(self, order_id, amount_cents, currency, meta):
        if self.session_down:
            raise ProviderError("provider unavailable")
        return await super().create_session(order_id, amount_cents,
                                            currency, meta)

    async def fetch_fee(self, charge_id):
        if self.fee_down:
            raise ProviderError("fee lookup unavailable")
        return await super().fetch_fee(charge_id)

    async def refund(self, charge_id, amount_cents, reason="",
                     idempotency_key=None):
        if self.refund_delay:
            await asyncio.sleep(self.refund_delay)
        if self.refund_down:
            raise ProviderError("refund refused")
        refund_id = await super().refund(charge_id, amount_cents, reason,
                                         idempotency_key)
        self.refunds.append((charge_id, amount_cents))
        return refund_id


class RecordingMailer(TicketMailer):
    def __init__(self):
        self.sent: List[tuple] = []

    async def send_tickets(self, order, event, tickets, resend=False):
        self.sent.append((order.id, [t.id for t in tickets]))
        return True


class Shop:
    """A seeded event plus shortcuts for the buyer and provider sides."""

    def __init__(self, svc: Services, provider: FakePay,
                 mailer: RecordingMailer):
        self.svc = svc
        self.provider = provider
        self.mailer = mailer

    async def seed(self):
        catalog = self.svc.catalog
        self.org, self.api_key = await catalog.create_organizer(
            "Night Owls", "owls@example.com"
        )
        # BC: GST 5% + PST 7%
        self.event = await catalog.create_event(self.org.id, "Owls Live",
                                                province="BC")
        self.ga = await catalog.create_tier(self.event.id, "GA", 5000,
                                            capacity=10)
        self.vip = await catalog.create_tier(self.event.id, "VIP", 12000,
                                             capacity=2, sort_order=1)
        await catalog.publish_event(self.event.id)
        return self

    # --------------------------------------------------------------------------
    # buyer
    # --------------------------------------------------------------------------
    async def buy(self, *lines, code: Optional[str] = None,
                  email: str = "buyer@example.com") -> CheckoutResult:
        lines = lines or ((self.ga.id, 2),)
        req = CheckoutRequest(
            event_id=self.event.id,
            items=[CheckoutLine(tier_id=t, quantity=q) for t, q in lines],
            buyer=Buyer(email=email, name="Buyer"),
            discount_code=code,
        )
        return await self.svc.checkout.checkout(req)

    # --------------------------------------------------------------------------
    # provider
    # --------------------------------------------------------------------------
    async def events_for(self, order_id: str, outcome: str, **kw):
        order = await self.svc.orders.get(order_id)
        args = dict(
            order_id=order.id,
            payment_session_id=order.checkout_session_id,
            payment_intent_id=order.payment_intent_id,
            amount_cents=order.total_cents,
            currency=order.currency,
            charge_id=order.charge_id,
        )
        args.update(kw)
        return self.provider.build_events(outcome, **args)

    async def deliver(self, events):
        return [await self.svc.reconciler.process(e) for e in events]

    async def buy_and_pay(self, *lines, **kw) -> Order:
        res = await self.buy(*lines, **kw)
        await self.deliver(await self.events_for(res.order_id, "succeeded"))
        return await self.svc.orders.get(res.order_id)

    # --------------------------------------------------------------------------
    # reads
    # --------------------------------------------------------------------------
    async def tier(self, tier_id: str) -> Tier:
        async with self.svc.db.tx() as db:
            return await db.get(Tier, tier_id, populate_existing=True)

    async def tickets(self, order_id: str) -> List[Ticket]:
        return await self.svc.tickets.tickets_for_order(order_id)

    async def entries(self, order_id: str) -> List[LedgerEntry]:
        async with self.svc.db.tx() as db:
            rows = await db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.order_id == order_id)
                .order_by(LedgerEntry.created_at)
            )
            return list(rows.scalars())

    async def webhook(self, provider_event_id: str) -> WebhookEvent:
        async with self.svc.db.tx() as db:
            return (await db.execute(
                select(WebhookEvent)
                .where(WebhookEvent.provider_event_id == provider_event_id)
            )).scalar_one()


def make_settings(tmp_path, **kw) -> Settings:
    base = dict(
        database_url=f"sqlite:///{tmp_path}/boxoffice.db",
        sweep_interval_seconds=0,
        mock_secret="test-secret",
        mock_webhook_url="",
    )
    base.update(kw)
    return Settings(**base)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def db(settings):
    database = Database.from_url(settings.database_url)
    await database.create_schema()
    yield database
    await database.dispose()


@pytest.fixture
def provider():
    return FakePay()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def make_shop(tmp_path, db, provider, mailer):
    """Shops over the same database; `ttl` sets the reservation hold."""
    async def _make(ttl: int = 900, seed: bool = True) -> Shop:
        settings = make_settings(tmp_path, reservation_ttl_seconds=ttl)
        shop = Shop(Services.build(settings, provider, mailer, db),
                    provider, mailer)
        if seed:
            await shop.seed()
        return shop
    return _make


@pytest.fixture
async def shop(make_shop):
    return await make_shop()
