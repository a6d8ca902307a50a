from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Form, Request
from fastapi.responses import ORJSONResponse
from starlette.middleware.sessions import SessionMiddleware

from .capacity import CapacityLedger
from .catalog import Catalog
from .checkout import CheckoutRequest, CheckoutService
from .config import Settings
from .errors import (
    BoxOfficeError, Conflict, Forbidden, NotFound, ValidationError,
)
from .helpers import ct_equal
from .infra import timings
from .infra.logs import configure_logging, get_logger
from .infra.sql import Database
from .infra.timings import timeit
from .ledger import FinancialLedger, entry_dict, payout_dict
from .mockpay import MockPay, PaymentAdapter
from .model.db import Order, Tier
from .model.status import TICKET_VALID
from .notify import TicketMailer, render_credential
from .orders import Buyer, OrderStore, order_dict
from .reconciler import WebhookReconciler
from .refunds import RefundProcessor
from .tickets import TicketIssuer, ticket_dict

log = get_logger("server")


@dataclass
class Services:
    settings: Settings
    db: Database
    provider: PaymentAdapter
    mailer: TicketMailer
    catalog: Catalog
    capacity: CapacityLedger
    orders: OrderStore
    tickets: TicketIssuer
    ledger: FinancialLedger
    reconciler: WebhookReconciler
    refunds: RefundProcessor
    checkout: CheckoutService

    @classmethod
    def build(
        cls,
        settings: Settings,
        provider: PaymentAdapter,
        mailer: TicketMailer,
        db: Database,
    ) -> "Services":
        capacity = CapacityLedger(db, settings.reservation_ttl_seconds)
        orders = OrderStore(db)
        tickets = TicketIssuer(db)
        return cls(
            settings=settings,
            db=db,
            provider=provider,
            mailer=mailer,
            catalog=Catalog(db),
            capacity=capacity,
            orders=orders,
            tickets=tickets,
            ledger=FinancialLedger(db, provider),
            reconciler=WebhookReconciler(
                db, provider, orders=orders, capacity=capacity,
                tickets=tickets, mailer=mailer,
            ),
            refunds=RefundProcessor(db, provider, orders=orders,
                                    capacity=capacity),
            checkout=CheckoutService(db, provider, orders=orders,
                                     capacity=capacity,
                                     currency=settings.currency),
        )


def services(request: Request) -> Services:
    return request.app.state.services


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    if not is_admin(request):
        raise Forbidden("admin login required")
    return request.session["admin_user"]


async def require_organizer(
    request: Request, svc: Services = Depends(services)
) -> str:
    organizer_id = request.session.get("organizer_id")
    if organizer_id:
        return organizer_id
    # API clients may send the key on every request instead
    api_key = request.headers.get("x-api-key")
    if api_key:
        org = await svc.catalog.authenticate(api_key)
        return org.id
    raise Forbidden("organizer login required")


def _int_or_none(v, name: str) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _float(v, name: str) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an epoch timestamp")


router = APIRouter()


# ----------------------------
# Checkout
# ----------------------------
@router.post("/api/checkout")
async def create_checkout(payload: dict, svc: Services = Depends(services)):
    req = CheckoutRequest.from_payload(payload)
    async with timeit("api.checkout"):
        result = await svc.checkout.checkout(req)
    return result.to_dict()


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@router.get("/api/orders/{order_id}")
async def get_order(order_id: str, svc: Services = Depends(services)):
    async with timeit("db.get_order"):
        async with svc.db.tx() as db:
            order = await svc.orders.get_in(db, order_id)
            if order is None:
                # webhook may still be on its way: let the client keep polling
                raise NotFound("order not found", order_id=order_id)
            items = await svc.orders.items_in(db, order_id)
            tickets = await svc.tickets.tickets_for_order_in(db, order_id)
    return {
        **order_dict(order),
        "items": [
            {"tier_id": i.tier_id, "quantity": i.quantity,
             "unit_price_cents": i.unit_price_cents}
            for i in items
        ],
        "tickets": [
            {**ticket_dict(t), "credential": render_credential(t.scan_token)}
            for t in tickets
        ],
    }


@router.get("/api/events/{event_id}/inventory")
async def get_inventory(event_id: str, svc: Services = Depends(services)):
    await svc.catalog.get_event(event_id)
    return {"event_id": event_id,
            "tiers": await svc.capacity.inventory(event_id)}


# ----------------------------
# Webhook endpoint
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(request: Request,
                           svc: Services = Depends(services)):
    payload = await request.body()
    headers = dict(request.headers)

    # verified before anything looks at the payload
    event = svc.provider.verify_webhook(payload, headers)
    outcome = await svc.reconciler.process(event)
    return outcome.to_dict()


# ----------------------------
# Organizer session
# ----------------------------
@router.post("/organizer/login")
async def organizer_login(
    request: Request,
    api_key: str = Form(...),
    svc: Services = Depends(services),
):
    org = await svc.catalog.authenticate(api_key.strip())
    request.session["organizer_id"] = org.id
    return {"ok": True, "organizer_id": org.id, "name": org.name}


@router.get("/organizer/logout")
async def organizer_logout(request: Request):
    request.session.pop("organizer_id", None)
    return {"ok": True}


# ----------------------------
# Organizer: catalog
# ----------------------------
@router.post("/api/organizer/events")
async def create_event(payload: dict,
                       organizer_id: str = Depends(require_organizer),
                       svc: Services = Depends(services)):
    ev = await svc.catalog.create_event(
        organizer_id,
        payload.get("title") or "",
        collect_tax=bool(payload.get("collect_tax", True)),
        gst_percent=float(payload.get("gst_percent", 5.0)),
        pst_percent=float(payload.get("pst_percent", 7.0)),
        province=payload.get("province"),
    )
    return {"event_id": ev.id, "status": ev.status}


@router.post("/api/organizer/events/{event_id}/publish")
async def publish_event(event_id: str,
                        organizer_id: str = Depends(require_organizer),
                        svc: Services = Depends(services)):
    await svc.catalog.owned_event(event_id, organizer_id)
    ev = await svc.catalog.publish_event(event_id)
    return {"event_id": ev.id, "status": ev.status}


@router.post("/api/organizer/events/{event_id}/tiers")
async def create_tier(event_id: str, payload: dict,
                      organizer_id: str = Depends(require_organizer),
                      svc: Services = Depends(services)):
    await svc.catalog.owned_event(event_id, organizer_id)
    price = _int_or_none(payload.get("price_cents"), "price_cents")
    if price is None:
        raise ValidationError("price_cents is required")
    tier = await svc.catalog.create_tier(
        event_id,
        payload.get("name") or "General",
        price,
        capacity=_int_or_none(payload.get("capacity"), "capacity"),
        max_per_order=_int_or_none(payload.get("max_per_order"),
                                   "max_per_order"),
        sort_order=_int_or_none(payload.get("sort_order"), "sort_order")
        or 0,
    )
    return {"tier_id": tier.id}


async def _owned_tier_event(svc: Services, tier_id: str, organizer_id: str):
    async with svc.db.tx() as db:
        tier = await db.get(Tier, tier_id)
    if tier is None:
        raise NotFound("tier not found", tier_id=tier_id)
    await svc.catalog.owned_event(tier.event_id, organizer_id)


@router.post("/api/organizer/tiers/{tier_id}/capacity")
async def update_tier_capacity(tier_id: str, payload: dict,
                               organizer_id: str = Depends(require_organizer),
                               svc: Services = Depends(services)):
    await _owned_tier_event(svc, tier_id, organizer_id)
    tier = await svc.catalog.update_tier_capacity(
        tier_id, _int_or_none(payload.get("capacity"), "capacity")
    )
    return {"tier_id": tier.id, "capacity": tier.capacity}


@router.delete("/api/organizer/tiers/{tier_id}")
async def delete_tier(tier_id: str,
                      organizer_id: str = Depends(require_organizer),
                      svc: Services = Depends(services)):
    await _owned_tier_event(svc, tier_id, organizer_id)
    outcome = await svc.catalog.delete_tier(tier_id, organizer_id)
    return {"tier_id": tier_id, "outcome": outcome}


@router.post("/api/organizer/events/{event_id}/discounts")
async def create_discount(event_id: str, payload: dict,
                          organizer_id: str = Depends(require_organizer),
                          svc: Services = Depends(services)):
    await svc.catalog.owned_event(event_id, organizer_id)
    value = _int_or_none(payload.get("value"), "value")
    if value is None:
        raise ValidationError("value is required")
    d = await svc.catalog.create_discount(
        event_id,
        payload.get("code") or "",
        payload.get("discount_type") or "",
        value,
        starts_at=payload.get("starts_at"),
        ends_at=payload.get("ends_at"),
        max_uses=_int_or_none(payload.get("max_uses"), "max_uses"),
    )
    return {"discount_id": d.id, "code": d.code}


@router.get("/api/organizer/events/{event_id}/orders")
async def event_orders(event_id: str, status: Optional[str] = None,
                       limit: int = 200,
                       organizer_id: str = Depends(require_organizer),
                       svc: Services = Depends(services)):
    await svc.catalog.owned_event(event_id, organizer_id)
    orders = await svc.orders.for_event(event_id, status, limit)
    return {
        "event_id": event_id,
        "items": [
            {**order_dict(o), "buyer_email": o.buyer_email,
             "buyer_name": o.buyer_name}
            for o in orders
        ],
    }


# ----------------------------
# Organizer: tickets
# ----------------------------
@router.post("/api/tickets/{ticket_id}/refund")
async def refund_ticket(ticket_id: str, payload: dict,
                        organizer_id: str = Depends(require_organizer),
                        svc: Services = Depends(services)):
    result = await svc.refunds.refund(
        ticket_id,
        _int_or_none(payload.get("amount_cents"), "amount_cents"),
        payload.get("reason") or "",
        organizer_id=organizer_id,
        actor_id=organizer_id,
    )
    return {"ok": True, **result.to_dict()}


@router.post("/api/tickets/{ticket_id}/transfer")
async def transfer_ticket(ticket_id: str, payload: dict,
                          organizer_id: str = Depends(require_organizer),
                          svc: Services = Depends(services)):
    fresh = await svc.refunds.transfer(
        ticket_id,
        Buyer(email=(payload.get("email") or "").strip(),
              name=payload.get("name"), phone=payload.get("phone")),
        organizer_id=organizer_id,
        actor_id=organizer_id,
    )
    return {"ok": True, "ticket": ticket_dict(fresh)}


@router.patch("/api/tickets/{ticket_id}/attendee")
async def update_attendee(ticket_id: str, payload: dict,
                          organizer_id: str = Depends(require_organizer),
                          svc: Services = Depends(services)):
    ticket = await svc.refunds.update_attendee(
        ticket_id,
        email=payload.get("email"),
        name=payload.get("name"),
        phone=payload.get("phone"),
        organizer_id=organizer_id,
        actor_id=organizer_id,
    )
    return {"ok": True, "ticket": ticket_dict(ticket)}


@router.post("/api/orders/{order_id}/refund")
async def refund_order(order_id: str, payload: dict,
                       organizer_id: str = Depends(require_organizer),
                       svc: Services = Depends(services)):
    result = await svc.refunds.refund_order(
        order_id,
        payload.get("reason") or "",
        organizer_id=organizer_id,
        actor_id=organizer_id,
    )
    return {"ok": True, **result.to_dict()}


@router.post("/api/orders/{order_id}/resend")
async def resend_tickets(order_id: str,
                         organizer_id: str = Depends(require_organizer),
                         svc: Services = Depends(services)):
    order = await svc.orders.get(order_id)
    event = await svc.catalog.owned_event(order.event_id, organizer_id)
    tickets = [t for t in await svc.tickets.tickets_for_order(order_id)
               if t.status == TICKET_VALID]
    if not tickets:
        raise Conflict("order has no valid tickets", order_id=order_id)
    ok = await svc.mailer.send_tickets(order, event, tickets, resend=True)
    return {"ok": ok, "order_id": order_id, "tickets": len(tickets)}


@router.post("/api/check-in")
async def check_in(payload: dict,
                   organizer_id: str = Depends(require_organizer),
                   svc: Services = Depends(services)):
    event_id = payload.get("event_id") or ""
    await svc.catalog.owned_event(event_id, organizer_id)
    ticket = await svc.tickets.check_in(
        payload.get("scan_token") or "", event_id,
        payload.get("staff") or organizer_id,
    )
    return {"ok": True, "ticket": ticket_dict(ticket)}


@router.post("/api/check-in/lookup")
async def check_in_lookup(payload: dict,
                          organizer_id: str = Depends(require_organizer),
                          svc: Services = Depends(services)):
    event_id = payload.get("event_id") or ""
    await svc.catalog.owned_event(event_id, organizer_id)
    return await svc.tickets.lookup(payload.get("scan_token") or "",
                                    event_id)


# ----------------------------
# Organizer: money
# ----------------------------
@router.get("/api/organizer/balance")
async def organizer_balance(organizer_id: str = Depends(require_organizer),
                            svc: Services = Depends(services)):
    return {
        "organizer_id": organizer_id,
        "balance_cents": await svc.ledger.organizer_balance(organizer_id),
        "currency": svc.settings.currency,
    }


@router.get("/api/organizer/ledger")
async def organizer_ledger(limit: int = 200,
                           organizer_id: str = Depends(require_organizer),
                           svc: Services = Depends(services)):
    entries = await svc.ledger.entries(organizer_id, limit)
    return {"items": [entry_dict(e) for e in entries], "limit": limit}


@router.get("/api/organizer/payouts")
async def organizer_payouts(limit: int = 100,
                            organizer_id: str = Depends(require_organizer),
                            svc: Services = Depends(services)):
    payouts = await svc.ledger.payouts(organizer_id, limit)
    return {"items": [payout_dict(p) for p in payouts]}


@router.post("/api/organizer/payouts")
async def finalize_payout(payload: dict,
                          organizer_id: str = Depends(require_organizer),
                          svc: Services = Depends(services)):
    # any total in the payload is ignored: it comes from the ledger
    payout = await svc.ledger.finalize_payout(
        organizer_id,
        _float(payload.get("period_start"), "period_start"),
        _float(payload.get("period_end"), "period_end"),
        payload.get("method"),
        actor_id=organizer_id,
    )
    return payout_dict(payout)


# ----------------------------
# Admin
# ----------------------------
@router.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    svc: Services = Depends(services),
):
    ok_user = ct_equal(username.strip(), svc.settings.admin_username)
    ok_pass = ct_equal(password, svc.settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"ok": True}
    # auth failed
    return ORJSONResponse({"ok": False, "error": "Invalid credentials."},
                          status_code=401)


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.pop("admin_user", None)
    return {"ok": True}


@router.post("/api/admin/organizers")
async def admin_create_organizer(payload: dict,
                                 admin: str = Depends(require_admin),
                                 svc: Services = Depends(services)):
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("an organizer needs a name")
    org, api_key = await svc.catalog.create_organizer(
        name,
        payload.get("email") or "",
        payout_method=payload.get("payout_method") or "etransfer",
        payout_email=payload.get("payout_email"),
    )
    # shown once; only its hash is stored
    return {"organizer_id": org.id, "api_key": api_key}


@router.post("/api/admin/payouts/{payout_id}/paid")
async def admin_payout_paid(payout_id: str, payload: dict,
                            admin: str = Depends(require_admin),
                            svc: Services = Depends(services)):
    payout = await svc.ledger.mark_payout_paid(
        payout_id, (payload.get("reference") or "").strip(), admin
    )
    return payout_dict(payout)


@router.post("/api/admin/webhooks/replay")
async def admin_replay(limit: int = 50,
                       admin: str = Depends(require_admin),
                       svc: Services = Depends(services)):
    return await svc.reconciler.replay_failed(max(1, min(limit, 500)))


@router.post("/api/admin/reservations/sweep")
async def admin_sweep(admin: str = Depends(require_admin),
                      svc: Services = Depends(services)):
    return {"swept": await svc.capacity.sweep_expired()}


@router.post("/api/admin/fees/refresh")
async def admin_refresh_fees(admin: str = Depends(require_admin),
                             svc: Services = Depends(services)):
    return {"updated": await svc.ledger.refresh_estimated_fees()}


@router.post("/api/admin/ledger/adjustments")
async def admin_adjustment(payload: dict,
                           admin: str = Depends(require_admin),
                           svc: Services = Depends(services)):
    amount = _int_or_none(payload.get("amount_cents"), "amount_cents")
    if amount is None:
        raise ValidationError("amount_cents is required")
    entry = await svc.ledger.add_adjustment(
        payload.get("organizer_id") or "", amount,
        payload.get("description") or "", admin,
    )
    return entry_dict(entry)


@router.get("/api/admin/timings")
async def admin_timings(admin: str = Depends(require_admin)):
    return {"items": timings.snapshot()}


# ----------------------------
# MockPay
# ----------------------------
def _mockpay(svc: Services) -> MockPay:
    if not isinstance(svc.provider, MockPay):
        raise NotFound("MockPay is not the active provider")
    return svc.provider


async def _session_order(svc: Services, psid: str) -> Order:
    order = await svc.orders.find_by_provider_reference(
        "checkout_session_id", psid
    )
    if order is None:
        raise NotFound("payment session not found")
    return order


@router.get("/mockpay/{psid}")
async def mockpay_screen(psid: str, svc: Services = Depends(services)):
    _mockpay(svc)
    order = await _session_order(svc, psid)
    return {
        "psid": psid,
        "order_id": order.id,
        "status": order.status,
        "amount": order.total_cents,
        "currency": order.currency,
        "webhook_url": svc.settings.mock_webhook_url,
    }


@router.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    request: Request,
    t: str = Form(...),
    svc: Services = Depends(services),
):
    mock = _mockpay(svc)
    # the customer side only: refunds go through the organizer endpoints
    if t not in {"succeeded", "failed"}:
        raise ValidationError("invalid kind")
    order = await _session_order(svc, psid)
    events = mock.build_events(
        t,
        order_id=order.id,
        payment_session_id=psid,
        payment_intent_id=order.payment_intent_id,
        amount_cents=order.total_cents,
        currency=order.currency,
        charge_id=order.charge_id,
    )

    url = svc.settings.mock_webhook_url
    delivered = 0
    for event in events:
        if not url:
            # no webhook url: deliver in-process
            await svc.reconciler.process(event)
            delivered += 1
            continue
        payload, headers = mock.encode(event)
        client_http: httpx.AsyncClient = request.app.state.http
        try:
            r = await client_http.post(url, content=payload,
                                       headers=headers)
            delivered += int(r.status_code == 200)
        except httpx.HTTPError as e:
            # the customer can press the button again
            log.warning(f"webhook delivery failed: {e}")
    return {"ok": True, "order_id": order.id, "kind": t,
            "events": len(events), "delivered": delivered}


# ----------------------------
# App factory
# ----------------------------
async def _sweep_forever(svc: Services, interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await svc.capacity.sweep_expired()
        except Exception:
            log.exception("reservation sweep failed")


def create_app(
    settings: Optional[Settings] = None,
    *,
    provider: Optional[PaymentAdapter] = None,
    mailer: Optional[TicketMailer] = None,
    db: Optional[Database] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    db = db or Database.from_url(settings.database_url)
    provider = provider or MockPay(settings.mock_secret)
    svc = Services.build(settings, provider, mailer or TicketMailer(), db)

    app = FastAPI(
        title="BoxOffice",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.state.services = svc
    app.include_router(router)

    @app.exception_handler(BoxOfficeError)
    async def _boxoffice_error(request: Request, exc: BoxOfficeError):
        if exc.status_code >= 500:
            log.error(f"{request.method} {request.url.path}: {exc}")
        else:
            log.info(f"{request.method} {request.url.path}: "
                     f"{exc.status_code} {exc}")
        return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        configure_logging(settings.log_level, settings.log_dir)
        log.info(f"BoxOffice is starting up "
                 f"(db: {db.engine.url.get_backend_name()}, "
                 f"provider: {type(provider).__name__})")

    @app.on_event("startup")
    async def _db_init():
        await db.create_schema()

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=512, max_keepalive_connections=512
            ),
        )

    @app.on_event("startup")
    async def _sweeper_start():
        app.state.sweeper = None
        if settings.sweep_interval_seconds > 0:
            app.state.sweeper = asyncio.create_task(
                _sweep_forever(svc, settings.sweep_interval_seconds)
            )

    @app.on_event("shutdown")
    async def _sweeper_stop():
        task = getattr(app.state, "sweeper", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.sweeper = None

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _db_stop():
        await db.dispose()

    return app


app = create_app()
