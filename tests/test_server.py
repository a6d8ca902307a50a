import orjson
import pytest
from fastapi.testclient import TestClient

from boxoffice.mockpay import SIGNATURE_HEADER, MockPay
from boxoffice.server import create_app

@pytest.fixture
def provider():
    return MockPay("test-secret")


@pytest.fixture
def client(settings, provider):
    app = create_app(settings, provider=provider)
    with TestClient(app) as c:
        yield c


def _admin(client):
    r = client.post("/admin/login",
                    data={"username": "admin", "password": "supasecret"})
    assert r.status_code == 200


def _organizer(client):
    """Admin creates an organizer; the organizer logs in with the key and
    sets up a published event with one tier of two seats."""
    _admin(client)
    r = client.post("/api/admin/organizers",
                    json={"name": "Night Owls", "email": "owls@example.com"})
    assert r.status_code == 200
    api_key = r.json()["api_key"]
    client.get("/admin/logout")

    r = client.post("/organizer/login", data={"api_key": api_key})
    assert r.status_code == 200
    event_id = client.post("/api/organizer/events",
                           json={"title": "Owls Live",
                                 "province": "BC"}).json()["event_id"]
    tier_id = client.post(f"/api/organizer/events/{event_id}/tiers",
                          json={"name": "GA", "price_cents": 5000,
                                "capacity": 2}).json()["tier_id"]
    r = client.post(f"/api/organizer/events/{event_id}/publish")
    assert r.json()["status"] == "published"
    return event_id, tier_id


def _checkout(client, event_id, tier_id, qty=1):
    return client.post("/api/checkout", json={
        "event_id": event_id,
        "items": [{"tier_id": tier_id, "quantity": qty}],
        "buyer_email": "buyer@example.com",
    })


def test_buyer_flow_end_to_end(client):
    event_id, tier_id = _organizer(client)

    r = _checkout(client, event_id, tier_id, 2)
    assert r.status_code == 200
    body = r.json()
    assert body["amount"] == 11200
    order_id = body["order_id"]
    psid = body["redirect_url"].rsplit("/", 1)[-1]

    assert client.get(f"/api/orders/{order_id}").json()["status"] \
        == "pending"
    screen = client.get(f"/mockpay/{psid}").json()
    assert screen["order_id"] == order_id

    r = client.post(f"/mockpay/{psid}/emit", data={"t": "succeeded"})
    assert r.json()["delivered"] == 2

    order = client.get(f"/api/orders/{order_id}").json()
    assert order["status"] == "paid"
    assert len(order["tickets"]) == 2
    assert order["tickets"][0]["credential"].startswith("boxoffice:ticket:")

    inv = client.get(f"/api/events/{event_id}/inventory").json()
    [tier] = inv["tiers"]
    assert tier["sold"] == 2
    assert tier["sold_out"]

    r = _checkout(client, event_id, tier_id)
    assert r.status_code == 409
    assert r.json()["error"] == "sold_out"

    balance = client.get("/api/organizer/balance").json()
    assert balance["balance_cents"] == 9650


def test_webhook_rejects_bad_signatures(client):
    payload = orjson.dumps({"type": "checkout.completed",
                            "idempotency_key": "evt_1"})
    r = client.post("/payments/webhook", content=payload,
                    headers={SIGNATURE_HEADER: "forged"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_signature"

    r = client.post("/payments/webhook", content=payload)
    assert r.status_code == 400


def test_webhook_deliveries_are_idempotent(client, provider):
    event_id, tier_id = _organizer(client)
    body = _checkout(client, event_id, tier_id).json()
    psid = body["redirect_url"].rsplit("/", 1)[-1]

    events = provider.build_events(
        "succeeded", order_id=body["order_id"], payment_session_id=psid,
        payment_intent_id=None, amount_cents=body["amount"],
        currency=body["currency"],
    )
    for ev in events:
        payload, headers = provider.encode(ev)
        first = client.post("/payments/webhook", content=payload,
                            headers=headers)
        second = client.post("/payments/webhook", content=payload,
                             headers=headers)
        assert first.status_code == 200
        assert not first.json()["idempotent"]
        assert second.json()["idempotent"]

    order = client.get(f"/api/orders/{body['order_id']}").json()
    assert order["status"] == "paid"
    assert len(order["tickets"]) == 1


def test_check_in_over_http(client):
    event_id, tier_id = _organizer(client)
    body = _checkout(client, event_id, tier_id).json()
    psid = body["redirect_url"].rsplit("/", 1)[-1]
    client.post(f"/mockpay/{psid}/emit", data={"t": "succeeded"})
    [ticket] = client.get(f"/api/orders/{body['order_id']}").json()["tickets"]
    token = ticket["credential"].split(":")[-1]

    r = client.post("/api/check-in",
                    json={"event_id": event_id, "scan_token": token})
    assert r.status_code == 200
    assert r.json()["ticket"]["status"] == "used"

    r = client.post("/api/check-in",
                    json={"event_id": event_id, "scan_token": token})
    assert r.status_code == 409


def test_organizer_endpoints_need_a_login(client):
    assert client.get("/api/organizer/balance").status_code == 403
    r = client.post("/organizer/login", data={"api_key": "bo_wrong"})
    assert r.status_code == 403


def test_api_key_header_works_without_a_session(client):
    _admin(client)
    api_key = client.post("/api/admin/organizers", json={
        "name": "Owls", "email": "owls@example.com",
    }).json()["api_key"]
    client.get("/admin/logout")
    r = client.get("/api/organizer/balance", headers={"x-api-key": api_key})
    assert r.status_code == 200
    assert r.json()["balance_cents"] == 0


def test_admin_endpoints_need_admin(client):
    assert client.post("/api/admin/reservations/sweep").status_code == 403
    r = client.post("/admin/login",
                    data={"username": "admin", "password": "nope"})
    assert r.status_code == 401
    _admin(client)
    assert client.post("/api/admin/reservations/sweep").json() \
        == {"swept": 0}
    assert "items" in client.get("/api/admin/timings").json()


def test_organizer_can_resend_tickets(client):
    event_id, tier_id = _organizer(client)
    body = _checkout(client, event_id, tier_id, 2).json()
    order_id = body["order_id"]

    r = client.post(f"/api/orders/{order_id}/resend")
    assert r.status_code == 409

    psid = body["redirect_url"].rsplit("/", 1)[-1]
    client.post(f"/mockpay/{psid}/emit", data={"t": "succeeded"})
    r = client.post(f"/api/orders/{order_id}/resend")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "order_id": order_id, "tickets": 2}


def _paid_order(client, qty=2):
    event_id, tier_id = _organizer(client)
    body = _checkout(client, event_id, tier_id, qty).json()
    psid = body["redirect_url"].rsplit("/", 1)[-1]
    client.post(f"/mockpay/{psid}/emit", data={"t": "succeeded"})
    return event_id, body["order_id"], psid


def test_organizer_refunds_a_whole_order(client):
    event_id, order_id, _ = _paid_order(client)

    r = client.post(f"/api/orders/{order_id}/refund",
                    json={"reason": "event cancelled"})
    assert r.status_code == 200
    body = r.json()
    assert body["amount_cents"] == 11200
    assert body["tickets_refunded"] == 2
    assert body["order_status"] == "refunded"

    order = client.get(f"/api/orders/{order_id}").json()
    assert {t["status"] for t in order["tickets"]} == {"refunded"}
    assert client.get("/api/organizer/balance").json()["balance_cents"] == 0

    r = client.post(f"/api/orders/{order_id}/refund", json={})
    assert r.status_code == 409


def test_event_orders_and_attendee_edit(client):
    event_id, order_id, _ = _paid_order(client, qty=1)

    r = client.get(f"/api/organizer/events/{event_id}/orders")
    [listed] = r.json()["items"]
    assert listed["order_id"] == order_id
    assert listed["status"] == "paid"
    assert listed["buyer_email"] == "buyer@example.com"
    assert client.get(f"/api/organizer/events/{event_id}/orders",
                      params={"status": "pending"}).json()["items"] == []
    assert client.get(f"/api/organizer/events/{event_id}/orders",
                      params={"status": "bogus"}).status_code == 400

    [ticket] = client.get(f"/api/orders/{order_id}").json()["tickets"]
    r = client.patch(f"/api/tickets/{ticket['ticket_id']}/attendee",
                     json={"name": "Guest", "email": "guest@example.com"})
    assert r.status_code == 200
    assert r.json()["ticket"]["holder_email"] == "guest@example.com"
    assert r.json()["ticket"]["serial"] == ticket["serial"]


def test_payouts_are_listed(client):
    _paid_order(client)
    assert client.get("/api/organizer/payouts").json() == {"items": []}

    r = client.post("/api/organizer/payouts",
                    json={"period_start": 0, "period_end": 4102444800})
    assert r.status_code == 200
    [payout] = client.get("/api/organizer/payouts").json()["items"]
    assert payout["id"] == r.json()["id"]
    assert payout["total_cents"] == 9650
    assert payout["status"] == "draft"


def test_mockpay_emit_cannot_refund(client):
    _, order_id, psid = _paid_order(client)
    r = client.post(f"/mockpay/{psid}/emit", data={"t": "refunded"})
    assert r.status_code == 400
    assert client.get(f"/api/orders/{order_id}").json()["status"] == "paid"
