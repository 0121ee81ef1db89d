from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import timedelta

import sqlalchemy as sa

from creatorpay.core.config import settings
from creatorpay.core.errors import GatewayDeclined, GatewayTransient
from creatorpay.models.billing import BillingWebhookEvent, Subscription
from creatorpay.models.notification import Notification, Presence
from creatorpay.services.presence import is_online, purge_expired, touch
from tests.testkit import T0, auth, make_account, make_creator, make_offer, payment_event


def _signed(body: dict) -> tuple[bytes, dict]:
    raw = json.dumps(body).encode("utf-8")
    digest = hmac.new(
        settings.BILLING_WEBHOOK_SIGNATURE_KEY.encode("utf-8"),
        settings.BILLING_WEBHOOK_NOTIFICATION_URL.encode("utf-8") + raw,
        hashlib.sha256,
    ).digest()
    return raw, {"x-square-hmacsha256-signature": base64.b64encode(digest).decode("ascii"), "Content-Type": "application/json"}


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.headers["X-Content-Type-Options"] == "nosniff"


def test_requests_need_a_valid_token(client, db):
    assert client.get("/wallet/balance", headers={"Authorization": "Bearer nope"}).status_code == 401

    blocked = make_account(db, "blocked", status="blocked")
    assert client.get("/wallet/balance", headers=auth(blocked)).status_code == 403


def test_subscribe_then_wallet_and_listing(client, db):
    fan, creator = make_account(db, "fan"), make_creator(db, price_minor=1000)

    res = client.post("/subscriptions", json={"creatorId": str(creator.id), "paymentSourceToken": "cnon:ok"}, headers=auth(fan))
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["status"] == "ACTIVE"
    assert body["priceMinor"] == 1000
    assert body["hasAccess"] is True

    again = client.post("/subscriptions", json={"creatorId": str(creator.id), "paymentSourceToken": "cnon:ok"}, headers=auth(fan))
    assert again.status_code == 409

    balance = client.get("/wallet/balance", headers=auth(fan)).json()
    assert balance == {"balance": -1000, "totalEarnings": 0, "totalSpent": 1000, "currency": "USD"}
    earned = client.get("/wallet/balance", headers=auth(creator)).json()
    assert earned["balance"] == 800 and earned["totalEarnings"] == 800

    txs = client.get("/wallet/transactions", headers=auth(fan)).json()
    assert txs["total"] == 1
    assert txs["items"][0]["type"] == "SUBSCRIPTION_PAYMENT"
    assert txs["items"][0]["amountMinor"] == -1000

    mine = client.get("/subscriptions?status=ACTIVE", headers=auth(fan)).json()
    assert mine["total"] == 1
    subscribers = client.get("/subscriptions/subscribers", headers=auth(creator)).json()
    assert subscribers["items"][0]["subscriberId"] == str(fan.id)

    kinds = set(db.execute(sa.select(Notification.kind)).scalars())
    assert {"NEW_SUBSCRIBER", "SUBSCRIPTION_STARTED"} <= kinds


def test_subscribe_error_mapping(client, db, gateway):
    fan, creator = make_account(db, "fan"), make_creator(db)
    url_body = {"creatorId": str(creator.id), "paymentSourceToken": "cnon:ok"}

    assert client.post("/subscriptions", json={**url_body, "creatorId": str(fan.id)}, headers=auth(fan)).status_code == 400
    plain = make_account(db, "plain")
    assert client.post("/subscriptions", json={**url_body, "creatorId": str(plain.id)}, headers=auth(fan)).status_code == 404

    gateway.outcomes = [GatewayDeclined("declined", code="CARD_DECLINED")]
    declined = client.post("/subscriptions", json=url_body, headers=auth(fan))
    assert declined.status_code == 402
    assert "CARD_DECLINED" not in declined.text

    gateway.outcomes = [GatewayTransient("timeout")] * 3
    transient = client.post("/subscriptions", json=url_body, headers=auth(fan))
    assert transient.status_code == 503
    assert transient.headers["Retry-After"] == "30"
    assert db.execute(sa.select(Subscription.status)).scalars().all() == ["PENDING"]

    retried = client.post("/subscriptions", json=url_body, headers=auth(fan))
    assert retried.status_code == 201
    assert retried.json()["status"] == "ACTIVE"


def test_pending_charge_answers_202(client, db, gateway):
    fan, creator = make_account(db, "fan"), make_creator(db)
    gateway.outcomes = ["PENDING"]

    res = client.post("/subscriptions", json={"creatorId": str(creator.id), "paymentSourceToken": "cnon:ok"}, headers=auth(fan))
    assert res.status_code == 202
    assert res.json()["status"] == "PENDING"
    assert res.json()["hasAccess"] is False


def test_cancel_endpoint(client, db):
    fan, creator = make_account(db, "fan"), make_creator(db)
    sub_id = client.post(
        "/subscriptions", json={"creatorId": str(creator.id), "paymentSourceToken": "cnon:ok"}, headers=auth(fan)
    ).json()["id"]

    assert client.delete(f"/subscriptions/{sub_id}", headers=auth(creator)).status_code == 404
    assert client.delete("/subscriptions/not-a-uuid", headers=auth(fan)).status_code == 404

    scheduled = client.delete(f"/subscriptions/{sub_id}", headers=auth(fan))
    assert scheduled.status_code == 200
    assert scheduled.json()["status"] == "ACTIVE"
    assert scheduled.json()["cancelAtPeriodEnd"] is True

    now = client.delete(f"/subscriptions/{sub_id}?immediate=true", headers=auth(fan))
    assert now.json()["status"] == "CANCELED"
    assert now.json()["hasAccess"] is False


def test_purchase_and_refund_endpoints(client, db):
    creator, buyer = make_creator(db), make_account(db, "buyer")
    offer = make_offer(db, creator, price_minor=500)

    res = client.post("/purchases", json={"postId": str(offer.post_id), "paymentSourceToken": "cnon:ok"}, headers=auth(buyer))
    assert res.status_code == 201
    purchase = res.json()
    assert purchase["status"] == "COMPLETED"

    assert client.post("/purchases", json={"postId": str(offer.post_id), "paymentSourceToken": "cnon:ok"}, headers=auth(buyer)).status_code == 409
    assert client.post(f"/purchases/{purchase['id']}/refund", json={}, headers=auth(buyer)).status_code == 404
    assert client.post(f"/purchases/{purchase['id']}/refund", json={"amount": 0}, headers=auth(creator)).status_code == 422

    refund = client.post(f"/purchases/{purchase['id']}/refund", json={"reason": "duplicate"}, headers=auth(creator))
    assert refund.status_code == 201
    assert refund.json()["amountMinor"] == 500
    assert refund.json()["status"] == "COMPLETED"

    assert client.get("/wallet/balance", headers=auth(buyer)).json()["balance"] == 0
    refunds = client.get("/wallet/transactions?type=REFUND", headers=auth(buyer)).json()
    assert refunds["items"][0]["amountMinor"] == 500
    assert refunds["items"][0]["externalPaymentRef"] == purchase["externalPaymentRef"]


def test_tip_endpoint(client, db):
    fan, creator = make_account(db, "fan"), make_creator(db)

    res = client.post(
        "/payments/tips",
        json={"receiverId": str(creator.id), "amount": 500, "paymentSourceToken": "cnon:ok"},
        headers=auth(fan),
    )
    assert res.status_code == 201
    assert res.json()["platformFee"] == 100
    assert client.post(
        "/payments/tips",
        json={"receiverId": str(creator.id), "amount": 50, "paymentSourceToken": "cnon:ok"},
        headers=auth(fan),
    ).status_code == 422


def test_customer_endpoint_is_idempotent(client, db, gateway):
    fan = make_account(db, "fan")
    first = client.post("/payments/customer", headers=auth(fan)).json()
    second = client.post("/payments/customer", headers=auth(fan)).json()
    assert first["externalCustomerId"] == second["externalCustomerId"]
    assert len(gateway.customers) == 1


def test_webhook_signature_and_payload_checks(client, db, gateway):
    fan, creator = make_account(db, "fan"), make_creator(db)
    gateway.outcomes = ["PENDING"]
    client.post("/subscriptions", json={"creatorId": str(creator.id), "paymentSourceToken": "cnon:ok"}, headers=auth(fan))

    raw, headers = _signed(payment_event("evt_1", "pay_1", "COMPLETED"))
    assert client.post("/payments/webhook", content=raw, headers={"Content-Type": "application/json"}).status_code == 401
    bad = {**headers, "x-square-hmacsha256-signature": "AAAA"}
    assert client.post("/payments/webhook", content=raw, headers=bad).status_code == 401

    ok = client.post("/payments/webhook", content=raw, headers=headers)
    assert ok.status_code == 200
    assert ok.json()["processed"] is True
    assert ok.json()["duplicate"] is False

    dup = client.post("/payments/webhook", content=raw, headers=headers)
    assert dup.status_code == 200
    assert dup.json()["duplicate"] is True

    assert db.execute(sa.select(Subscription.status)).scalars().one() == "ACTIVE"
    assert db.execute(sa.select(sa.func.count()).select_from(BillingWebhookEvent)).scalar_one() == 1

    broken_raw, broken_headers = _signed({"event_id": "evt_2", "type": "payment.updated", "data": {}})
    assert client.post("/payments/webhook", content=broken_raw, headers=broken_headers).status_code == 400

    not_json = b"{not json"
    digest = hmac.new(
        settings.BILLING_WEBHOOK_SIGNATURE_KEY.encode("utf-8"),
        settings.BILLING_WEBHOOK_NOTIFICATION_URL.encode("utf-8") + not_json,
        hashlib.sha256,
    ).digest()
    res = client.post(
        "/payments/webhook",
        content=not_json,
        headers={"x-square-hmacsha256-signature": base64.b64encode(digest).decode("ascii")},
    )
    assert res.status_code == 400


def test_heartbeat_marks_account_online(client, db):
    fan = make_account(db, "fan")
    res = client.post("/presence/heartbeat", headers=auth(fan))
    assert res.status_code == 200
    assert db.get(Presence, fan.id) is not None


def test_presence_lapses_and_is_purged(db):
    fan = make_account(db, "fan")
    touch(db, fan.id, now=T0, ttl_seconds=60)
    db.commit()

    assert is_online(db, fan.id, now=T0 + timedelta(seconds=30))
    assert not is_online(db, fan.id, now=T0 + timedelta(seconds=120))
    assert purge_expired(db, now=T0 + timedelta(seconds=120)) == 1
    db.commit()
    assert db.get(Presence, fan.id) is None
