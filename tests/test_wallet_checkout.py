import json
from urllib.parse import urlparse, parse_qs

import pytest
import requests
from models import contests_store, notifications_store, payments_store
from tests.utils import (
    login_user, make_contest, FakePayPalHttp, FakeResponse,
    paypal_order, paypal_captured, paypal_event, PAYPAL_TRANSMISSION,
)

ORDER = "5O190127TN364715T"
CAPTURE = "3C679366HH908993F"


@pytest.fixture
def paypal_env(monkeypatch):
    monkeypatch.setenv("PAYPAL_CLIENT_ID", "cid")
    monkeypatch.setenv("PAYPAL_CLIENT_SECRET", "csecret")
    monkeypatch.setenv("PAYPAL_WEBHOOK_ID", "WH-ID-1")


def _setup(gateways, client, alice, routes=None):
    base = {
        ("post", "/v2/checkout/orders"): FakeResponse(201, paypal_order(ORDER)),
        ("post", "/capture"): FakeResponse(201, paypal_captured(ORDER, CAPTURE)),
        ("post", "/verify-webhook-signature"): FakeResponse(200, {"verification_status": "SUCCESS"}),
    }
    base.update(routes or {})
    http = FakePayPalHttp(base)
    gateways(paypal=http)
    login_user(client, *alice)
    c = make_contest(budget="2000.00")
    r = client.post("/payments/paypal", json={"contestId": c["id"]})
    assert r.status_code == 200
    return http, c, r.get_json()


def _qs(resp):
    return parse_qs(urlparse(resp.headers["Location"]).query)


def test_order_created_with_capture_intent(client, gateways, alice, paypal_env):
    http, c, body = _setup(gateways, client, alice)
    assert body["orderId"] == ORDER
    assert body["redirectUrl"] == f"https://www.paypal.com/checkoutnow?token={ORDER}"

    method, url, kw = [call for call in http.calls if call[1].endswith("/v2/checkout/orders")][0]
    assert url.startswith("https://api-m.paypal.com")
    sent = json.loads(kw["data"])
    assert sent["intent"] == "CAPTURE"
    assert sent["purchase_units"][0]["amount"] == {"currency_code": "EUR", "value": "100.00"}
    ctx = sent["payment_source"]["paypal"]["experience_context"]
    assert ctx["return_url"] == "http://api.test/payments/wallet/capture"
    assert kw["headers"]["Authorization"] == "Bearer A21"
    assert kw["headers"]["PayPal-Request-Id"].startswith(f"contest-{c['id']}-")
    assert kw["timeout"] == 15.0
    assert payments_store.find_by_provider_order_id("WALLET", ORDER)["status"] == "PENDING"


def test_sandbox_mode_uses_sandbox_host(client, gateways, alice, paypal_env, monkeypatch):
    monkeypatch.setenv("PAYPAL_SANDBOX_MODE", "true")
    http, _, _ = _setup(gateways, client, alice)
    assert all(url.startswith("https://api-m.sandbox.paypal.com") for _, url, _ in http.calls)


def test_return_captures_and_completes(client, gateways, alice, paypal_env):
    http, c, _ = _setup(gateways, client, alice)
    r = client.get(f"/payments/paypal/capture?token={ORDER}&PayerID=PAYER1")
    assert r.status_code == 302
    assert _qs(r) == {"payment": ["success"], "contestId": [c["id"]]}

    p = payments_store.find_by_provider_order_id("WALLET", ORDER)
    assert p["status"] == "COMPLETED"
    assert p["provider_payment_id"] == CAPTURE
    assert contests_store.get_contest(c["id"])["status"] == "OPEN"

    # reload of the return page: no second capture, same answer
    r2 = client.get(f"/payments/paypal/capture?token={ORDER}&PayerID=PAYER1")
    assert _qs(r2)["payment"] == ["success"]
    assert http.count("post", "/capture") == 1
    assert notifications_store.count_for_user("alice", "PAYMENT_RECEIVED") == 1


def test_already_captured_order_reads_existing_capture(client, gateways, alice, paypal_env):
    already = FakeResponse(422, {"name": "UNPROCESSABLE_ENTITY",
                                 "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]})
    _, c, _ = _setup(gateways, client, alice)
    http = FakePayPalHttp({
        ("post", "/capture"): already,
        ("get", f"/v2/checkout/orders/{ORDER}"): FakeResponse(200, paypal_captured(ORDER, CAPTURE)),
    })
    gateways(paypal=http)

    r = client.get(f"/payments/wallet/capture?token={ORDER}")
    assert _qs(r)["payment"] == ["success"]
    assert payments_store.find_by_provider_order_id("WALLET", ORDER)["status"] == "COMPLETED"


def test_declined_capture_fails_payment(client, gateways, alice, paypal_env):
    _, c, _ = _setup(gateways, client, alice)
    gateways(paypal=FakePayPalHttp({
        ("post", "/capture"): FakeResponse(201, paypal_captured(ORDER, CAPTURE, status="DECLINED")),
    }))
    r = client.get(f"/payments/paypal/capture?token={ORDER}")
    assert _qs(r) == {"payment": ["failed"], "contestId": [c["id"]], "reason": ["capture_declined"]}
    assert payments_store.find_by_provider_order_id("WALLET", ORDER)["status"] == "FAILED"
    assert contests_store.get_contest(c["id"])["status"] == "PENDING_APPROVAL"


def test_provider_down_during_capture_changes_nothing(client, gateways, alice, paypal_env):
    _, c, _ = _setup(gateways, client, alice)
    gateways(paypal=FakePayPalHttp({
        ("post", "/capture"): requests.ConnectionError("connection reset"),
    }))
    r = client.get(f"/payments/paypal/capture?token={ORDER}")
    assert _qs(r) == {"payment": ["failed"], "contestId": [c["id"]],
                      "reason": ["provider_unavailable"]}
    assert payments_store.find_by_provider_order_id("WALLET", ORDER)["status"] == "PENDING"


def test_approved_webhook_captures(client, gateways, alice, paypal_env):
    http, c, _ = _setup(gateways, client, alice)
    body = paypal_event("CHECKOUT.ORDER.APPROVED", {"id": ORDER, "status": "APPROVED"})
    r = client.post("/webhooks/paypal", data=body,
                    headers={**PAYPAL_TRANSMISSION, "Content-Type": "application/json"})
    assert r.status_code == 200

    p = payments_store.find_by_provider_order_id("WALLET", ORDER)
    assert p["status"] == "COMPLETED"
    assert contests_store.get_contest(c["id"])["status"] == "OPEN"

    verify = [kw for _, url, kw in http.calls if url.endswith("/verify-webhook-signature")][0]
    sent = json.loads(verify["data"])
    assert sent["webhook_id"] == "WH-ID-1"
    assert sent["transmission_id"] == "tx-1"
    assert sent["webhook_event"]["event_type"] == "CHECKOUT.ORDER.APPROVED"


def test_capture_completed_webhook_uses_related_order(client, gateways, alice, paypal_env):
    _, c, _ = _setup(gateways, client, alice)
    body = paypal_event("PAYMENT.CAPTURE.COMPLETED", {
        "id": CAPTURE, "status": "COMPLETED",
        "supplementary_data": {"related_ids": {"order_id": ORDER}},
    })
    r = client.post("/webhooks/wallet", data=body, headers=PAYPAL_TRANSMISSION)
    assert r.status_code == 200
    p = payments_store.find_by_provider_order_id("WALLET", ORDER)
    assert (p["status"], p["provider_payment_id"]) == ("COMPLETED", CAPTURE)


def test_denied_capture_webhook_fails(client, gateways, alice, paypal_env):
    _setup(gateways, client, alice)
    body = paypal_event("PAYMENT.CAPTURE.DENIED", {
        "id": CAPTURE, "supplementary_data": {"related_ids": {"order_id": ORDER}},
    })
    client.post("/webhooks/paypal", data=body, headers=PAYPAL_TRANSMISSION)
    p = payments_store.find_by_provider_order_id("WALLET", ORDER)
    assert p["status"] == "FAILED"
    assert p["metadata"]["failureReason"] == "denied"


def test_rejected_transmission_is_401(client, gateways, alice, paypal_env):
    _setup(gateways, client, alice, {
        ("post", "/verify-webhook-signature"): FakeResponse(200, {"verification_status": "FAILURE"}),
    })
    body = paypal_event("PAYMENT.CAPTURE.COMPLETED", {
        "id": CAPTURE, "supplementary_data": {"related_ids": {"order_id": ORDER}},
    })
    r = client.post("/webhooks/paypal", data=body, headers=PAYPAL_TRANSMISSION)
    assert r.status_code == 401
    assert payments_store.find_by_provider_order_id("WALLET", ORDER)["status"] == "PENDING"
