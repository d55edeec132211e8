import pytest
import stripe
from models import payments_store
from services.payments.base import Provider, PaymentCompleted
from tests.utils import login_user, make_contest, FakeStripeClient


@pytest.fixture
def stripe_ready(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")


def test_requires_login(client):
    r = client.post("/payments/card", json={"contestId": "x"})
    assert r.status_code == 401


def test_missing_contest_id(client, gateways, alice, stripe_ready):
    gateways()
    login_user(client, *alice)
    r = client.post("/payments/card", json={})
    assert r.status_code == 400
    assert r.get_json()["error"] == "contest_id_required"


@pytest.mark.parametrize("body,status,reason", [
    ({"contestId": 123}, 404, "contest_not_found"),
    ([{"contestId": "x"}], 400, "invalid_body"),
    ("just a string", 400, "invalid_body"),
])
def test_odd_json_bodies_are_client_errors(client, gateways, alice, stripe_ready,
                                           body, status, reason):
    gateways()
    login_user(client, *alice)
    r = client.post("/payments/card", json=body)
    assert r.status_code == status
    assert r.get_json()["error"] == reason


def test_unknown_contest(client, gateways, alice, stripe_ready):
    gateways()
    login_user(client, *alice)
    r = client.post("/payments/card", json={"contestId": "does-not-exist"})
    assert r.status_code == 404
    assert r.get_json()["error"] == "contest_not_found"


def test_only_owner_can_pay(client, gateways, alice, bob, stripe_ready):
    fake = FakeStripeClient()
    gateways(stripe=fake)
    c = make_contest(client_id="alice")
    login_user(client, *bob)
    r = client.post("/payments/card", json={"contestId": c["id"]})
    assert r.status_code == 403
    assert r.get_json()["error"] == "not_contest_owner"
    assert fake.calls == []


def test_contest_must_be_pending_approval(client, gateways, alice, stripe_ready):
    gateways()
    c = make_contest(status="OPEN")
    login_user(client, *alice)
    r = client.post("/payments/card", json={"contestId": c["id"]})
    assert r.status_code == 400
    assert r.get_json()["error"] == "contest_not_pending_payment"


def test_second_checkout_conflicts_without_calling_provider(client, gateways, alice, stripe_ready):
    fake = FakeStripeClient()
    gateways(stripe=fake)
    c = make_contest()
    login_user(client, *alice)
    assert client.post("/payments/card", json={"contestId": c["id"]}).status_code == 200

    r = client.post("/payments/wallet", json={"contestId": c["id"]})
    assert r.status_code == 409
    assert r.get_json()["error"] == "payment_already_exists"
    assert len(fake.calls) == 1


def test_unconfigured_provider_is_503_and_writes_nothing(client, gateways, alice):
    gateways()
    c = make_contest()
    login_user(client, *alice)
    r = client.post("/payments/card", json={"contestId": c["id"]})
    assert r.status_code == 503
    assert r.get_json()["error"] == "provider_not_configured"
    assert payments_store.list_payments_for_contest(c["id"]) == []


def test_disabled_provider_is_503(client, gateways, alice, stripe_ready, monkeypatch):
    monkeypatch.setenv("STRIPE_ENABLED", "false")
    gateways()
    c = make_contest()
    login_user(client, *alice)
    r = client.post("/payments/card", json={"contestId": c["id"]})
    assert r.status_code == 503
    assert r.get_json()["error"] == "provider_disabled"


def test_no_fallback_to_other_provider(client, gateways, alice, stripe_ready, monkeypatch):
    # card configured, wallet not: wallet requests fail instead of using card
    fake = FakeStripeClient()
    gateways(stripe=fake)
    c = make_contest()
    login_user(client, *alice)
    r = client.post("/payments/paypal", json={"contestId": c["id"]})
    assert r.status_code == 503
    assert fake.calls == []


@pytest.mark.parametrize("error,status", [
    (stripe.APIConnectionError("network down"), 502),
    (stripe.AuthenticationError("bad key"), 503),
])
def test_provider_errors_write_nothing(client, gateways, alice, stripe_ready, error, status):
    gateways(stripe=FakeStripeClient(error=error))
    c = make_contest()
    login_user(client, *alice)
    r = client.post("/payments/card", json={"contestId": c["id"]})
    assert r.status_code == status
    assert payments_store.list_payments_for_contest(c["id"]) == []


def test_unknown_provider_slug(client, alice):
    login_user(client, *alice)
    assert client.post("/payments/bitcoin", json={"contestId": "x"}).status_code == 404


def test_contest_payment_polling(client, gateways, alice, bob, stripe_ready):
    gateways()
    c = make_contest()
    login_user(client, *alice)
    r = client.get(f"/contests/{c['id']}/payment")
    assert r.get_json() == {"contestId": c["id"], "contestStatus": "PENDING_APPROVAL",
                            "payment": None}

    client.post("/payments/card", json={"contestId": c["id"]})
    body = client.get(f"/contests/{c['id']}/payment").get_json()
    assert body["payment"]["status"] == "PENDING"
    assert body["payment"]["amount"] == "100.00"
    assert body["payment"]["provider"] == "CARD"

    client.post("/logout")
    login_user(client, *bob)
    assert client.get(f"/contests/{c['id']}/payment").status_code == 403


def test_notifications_list_and_mark_read(client, gateways, alice):
    coord = gateways()
    c = make_contest()
    payments_store.create_payment(provider="CARD", provider_order_id="cs_1", contest_id=c["id"],
                                  user_id="alice", amount=100, currency="EUR")
    coord.handle_event(Provider.CARD, PaymentCompleted("cs_1", "pi_1"))

    login_user(client, *alice)
    items = client.get("/me/notifications").get_json()["notifications"]
    assert len(items) == 1
    assert items[0]["type"] == "PAYMENT_RECEIVED"
    assert items[0]["link"] == f"/contests/{c['id']}"
    assert items[0]["read"] is False

    assert client.post(f"/me/notifications/{items[0]['id']}/read").status_code == 200
    assert client.get("/me/notifications?unread=1").get_json()["notifications"] == []
    assert client.post("/me/notifications/999999/read").status_code == 404


def test_admin_refund_override(client, gateways, alice, admin_user):
    coord = gateways()
    c = make_contest()
    p = payments_store.create_payment(provider="CARD", provider_order_id="cs_1",
                                      contest_id=c["id"], user_id="alice", amount=100,
                                      currency="EUR")
    login_user(client, *alice)
    assert client.post(f"/admin/payments/{p['id']}/refund").status_code == 403
    client.post("/logout")

    login_user(client, *admin_user)
    r = client.post(f"/admin/payments/{p['id']}/refund")
    assert r.status_code == 200
    assert r.get_json()["payment"]["status"] == "REFUNDED"
    assert client.post("/admin/payments/424242/refund").status_code == 404

    c2 = make_contest(title="Paid already")
    p2 = payments_store.create_payment(provider="CARD", provider_order_id="cs_2",
                                       contest_id=c2["id"], user_id="alice", amount=100,
                                       currency="EUR")
    coord.handle_event(Provider.CARD, PaymentCompleted("cs_2", "pi_2"))
    r = client.post(f"/admin/payments/{p2['id']}/refund")
    assert r.status_code == 409
    assert r.get_json()["error"] == "invalid_transition"
