import hashlib
import hmac
import json
import time
from types import SimpleNamespace

from models import contests_store


# tests/utils.py
def login_user(client, username, password):
    return client.post("/login", json={"username": username, "password": password})


def make_contest(client_id="alice", budget="2000.00", title="Logo for a bakery",
                 status="PENDING_APPROVAL"):
    return contests_store.create_contest(title, budget, client_id, status=status)


def stripe_headers(secret: str, body: bytes, timestamp: int | None = None) -> dict:
    """Stripe-Signature header as Stripe computes it: v1 = HMAC-SHA256(secret, "t.body")."""
    t = int(timestamp if timestamp is not None else time.time())
    signed = f"{t}.".encode("utf-8") + body
    v1 = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={t},v1={v1}", "Content-Type": "application/json"}


def stripe_event(event_type: str, session_id: str, *, event_id="evt_1",
                 payment_status="paid", payment_intent="pi_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": payment_status,
            "payment_intent": payment_intent,
        }},
    }).encode("utf-8")


def paypal_event(event_type: str, resource: dict, *, event_id="WH-1") -> bytes:
    return json.dumps({"id": event_id, "event_type": event_type,
                       "resource": resource}).encode("utf-8")


PAYPAL_TRANSMISSION = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2026-10-19T10:00:00Z",
}


# ---- provider fakes ----

class FakeStripeClient:
    """Stands in for stripe.StripeClient: only checkout.sessions.create is used."""

    def __init__(self, session_id="cs_test_1", error=None):
        self.calls = []
        self.options = []
        self.error = error
        self.session_id = session_id
        self.checkout = SimpleNamespace(sessions=SimpleNamespace(create=self._create))

    def _create(self, params, options=None):
        self.calls.append(params)
        self.options.append(options or {})
        if self.error:
            raise self.error
        return SimpleNamespace(id=self.session_id,
                               url=f"https://checkout.stripe.test/{self.session_id}")

    def factory(self, secret_key, timeout):
        self.secret_key = secret_key
        self.timeout = timeout
        return self


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}

    def json(self):
        return self._payload


class FakePayPalHttp:
    """
    requests-shaped fake for the PayPal REST API. Responses are looked up by
    (method, path suffix); calls are recorded.
    """

    def __init__(self, routes=None):
        self.calls = []
        self.routes = {("post", "/v1/oauth2/token"): FakeResponse(200, {"access_token": "A21"})}
        self.routes.update(routes or {})

    def _dispatch(self, method, url, **kw):
        self.calls.append((method, url, kw))
        for (m, suffix), resp in self.routes.items():
            if m == method and url.endswith(suffix):
                if isinstance(resp, Exception):
                    raise resp
                return resp
        return FakeResponse(404, {"name": "RESOURCE_NOT_FOUND"})

    def post(self, url, **kw):
        return self._dispatch("post", url, **kw)

    def get(self, url, **kw):
        return self._dispatch("get", url, **kw)

    def count(self, method, suffix):
        return sum(1 for m, u, _ in self.calls if m == method and u.endswith(suffix))


def paypal_order(order_id="5O190127TN364715T", status="CREATED"):
    return {
        "id": order_id,
        "status": status,
        "links": [
            {"rel": "self", "href": f"https://api-m.paypal.com/v2/checkout/orders/{order_id}"},
            {"rel": "payer-action", "href": f"https://www.paypal.com/checkoutnow?token={order_id}"},
        ],
    }


def paypal_captured(order_id="5O190127TN364715T", capture_id="3C679366HH908993F",
                    status="COMPLETED"):
    return {
        "id": order_id,
        "status": status,
        "purchase_units": [{"payments": {"captures": [{"id": capture_id, "status": status}]}}],
    }
