# services/payments/wallet_provider.py
"""
Wallet / pay-later checkout through the PayPal Orders v2 REST API.

Orders are created with intent=CAPTURE; the payer approves on PayPal and is
sent back to our capture endpoint, which calls capture_order(). The
CHECKOUT.ORDER.APPROVED webhook may trigger the same capture, so capturing an
already captured order returns the existing capture instead of failing.

Configuration (SettingsStore first, then environment):
  PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET   OAuth2 client credentials
  PAYPAL_SANDBOX_MODE                       "true" -> api-m.sandbox.paypal.com
  PAYPAL_WEBHOOK_ID                         used to verify webhook transmissions
  PAYMENT_HTTP_TIMEOUT                      seconds (default 15)
"""

from __future__ import annotations
import json
import logging
import os
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

import requests
from flask import current_app, has_app_context

from services.payments.base import (
    Provider, OrderResult, CaptureResult, ProviderEvent,
    OrderApproved, PaymentCompleted, PaymentFailed, UnrecognizedEvent,
)
from services.payments.errors import ConfigurationError, ProviderCommunicationError
from services.payments.money import format_amount
from services.settings import SettingsStore, WalletSettings

log = logging.getLogger(__name__)

LIVE_URL = "https://api-m.paypal.com"
SANDBOX_URL = "https://api-m.sandbox.paypal.com"

_TRANSMISSION_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


def _cfg(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    if v is not None:
        return v
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _first_capture(order: Dict[str, Any]) -> Dict[str, Any]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return {}


class WalletGateway:
    provider = Provider.WALLET
    supports_capture = True

    def __init__(self, settings: SettingsStore, http=requests):
        self.settings = settings
        self.http = http  # anything with requests' post/get signature
        self.timeout = float(_cfg("PAYMENT_HTTP_TIMEOUT", "15"))

    # ---- plumbing ----

    def _config(self, *, require_enabled: bool = True) -> WalletSettings:
        cfg = self.settings.payment_config().wallet
        if require_enabled and not cfg.enabled:
            raise ConfigurationError("PayPal payments are not enabled",
                                     reason="provider_disabled")
        if not cfg.client_id or not cfg.client_secret:
            raise ConfigurationError("PayPal is not configured")
        return cfg

    @staticmethod
    def _base_url(cfg: WalletSettings) -> str:
        return SANDBOX_URL if cfg.sandbox else LIVE_URL

    def _request(self, method: str, url: str, **kw) -> requests.Response:
        try:
            return getattr(self.http, method)(url, timeout=self.timeout, **kw)
        except requests.RequestException as e:
            log.warning("PayPal %s %s failed: %s", method.upper(), url, e)
            raise ProviderCommunicationError(f"PayPal unreachable: {e}") from e

    @staticmethod
    def _json(resp) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _access_token(self, cfg: WalletSettings) -> str:
        resp = self._request(
            "post", f"{self._base_url(cfg)}/v1/oauth2/token",
            auth=(cfg.client_id, cfg.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if resp.status_code == 401:
            raise ConfigurationError("PayPal rejected the configured client credentials")
        token = self._json(resp).get("access_token")
        if resp.status_code >= 300 or not token:
            raise ProviderCommunicationError(
                f"PayPal token request failed ({resp.status_code})")
        return token

    def _auth_headers(self, cfg: WalletSettings) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token(cfg)}",
            "Content-Type": "application/json",
        }

    # ---- orders ----

    def create_order(self, *, contest_id: str, payer_id: str, amount: Decimal,
                     currency: str, title: str, return_url: str, cancel_url: str,
                     customer_email: Optional[str] = None) -> OrderResult:
        cfg = self._config()
        headers = self._auth_headers(cfg)
        headers["PayPal-Request-Id"] = f"contest-{contest_id}-{uuid4().hex}"

        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": contest_id,
                "custom_id": payer_id,
                "description": f"Contest publication: {title}"[:127],
                "amount": {"currency_code": currency.upper(),
                           "value": format_amount(amount)},
            }],
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "payment_method_preference": "IMMEDIATE_PAYMENT_REQUIRED",
                        "landing_page": "LOGIN",
                        "shipping_preference": "NO_SHIPPING",
                        "user_action": "PAY_NOW",
                        "return_url": return_url,
                        "cancel_url": cancel_url,
                    },
                },
            },
        }
        resp = self._request("post", f"{self._base_url(cfg)}/v2/checkout/orders",
                             headers=headers, data=json.dumps(body))
        data = self._json(resp)
        if resp.status_code >= 300 or not data.get("id"):
            log.warning("PayPal order creation failed (%s) for contest %s: %s",
                        resp.status_code, contest_id, data.get("name") or data)
            raise ProviderCommunicationError(
                f"PayPal order creation failed ({resp.status_code})")

        links = {link.get("rel"): link.get("href") for link in data.get("links") or []}
        approval = links.get("payer-action") or links.get("approve")
        return OrderResult(order_id=data["id"], redirect_url=approval,
                           metadata={"paypalOrderId": data["id"]})

    def get_order(self, order_id: str) -> Dict[str, Any]:
        cfg = self._config(require_enabled=False)
        resp = self._request("get", f"{self._base_url(cfg)}/v2/checkout/orders/{order_id}",
                             headers=self._auth_headers(cfg))
        if resp.status_code >= 300:
            raise ProviderCommunicationError(
                f"PayPal order lookup failed ({resp.status_code})")
        return self._json(resp)

    def capture_order(self, order_id: str) -> CaptureResult:
        # capture of an order the payer already approved is allowed even if
        # the provider was disabled in the meantime
        cfg = self._config(require_enabled=False)
        resp = self._request(
            "post", f"{self._base_url(cfg)}/v2/checkout/orders/{order_id}/capture",
            headers=self._auth_headers(cfg), data="{}")
        data = self._json(resp)

        if resp.status_code == 422 and any(
                d.get("issue") == "ORDER_ALREADY_CAPTURED" for d in data.get("details") or []):
            log.info("PayPal order %s already captured; reading existing capture", order_id)
            data = self.get_order(order_id)
        elif resp.status_code >= 300:
            log.warning("PayPal capture of %s failed (%s): %s",
                        order_id, resp.status_code, data.get("name") or data)
            raise ProviderCommunicationError(
                f"PayPal capture failed ({resp.status_code})")

        capture = _first_capture(data)
        status = capture.get("status") or data.get("status") or ""
        success = status == "COMPLETED"
        return CaptureResult(success=success,
                             provider_payment_id=capture.get("id"),
                             status=status)

    # ---- webhooks ----

    def verify_transmission(self, raw_body: bytes, headers, webhook_id: str) -> bool:
        """Ask PayPal to validate the transmission signature of a webhook."""
        missing = [h for h in _TRANSMISSION_HEADERS.values() if not headers.get(h)]
        if missing:
            log.warning("PayPal webhook missing headers: %s", ", ".join(missing))
            return False
        try:
            event = json.loads(raw_body)
        except ValueError:
            return False

        cfg = self._config(require_enabled=False)
        body = {k: headers.get(h) for k, h in _TRANSMISSION_HEADERS.items()}
        body["webhook_id"] = webhook_id
        body["webhook_event"] = event
        resp = self._request(
            "post", f"{self._base_url(cfg)}/v1/notifications/verify-webhook-signature",
            headers=self._auth_headers(cfg), data=json.dumps(body))
        if resp.status_code >= 300:
            raise ProviderCommunicationError(
                f"PayPal signature verification call failed ({resp.status_code})")
        return self._json(resp).get("verification_status") == "SUCCESS"

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        payload = json.loads(raw_body)
        if not isinstance(payload, dict):
            raise ValueError("webhook body is not a JSON object")

        etype = payload.get("event_type") or ""
        eid = payload.get("id")
        res = payload.get("resource") or {}
        related_order = ((res.get("supplementary_data") or {})
                         .get("related_ids") or {}).get("order_id")

        if etype == "CHECKOUT.ORDER.APPROVED" and res.get("id"):
            return OrderApproved(res["id"], eid, etype)
        if etype == "CHECKOUT.ORDER.COMPLETED" and res.get("id"):
            return PaymentCompleted(res["id"], _first_capture(res).get("id"), eid, etype)
        if etype == "PAYMENT.CAPTURE.COMPLETED":
            if not related_order:
                return UnrecognizedEvent(etype, eid, note="capture without order id")
            return PaymentCompleted(related_order, res.get("id"), eid, etype)
        if etype in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
            order_id = related_order or res.get("id")
            if not order_id:
                return UnrecognizedEvent(etype, eid, note="missing order id")
            return PaymentFailed(order_id, etype.rsplit(".", 1)[-1].lower(), eid, etype)
        return UnrecognizedEvent(etype, eid)
