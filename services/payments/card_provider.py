# services/payments/card_provider.py
"""
Card checkout through Stripe Checkout Sessions.

Stripe's hosted page captures the funds itself and reports the outcome only
by webhook, so this gateway has no capture call. Credentials come from the
SettingsStore (STRIPE_SECRET_KEY, STRIPE_ENABLED); HTTP calls use a bounded
timeout (PAYMENT_HTTP_TIMEOUT, default 15s) and are never retried here.
"""

from __future__ import annotations
import json
import logging
import os
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import stripe
from flask import current_app, has_app_context

from services.payments.base import (
    Provider, OrderResult, CaptureResult, ProviderEvent,
    OrderApproved, PaymentCompleted, PaymentFailed, UnrecognizedEvent,
)
from services.payments.errors import ConfigurationError, ProviderCommunicationError
from services.payments.money import to_minor_units
from services.settings import SettingsStore, CardSettings

log = logging.getLogger(__name__)

_PAID = ("paid", "no_payment_required")


def _cfg(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    if v is not None:
        return v
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def make_stripe_client(secret_key: str, timeout: float) -> stripe.StripeClient:
    return stripe.StripeClient(
        secret_key,
        http_client=stripe.RequestsClient(timeout=timeout),
        max_network_retries=0,
    )


class CardGateway:
    provider = Provider.CARD
    supports_capture = False

    def __init__(self, settings: SettingsStore, client_factory=make_stripe_client):
        self.settings = settings
        self._client_factory = client_factory

    def _config(self) -> CardSettings:
        cfg = self.settings.payment_config().card
        if not cfg.enabled:
            raise ConfigurationError("Stripe payments are not enabled",
                                     reason="provider_disabled")
        if not cfg.secret_key:
            raise ConfigurationError("Stripe is not configured")
        return cfg

    def create_order(self, *, contest_id: str, payer_id: str, amount: Decimal,
                     currency: str, title: str, return_url: str, cancel_url: str,
                     customer_email: Optional[str] = None) -> OrderResult:
        cfg = self._config()
        timeout = float(_cfg("PAYMENT_HTTP_TIMEOUT", "15"))
        client = self._client_factory(cfg.secret_key, timeout)

        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {
                        "name": f"Contest publication: {title}",
                        "description": f'Publication fee for the contest "{title}"',
                    },
                    "unit_amount": to_minor_units(amount),
                },
                "quantity": 1,
            }],
            # Stripe fills in the session id on redirect
            "success_url": f"{return_url}?token={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url,
            "metadata": {"contestId": contest_id, "userId": payer_id},
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = client.checkout.sessions.create(
                params=params,
                options={"idempotency_key": f"contest-{contest_id}-{uuid4().hex}"},
            )
        except stripe.AuthenticationError as e:
            raise ConfigurationError("Stripe rejected the configured secret key") from e
        except stripe.StripeError as e:
            log.warning("Stripe checkout creation failed for contest %s: %s",
                        contest_id, getattr(e, "user_message", None) or e)
            raise ProviderCommunicationError(str(e)) from e

        return OrderResult(order_id=session.id, redirect_url=session.url,
                           metadata={"checkoutSessionId": session.id})

    def capture_order(self, order_id: str) -> CaptureResult:
        raise ConfigurationError("Card checkout is captured by the provider",
                                 reason="capture_not_supported")

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        payload = json.loads(raw_body)
        if not isinstance(payload, dict):
            raise ValueError("webhook body is not a JSON object")

        etype = payload.get("type") or ""
        eid = payload.get("id")
        obj = (payload.get("data") or {}).get("object") or {}
        session_id = obj.get("id")

        if etype.startswith("checkout.session.") and not session_id:
            return UnrecognizedEvent(etype, eid, note="missing session id")

        if etype == "checkout.session.completed":
            if obj.get("payment_status") in _PAID:
                return PaymentCompleted(session_id, obj.get("payment_intent"), eid, etype)
            # delayed payment methods settle later via async_payment_*
            return OrderApproved(session_id, eid, etype)
        if etype == "checkout.session.async_payment_succeeded":
            return PaymentCompleted(session_id, obj.get("payment_intent"), eid, etype)
        if etype == "checkout.session.async_payment_failed":
            return PaymentFailed(session_id, "async_payment_failed", eid, etype)
        if etype == "checkout.session.expired":
            return PaymentFailed(session_id, "expired", eid, etype)
        # payment_intent.payment_failed: the session stays open for another attempt
        return UnrecognizedEvent(etype, eid)
