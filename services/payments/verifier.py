# services/payments/verifier.py
"""
Authenticity checks for inbound provider webhooks.

Always run on the raw request bytes, before the body is parsed and before any
ledger access. Card (Stripe) deliveries carry an HMAC-SHA256 over
"<timestamp>.<raw body>" in Stripe-Signature; wallet (PayPal) deliveries are
validated by PayPal's verify-webhook-signature API against our webhook id.

With no secret configured, verification is skipped only outside production
and only when PAYMENTS_ALLOW_UNVERIFIED_WEBHOOKS is switched on; every
skipped delivery is logged.
"""

from __future__ import annotations
import logging
import os

import stripe
from flask import current_app, has_app_context

from services.payments.base import Provider
from services.payments.errors import SignatureVerificationError
from services.payments.wallet_provider import WalletGateway
from services.settings import SettingsStore

log = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300


def _cfg(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    if v is not None:
        return v
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _flag(key: str) -> bool:
    return str(_cfg(key, "0") or "").strip().lower() in ("1", "true", "yes", "on")


def unverified_allowed() -> bool:
    env = (_cfg("APP_ENV", "development") or "").lower()
    return env != "production" and _flag("PAYMENTS_ALLOW_UNVERIFIED_WEBHOOKS")


def verify_card_signature(raw_body: bytes, headers, secret: str) -> bool:
    header = headers.get("Stripe-Signature") or ""
    if not header:
        return False
    tolerance = int(_cfg("STRIPE_WEBHOOK_TOLERANCE", str(DEFAULT_TOLERANCE)))
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    try:
        return bool(stripe.WebhookSignature.verify_header(
            payload, header, secret, tolerance=tolerance))
    except stripe.SignatureVerificationError as e:
        log.warning("Stripe signature rejected: %s", e)
        return False


class WebhookVerifier:
    def __init__(self, settings: SettingsStore, wallet_factory=WalletGateway):
        self.settings = settings
        self._wallet_factory = wallet_factory

    def secret_for(self, provider: Provider) -> str | None:
        if provider is Provider.CARD:
            return self.settings.get("STRIPE_WEBHOOK_SECRET")
        return self.settings.get("PAYPAL_WEBHOOK_ID")

    def verify(self, provider: Provider, raw_body: bytes, headers,
               secret: str | None) -> bool:
        if not secret:
            if unverified_allowed():
                log.warning("Accepting UNVERIFIED %s webhook: no secret configured "
                            "and PAYMENTS_ALLOW_UNVERIFIED_WEBHOOKS is on",
                            provider.value)
                return True
            log.error("Rejecting %s webhook: no signing secret configured", provider.value)
            return False
        if provider is Provider.CARD:
            return verify_card_signature(raw_body, headers, secret)
        return self._wallet_factory(self.settings).verify_transmission(
            raw_body, headers, secret)

    def check(self, provider: Provider, raw_body: bytes, headers) -> None:
        """verify() against the configured secret; raise on failure."""
        if not self.verify(provider, raw_body, headers, self.secret_for(provider)):
            raise SignatureVerificationError(f"{provider.value} webhook signature invalid")
