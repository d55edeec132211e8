# services/payments/settlement.py
"""
Settlement: the single path through which every payment outcome signal
(checkout-return capture, card webhook, wallet webhook) reaches the ledger.

Per provider order the steps below run as one transaction, serialized by an
in-process lock on (provider, order id) and by the payment row lock:

  1. resolve the payment; unknown order -> log and ignore
  2. terminal payment -> absorb (no side effects)
  3. apply the transition through the ledger
  4. COMPLETED -> contest PENDING_APPROVAL -> OPEN (conditional) and one
     PAYMENT_RECEIVED notification

FAILED leaves the contest untouched so the client can pay again.
"""

from __future__ import annotations
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from flask import current_app, has_app_context

from models import contests_store, notifications_store, payments_store
from models.base import session_scope
from models.schema import Contest
from services.metrics import ORDERS_CREATED, ORDER_FAILURES, SETTLEMENTS
from services.payments.base import (
    Provider, OrderResult, ProviderEvent,
    OrderApproved, PaymentCompleted, PaymentFailed, UnrecognizedEvent,
)
from services.payments.errors import (
    PaymentError, ValidationError, ContestNotFound, NotContestOwner,
    ContestNotPayable, DuplicateActivePayment, ProviderCommunicationError,
    InconsistencyWarning,
)
from services.payments.money import platform_fee
from services.payments.registry import get_gateway
from services.settings import SettingsStore

log = logging.getLogger(__name__)

_OUTCOME = {"COMPLETED": "completed", "FAILED": "failed", "PROCESSING": "processing"}


def _cfg(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    if v is not None:
        return v
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def frontend_redirect(payment: str, contest_id: Optional[str], reason: Optional[str] = None) -> str:
    """Dashboard URL the browser lands on after checkout."""
    base = (_cfg("FRONTEND_URL") or "http://localhost:5173").rstrip("/")
    qs = {"payment": payment}
    if contest_id:
        qs["contestId"] = contest_id
    if reason:
        qs["reason"] = reason
    return f"{base}/dashboard?{urlencode(qs)}"


@dataclass
class SettlementResult:
    outcome: str                    # completed|failed|processing|pending|absorbed|unknown|ignored
    payment: Optional[dict] = None
    reason: Optional[str] = None

    @property
    def contest_id(self) -> Optional[str]:
        return self.payment["contest_id"] if self.payment else None

    @property
    def status(self) -> Optional[str]:
        return self.payment["status"] if self.payment else None


class KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


class SettlementCoordinator:
    def __init__(self, settings: SettingsStore, gateway_factory=get_gateway):
        self.settings = settings
        self._gateway_factory = gateway_factory
        self._locks = KeyedLocks()

    def gateway(self, provider: Provider):
        return self._gateway_factory(provider, self.settings)

    # ---- opening a checkout ----

    def start_checkout(self, provider: Provider, contest_id: str, user_id: str, *,
                       site_base: str) -> tuple[OrderResult, dict]:
        """
        Validate the contest, open the provider order, then record the PENDING
        payment. No row is written unless the provider order exists.
        """
        if not contest_id:
            raise ValidationError("Contest ID is required", reason="contest_id_required")
        contest = contests_store.get_contest(contest_id)
        if not contest:
            raise ContestNotFound("Contest not found")
        if contest["client_id"] != user_id:
            raise NotContestOwner("Only the contest owner can pay")
        if contest["status"] != "PENDING_APPROVAL":
            raise ContestNotPayable("Contest is not pending payment")
        if payments_store.get_active_payment_for_contest(contest_id):
            raise DuplicateActivePayment("Payment already exists for this contest")

        gateway = self.gateway(provider)
        currency = (_cfg("PAYMENT_CURRENCY") or "EUR").upper()
        fee_percent = self.settings.platform_fee_percent()
        amount = platform_fee(contest["budget"], fee_percent)
        return_url = f"{site_base.rstrip('/')}/payments/{provider.slug}/capture"

        try:
            order = gateway.create_order(
                contest_id=contest_id, payer_id=user_id, amount=amount,
                currency=currency, title=contest["title"],
                return_url=return_url,
                cancel_url=frontend_redirect("cancelled", contest_id, "cancelled_by_payer"),
                customer_email=contests_store.get_client_email(contest_id),
            )
        except PaymentError as e:
            ORDER_FAILURES.labels(provider=provider.value, reason=e.reason).inc()
            raise

        meta = dict(order.metadata)
        meta["feePercent"] = str(fee_percent)
        try:
            payment = payments_store.create_payment(
                provider=provider.value, provider_order_id=order.order_id,
                contest_id=contest_id, user_id=user_id, amount=amount,
                currency=currency, metadata=meta,
            )
        except DuplicateActivePayment:
            log.warning("Concurrent checkout for contest %s; %s order %s left unused",
                        contest_id, provider.value, order.order_id)
            ORDER_FAILURES.labels(provider=provider.value, reason="duplicate").inc()
            raise

        ORDERS_CREATED.labels(provider=provider.value).inc()
        log.info("Opened %s order %s for contest %s (amount %s %s)",
                 provider.value, order.order_id, contest_id, amount, currency)
        return order, payment

    # ---- settlement ----

    def settle(self, provider: Provider, order_id: str, new_status: str, *,
               provider_payment_id: Optional[str] = None,
               reason: Optional[str] = None) -> SettlementResult:
        with self._locks.hold((provider.value, order_id)):
            result = self._settle_locked(provider, order_id, new_status,
                                         provider_payment_id, reason)
        SETTLEMENTS.labels(provider=provider.value, outcome=result.outcome).inc()
        if result.outcome in _OUTCOME.values():
            log.info("%s order %s settled: %s", provider.value, order_id, result.status)
        return result

    def _settle_locked(self, provider, order_id, new_status, provider_payment_id, reason):
        with session_scope() as s:
            p = payments_store.lock_by_provider_order(s, provider.value, order_id)
            if p is None:
                log.warning("No payment for %s order %s; ignoring", provider.value, order_id)
                return SettlementResult("unknown", reason="payment_not_found")

            if payments_store.is_terminal(p.status):
                if p.status != new_status:
                    log.info("Payment %s already %s; late %s signal absorbed",
                             p.id, p.status, new_status)
                return SettlementResult("absorbed", payments_store.to_dict(p))

            meta = {"failureReason": reason} if reason and new_status == "FAILED" else None
            changed = payments_store.apply_transition(
                s, p, new_status, provider_payment_id=provider_payment_id, meta=meta)
            if not changed:
                return SettlementResult("absorbed", payments_store.to_dict(p))

            if new_status == "COMPLETED":
                self._activate_contest(s, p)
            return SettlementResult(_OUTCOME[new_status], payments_store.to_dict(p), reason)

    def _activate_contest(self, s, p) -> None:
        opened = contests_store.set_status_if(s, p.contest_id, "PENDING_APPROVAL", "OPEN")
        contest = s.get(Contest, p.contest_id)
        if not opened:
            found = contest.status if contest else "missing"
            # money moved: the payment stays COMPLETED whatever the contest says
            log.warning("%s: payment %s completed but contest %s is %s, expected PENDING_APPROVAL",
                        InconsistencyWarning.__name__, p.id, p.contest_id, found,
                        extra={"anomaly": InconsistencyWarning.__name__})

        title = contest.title if contest else "your contest"
        notifications_store.add_notification(
            s, p.user_id, "PAYMENT_RECEIVED", "Payment received",
            f'The payment for "{title}" has been completed. Your contest is now live!',
            link=f"/contests/{p.contest_id}",
        )

    # ---- entry points ----

    def capture_return(self, provider: Provider, order_id: str) -> SettlementResult:
        """Payer came back from the provider (or a webhook asked for capture)."""
        payment = payments_store.find_by_provider_order_id(provider.value, order_id)
        if payment is None:
            return SettlementResult("unknown", reason="payment_not_found")
        if payments_store.is_terminal(payment["status"]):
            return SettlementResult("absorbed", payment)

        gateway = self.gateway(provider)
        if not gateway.supports_capture:
            # card checkout: the webhook carries the outcome
            return SettlementResult("pending", payment)

        capture = gateway.capture_order(order_id)
        if capture.success:
            return self.settle(provider, order_id, "COMPLETED",
                               provider_payment_id=capture.provider_payment_id)
        if capture.status == "PENDING":
            return self.settle(provider, order_id, "PROCESSING")
        return self.settle(provider, order_id, "FAILED",
                           reason=f"capture_{(capture.status or 'failed').lower()}")

    def handle_event(self, provider: Provider, event: ProviderEvent) -> SettlementResult:
        if isinstance(event, PaymentCompleted):
            return self.settle(provider, event.order_id, "COMPLETED",
                               provider_payment_id=event.provider_payment_id)
        if isinstance(event, PaymentFailed):
            return self.settle(provider, event.order_id, "FAILED", reason=event.reason)
        if isinstance(event, OrderApproved):
            res = self.settle(provider, event.order_id, "PROCESSING")
            if res.status == "PROCESSING" and self.gateway(provider).supports_capture:
                try:
                    return self.capture_return(provider, event.order_id)
                except ProviderCommunicationError as e:
                    # the payer's return trip will capture
                    log.warning("Capture after approval of %s failed: %s", event.order_id, e)
            return res
        if isinstance(event, UnrecognizedEvent):
            log.info("Unhandled %s event type: %s %s", provider.value,
                     event.event_type, event.note)
            return SettlementResult("ignored", reason=event.event_type)
        raise TypeError(f"unexpected event {event!r}")

    def refund_override(self, payment_id: int, actor: str) -> dict:
        """Admin-only manual REFUNDED mark; no provider refund is issued."""
        payment, changed = payments_store.transition_payment(
            payment_id, "REFUNDED", meta={"refundOverrideBy": actor})
        if changed:
            log.info("Payment %s marked REFUNDED by %s", payment_id, actor)
        return payment
