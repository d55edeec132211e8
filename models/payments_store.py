# models/payments_store.py (Postgres / SQLAlchemy)
"""
Payment ledger: the only code that writes the payments table.

Status machine:
  PENDING    -> PROCESSING | COMPLETED | FAILED | REFUNDED
  PROCESSING -> COMPLETED | FAILED | REFUNDED
  COMPLETED / FAILED / REFUNDED are terminal.

Re-applying the current status is a no-op success (duplicate deliveries);
any other move out of a terminal status raises InvalidTransition.
"""

from __future__ import annotations
import logging
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.base import session_scope
from models.schema import (
    Payment, PaymentEvent, utcnow,
    ACTIVE_PAYMENT_STATUSES, TERMINAL_PAYMENT_STATUSES,
)
from services.payments.errors import DuplicateActivePayment, InvalidTransition

log = logging.getLogger(__name__)

_NEXT = {
    "PENDING": {"PROCESSING", "COMPLETED", "FAILED", "REFUNDED"},
    "PROCESSING": {"COMPLETED", "FAILED", "REFUNDED"},
}

_COLUMNS = ("id", "provider", "provider_order_id", "provider_payment_id", "contest_id",
            "user_id", "amount", "currency", "status", "created_at", "updated_at", "paid_at")


def to_dict(p: Payment) -> dict:
    d = {c: getattr(p, c) for c in _COLUMNS}
    d["metadata"] = dict(p.meta or {})
    return d


def is_terminal(status: str) -> bool:
    return status in TERMINAL_PAYMENT_STATUSES


def get_payment(payment_id: int) -> Optional[dict]:
    with session_scope() as s:
        p = s.get(Payment, payment_id)
        return to_dict(p) if p else None


def find_by_provider_order_id(provider: str, order_id: str) -> Optional[dict]:
    if not order_id:
        return None
    with session_scope() as s:
        p = s.execute(select(Payment).where(
            Payment.provider == provider,
            Payment.provider_order_id == order_id)).scalars().first()
        return to_dict(p) if p else None


def get_active_payment_for_contest(contest_id: str) -> Optional[dict]:
    with session_scope() as s:
        p = s.execute(select(Payment).where(
            Payment.contest_id == contest_id,
            Payment.status.in_(ACTIVE_PAYMENT_STATUSES))).scalars().first()
        return to_dict(p) if p else None


def list_payments_for_contest(contest_id: str) -> list[dict]:
    with session_scope() as s:
        rows = s.execute(select(Payment).where(Payment.contest_id == contest_id)
                         .order_by(Payment.id.desc())).scalars().all()
        return [to_dict(p) for p in rows]


def create_payment(*, provider: str, provider_order_id: str, contest_id: str,
                   user_id: str, amount: Decimal, currency: str,
                   metadata: Optional[dict] = None) -> dict:
    """Insert a PENDING payment. At most one active payment per contest."""
    if get_active_payment_for_contest(contest_id):
        raise DuplicateActivePayment("Payment already exists for this contest")

    now = utcnow()
    try:
        with session_scope() as s:
            p = Payment(
                provider=provider, provider_order_id=provider_order_id,
                provider_payment_id=None, contest_id=contest_id, user_id=user_id,
                amount=amount, currency=currency.upper(), status="PENDING",
                meta=metadata or {}, created_at=now, updated_at=now, paid_at=None,
            )
            s.add(p)
            s.flush()
            return to_dict(p)
    except IntegrityError:
        # lost a race against a concurrent checkout for the same contest
        if get_active_payment_for_contest(contest_id):
            raise DuplicateActivePayment("Payment already exists for this contest")
        raise


def lock_by_provider_order(s: Session, provider: str, order_id: str) -> Optional[Payment]:
    """Row-locked lookup inside the caller's transaction (Postgres honors FOR UPDATE)."""
    return (
        s.query(Payment)
        .with_for_update()
        .filter(Payment.provider == provider, Payment.provider_order_id == order_id)
        .one_or_none()
    )


def apply_transition(s: Session, p: Payment, new_status: str, *,
                     provider_payment_id: Optional[str] = None,
                     meta: Optional[dict] = None) -> bool:
    """
    Move a locked payment to new_status inside the caller's transaction.
    Returns True if the row changed, False for an idempotent repeat.
    """
    current = p.status
    if new_status == current:
        return False
    if new_status not in _NEXT.get(current, ()):
        raise InvalidTransition(f"Payment {p.id}: {current} -> {new_status} not allowed")

    now = utcnow()
    values = {Payment.status: new_status, Payment.updated_at: now}
    if new_status == "COMPLETED":
        values[Payment.paid_at] = now
        if provider_payment_id:
            values[Payment.provider_payment_id] = provider_payment_id
    if meta:
        values[Payment.meta] = {**(p.meta or {}), **meta}

    # compare-and-set on the status we read
    res = s.execute(
        update(Payment)
        .where(Payment.id == p.id, Payment.status == current)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        s.refresh(p)
        log.info("Payment %s moved to %s concurrently; %s not applied",
                 p.id, p.status, new_status)
        return False
    s.refresh(p)
    return True


def transition_payment(payment_id: int, new_status: str, **extra) -> Tuple[dict, bool]:
    """Standalone transition (own transaction). Settlement uses apply_transition."""
    with session_scope() as s:
        p = (s.query(Payment).with_for_update()
             .filter(Payment.id == payment_id).one_or_none())
        if p is None:
            raise LookupError(f"Payment {payment_id} not found")
        changed = apply_transition(s, p, new_status, **extra)
        return to_dict(p), changed


def record_webhook_event(provider: str, external_event_id: Optional[str], event_type: str,
                         raw_payload: bytes | str, signature_ok: bool,
                         payment_id: Optional[int] = None) -> Tuple[int, bool]:
    """
    Append a webhook delivery to payment_events.
    Returns (event row id, first_seen); a redelivered event id is not stored twice.
    """
    raw_text = raw_payload.decode("utf-8", "replace") if isinstance(
        raw_payload, bytes) else raw_payload
    try:
        with session_scope() as s:
            e = PaymentEvent(
                provider=provider, external_event_id=external_event_id, payment_id=payment_id,
                event_type=event_type, raw=raw_text, signature_ok=signature_ok,
                received_at=utcnow(),
            )
            s.add(e)
            s.flush()
            return e.id, True
    except IntegrityError:
        with session_scope() as s:
            row = s.execute(
                select(PaymentEvent.id).where(
                    (PaymentEvent.provider == provider) & (
                        PaymentEvent.external_event_id == external_event_id)
                )
            ).first()
            return (int(row[0]) if row else 0), False


def attach_event_payment(event_row_id: int, payment_id: int) -> None:
    with session_scope() as s:
        e = s.get(PaymentEvent, event_row_id)
        if e and e.payment_id is None:
            e.payment_id = payment_id
            s.add(e)
