# controllers/payments.py
from __future__ import annotations
import logging
import os

from flask import Blueprint, request, redirect, abort, current_app, jsonify
from flask_login import login_required, current_user

from controllers.auth import admin_required
from models import contests_store, notifications_store, payments_store
from services.metrics import WEBHOOK_EVENTS
from services.payments.base import Provider
from services.payments.errors import PaymentError, ValidationError
from services.payments.money import format_amount
from services.payments.settlement import frontend_redirect

log = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__)


def _env(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    return v if v is not None else current_app.config.get(key, default)


def _coordinator():
    return current_app.extensions["settlement"]


def _provider(slug: str) -> Provider:
    try:
        return Provider.from_slug(slug)
    except LookupError:
        abort(404)


def _iso(dt):
    return dt.isoformat() if dt else None


def payment_json(p: dict | None) -> dict | None:
    if not p:
        return None
    return {
        "id": p["id"],
        "provider": p["provider"],
        "providerOrderId": p["provider_order_id"],
        "providerPaymentId": p["provider_payment_id"],
        "contestId": p["contest_id"],
        "userId": p["user_id"],
        "amount": format_amount(p["amount"]),
        "currency": p["currency"],
        "status": p["status"],
        "metadata": p["metadata"],
        "createdAt": _iso(p["created_at"]),
        "updatedAt": _iso(p["updated_at"]),
        "paidAt": _iso(p["paid_at"]),
    }


@payments_bp.errorhandler(PaymentError)
def _payment_error(e: PaymentError):
    if e.status >= 500:
        log.warning("%s %s failed: %s (%s)", request.method, request.path, e, e.reason)
    return jsonify(error=e.reason, message=str(e)), e.status


# ----- client opens a checkout for their contest -----

@payments_bp.post("/payments/<provider>")
@login_required
def create_order(provider: str):
    prov = _provider(provider)
    data = request.get_json(silent=True) or request.form
    if not hasattr(data, "get"):
        raise ValidationError("Request body must be an object", reason="invalid_body")
    contest_id = str(data.get("contestId") or "").strip()
    if not contest_id:
        raise ValidationError("Contest ID is required", reason="contest_id_required")

    site = _env("SITE_BASE_URL") or request.host_url.rstrip("/")
    order, payment = _coordinator().start_checkout(
        prov, contest_id, current_user.username, site_base=site)
    return jsonify(orderId=order.order_id, redirectUrl=order.redirect_url,
                   paymentId=payment["id"], amount=format_amount(payment["amount"]),
                   currency=payment["currency"]), 200


# ----- payer returns from the hosted checkout -----

@payments_bp.route("/payments/<provider>/capture", methods=["GET", "POST"])
def capture(provider: str):
    """
    Browser lands here from the provider. Always ends in a redirect to the
    dashboard; the outcome travels in the query string.
    """
    prov = _provider(provider)
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    token = str(request.args.get("token") or body.get("orderId") or "").strip()
    if not token:
        return redirect(frontend_redirect("failed", None, "missing_token"))

    existing = payments_store.find_by_provider_order_id(prov.value, token)
    contest_id = existing["contest_id"] if existing else None
    try:
        result = _coordinator().capture_return(prov, token)
    except PaymentError as e:
        log.warning("Capture of %s order %s failed: %s", prov.value, token, e)
        return redirect(frontend_redirect("failed", contest_id, e.reason))

    if result.outcome == "unknown":
        return redirect(frontend_redirect("failed", None, result.reason))
    if result.status in ("PENDING", "PROCESSING", "COMPLETED"):
        return redirect(frontend_redirect("success", result.contest_id))
    reason = (result.payment or {}).get("metadata", {}).get("failureReason") or result.reason
    return redirect(frontend_redirect("failed", result.contest_id,
                                      reason or result.status.lower()))


# ----- provider webhooks (no session auth, signature-verified) -----

@payments_bp.post("/webhooks/<provider>")
def webhook(provider: str):
    """
    Verify on the raw bytes first; nothing is parsed or stored before that.
    Redeliveries are settled again (settlement is idempotent) and logged.
    """
    prov = _provider(provider)
    raw = request.get_data(cache=True)
    current_app.extensions["webhook_verifier"].check(prov, raw, request.headers)

    coordinator = _coordinator()
    try:
        event = coordinator.gateway(prov).parse_event(raw)
    except (ValueError, TypeError) as e:
        WEBHOOK_EVENTS.labels(provider=prov.value, event="unparsed", outcome="malformed").inc()
        log.warning("Malformed %s webhook body: %s", prov.value, e)
        return jsonify(error="malformed_event"), 400

    event_row_id, first_seen = payments_store.record_webhook_event(
        prov.value, event.event_id, event.event_type, raw, True)
    if not first_seen:
        log.info("Redelivered %s event %s (%s)", prov.value, event.event_id, event.event_type)

    result = coordinator.handle_event(prov, event)
    if result.payment and event_row_id:
        payments_store.attach_event_payment(event_row_id, result.payment["id"])

    WEBHOOK_EVENTS.labels(provider=prov.value, event=event.event_type or "unknown",
                          outcome=result.outcome).inc()
    return jsonify(received=True), 200


# ----- polling / notifications -----

@payments_bp.get("/contests/<contest_id>/payment")
@login_required
def contest_payment(contest_id: str):
    contest = contests_store.get_contest(contest_id)
    if not contest:
        return jsonify(error="contest_not_found"), 404
    if not (current_user.is_admin or contest["client_id"] == current_user.username):
        return jsonify(error="not_contest_owner"), 403
    history = payments_store.list_payments_for_contest(contest_id)
    return jsonify(contestId=contest_id, contestStatus=contest["status"],
                   payment=payment_json(history[0] if history else None)), 200


@payments_bp.get("/me/notifications")
@login_required
def my_notifications():
    unread = request.args.get("unread") in ("1", "true", "yes")
    items = notifications_store.list_for_user(current_user.username, unread_only=unread)
    for n in items:
        n["created_at"] = _iso(n["created_at"])
    return jsonify(notifications=items), 200


@payments_bp.post("/me/notifications/<int:nid>/read")
@login_required
def mark_notification_read(nid: int):
    if not notifications_store.mark_read(current_user.username, nid):
        return jsonify(error="notification_not_found"), 404
    return jsonify(ok=True), 200


# ----- admin override -----

@payments_bp.post("/admin/payments/<int:pid>/refund")
@admin_required
def admin_mark_refunded(pid: int):
    try:
        payment = _coordinator().refund_override(pid, current_user.username)
    except LookupError:
        return jsonify(error="payment_not_found"), 404
    return jsonify(payment=payment_json(payment)), 200
