# controllers/settings.py
from decimal import Decimal, InvalidOperation

from flask import Blueprint, request, jsonify, current_app
from controllers.auth import admin_required
from services.settings import ALLOWED_KEYS

settings_bp = Blueprint("settings", __name__)


def _store():
    return current_app.extensions["settings_store"]


@settings_bp.get("/settings")
@admin_required
def get_settings():
    return jsonify(_store().masked()), 200


@settings_bp.put("/settings")
@admin_required
def put_settings():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "expected a JSON object"}), 400

    fee = data.get("PLATFORM_FEE_PERCENT")
    if fee not in (None, ""):
        try:
            pct = Decimal(str(fee))
        except InvalidOperation:
            pct = None
        if pct is None or not pct.is_finite() or not (0 <= pct <= 100):
            return jsonify({"error": "PLATFORM_FEE_PERCENT must be between 0 and 100"}), 400

    updated = _store().update({k: v for k, v in data.items() if k in ALLOWED_KEYS})
    ignored = sorted(k for k in data if k not in ALLOWED_KEYS)
    current_app.logger.info("Settings updated: %s", ", ".join(updated) or "none")
    return jsonify(updated=updated, ignored=ignored, settings=_store().masked()), 200
