# services/metrics.py
from __future__ import annotations
import os

os.environ.setdefault("PROMETHEUS_DISABLE_CREATED_SERIES", "1")

from prometheus_client import (  # noqa: E402
    Counter, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST,
)

# Use a DEDICATED registry so only our app metrics show up
APP_REGISTRY = CollectorRegistry(auto_describe=True)

# --- Generic HTTP metrics (bind to our registry) ---
REQUEST_COUNT = Counter(
    "http_requests_total", "HTTP requests total",
    ["method", "endpoint", "status"], registry=APP_REGISTRY
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency (seconds)",
    ["endpoint", "method"], registry=APP_REGISTRY,
)

# --- Auth ---
LOGIN_SUCCESSES = Counter(
    "auth_login_success_total", "Successful logins", registry=APP_REGISTRY
)
LOGIN_FAILURES = Counter(
    "auth_login_failure_total", "Failed logins", ["reason"], registry=APP_REGISTRY
)
FORBIDDEN = Counter(
    "auth_forbidden_total", "Non-admin hits on admin routes", registry=APP_REGISTRY
)

# --- Payments ---
ORDERS_CREATED = Counter(
    "payments_orders_created_total", "Provider orders opened", ["provider"], registry=APP_REGISTRY
)
ORDER_FAILURES = Counter(
    "payments_order_failures_total", "Order creation failures", ["provider", "reason"], registry=APP_REGISTRY
)
WEBHOOK_EVENTS = Counter(
    "payments_webhook_events_total", "Webhook events", ["provider", "event", "outcome"], registry=APP_REGISTRY
)
SETTLEMENTS = Counter(
    "payments_settlements_total", "Settlement signals by outcome", ["provider", "outcome"], registry=APP_REGISTRY
)

# --- Settings cache ---
SETTINGS_REFRESH = Counter(
    "settings_cache_refresh_total", "Settings cache refreshes", ["outcome"], registry=APP_REGISTRY
)


def init_app(app):
    @app.get("/metrics")
    def metrics():
        data = generate_latest(APP_REGISTRY)
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    # --- pre-warm labeled series so dashboards don't say "No data" ---
    for p in ("CARD", "WALLET"):
        ORDERS_CREATED.labels(provider=p).inc(0)
        for outcome in ("completed", "failed", "processing", "absorbed", "unknown"):
            SETTLEMENTS.labels(provider=p, outcome=outcome).inc(0)
    SETTINGS_REFRESH.labels(outcome="ok").inc(0)
    SETTINGS_REFRESH.labels(outcome="error").inc(0)
