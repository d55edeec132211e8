# services/settings.py
"""
Admin-editable configuration (provider credentials, toggles, platform fee).

Reads go through a process-wide snapshot that is refreshed from the
``settings`` table once it is older than the TTL. Lookup order for a key:
database snapshot (non-empty) -> process environment -> DEFAULTS.

Only ALLOWED_KEYS can be written. SENSITIVE_KEYS are always stored encrypted
and are only ever returned masked by ``masked()``.
"""

from __future__ import annotations
import logging
import os
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Mapping

from models import settings_db
from services.crypto import SecretBox, DecryptionError
from services.metrics import SETTINGS_REFRESH

log = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300

SENSITIVE_KEYS = frozenset({
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "PAYPAL_CLIENT_SECRET",
    "PAYPAL_WEBHOOK_ID",
})

ALLOWED_KEYS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_PUBLISHABLE_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_ENABLED",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_SECRET",
    "PAYPAL_WEBHOOK_ID",
    "PAYPAL_ENABLED",
    "PAYPAL_SANDBOX_MODE",
    "PLATFORM_FEE_PERCENT",
)

DEFAULTS = {
    "STRIPE_ENABLED": "true",
    "PAYPAL_ENABLED": "true",
    "PAYPAL_SANDBOX_MODE": "false",
    "PLATFORM_FEE_PERCENT": "5",
}

MASK = "••••••••"


def _truthy(v: str | None) -> bool:
    return str(v or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class CardSettings:
    enabled: bool
    secret_key: str | None
    webhook_secret: str | None


@dataclass(frozen=True)
class WalletSettings:
    enabled: bool
    client_id: str | None
    client_secret: str | None
    webhook_id: str | None
    sandbox: bool


@dataclass(frozen=True)
class PaymentSettings:
    card: CardSettings
    wallet: WalletSettings
    platform_fee_percent: Decimal


class SettingsStore:
    def __init__(self, *, ttl: float = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic,
                 box: SecretBox | None = None,
                 loader: Callable[[], list[dict]] = settings_db.load_all,
                 writer: Callable[[str, str, bool], None] = settings_db.upsert,
                 environ: Mapping[str, str] | None = None):
        self.ttl = ttl
        self._clock = clock
        self._box = box or SecretBox()
        self._loader = loader
        self._writer = writer
        self._environ = os.environ if environ is None else environ
        self._cache: dict[str, str] = {}
        self._loaded_at: float | None = None
        self._generation = 0
        self._refresh_lock = threading.Lock()

    # ---- cache ----

    def _is_stale(self) -> bool:
        return self._loaded_at is None or self._clock() - self._loaded_at > self.ttl

    def _refresh(self) -> None:
        generation = self._generation
        try:
            rows = self._loader()
        except Exception:
            # keep serving the previous snapshot; the next reader retries
            log.exception("Settings refresh failed; serving cached values")
            SETTINGS_REFRESH.labels(outcome="error").inc()
            return

        fresh: dict[str, str] = {}
        for row in rows:
            if row["encrypted"]:
                fresh[row["key"]] = self._decrypt(row["key"], row["value"])
            else:
                fresh[row["key"]] = row["value"]
        self._cache = fresh
        # a write landed mid-load: keep the snapshot but stay stale
        if generation == self._generation:
            self._loaded_at = self._clock()
        SETTINGS_REFRESH.labels(outcome="ok").inc()

    def _decrypt(self, key: str, blob: str) -> str:
        try:
            return self._box.decrypt(blob)
        except DecryptionError as e:
            log.warning("Could not decrypt setting %s (%s); treating as unset", key, e)
            return ""

    def _snapshot(self) -> dict[str, str]:
        if self._loaded_at is None:
            with self._refresh_lock:
                if self._loaded_at is None:
                    self._refresh()
        elif self._is_stale() and self._refresh_lock.acquire(blocking=False):
            # only the reader that wins the lock pays for the refresh
            try:
                if self._is_stale():
                    self._refresh()
            finally:
                self._refresh_lock.release()
        return self._cache

    def invalidate(self) -> None:
        self._generation += 1
        self._loaded_at = None

    # ---- reads ----

    def get(self, key: str) -> str | None:
        value = self._snapshot().get(key)
        if value:
            return value
        env = self._environ.get(key)
        if env:
            return env
        return DEFAULTS.get(key)

    def get_many(self, keys: Iterable[str]) -> dict[str, str | None]:
        return {k: self.get(k) for k in keys}

    def get_bool(self, key: str) -> bool:
        return _truthy(self.get(key))

    def platform_fee_percent(self) -> Decimal:
        raw = self.get("PLATFORM_FEE_PERCENT")
        try:
            pct = Decimal(str(raw).strip())
        except (InvalidOperation, TypeError):
            log.warning("PLATFORM_FEE_PERCENT=%r is not a number; using default", raw)
            return Decimal(DEFAULTS["PLATFORM_FEE_PERCENT"])
        if not pct.is_finite() or pct < 0:
            log.warning("PLATFORM_FEE_PERCENT=%r out of range; using default", raw)
            return Decimal(DEFAULTS["PLATFORM_FEE_PERCENT"])
        return pct

    def payment_config(self) -> PaymentSettings:
        return PaymentSettings(
            card=CardSettings(
                enabled=self.get_bool("STRIPE_ENABLED"),
                secret_key=self.get("STRIPE_SECRET_KEY"),
                webhook_secret=self.get("STRIPE_WEBHOOK_SECRET"),
            ),
            wallet=WalletSettings(
                enabled=self.get_bool("PAYPAL_ENABLED"),
                client_id=self.get("PAYPAL_CLIENT_ID"),
                client_secret=self.get("PAYPAL_CLIENT_SECRET"),
                webhook_id=self.get("PAYPAL_WEBHOOK_ID"),
                sandbox=self.get_bool("PAYPAL_SANDBOX_MODE"),
            ),
            platform_fee_percent=self.platform_fee_percent(),
        )

    def masked(self) -> dict[str, dict]:
        """Admin view: plaintext for ordinary keys, last 4 chars for secrets."""
        out: dict[str, dict] = {}
        cache = self._snapshot()
        for key in ALLOWED_KEYS:
            value = cache.get(key, "")
            if key in SENSITIVE_KEYS:
                out[key] = {"value": (MASK + value[-4:]) if value else "",
                            "hasValue": bool(value)}
            elif key in cache:
                out[key] = {"value": value, "hasValue": True}
            else:
                out[key] = {"value": "", "hasValue": False}
        return out

    # ---- writes ----

    def set(self, key: str, value) -> bool:
        """Store one allow-listed key. Returns False when the write was skipped."""
        if key not in ALLOWED_KEYS:
            log.info("Ignoring unknown setting key %r", key)
            return False
        value = "" if value is None else str(value)
        sensitive = key in SENSITIVE_KEYS
        if sensitive and not value:
            # empty means "keep existing"
            return False
        stored = self._box.encrypt(value) if sensitive else value
        self._writer(key, stored, sensitive)
        self.invalidate()
        log.info("Setting %s updated", key)
        return True

    def update(self, values: Mapping[str, object]) -> list[str]:
        return [k for k, v in values.items() if self.set(k, v)]
