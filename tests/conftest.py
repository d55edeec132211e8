# tests/conftest.py
import os
import tempfile

# must be in place before app/models read the environment
_DB_DIR = tempfile.mkdtemp(prefix="contest-payments-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("METRICS_ENABLED", "0")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "1")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-0123456789abcdef")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("SITE_BASE_URL", "http://api.test")

import pytest  # noqa: E402
from app import create_app  # noqa: E402
from models.base import Base, init_engine_and_session  # noqa: E402
from models.users_db import create_user  # noqa: E402

_PROVIDER_ENV = (
    "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "STRIPE_ENABLED",
    "PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET", "PAYPAL_WEBHOOK_ID",
    "PAYPAL_ENABLED", "PAYPAL_SANDBOX_MODE", "PLATFORM_FEE_PERCENT",
    "PAYMENTS_ALLOW_UNVERIFIED_WEBHOOKS",
)


@pytest.fixture(scope="session")
def app():
    return create_app({"TESTING": True, "WTF_CSRF_ENABLED": False})


@pytest.fixture(scope="session")
def db_engine(app):
    engine, _Session = init_engine_and_session()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(autouse=True)
def _db_clean(db_engine, app, monkeypatch):
    for key in _PROVIDER_ENV:
        monkeypatch.delenv(key, raising=False)
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    app.extensions["settings_store"].invalidate()
    yield
    app.extensions["settings_store"].invalidate()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions["settings_store"]


@pytest.fixture
def admin_user():
    create_user("admin", "admin-pass", role="admin")
    return ("admin", "admin-pass")


@pytest.fixture
def login_admin(client, admin_user):
    u, p = admin_user
    client.post("/login", json={"username": u, "password": p})
    yield
    client.post("/logout")


@pytest.fixture
def alice():
    create_user("alice", "alice-pass", role="client", email="alice@example.com")
    return ("alice", "alice-pass")


@pytest.fixture
def bob():
    create_user("bob", "bob-pass", role="client", email="bob@example.com")
    return ("bob", "bob-pass")


@pytest.fixture
def gateways(app, store, monkeypatch):
    """
    Swap the app's coordinator/verifier for ones whose gateways talk to fakes.
    Returns an installer: gateways(stripe=FakeStripeClient(), paypal=FakePayPalHttp()).
    """
    from services.payments.base import Provider
    from services.payments.card_provider import CardGateway
    from services.payments.wallet_provider import WalletGateway
    from services.payments.settlement import SettlementCoordinator
    from services.payments.verifier import WebhookVerifier
    from tests.utils import FakeStripeClient, FakePayPalHttp

    def install(stripe=None, paypal=None):
        stripe = stripe or FakeStripeClient()
        paypal = paypal or FakePayPalHttp()

        def factory(provider, settings):
            if provider is Provider.CARD:
                return CardGateway(settings, client_factory=stripe.factory)
            return WalletGateway(settings, http=paypal)

        coordinator = SettlementCoordinator(store, gateway_factory=factory)
        monkeypatch.setitem(app.extensions, "settlement", coordinator)
        monkeypatch.setitem(app.extensions, "webhook_verifier", WebhookVerifier(
            store, wallet_factory=lambda s: WalletGateway(s, http=paypal)))
        return coordinator

    return install
