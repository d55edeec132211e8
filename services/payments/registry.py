# services/payments/registry.py
from services.payments.base import Provider
from services.payments.card_provider import CardGateway
from services.payments.wallet_provider import WalletGateway
from services.settings import SettingsStore


def get_gateway(provider: Provider, settings: SettingsStore):
    if provider is Provider.CARD:
        return CardGateway(settings)
    if provider is Provider.WALLET:
        return WalletGateway(settings)
    raise RuntimeError(f"Unknown payment provider: {provider}")
