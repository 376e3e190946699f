"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import payment_settings
from application.ports.payment_gateway import PaymentGateway
from domain.common.exceptions import UnknownWebhookProviderException

SUPPORTED_PROVIDERS = ("stripe", "paypal", "mercadopago")

_instances: dict[str, PaymentGateway] = {}


def _build(name: str) -> PaymentGateway:
    if name == "stripe":
        from .stripe_client import StripeClient
        return StripeClient()
    if name == "paypal":
        from .paypal_client import PaypalClient
        return PaypalClient()
    if name in {"mercadopago", "mercado_pago", "mp"}:
        from .mercadopago_client import MercadoPagoClient
        return MercadoPagoClient()
    raise UnknownWebhookProviderException(name)


def get_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    """Return the (cached) adapter for a provider name."""
    name = (provider or payment_settings.default_provider).lower()
    gateway = _instances.get(name)
    if gateway is None:
        gateway = _build(name)
        _instances[name] = gateway
    return gateway


async def close_payment_gateways() -> None:
    for gateway in list(_instances.values()):
        close = getattr(gateway, "aclose", None)
        if close is not None:
            await close()
    _instances.clear()
