"""
Contrat provider-agnostic pour le backend Lightning.
Deux implémentations: MockLightningProvider (dev/tests) et LnbitsLightningProvider (REST LNbits).
Le backend est choisi par settings.LIGHTNING_BACKEND.
"""
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .lninvoice import LightningInvoice


@dataclass
class PaymentStatus:
    paid: bool
    preimage: Optional[str] = None


@dataclass
class SentPayment:
    payment_hash: str
    preimage: Optional[str] = None


class BaseLightningProvider:
    def create_invoice(self, *, amount_sats: int, memo: str, expiry: int = 3600) -> LightningInvoice:
        raise NotImplementedError

    def check_payment_status(self, payment_hash: str) -> PaymentStatus:
        raise NotImplementedError

    def send_payment(self, bolt11: str) -> SentPayment:
        raise NotImplementedError

    def check_health(self) -> bool:
        raise NotImplementedError


def get_lightning_provider() -> BaseLightningProvider:
    backend = getattr(settings, "LIGHTNING_BACKEND", "mock")
    if backend == "mock":
        from core.kvstore import CacheStore
        from .provider_mock import MockLightningProvider
        return MockLightningProvider(store=CacheStore("ln-mock"), network=settings.LIGHTNING_NETWORK)
    if backend == "lnbits":
        from .provider_lnbits import LnbitsLightningProvider
        return LnbitsLightningProvider()
    raise ImproperlyConfigured(f"Unknown LIGHTNING_BACKEND: {backend}")
