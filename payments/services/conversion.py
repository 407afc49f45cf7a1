"""
Conversion prix du job (centimes) -> montant attendu en sats.
Le convertisseur est un simple callable (price_cents -> sats) désigné par
settings.PRICE_CONVERTER; aucune source de cours n'est interrogée ici.
"""
from django.conf import settings
from django.utils.module_loading import import_string

SATS_PER_BTC = 100_000_000


def one_sat_per_cent(price_cents: int) -> int:
    return price_cents


def cents_to_sats(price_cents: int, btc_price_usd: int) -> int:
    # arithmétique entière: sats = cents * 1e8 / (prix_btc * 100)
    return (price_cents * SATS_PER_BTC) // (btc_price_usd * 100)


def sats_to_cents(amount_sats: int, btc_price_usd: int) -> int:
    return (amount_sats * btc_price_usd * 100) // SATS_PER_BTC


def fixed_btc_price(price_cents: int) -> int:
    """Convertisseur à cours fixe (settings.BTC_PRICE_USD)."""
    return cents_to_sats(price_cents, settings.BTC_PRICE_USD)


def expected_sats_for_job(job) -> int:
    converter = import_string(settings.PRICE_CONVERTER)
    return converter(job.price_cents)
