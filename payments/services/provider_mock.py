import logging
import os
import time
from typing import Optional

from core.kvstore import KeyValueStore
from .lninvoice import LightningInvoice, decode, encode
from .preimage import hash_prefix, hash_preimage
from .provider import BaseLightningProvider, PaymentStatus, SentPayment

logger = logging.getLogger("errandbit.lightning")


class MockLightningProvider(BaseLightningProvider):
    """
    Backend simulé:
    - préimage aléatoire de 32 octets, hash = SHA256(préimage)
    - vraie chaîne BOLT11 signée par une clé de noeud jetable (une par instance)
    - l'état des factures vit dans le store injecté, expiré avec la facture
    settle() simule le paiement de la facture par le client.
    """
    def __init__(self, store: KeyValueStore, network: str = "bcrt", clock=time.time,
                 node_key: Optional[str] = None) -> None:
        self.store = store
        self.network = network
        self._clock = clock
        self._node_key = node_key or os.urandom(32).hex()

    def create_invoice(self, *, amount_sats: int, memo: str, expiry: int = 3600) -> LightningInvoice:
        preimage = os.urandom(32).hex()
        payment_hash = hash_preimage(preimage)
        bolt11 = encode(
            payment_hash=payment_hash,
            timestamp=int(self._clock()),
            amount_msat=amount_sats * 1000,
            description=memo,
            expiry=expiry,
            network=self.network,
            private_key=self._node_key,
        )
        self.store.set(payment_hash, {"preimage": preimage, "paid": False, "amount_sats": amount_sats}, ttl=expiry)
        logger.info("[MOCK] Invoice created (%s sats, hash=%s)", amount_sats, hash_prefix(payment_hash))
        return decode(bolt11)

    def check_payment_status(self, payment_hash: str) -> PaymentStatus:
        entry = self.store.get(payment_hash.lower())
        if entry is None or not entry["paid"]:
            return PaymentStatus(paid=False)
        return PaymentStatus(paid=True, preimage=entry["preimage"])

    def send_payment(self, bolt11: str) -> SentPayment:
        invoice = decode(bolt11)
        entry = self.settle(invoice.payment_hash)
        return SentPayment(payment_hash=invoice.payment_hash, preimage=entry["preimage"] if entry else None)

    def check_health(self) -> bool:
        return True

    def settle(self, payment_hash: str):
        """Marque la facture comme payée; None si inconnue ou expirée."""
        key = payment_hash.lower()
        entry = self.store.get(key)
        if entry is None:
            return None
        entry = dict(entry, paid=True)
        self.store.set(key, entry, ttl=24 * 3600)
        logger.info("[MOCK] Invoice settled (hash=%s)", hash_prefix(key))
        return entry

    def preimage_for(self, payment_hash: str):
        entry = self.store.get(payment_hash.lower())
        return entry["preimage"] if entry else None
