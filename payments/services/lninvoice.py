"""
Factures Lightning (BOLT11) via la librairie `bolt11`.

decode() vérifie checksum, champs et signature du noeud (clé publique
récupérée, ou comparée au champ payee s'il est présent) puis projette le
résultat sur LightningInvoice. encode() signe avec la clé privée fournie;
le backend simulé l'utilise avec une clé jetable.
"""
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from bolt11 import Bolt11, MilliSatoshi, TagChar, Tags
from bolt11 import decode as _bolt11_decode
from bolt11 import encode as _bolt11_encode

NETWORKS = ("bc", "tb", "tbs", "bcrt", "sb")
DEFAULT_EXPIRY = 3600
DEFAULT_MIN_FINAL_CLTV = 18


class InvalidInvoice(ValueError):
    pass


@dataclass(frozen=True)
class LightningInvoice:
    payment_request: str
    payment_hash: str
    timestamp: int
    amount_msat: Optional[int] = None
    expiry: int = DEFAULT_EXPIRY
    description: Optional[str] = None
    description_hash: Optional[str] = None
    network: str = "bc"
    payee: Optional[str] = None
    payment_secret: Optional[str] = None
    min_final_cltv_expiry: int = DEFAULT_MIN_FINAL_CLTV

    @property
    def amount_sats(self) -> Optional[int]:
        if self.amount_msat is None:
            return None
        return self.amount_msat // 1000

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp + self.expiry, tz=timezone.utc)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(tz=timezone.utc)
        return now.timestamp() > self.timestamp + self.expiry


def decode(payment_request: str) -> LightningInvoice:
    if not isinstance(payment_request, str) or not payment_request.strip():
        raise InvalidInvoice("Invoice is empty")
    pr = payment_request.strip()
    if pr.lower().startswith("lightning:"):
        pr = pr[len("lightning:"):]
    if pr.lower() != pr and pr.upper() != pr:
        raise InvalidInvoice("Invoice uses mixed case")
    pr = pr.lower()

    try:
        inv = _bolt11_decode(pr)
    except Exception as e:  # bolt11 laisse aussi passer des erreurs bech32/secp256k1 brutes
        raise InvalidInvoice(f"Invalid invoice: {e}") from e

    if not inv.payment_hash:
        raise InvalidInvoice("Invoice missing payment hash")

    return LightningInvoice(
        payment_request=pr,
        payment_hash=inv.payment_hash.lower(),
        timestamp=inv.date,
        amount_msat=int(inv.amount_msat) if inv.amount_msat is not None else None,
        expiry=inv.expiry or DEFAULT_EXPIRY,
        description=inv.description,
        description_hash=inv.description_hash,
        network=inv.currency,
        payee=inv.payee,
        payment_secret=inv.payment_secret,
        min_final_cltv_expiry=inv.min_final_cltv_expiry or DEFAULT_MIN_FINAL_CLTV,
    )


def encode(*, payment_hash: str, timestamp: int, amount_msat: Optional[int] = None,
           description: str = "", expiry: Optional[int] = None, network: str = "bc",
           payment_secret: Optional[str] = None, min_final_cltv_expiry: Optional[int] = None,
           private_key: Optional[str] = None) -> str:
    """
    private_key: clé secp256k1 en hex; une clé aléatoire est générée à défaut
    (facture valide mais signée par un noeud inconnu).
    """
    if network not in NETWORKS:
        raise InvalidInvoice("Unknown invoice network")
    if amount_msat is not None and amount_msat <= 0:
        raise InvalidInvoice("Invoice amount must be positive")

    tags = Tags()
    tags.add(TagChar.payment_hash, payment_hash)
    tags.add(TagChar.payment_secret, payment_secret or os.urandom(32).hex())
    tags.add(TagChar.description, description)
    if expiry is not None:
        tags.add(TagChar.expire_time, expiry)
    if min_final_cltv_expiry is not None:
        tags.add(TagChar.min_final_cltv_expiry, min_final_cltv_expiry)

    invoice = Bolt11(
        currency=network,
        date=timestamp,
        amount_msat=MilliSatoshi(amount_msat) if amount_msat is not None else None,
        tags=tags,
    )
    return _bolt11_encode(invoice, private_key or os.urandom(32).hex())
