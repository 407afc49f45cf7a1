"""
Vérification cryptographique d'une preuve de paiement Lightning:
SHA256(preimage) == payment_hash.

Discipline unique: verify_preimage() ne lève jamais et retourne False pour
toute entrée mal formée (longueur, caractères non hex, vide, None). Les
appelants qui doivent distinguer "mal formé" de "ne correspond pas" testent
is_hex32() en amont et lèvent eux-mêmes une ValidationError.
"""
import hashlib
import hmac
import logging
import re

logger = logging.getLogger("errandbit.payments")

_HEX32_RE = re.compile(r"\A[0-9a-fA-F]{64}\Z")


def is_hex32(value) -> bool:
    """64 caractères hexadécimaux (32 octets), casse indifférente."""
    return isinstance(value, str) and bool(_HEX32_RE.match(value))


def normalize_hex32(value: str) -> str:
    return value.lower()


def hash_prefix(value: str, n: int = 10) -> str:
    """Préfixe à journaliser: jamais de hash/préimage complet dans les logs."""
    if not value:
        return "<none>"
    return f"{value[:n]}..."


def hash_preimage(preimage: str) -> str:
    return hashlib.sha256(bytes.fromhex(preimage)).hexdigest()


def verify_preimage(payment_hash, preimage) -> bool:
    if not is_hex32(payment_hash) or not is_hex32(preimage):
        logger.warning("Preimage verification rejected malformed input (hash=%s)",
                       hash_prefix(payment_hash if isinstance(payment_hash, str) else ""))
        return False

    digest = hashlib.sha256(bytes.fromhex(preimage)).digest()
    expected = bytes.fromhex(payment_hash)
    ok = hmac.compare_digest(digest, expected)
    if not ok:
        logger.warning("Preimage verification failed (expected=%s, computed=%s)",
                       hash_prefix(payment_hash.lower()), hash_prefix(digest.hex()))
    return ok
