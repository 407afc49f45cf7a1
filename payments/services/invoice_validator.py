import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from django.utils import timezone

from . import lninvoice
from .preimage import hash_prefix

logger = logging.getLogger("errandbit.payments")

ERROR_INVALID = "Invalid invoice"
ERROR_EXPIRED = "Invoice expired"
ERROR_AMOUNT_MISMATCH = "Invoice amount mismatch"
ERROR_ALREADY_USED = "Invoice already used"

# message -> code machine rendu par l'API
ERROR_CODES = {
    ERROR_INVALID: "INVALID_INVOICE",
    ERROR_EXPIRED: "INVOICE_EXPIRED",
    ERROR_AMOUNT_MISMATCH: "INVOICE_AMOUNT_MISMATCH",
    ERROR_ALREADY_USED: "INVOICE_ALREADY_USED",
}


@dataclass
class InvoiceValidation:
    is_valid: bool
    error: Optional[str] = None
    details: dict = field(default_factory=dict)
    invoice: Optional[lninvoice.LightningInvoice] = None

    @property
    def error_code(self) -> Optional[str]:
        return ERROR_CODES.get(self.error) if self.error else None


def amount_tolerance(expected_sats: int) -> int:
    """1% du montant attendu, au minimum 1 sat."""
    return max(1, expected_sats // 100)


def validate_invoice(payment_request: str, expected_amount_sats: int, ledger,
                     now: Optional[datetime] = None) -> InvoiceValidation:
    """
    Contrôles dans l'ordre: décodage, expiration, montant, réutilisation.
    Lecture seule: le ledger n'est que consulté.
    """
    try:
        invoice = lninvoice.decode(payment_request)
    except lninvoice.InvalidInvoice as e:
        logger.info("Invoice rejected: %s", e)
        return InvoiceValidation(False, ERROR_INVALID, {"reason": str(e)})

    now = now or timezone.now()
    if invoice.is_expired(now):
        return InvoiceValidation(False, ERROR_EXPIRED,
                                 {"expires_at": invoice.expires_at.isoformat()}, invoice)

    if invoice.amount_sats is not None:
        diff = abs(invoice.amount_sats - expected_amount_sats)
        if diff > amount_tolerance(expected_amount_sats):
            return InvoiceValidation(False, ERROR_AMOUNT_MISMATCH, {
                "invoice_amount_sats": invoice.amount_sats,
                "expected_amount_sats": expected_amount_sats,
            }, invoice)

    if ledger.find_by_payment_hash(invoice.payment_hash) is not None:
        logger.warning("Invoice replay attempt (hash=%s)", hash_prefix(invoice.payment_hash))
        return InvoiceValidation(False, ERROR_ALREADY_USED,
                                 {"payment_hash": invoice.payment_hash}, invoice)

    return InvoiceValidation(True, invoice=invoice)
