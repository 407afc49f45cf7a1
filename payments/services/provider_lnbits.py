import logging
from typing import Optional

import httpx
from django.conf import settings

from core import errors
from core.secrets import decrypt_secret
from .lninvoice import InvalidInvoice, LightningInvoice, decode
from .preimage import hash_prefix
from .provider import BaseLightningProvider, PaymentStatus, SentPayment

logger = logging.getLogger("errandbit.lightning")


class LnbitsLightningProvider(BaseLightningProvider):
    """
    API REST LNbits (wallet invoice key):
      POST /api/v1/payments {"out": false, "amount", "memo", "expiry"} -> facture entrante
      GET  /api/v1/payments/<hash>                                     -> statut + préimage
      POST /api/v1/payments {"out": true, "bolt11"}                    -> paiement sortant
    Toute erreur transport/HTTP -> ServiceUnavailableError("LIGHTNING_UNAVAILABLE").
    """
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout_s: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.base_url = (base_url or settings.LNBITS_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else decrypt_secret(settings.LNBITS_API_KEY).decode("utf-8")
        self.timeout_s = timeout_s or settings.LIGHTNING_TIMEOUT_S
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout_s,
            headers={"X-Api-Key": self.api_key, "Content-Type": "application/json"},
            transport=self.transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("LNbits %s %s failed: %s", method, path, e)
            raise errors.ServiceUnavailableError("Lightning backend unavailable", "LIGHTNING_UNAVAILABLE")

    def create_invoice(self, *, amount_sats: int, memo: str, expiry: int = 3600) -> LightningInvoice:
        data = self._request("POST", "/api/v1/payments", json={
            "out": False, "amount": amount_sats, "memo": memo, "expiry": expiry,
        })
        try:
            invoice = decode(data.get("payment_request") or data.get("bolt11") or "")
        except InvalidInvoice as e:
            logger.error("LNbits returned an undecodable invoice: %s", e)
            raise errors.ServiceUnavailableError("Lightning backend returned an invalid invoice",
                                                 "LIGHTNING_UNAVAILABLE")
        returned_hash = (data.get("payment_hash") or "").lower()
        if returned_hash and returned_hash != invoice.payment_hash:
            logger.error("LNbits hash mismatch (returned=%s, decoded=%s)",
                         hash_prefix(returned_hash), hash_prefix(invoice.payment_hash))
            raise errors.ServiceUnavailableError("Lightning backend returned an inconsistent invoice",
                                                 "LIGHTNING_UNAVAILABLE")
        logger.info("Invoice created via LNbits (%s sats, hash=%s)", amount_sats, hash_prefix(invoice.payment_hash))
        return invoice

    def check_payment_status(self, payment_hash: str) -> PaymentStatus:
        data = self._request("GET", f"/api/v1/payments/{payment_hash.lower()}")
        paid = bool(data.get("paid"))
        return PaymentStatus(paid=paid, preimage=data.get("preimage") if paid else None)

    def send_payment(self, bolt11: str) -> SentPayment:
        data = self._request("POST", "/api/v1/payments", json={"out": True, "bolt11": bolt11})
        payment_hash = (data.get("payment_hash") or "").lower()
        preimage = data.get("payment_preimage")
        if not preimage and payment_hash:
            # selon la version, LNbits ne renvoie la préimage que via le statut du paiement
            preimage = self.check_payment_status(payment_hash).preimage
        return SentPayment(payment_hash=payment_hash, preimage=preimage)

    def check_health(self) -> bool:
        try:
            data = self._request("GET", "/api/v1/wallet")
        except errors.ServiceUnavailableError:
            return False
        logger.debug("LNbits wallet reachable (balance=%s msat)", data.get("balance"))
        return True
