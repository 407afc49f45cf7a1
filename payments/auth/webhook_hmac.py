import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from django.conf import settings
from django.core.cache import cache
from rest_framework import exceptions
from rest_framework.authentication import BaseAuthentication

from core.secrets import decrypt_secret

logger = logging.getLogger("errandbit.webhooks")

# En-têtes requis par le contrat:
HDR_SIG = "HTTP_X_WEBHOOK_SIGNATURE"     # X-Webhook-Signature (hex HMAC SHA256)
HDR_TS = "HTTP_X_WEBHOOK_TIMESTAMP"      # X-Webhook-Timestamp (epoch ms)

ANTI_REPLAY_TTL = 10 * 60  # couvre la fenêtre ±5min


def sign_webhook(secret: bytes, body: bytes, ts_ms: Optional[int] = None) -> Tuple[str, str]:
    """
    Signature = hex(HMAC_SHA256(secret, f"{ts}" + body))
    Retourne (timestamp_ms_str, hex_signature)
    """
    if ts_ms is None:
        ts_ms = int(time.time() * 1000)
    to_sign = str(ts_ms).encode("utf-8") + body
    sig = hmac.new(secret, to_sign, hashlib.sha256).hexdigest()
    return str(ts_ms), sig


@dataclass
class LightningNodeCaller:
    source: str = "lightning-node"
    pk: Optional[int] = None
    is_staff: bool = False
    is_authenticated: bool = True


class LightningWebhookAuthentication(BaseAuthentication):
    """
    Notifications du noeud Lightning signées avec LIGHTNING_WEBHOOK_SECRET.
    Exige:
      - X-Webhook-Timestamp (epoch ms), dans la fenêtre WEBHOOK_TIMESKEW_MS
      - X-Webhook-Signature (hex)
    Anti-replay: signature en cache pendant ANTI_REPLAY_TTL.
    Sans secret configuré, accepté uniquement si DEBUG.
    """

    def authenticate_header(self, request) -> str:
        return "HMAC-SHA256"

    def authenticate(self, request):
        secret = decrypt_secret(getattr(settings, "LIGHTNING_WEBHOOK_SECRET", ""))
        if not secret:
            if settings.DEBUG:
                logger.warning("Webhook accepted without signature (no secret configured, DEBUG on)")
                return (LightningNodeCaller(), None)
            logger.error("Webhook rejected: LIGHTNING_WEBHOOK_SECRET is not configured")
            raise exceptions.AuthenticationFailed("Webhook secret not configured")

        sign_hex = request.META.get(HDR_SIG)
        ts_raw = request.META.get(HDR_TS)
        if not sign_hex or not ts_raw:
            raise exceptions.AuthenticationFailed("Missing webhook signature headers")

        # 1) Horodatage acceptable
        try:
            ts_ms = int(ts_raw)
        except ValueError:
            raise exceptions.AuthenticationFailed("Invalid timestamp")

        now_ms = int(time.time() * 1000)
        if abs(now_ms - ts_ms) > settings.WEBHOOK_TIMESKEW_MS:
            logger.warning("Webhook rejected: timestamp skew %s ms", now_ms - ts_ms)
            raise exceptions.AuthenticationFailed("Timestamp skew too large")

        # 2) Vérif HMAC sur timestamp + body brut
        body_bytes = request.body or b""
        _, calc = sign_webhook(secret, body_bytes, ts_ms)
        if not hmac.compare_digest(calc, sign_hex.lower()):
            logger.warning("Webhook rejected: invalid signature")
            raise exceptions.AuthenticationFailed("Invalid signature")

        # 3) Anti-replay (cache)
        replay_key = f"ln-webhook-replay:{calc}"
        if not cache.add(replay_key, 1, timeout=ANTI_REPLAY_TTL):
            logger.warning("Webhook rejected: replay detected")
            raise exceptions.AuthenticationFailed("Replay detected")

        return (LightningNodeCaller(), None)
