from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


def decrypt_secret(value: str) -> bytes:
    """
    Secrets fournis par l'environnement (clé API LNbits, secret webhook).
    - DEV: "plain:xxxxx" est utilisé tel quel.
    - PROD: jeton Fernet déchiffré avec SECRETS_ENC_KEY.
    Sans SECRETS_ENC_KEY, la valeur brute est utilisée.
    """
    if not value:
        return b""
    if value.startswith("plain:"):
        return value.split("plain:", 1)[1].encode("utf-8")

    enc_key = getattr(settings, "SECRETS_ENC_KEY", "")
    if not enc_key:
        return value.encode("utf-8")
    try:
        return Fernet(enc_key.encode("utf-8")).decrypt(value.encode("utf-8"))
    except (InvalidToken, ValueError):
        raise ImproperlyConfigured("Cannot decrypt secret with SECRETS_ENC_KEY")
