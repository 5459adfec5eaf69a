"""
Webhook signature verification per provider.

Stripe: `Stripe-Signature: t=<ts>,v1=<hex>` checked by the official SDK
(HMAC-SHA256 over "<ts>.<body>", timestamp tolerance).
YooKassa / CoinGate: hex HMAC-SHA256 of the raw body with the shared secret.
All comparisons are constant-time.
"""
import hashlib
import hmac
import logging

import stripe

from marketplace.core.config import settings
from marketplace.core.errors import SignatureError

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "yookassa": "x-yookassa-signature",
    "coingate": "x-coingate-signature",
}


def provider_secret(provider: str) -> str:
    return {
        "stripe": settings.stripe_webhook_secret,
        "yookassa": settings.yookassa_webhook_secret,
        "coingate": settings.coingate_webhook_secret,
    }.get(provider, "")


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _verify_hmac(signature: str, payload: bytes, secret: str) -> bool:
    expected = _hmac_hex(secret, payload)
    return hmac.compare_digest(signature.strip().lower(), expected)


def _verify_stripe(signature: str, payload: bytes, secret: str) -> bool:
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        return False
    return True


def verify_signature(provider: str, payload: bytes, signature: str, secret: str) -> bool:
    """Boolean accept/reject. Unknown providers and empty secrets reject."""
    if not signature or not secret:
        return False
    if provider == "stripe":
        return _verify_stripe(signature, payload, secret)
    if provider in ("yookassa", "coingate"):
        return _verify_hmac(signature, payload, secret)
    logger.error("webhook_provider_unsupported", extra={"provider": provider})
    return False


def require_valid_signature(provider: str, payload: bytes, signature: str | None) -> None:
    """Raise SignatureError (missing=True for an absent header) unless the body is authentic."""
    if not signature:
        logger.warning("webhook_signature_missing", extra={"provider": provider})
        raise SignatureError("Missing signature", provider, missing=True)
    if not verify_signature(provider, payload, signature, provider_secret(provider)):
        logger.warning("webhook_signature_invalid", extra={"provider": provider})
        raise SignatureError("Invalid signature", provider)
