"""
Exception taxonomy for the payment and payout core.

Business-rule rejections (below minimum, duplicate payout, insufficient
balance) are not here: they are returned as result objects, see
marketplace.services.payouts.results.
"""
from typing import Any


class MarketplaceError(Exception):
    """Base class for errors raised by the payment and payout services."""


class SignatureError(MarketplaceError):
    """Webhook signature missing or does not match the shared secret."""

    def __init__(self, message: str, provider: str, missing: bool = False):
        super().__init__(message)
        self.provider = provider
        self.missing = missing


class NotFoundError(MarketplaceError):
    def __init__(self, entity: str, ref: str):
        super().__init__(f"{entity} not found: {ref}")
        self.entity = entity
        self.ref = ref


class PaymentNotFoundError(NotFoundError):
    def __init__(self, ref: str):
        super().__init__("payment", ref)


class PayoutNotFoundError(NotFoundError):
    def __init__(self, ref: str):
        super().__init__("payout", ref)


class IllegalTransitionError(MarketplaceError):
    def __init__(self, entity: str, entity_id: str, old: str, new: str):
        super().__init__(f"{entity} {entity_id}: illegal transition {old} -> {new}")
        self.entity_id = entity_id
        self.old = old
        self.new = new


class ProductAccessError(MarketplaceError):
    """Access grant could not be written; the webhook must be retried."""


class PayoutProviderError(MarketplaceError):
    """
    External transfer failed or timed out. Never retried automatically.

    transient=False marks errors about the payout itself (missing destination,
    provider not configured, 4xx validation); those do not trip the breaker.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        detail: dict[str, Any] | None = None,
        transient: bool = True,
    ):
        super().__init__(message)
        self.provider = provider
        self.detail = detail or {}
        self.transient = transient


def is_transient_http_status(code: int | None) -> bool:
    return code is None or code >= 500 or code in (408, 429)


class UnsupportedPayoutProvider(MarketplaceError):
    def __init__(self, provider: str, available: list[str]):
        super().__init__(
            f"Unsupported payout provider: {provider}. Available: {', '.join(available)}"
        )
        self.provider = provider
