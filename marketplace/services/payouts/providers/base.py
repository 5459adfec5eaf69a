"""
Base classes for payout transfer providers.
Used by the factory and all providers (stripe, paypal, bank_transfer).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from marketplace.core.errors import PayoutProviderError


@dataclass
class TransferResult:
    """Successful transfer at the provider."""
    transaction_id: str
    provider: str
    raw_response_sanitized: dict[str, Any] | None = None


class PayoutProvider(ABC):
    """Base class for payout providers."""

    name: str = ""

    def __init__(self, config: dict) -> None:
        self.config = config

    @abstractmethod
    def is_available(self) -> bool:
        """Check if provider is configured."""
        pass

    @abstractmethod
    def transfer(self, payout) -> TransferResult:
        """Send payout.net_amount to the referrer. Raises PayoutProviderError on failure."""
        pass

    def _destination(self, payout, key: str) -> str:
        value = (payout.payment_details or {}).get(key)
        if not value:
            raise PayoutProviderError(
                f"payout {payout.id} has no {key} in payment details", provider=self.name, transient=False
            )
        return value


@dataclass(frozen=True)
class PayoutTransfer:
    """Detached copy of a payout; providers run off the request thread."""
    id: str
    referrer_id: str
    amount: Decimal
    net_amount: Decimal
    currency: str
    payment_method: str
    payment_details: dict[str, Any]
    root_payout_id: str | None = None

    @property
    def idempotency_key(self) -> str:
        """Stable across every re-queue of the same payout."""
        return f"payout-{self.root_payout_id or self.id}"

    @classmethod
    def from_payout(cls, payout) -> "PayoutTransfer":
        return cls(
            id=payout.id,
            referrer_id=payout.referrer_id,
            amount=payout.amount,
            net_amount=payout.net_amount,
            currency=payout.currency,
            payment_method=payout.payment_method,
            payment_details=dict(payout.payment_details or {}),
            root_payout_id=payout.root_payout_id,
        )
