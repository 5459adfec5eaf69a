"""
Factory for creating payout providers based on configuration.
"""
import logging

from marketplace.core.errors import UnsupportedPayoutProvider
from marketplace.services.payouts.providers.bank_transfer import BankTransferProvider
from marketplace.services.payouts.providers.base import PayoutProvider
from marketplace.services.payouts.providers.paypal import PayPalProvider
from marketplace.services.payouts.providers.stripe_transfer import StripeTransferProvider

logger = logging.getLogger(__name__)


class PayoutProviderFactory:
    """Factory for creating payout providers."""

    PROVIDERS = {
        "stripe": StripeTransferProvider,
        "paypal": PayPalProvider,
        "bank_transfer": BankTransferProvider,
    }

    def __init__(self, settings):
        self.settings = settings

    @classmethod
    def get_available_providers(cls) -> list[str]:
        return list(cls.PROVIDERS.keys())

    def config_for(self, provider_name: str) -> dict:
        s = self.settings
        timeout = s.payout_provider_timeout_seconds
        if provider_name == "stripe":
            return {"api_key": s.stripe_secret_key}
        if provider_name == "paypal":
            return {
                "client_id": s.paypal_client_id,
                "client_secret": s.paypal_client_secret,
                "api_base": s.paypal_api_base,
                "timeout": timeout,
            }
        if provider_name == "bank_transfer":
            return {
                "api_url": s.bank_transfer_api_url,
                "api_token": s.bank_transfer_api_token,
                "timeout": timeout,
            }
        return {}

    def create(self, provider_name: str) -> PayoutProvider:
        """
        Create provider instance by name.

        Raises:
            UnsupportedPayoutProvider: If provider name is unknown
        """
        name = (provider_name or "").strip().lower()
        provider_class = self.PROVIDERS.get(name)
        if not provider_class:
            raise UnsupportedPayoutProvider(provider_name, self.get_available_providers())

        provider = provider_class(self.config_for(name))
        if not provider.is_available():
            logger.warning("payout_provider_not_configured", extra={"provider": name})
        return provider
