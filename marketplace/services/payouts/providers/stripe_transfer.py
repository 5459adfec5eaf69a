"""
Stripe Connect transfer to the partner's connected account.
"""
import stripe

from marketplace.core.errors import PayoutProviderError, is_transient_http_status
from marketplace.services.payouts.providers.base import PayoutProvider, TransferResult
from marketplace.utils.money import minor_unit


class StripeTransferProvider(PayoutProvider):
    name = "stripe"

    def __init__(self, config: dict):
        super().__init__(config)
        self.api_key = config.get("api_key")

    def is_available(self) -> bool:
        return bool(self.api_key)

    def transfer(self, payout) -> TransferResult:
        if not self.is_available():
            raise PayoutProviderError("Stripe payout provider not configured", provider=self.name, transient=False)

        destination = self._destination(payout, "stripe_account")
        amount_minor = int(payout.net_amount / minor_unit(payout.currency))
        try:
            transfer = stripe.Transfer.create(
                api_key=self.api_key,
                amount=amount_minor,
                currency=payout.currency.lower(),
                destination=destination,
                transfer_group=f"payout_{payout.id}",
                metadata={"payout_id": payout.id, "referrer_id": payout.referrer_id},
                idempotency_key=payout.idempotency_key,
            )
        except stripe.StripeError as exc:
            raise PayoutProviderError(
                exc.user_message or str(exc),
                provider=self.name,
                detail={"code": exc.code, "http_status": exc.http_status},
                transient=is_transient_http_status(exc.http_status),
            ) from exc
        return TransferResult(
            transaction_id=transfer.id,
            provider=self.name,
            raw_response_sanitized={"id": transfer.id, "amount": amount_minor},
        )
