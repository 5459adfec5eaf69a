"""
Bank transfer through the configured banking partner API.
"""
import httpx

from marketplace.core.errors import PayoutProviderError, is_transient_http_status
from marketplace.services.payouts.providers.base import PayoutProvider, TransferResult


class BankTransferProvider(PayoutProvider):
    name = "bank_transfer"

    def __init__(self, config: dict):
        super().__init__(config)
        self.api_url = (config.get("api_url") or "").rstrip("/")
        self.api_token = config.get("api_token")
        self.timeout = config.get("timeout", 30.0)

    def is_available(self) -> bool:
        return bool(self.api_url and self.api_token)

    def transfer(self, payout) -> TransferResult:
        if not self.is_available():
            raise PayoutProviderError("Bank transfer provider not configured", provider=self.name, transient=False)

        details = payout.payment_details or {}
        iban = self._destination(payout, "iban")
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.api_url}/transfers",
                    headers={
                        "Authorization": f"Bearer {self.api_token}",
                        "Idempotency-Key": payout.idempotency_key,
                    },
                    json={
                        "reference": payout.id,
                        "amount": f"{payout.net_amount:.2f}",
                        "currency": payout.currency,
                        "iban": iban,
                        "account_name": details.get("account_name"),
                        "bic": details.get("bic"),
                    },
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise PayoutProviderError(
                f"Bank API returned {exc.response.status_code}",
                provider=self.name,
                detail={"http_status": exc.response.status_code},
                transient=is_transient_http_status(exc.response.status_code),
            ) from exc
        except httpx.HTTPError as exc:
            raise PayoutProviderError(f"Bank API request failed: {exc}", provider=self.name) from exc

        transaction_id = body.get("id") or body.get("transaction_id")
        if not transaction_id:
            raise PayoutProviderError("Bank API response missing transaction id", provider=self.name)
        return TransferResult(transaction_id=str(transaction_id), provider=self.name)
