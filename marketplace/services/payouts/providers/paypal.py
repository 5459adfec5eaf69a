"""
PayPal Payouts API provider (client-credentials OAuth, then one-item batch).
"""
import httpx

from marketplace.core.errors import PayoutProviderError, is_transient_http_status
from marketplace.services.payouts.providers.base import PayoutProvider, TransferResult


class PayPalProvider(PayoutProvider):
    name = "paypal"

    def __init__(self, config: dict):
        super().__init__(config)
        self.client_id = config.get("client_id")
        self.client_secret = config.get("client_secret")
        self.api_base = (config.get("api_base") or "https://api-m.paypal.com").rstrip("/")
        self.timeout = config.get("timeout", 30.0)

    def is_available(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _access_token(self, client: httpx.Client) -> str:
        response = client.post(
            f"{self.api_base}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        response.raise_for_status()
        return response.json()["access_token"]

    def transfer(self, payout) -> TransferResult:
        if not self.is_available():
            raise PayoutProviderError("PayPal payout provider not configured", provider=self.name, transient=False)

        receiver = self._destination(payout, "paypal_email")
        payload = {
            "sender_batch_header": {
                "sender_batch_id": payout.idempotency_key,
                "email_subject": "You have a commission payout",
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "receiver": receiver,
                    "amount": {"value": f"{payout.net_amount:.2f}", "currency": payout.currency},
                    "sender_item_id": payout.id,
                }
            ],
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                token = self._access_token(client)
                response = client.post(
                    f"{self.api_base}/v1/payments/payouts",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "PayPal-Request-Id": payout.idempotency_key,
                    },
                    json=payload,
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise PayoutProviderError(
                f"PayPal returned {exc.response.status_code}",
                provider=self.name,
                detail={"http_status": exc.response.status_code, "body": exc.response.text[:500]},
                transient=is_transient_http_status(exc.response.status_code),
            ) from exc
        except httpx.HTTPError as exc:
            raise PayoutProviderError(f"PayPal request failed: {exc}", provider=self.name) from exc

        batch_id = (body.get("batch_header") or {}).get("payout_batch_id")
        if not batch_id:
            raise PayoutProviderError("PayPal response missing payout_batch_id", provider=self.name)
        return TransferResult(
            transaction_id=batch_id,
            provider=self.name,
            raw_response_sanitized={"batch_status": body["batch_header"].get("batch_status")},
        )
