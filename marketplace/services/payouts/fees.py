"""
Payout processing fees per payment method.

paypal         3% of amount
bank_transfer  min(5.00, 2% of amount)
crypto         1% of amount
anything else  0
"""
from decimal import Decimal

from marketplace.utils.money import percent_of, quantize

BANK_TRANSFER_FEE_CAP = Decimal("5.00")

FEE_PERCENT = {
    "paypal": Decimal("3"),
    "bank_transfer": Decimal("2"),
    "crypto": Decimal("1"),
}


def calculate_processing_fee(amount, payment_method: str | None, currency: str = "USD") -> tuple[Decimal, Decimal]:
    """Return (fee, net_amount), both rounded half-up to the minor unit."""
    amount = quantize(amount, currency)
    method = (payment_method or "").strip().lower()
    percent = FEE_PERCENT.get(method)
    if percent is None:
        fee = quantize(0, currency)
    else:
        fee = percent_of(amount, percent, currency)
        if method == "bank_transfer":
            fee = min(fee, quantize(BANK_TRANSFER_FEE_CAP, currency))
    return fee, amount - fee
