"""Money helpers: Decimal only, rounded to the currency's minor unit (half-up)."""
from decimal import ROUND_HALF_UP, Decimal

# ISO 4217 currencies without a minor unit; everything else uses cents.
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "UGX"})


def to_decimal(value) -> Decimal:
    """Convert provider amounts (str, int, float, Decimal) without float drift."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def minor_unit(currency: str | None) -> Decimal:
    if currency and currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal("1")
    return Decimal("0.01")


def quantize(amount, currency: str | None = "USD") -> Decimal:
    return to_decimal(amount).quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def percent_of(amount, percent, currency: str | None = "USD") -> Decimal:
    """amount * percent / 100, rounded once at the end."""
    return quantize(to_decimal(amount) * to_decimal(percent) / Decimal(100), currency)


def from_minor_units(value: int, currency: str | None = "USD") -> Decimal:
    """Stripe sends integer minor units (2500 -> 25.00 USD)."""
    unit = minor_unit(currency)
    return quantize(Decimal(value) * unit, currency)
