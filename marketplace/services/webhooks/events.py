"""
Provider webhook payloads -> one normalized, tagged event.

Raw bodies are validated with pydantic at the boundary; nothing downstream
touches provider dicts. Unknown event types become UnhandledEvent instead of
falling through.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from marketplace.utils.money import from_minor_units, quantize


# ----- Normalized events -----


class _EventBase(BaseModel):
    provider: Literal["stripe", "yookassa", "coingate"]
    event_type: str
    payment_ref: str  # provider-side payment / order id
    provider_metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class PaymentSucceeded(_EventBase):
    kind: Literal["succeeded"] = "succeeded"
    purchase_id: str
    user_id: str | None = None
    product_id: str | None = None
    referral_code: str | None = None
    amount: Decimal
    currency: str


class PaymentStatusChanged(_EventBase):
    """Non-terminal or terminal-without-side-effects transitions."""

    kind: Literal["status_changed"] = "status_changed"
    new_status: Literal["processing", "failed", "cancelled", "expired"]


class PaymentRefunded(_EventBase):
    kind: Literal["refunded"] = "refunded"
    amount: Decimal | None = None
    currency: str | None = None


class UnhandledEvent(_EventBase):
    kind: Literal["unhandled"] = "unhandled"


PaymentEvent = Annotated[
    Union[PaymentSucceeded, PaymentStatusChanged, PaymentRefunded, UnhandledEvent],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(PaymentEvent)


# ----- Provider payload shapes -----


class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow")


class StripeObject(_Loose):
    id: str
    object: str | None = None
    amount: int | None = None
    amount_received: int | None = None
    amount_refunded: int | None = None
    currency: str | None = None
    payment_intent: str | None = None
    payment_method: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    last_payment_error: dict[str, Any] | None = None
    next_action: dict[str, Any] | None = None


class StripeEventData(_Loose):
    object: StripeObject


class StripeEventIn(_Loose):
    id: str
    type: str
    data: StripeEventData


class YooKassaAmount(_Loose):
    value: str
    currency: str


class YooKassaObject(_Loose):
    id: str
    status: str | None = None
    amount: YooKassaAmount
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: str | None = None
    payment_id: str | None = None  # present on refund objects


class YooKassaEventIn(_Loose):
    type: str = "notification"
    event: str
    object: YooKassaObject


class CoinGateOrderIn(_Loose):
    id: int
    order_id: str
    status: str
    price_amount: Decimal
    price_currency: str
    receive_amount: Decimal | None = None
    receive_currency: str | None = None
    created_at: str | None = None
    token: str | None = None
    payment_url: str | None = None


# ----- Parsers -----


def _stripe_event(raw: dict[str, Any]) -> dict[str, Any]:
    event = StripeEventIn.model_validate(raw)
    obj = event.data.object
    base = {"provider": "stripe", "event_type": event.type}
    currency = (obj.currency or "usd").upper()

    if event.type == "payment_intent.succeeded":
        meta = obj.metadata
        received = obj.amount_received if obj.amount_received is not None else obj.amount or 0
        return {
            **base,
            "kind": "succeeded",
            "payment_ref": obj.id,
            "purchase_id": meta.get("purchase_id") or obj.id,
            "user_id": meta.get("user_id"),
            "product_id": meta.get("product_id"),
            "referral_code": meta.get("referral_code"),
            "amount": from_minor_units(received, currency),
            "currency": currency,
            "provider_metadata": {
                "stripe_payment_intent_id": obj.id,
                "stripe_event_id": event.id,
                "amount_received": received,
                "currency": currency,
                "payment_method": obj.payment_method,
            },
        }
    if event.type == "payment_intent.payment_failed":
        err = obj.last_payment_error or {}
        return {
            **base,
            "kind": "status_changed",
            "new_status": "failed",
            "payment_ref": obj.id,
            "provider_metadata": {
                "stripe_payment_intent_id": obj.id,
                "failure_reason": err.get("message"),
                "failure_code": err.get("code"),
            },
        }
    if event.type == "payment_intent.canceled":
        return {
            **base,
            "kind": "status_changed",
            "new_status": "cancelled",
            "payment_ref": obj.id,
            "provider_metadata": {"stripe_payment_intent_id": obj.id, "cancellation_reason": "user_cancelled"},
        }
    if event.type == "payment_intent.requires_action":
        return {
            **base,
            "kind": "status_changed",
            "new_status": "processing",
            "payment_ref": obj.id,
            "provider_metadata": {
                "stripe_payment_intent_id": obj.id,
                "requires_action": True,
                "next_action": (obj.next_action or {}).get("type"),
            },
        }
    if event.type == "charge.refunded" and obj.payment_intent:
        return {
            **base,
            "kind": "refunded",
            "payment_ref": obj.payment_intent,
            "amount": from_minor_units(obj.amount_refunded or 0, currency),
            "currency": currency,
            "provider_metadata": {"stripe_charge_id": obj.id, "refund_status": "succeeded"},
        }
    return {**base, "kind": "unhandled", "payment_ref": obj.id}


def _yookassa_event(raw: dict[str, Any]) -> dict[str, Any]:
    event = YooKassaEventIn.model_validate(raw)
    obj = event.object
    base = {"provider": "yookassa", "event_type": event.event}
    amount = quantize(obj.amount.value, obj.amount.currency)
    currency = obj.amount.currency.upper()

    if event.event == "payment.succeeded":
        meta = obj.metadata
        return {
            **base,
            "kind": "succeeded",
            "payment_ref": obj.id,
            "purchase_id": meta.get("purchase_id") or obj.id,
            "user_id": meta.get("user_id"),
            "product_id": meta.get("product_id"),
            "referral_code": meta.get("referral_code"),
            "amount": amount,
            "currency": currency,
            "provider_metadata": {
                "yookassa_payment_id": obj.id,
                "amount_received": str(amount),
                "currency": currency,
                "created_at": obj.created_at,
            },
        }
    if event.event == "payment.canceled":
        return {
            **base,
            "kind": "status_changed",
            "new_status": "cancelled",
            "payment_ref": obj.id,
            "provider_metadata": {"yookassa_payment_id": obj.id, "cancellation_reason": "user_cancelled"},
        }
    if event.event == "payment.waiting_for_capture":
        return {
            **base,
            "kind": "status_changed",
            "new_status": "processing",
            "payment_ref": obj.id,
            "provider_metadata": {"yookassa_payment_id": obj.id, "status": "waiting_for_capture"},
        }
    if event.event == "refund.succeeded":
        return {
            **base,
            "kind": "refunded",
            "payment_ref": obj.payment_id or obj.id,
            "amount": amount,
            "currency": currency,
            "provider_metadata": {"yookassa_refund_id": obj.id, "refund_status": "succeeded"},
        }
    return {**base, "kind": "unhandled", "payment_ref": obj.payment_id or obj.id}


def _split_coingate_order(order_id: str) -> tuple[str | None, str | None]:
    """order_id is "<user_id>_<product_id>"; anything else carries no purchase metadata."""
    user_id, sep, product_id = order_id.partition("_")
    if not sep:
        return (user_id or None), None
    return (user_id or None), (product_id or None)


def _coingate_event(raw: dict[str, Any]) -> dict[str, Any]:
    order = CoinGateOrderIn.model_validate(raw)
    base = {"provider": "coingate", "event_type": order.status, "payment_ref": order.order_id}
    currency = order.price_currency.upper()
    common_meta = {"coingate_order_id": str(order.id), "created_at": order.created_at}

    if order.status == "paid":
        user_id, product_id = _split_coingate_order(order.order_id)
        return {
            **base,
            "kind": "succeeded",
            "purchase_id": order.order_id,
            "user_id": user_id,
            "product_id": product_id,
            "referral_code": order.token or None,
            "amount": quantize(order.price_amount, currency),
            "currency": currency,
            "provider_metadata": {
                **common_meta,
                "amount_received": str(order.receive_amount) if order.receive_amount is not None else None,
                "currency_received": order.receive_currency,
                "price_amount": str(order.price_amount),
                "price_currency": currency,
                "payment_url": order.payment_url,
            },
        }
    if order.status in ("canceled", "expired"):
        new_status = "cancelled" if order.status == "canceled" else "expired"
        return {**base, "kind": "status_changed", "new_status": new_status, "provider_metadata": common_meta}
    if order.status == "confirming":
        return {
            **base,
            "kind": "status_changed",
            "new_status": "processing",
            "provider_metadata": {**common_meta, "status": "confirming"},
        }
    if order.status == "refunded":
        return {
            **base,
            "kind": "refunded",
            "amount": quantize(order.price_amount, currency),
            "currency": currency,
            "provider_metadata": {**common_meta, "refund_status": "succeeded"},
        }
    return {**base, "kind": "unhandled"}


_PARSERS = {
    "stripe": _stripe_event,
    "yookassa": _yookassa_event,
    "coingate": _coingate_event,
}


def parse_event(provider: str, raw: dict[str, Any]):
    """
    Validate a provider payload and return a PaymentEvent variant.

    Raises pydantic.ValidationError for malformed bodies and ValueError for
    unknown providers.
    """
    parser = _PARSERS.get(provider)
    if parser is None:
        raise ValueError(f"Unknown webhook provider: {provider}")
    return _event_adapter.validate_python(parser(raw))


__all__ = [
    "PaymentEvent",
    "PaymentRefunded",
    "PaymentStatusChanged",
    "PaymentSucceeded",
    "UnhandledEvent",
    "parse_event",
]
