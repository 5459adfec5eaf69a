"""
Structured outcomes for business-rule decisions.

Below-minimum, duplicate payout, insufficient balance and an open request are
expected results, not errors; callers branch on `outcome`.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


class PayoutOutcome(str, enum.Enum):
    CREATED = "created"
    BELOW_MINIMUM = "below_minimum"
    ALREADY_EXISTS = "already_exists"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PENDING_REQUEST_EXISTS = "pending_request_exists"


@dataclass
class AggregationResult:
    referrer_id: str
    outcome: PayoutOutcome
    amount: Decimal
    payout_id: str | None = None
    fee_amount: Decimal | None = None
    net_amount: Decimal | None = None

    @property
    def created(self) -> bool:
        return self.outcome == PayoutOutcome.CREATED

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.created,
            "amount": str(self.amount),
            "payoutId": self.payout_id,
        }
        if not self.created:
            data["reason"] = self.outcome.value
        return data


@dataclass
class DispatchResult:
    payout_id: str
    provider: str
    status: str  # paid / failed
    transaction_id: str | None = None
    error: str | None = None

    @property
    def paid(self) -> bool:
        return self.status == "paid"


@dataclass
class BulkReferrerDetail:
    referrer_id: str
    status: str  # processed / skipped / failed
    amount: Decimal = Decimal("0.00")
    payout_id: str | None = None
    reason: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "referrerId": self.referrer_id,
            "status": self.status,
            "amount": str(self.amount),
            "payoutId": self.payout_id,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class BulkPayoutResult:
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    total_amount: Decimal = Decimal("0.00")
    details: list[BulkReferrerDetail] = field(default_factory=list)

    def add(self, detail: BulkReferrerDetail) -> None:
        self.details.append(detail)
        if detail.status == "processed":
            self.processed += 1
            self.total_amount += detail.amount
        elif detail.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "totalAmount": str(self.total_amount),
            "details": [d.as_dict() for d in self.details],
        }


@dataclass
class PayoutRequestResult:
    outcome: PayoutOutcome
    request: Any = None  # PartnerPayoutRequest when created
    message: str = ""
    available_balance: Decimal | None = None

    @property
    def created(self) -> bool:
        return self.outcome == PayoutOutcome.CREATED
