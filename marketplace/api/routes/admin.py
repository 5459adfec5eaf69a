"""
Operator API: bulk payout trigger, single-referrer aggregation, dispatch,
re-queue, pending/failed listings, access reconciliation.
"""
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from marketplace.core.errors import IllegalTransitionError, NotFoundError, UnsupportedPayoutProvider
from marketplace.db.session import SessionLocal, get_db
from marketplace.models.commission_payout import CommissionPayout
from marketplace.services.access.service import ProductAccessService
from marketplace.services.auth.jwt import require_admin
from marketplace.services.payouts.aggregator import CommissionPayoutAggregator
from marketplace.services.payouts.bulk import BulkPayoutRunner
from marketplace.services.payouts.dispatcher import PayoutDispatcher

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def get_session_factory():
    return SessionLocal


class PeriodIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    period_start: datetime = Field(alias="periodStart")
    period_end: datetime = Field(alias="periodEnd")
    minimum_payout: Decimal | None = Field(default=None, alias="minimumPayout", ge=0)
    payment_method: str | None = Field(default=None, alias="paymentMethod")

    @field_validator("period_start", "period_end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)


class AggregateIn(PeriodIn):
    referrer_id: str = Field(alias="referrerId")


class DispatchIn(BaseModel):
    provider: str | None = None


def _payout_dict(p: CommissionPayout) -> dict:
    return {
        "id": p.id,
        "referrerId": p.referrer_id,
        "periodStart": p.period_start.isoformat(),
        "periodEnd": p.period_end.isoformat(),
        "amount": str(p.amount),
        "feeAmount": str(p.fee_amount),
        "netAmount": str(p.net_amount),
        "currency": p.currency,
        "paymentMethod": p.payment_method,
        "status": p.status,
        "externalTransactionId": p.external_transaction_id,
        "error": p.error,
        "requeuedFromId": p.requeued_from_id,
        "rootPayoutId": p.root_payout_id,
        "processedAt": p.processed_at.isoformat() if p.processed_at else None,
    }


def _check_period(body: PeriodIn) -> None:
    if body.period_end < body.period_start:
        raise HTTPException(status_code=400, detail="periodEnd must not be before periodStart")


# ---------- Payouts ----------
@router.post("/payouts/bulk")
def trigger_bulk_payouts(body: PeriodIn, session_factory=Depends(get_session_factory)):
    _check_period(body)
    result = BulkPayoutRunner(session_factory).run(
        body.period_start, body.period_end, body.minimum_payout, body.payment_method
    )
    return result.as_dict()


@router.post("/payouts/aggregate")
def aggregate_referrer(body: AggregateIn, db: Session = Depends(get_db)):
    _check_period(body)
    result = CommissionPayoutAggregator(db).aggregate(
        body.referrer_id, body.period_start, body.period_end, body.minimum_payout, body.payment_method
    )
    db.commit()
    return result.as_dict()


@router.get("/payouts")
def list_payouts(
    status: str = Query("pending", pattern="^(pending|failed)$"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    dispatcher = PayoutDispatcher(db)
    payouts = dispatcher.list_pending(limit) if status == "pending" else dispatcher.list_failed(limit)
    return {"payouts": [_payout_dict(p) for p in payouts]}


@router.post("/payouts/{payout_id}/dispatch")
def dispatch_payout(payout_id: str, body: DispatchIn | None = None, db: Session = Depends(get_db)):
    try:
        result = PayoutDispatcher(db).dispatch(payout_id, body.provider if body else None)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except UnsupportedPayoutProvider as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except IllegalTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {
        "payoutId": result.payout_id,
        "provider": result.provider,
        "status": result.status,
        "transactionId": result.transaction_id,
        "error": result.error,
    }


@router.post("/payouts/{payout_id}/requeue")
def requeue_payout(payout_id: str, db: Session = Depends(get_db)):
    try:
        result = PayoutDispatcher(db).requeue_failed(payout_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except IllegalTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    db.commit()
    return result.as_dict()


# ---------- Access ----------
@router.post("/access/reconcile")
def reconcile_access(limit: int = Query(500, ge=1, le=5000), db: Session = Depends(get_db)):
    repaired = ProductAccessService(db).reconcile(limit=limit)
    db.commit()
    return {"repaired": repaired}
