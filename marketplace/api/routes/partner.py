"""
Partner API: payout requests, earnings summary, referral links.
"""
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.models.partner_payout_request import PartnerPayoutRequest
from marketplace.models.referral import Referral
from marketplace.models.user import User
from marketplace.services.auth.jwt import get_current_partner
from marketplace.services.payouts.requests import PartnerPayoutRequestService
from marketplace.services.referrals.service import ReferralService

router = APIRouter(prefix="/partner", tags=["partner"])


class PayoutRequestIn(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_method: str = Field(min_length=1)
    payment_details: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None


class ReferralIn(BaseModel):
    commission_percent: Decimal = Field(gt=0, le=100)
    product_id: str | None = None
    shop_id: str | None = None


def _request_dict(req: PartnerPayoutRequest) -> dict:
    return {
        "id": req.id,
        "amount": str(req.amount),
        "feeAmount": str(req.fee_amount),
        "netAmount": str(req.net_amount),
        "paymentMethod": req.payment_method,
        "status": req.status,
        "notes": req.notes,
        "createdAt": req.created_at.isoformat() if req.created_at else None,
    }


def _referral_dict(ref: Referral) -> dict:
    return {
        "id": ref.id,
        "referralCode": ref.referral_code,
        "productId": ref.product_id,
        "shopId": ref.shop_id,
        "commissionPercent": str(ref.commission_percent),
        "isActive": ref.is_active,
    }


@router.post("/payouts")
def create_payout_request(
    body: PayoutRequestIn,
    partner: User = Depends(get_current_partner),
    db: Session = Depends(get_db),
):
    result = PartnerPayoutRequestService(db).create_request(
        partner.id,
        body.amount,
        body.payment_method,
        body.payment_details,
        body.notes,
    )
    if not result.created:
        return JSONResponse({"error": result.message, "reason": result.outcome.value}, status_code=400)
    db.commit()
    return JSONResponse(
        {"request": _request_dict(result.request), "message": result.message},
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/payouts")
def list_payout_requests(partner: User = Depends(get_current_partner), db: Session = Depends(get_db)):
    requests = PartnerPayoutRequestService(db).list_requests(partner.id)
    return {"requests": [_request_dict(r) for r in requests]}


@router.get("/earnings")
def earnings(partner: User = Depends(get_current_partner), db: Session = Depends(get_db)):
    return ReferralService(db).get_earnings_stats(partner.id).as_dict()


@router.post("/referrals", status_code=status.HTTP_201_CREATED)
def create_referral(
    body: ReferralIn,
    partner: User = Depends(get_current_partner),
    db: Session = Depends(get_db),
):
    try:
        referral = ReferralService(db).create_referral(
            partner.id, body.commission_percent, body.product_id, body.shop_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    db.commit()
    return _referral_dict(referral)


@router.delete("/referrals/{referral_id}")
def deactivate_referral(
    referral_id: str,
    partner: User = Depends(get_current_partner),
    db: Session = Depends(get_db),
):
    referral = (
        db.query(Referral)
        .filter(Referral.id == referral_id, Referral.referrer_id == partner.id)
        .one_or_none()
    )
    if not referral:
        raise HTTPException(status_code=404, detail="Referral not found")
    ReferralService(db).deactivate(referral_id)
    db.commit()
    return {"ok": True}
