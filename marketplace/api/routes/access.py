"""
Buyer API: product downloads against access grants.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.models.user import User
from marketplace.services.access.service import ProductAccessService
from marketplace.services.auth.jwt import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/access", tags=["access"])


@router.post("/{product_id}/downloads")
def register_download(
    product_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    grant = ProductAccessService(db).register_download(user.id, product_id)
    if grant is None:
        logger.info("product_download_denied", extra={"user_id": user.id, "product_id": product_id})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No active access to this product")
    db.commit()
    return {
        "productId": grant.product_id,
        "purchaseId": grant.purchase_id,
        "downloadCount": grant.download_count,
    }
