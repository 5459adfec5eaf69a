"""
ProductAccessService: buyer entitlements after a successful payment.

grant() is idempotent per (user, product, purchase): a retried webhook gets the
existing grant back. A concurrent insert that loses the race on the unique
constraint re-reads the winner's row instead of failing.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.core.errors import ProductAccessError
from marketplace.models.payment import Payment
from marketplace.models.product_access import ProductAccessGrant
from marketplace.utils.metrics import access_reconciled_total

logger = logging.getLogger(__name__)


class ProductAccessService:
    def __init__(self, db: Session):
        self.db = db

    def _find(self, user_id: str, product_id: str, purchase_id: str) -> ProductAccessGrant | None:
        return (
            self.db.query(ProductAccessGrant)
            .filter(
                ProductAccessGrant.user_id == user_id,
                ProductAccessGrant.product_id == product_id,
                ProductAccessGrant.purchase_id == purchase_id,
            )
            .one_or_none()
        )

    def grant(
        self,
        user_id: str,
        product_id: str,
        purchase_id: str,
        payment_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> ProductAccessGrant:
        existing = self._find(user_id, product_id, purchase_id)
        if existing:
            return existing

        grant = ProductAccessGrant(
            user_id=user_id,
            product_id=product_id,
            purchase_id=purchase_id,
            payment_id=payment_id,
            download_count=0,
            expires_at=expires_at,
            is_active=True,
        )
        try:
            with self.db.begin_nested():
                self.db.add(grant)
        except IntegrityError:
            winner = self._find(user_id, product_id, purchase_id)
            if winner is not None:
                return winner
            logger.error(
                "product_access_grant_failed",
                extra={"purchase_id": purchase_id, "user_id": user_id, "product_id": product_id},
            )
            raise ProductAccessError(f"access grant conflict for purchase {purchase_id}")
        except SQLAlchemyError as exc:
            logger.error(
                "product_access_grant_failed",
                extra={
                    "purchase_id": purchase_id,
                    "user_id": user_id,
                    "product_id": product_id,
                    "error": str(exc),
                },
            )
            raise ProductAccessError(f"access grant failed for purchase {purchase_id}") from exc

        logger.info(
            "product_access_granted",
            extra={"purchase_id": purchase_id, "user_id": user_id, "product_id": product_id},
        )
        return grant

    def revoke_by_purchase(self, purchase_id: str) -> int:
        """Deactivate (never delete) every grant for a refunded purchase."""
        now = datetime.now(timezone.utc)
        grants = (
            self.db.query(ProductAccessGrant)
            .filter(
                ProductAccessGrant.purchase_id == purchase_id,
                ProductAccessGrant.is_active.is_(True),
            )
            .all()
        )
        for grant in grants:
            grant.is_active = False
            grant.revoked_at = now
            self.db.add(grant)
        self.db.flush()
        if grants:
            logger.info("product_access_revoked", extra={"purchase_id": purchase_id})
        return len(grants)

    def register_download(self, user_id: str, product_id: str) -> ProductAccessGrant | None:
        """Increment download_count on the user's active, unexpired grant."""
        now = datetime.now(timezone.utc)
        grants = (
            self.db.query(ProductAccessGrant)
            .filter(
                ProductAccessGrant.user_id == user_id,
                ProductAccessGrant.product_id == product_id,
                ProductAccessGrant.is_active.is_(True),
            )
            .with_for_update()
            .all()
        )
        for grant in grants:
            expires = grant.expires_at
            if expires is not None and expires.tzinfo is None:
                expires = expires.replace(tzinfo=timezone.utc)
            if expires is None or expires > now:
                grant.download_count += 1
                self.db.add(grant)
                self.db.flush()
                return grant
        return None

    # ------------------------------------------------------------------
    # Reconciliation sweep
    # ------------------------------------------------------------------

    def find_missing_grants(self, limit: int = 500) -> list[Payment]:
        """Succeeded payments for a product that have no access grant."""
        return (
            self.db.query(Payment)
            .outerjoin(
                ProductAccessGrant,
                (ProductAccessGrant.user_id == Payment.user_id)
                & (ProductAccessGrant.product_id == Payment.product_id)
                & (ProductAccessGrant.payment_id == Payment.id),
            )
            .filter(
                Payment.status == "succeeded",
                Payment.product_id.isnot(None),
                Payment.user_id.isnot(None),
                ProductAccessGrant.id.is_(None),
            )
            .order_by(Payment.succeeded_at.asc())
            .limit(limit)
            .all()
        )

    def reconcile(self, limit: int = 500) -> int:
        """Grant access for every succeeded payment that is missing one."""
        repaired = 0
        for payment in self.find_missing_grants(limit=limit):
            purchase_id = (payment.provider_metadata or {}).get("purchase_id") or payment.provider_payment_id
            self.grant(payment.user_id, payment.product_id, purchase_id, payment_id=payment.id)
            repaired += 1
            access_reconciled_total.inc()
            logger.warning(
                "product_access_reconciled",
                extra={"payment_id": payment.id, "purchase_id": purchase_id, "user_id": payment.user_id},
            )
        return repaired
