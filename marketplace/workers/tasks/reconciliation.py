"""
Celery periodic task: grant access for succeeded payments that have none.
"""
import logging

from marketplace.core.celery_app import celery_app
from marketplace.db.session import SessionLocal
from marketplace.services.access.service import ProductAccessService

logger = logging.getLogger(__name__)


@celery_app.task(name="marketplace.workers.tasks.reconciliation.reconcile_product_access")
def reconcile_product_access(limit: int = 500) -> dict:
    db = SessionLocal()
    try:
        repaired = ProductAccessService(db).reconcile(limit=limit)
        db.commit()
        logger.info("reconcile_product_access_done", extra={"repaired": repaired})
        return {"repaired": repaired}
    except Exception:
        db.rollback()
        logger.exception("reconcile_product_access_error")
        return {"repaired": 0, "error": "exception"}
    finally:
        db.close()
