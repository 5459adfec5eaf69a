"""
Celery tasks: commission payout aggregation and dispatch.

Dispatch is never retried by Celery: a failed transfer stays `failed` until
an operator re-queues it.
"""
import logging
from datetime import datetime, timedelta, timezone

from marketplace.core.celery_app import celery_app
from marketplace.core.config import settings
from marketplace.core.errors import MarketplaceError
from marketplace.db.session import SessionLocal
from marketplace.services.payouts.aggregator import CommissionPayoutAggregator
from marketplace.services.payouts.bulk import BulkPayoutRunner
from marketplace.services.payouts.dispatcher import PayoutDispatcher

logger = logging.getLogger(__name__)


def previous_month_period(now: datetime | None = None) -> tuple[datetime, datetime]:
    """[first instant, last instant] of the calendar month before `now` (UTC)."""
    now = now or datetime.now(timezone.utc)
    first_this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    period_end = first_this_month - timedelta(microseconds=1)
    period_start = period_end.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return period_start, period_end


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@celery_app.task(name="marketplace.workers.tasks.payouts.process_commission_payout")
def process_commission_payout(
    referrer_id: str,
    period_start: str,
    period_end: str,
    minimum_payout: str | None = None,
    payment_method: str | None = None,
) -> dict:
    """Aggregate one referrer's period; queue dispatch when a payout was created."""
    db = SessionLocal()
    try:
        result = CommissionPayoutAggregator(db).aggregate(
            referrer_id,
            _parse_ts(period_start),
            _parse_ts(period_end),
            minimum_payout,
            payment_method,
        )
        db.commit()
        if result.created:
            dispatch_payout.delay(result.payout_id)
        return result.as_dict()
    except Exception:
        db.rollback()
        logger.exception("process_commission_payout_error", extra={"referrer_id": referrer_id})
        raise
    finally:
        db.close()


@celery_app.task(name="marketplace.workers.tasks.payouts.dispatch_payout")
def dispatch_payout(payout_id: str, provider: str | None = None) -> dict:
    db = SessionLocal()
    try:
        result = PayoutDispatcher(db).dispatch(payout_id, provider)
        return {
            "payoutId": result.payout_id,
            "status": result.status,
            "transactionId": result.transaction_id,
            "error": result.error,
        }
    except MarketplaceError as exc:
        db.rollback()
        logger.error("dispatch_payout_rejected", extra={"payout_id": payout_id, "error": str(exc)})
        return {"payoutId": payout_id, "status": "rejected", "error": str(exc)}
    finally:
        db.close()


@celery_app.task(name="marketplace.workers.tasks.payouts.process_bulk_commission_payouts")
def process_bulk_commission_payouts(
    period_start: str,
    period_end: str,
    minimum_payout: str | None = None,
    payment_method: str | None = None,
) -> dict:
    result = BulkPayoutRunner(SessionLocal).run(
        _parse_ts(period_start),
        _parse_ts(period_end),
        minimum_payout,
        payment_method,
    )
    return result.as_dict()


@celery_app.task(name="marketplace.workers.tasks.payouts.schedule_monthly_payouts")
def schedule_monthly_payouts() -> dict:
    """Queue the bulk run for the previous calendar month."""
    period_start, period_end = previous_month_period()
    process_bulk_commission_payouts.delay(
        period_start.isoformat(),
        period_end.isoformat(),
        str(settings.payout_minimum_amount),
        settings.payout_default_method,
    )
    logger.info(
        "monthly_payouts_scheduled",
        extra={"period_start": period_start.isoformat(), "period_end": period_end.isoformat()},
    )
    return {"periodStart": period_start.isoformat(), "periodEnd": period_end.isoformat()}
