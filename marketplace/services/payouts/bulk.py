"""
BulkPayoutRunner: fan out aggregate + dispatch, one unit per referrer.

Units share no state: each opens its own session from `session_factory`, so
one referrer's failure (rolled back and recorded in its detail entry) never
touches another's transaction or stops the batch.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.services.payouts.aggregator import CommissionPayoutAggregator
from marketplace.services.payouts.dispatcher import PayoutDispatcher
from marketplace.services.payouts.results import BulkPayoutResult, BulkReferrerDetail
from marketplace.utils.metrics import bulk_payout_in_progress
from marketplace.utils.money import quantize, to_decimal

logger = logging.getLogger(__name__)


class BulkPayoutRunner:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        max_workers: int | None = None,
        dispatcher_factory: Callable[[Session], PayoutDispatcher] | None = None,
    ):
        self.session_factory = session_factory
        self.max_workers = max_workers or settings.payout_bulk_concurrency
        self.dispatcher_factory = dispatcher_factory or PayoutDispatcher

    def run(
        self,
        period_start: datetime,
        period_end: datetime,
        minimum_payout=None,
        payment_method: str | None = None,
        dispatch: bool = True,
    ) -> BulkPayoutResult:
        minimum = to_decimal(settings.payout_minimum_amount if minimum_payout is None else minimum_payout)
        method = (payment_method or settings.payout_default_method).strip().lower()

        db = self.session_factory()
        try:
            referrer_ids = CommissionPayoutAggregator(db).eligible_referrers(period_start, period_end)
        finally:
            db.close()

        result = BulkPayoutResult(total=len(referrer_ids))
        logger.info(
            "bulk_payout_started",
            extra={
                "total": result.total,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
            },
        )
        if not referrer_ids:
            return result

        bulk_payout_in_progress.inc()
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="bulk-payout") as pool:
                futures = {
                    pool.submit(
                        self._process_referrer, referrer_id, period_start, period_end, minimum, method, dispatch
                    ): referrer_id
                    for referrer_id in referrer_ids
                }
                for future in as_completed(futures):
                    result.add(future.result())
        finally:
            bulk_payout_in_progress.dec()

        # stable order for the audit trail
        order = {rid: i for i, rid in enumerate(referrer_ids)}
        result.details.sort(key=lambda d: order[d.referrer_id])
        result.total_amount = quantize(result.total_amount, settings.payout_currency)

        logger.info(
            "bulk_payout_completed",
            extra={
                "total": result.total,
                "processed": result.processed,
                "skipped": result.skipped,
                "failed": result.failed,
                "amount": result.total_amount,
            },
        )
        return result

    def _process_referrer(
        self,
        referrer_id: str,
        period_start: datetime,
        period_end: datetime,
        minimum,
        method: str,
        dispatch: bool,
    ) -> BulkReferrerDetail:
        db = self.session_factory()
        try:
            aggregation = CommissionPayoutAggregator(db).aggregate(
                referrer_id, period_start, period_end, minimum, method
            )
            db.commit()
            if not aggregation.created:
                return BulkReferrerDetail(
                    referrer_id,
                    "skipped",
                    amount=aggregation.amount,
                    payout_id=aggregation.payout_id,
                    reason=aggregation.outcome.value,
                )
            if not dispatch:
                return BulkReferrerDetail(
                    referrer_id, "processed", amount=aggregation.amount, payout_id=aggregation.payout_id
                )

            outcome = self.dispatcher_factory(db).dispatch(aggregation.payout_id, method)
            if not outcome.paid:
                return BulkReferrerDetail(
                    referrer_id,
                    "failed",
                    amount=aggregation.amount,
                    payout_id=aggregation.payout_id,
                    error=outcome.error,
                )
            return BulkReferrerDetail(
                referrer_id, "processed", amount=aggregation.amount, payout_id=aggregation.payout_id
            )
        except Exception as exc:
            db.rollback()
            logger.exception("bulk_payout_referrer_failed", extra={"referrer_id": referrer_id})
            return BulkReferrerDetail(referrer_id, "failed", error=str(exc))
        finally:
            db.close()
