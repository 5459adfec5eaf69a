"""
PayoutDispatcher: drives a CommissionPayout through an external provider.

State machine: pending -> processing -> {paid | failed}.

The dispatcher owns its transaction boundaries:
1. `processing` is committed before the provider is called, so a crash
   mid-call leaves an auditable row instead of a silent retry from pending.
2. The provider call runs under a hard timeout; a timeout is a failure.
3. `paid` / `failed` is committed.
4. The notification is written in its own transaction; if it fails only the
   notification is rolled back.

Failed payouts are never retried automatically. An operator re-queues them,
which creates a new pending payout for the same period.
"""
from __future__ import annotations

import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from typing import Callable

import pybreaker
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import IllegalTransitionError, PayoutNotFoundError, PayoutProviderError
from marketplace.models.commission_payout import PAYOUT_ACTIVE_STATUSES, CommissionPayout
from marketplace.services.audit.service import AuditService
from marketplace.services.circuit_breaker import payout_breaker
from marketplace.services.notifications.service import NotificationService
from marketplace.services.payouts.providers.base import PayoutProvider, PayoutTransfer, TransferResult
from marketplace.services.payouts.providers.factory import PayoutProviderFactory
from marketplace.services.payouts.results import AggregationResult, DispatchResult, PayoutOutcome
from marketplace.utils.metrics import payout_provider_duration_seconds, payouts_dispatched_total

logger = logging.getLogger(__name__)

PAYOUT_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing"}),
    "processing": frozenset({"paid", "failed"}),
    "paid": frozenset(),
    "failed": frozenset(),
}


def can_transition_payout(old: str, new: str) -> bool:
    return new in PAYOUT_TRANSITIONS.get(old, frozenset())


class PayoutDispatcher:
    def __init__(
        self,
        db: Session,
        factory: PayoutProviderFactory | None = None,
        timeout: float | None = None,
        breaker_factory: Callable[[str], pybreaker.CircuitBreaker] | None = payout_breaker,
    ):
        self.db = db
        self.factory = factory or PayoutProviderFactory(settings)
        self.timeout = settings.payout_provider_timeout_seconds if timeout is None else timeout
        self.breaker_factory = breaker_factory

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, payout_id: str, lock: bool = False) -> CommissionPayout:
        q = self.db.query(CommissionPayout).filter(CommissionPayout.id == payout_id)
        if lock:
            q = q.with_for_update()
        payout = q.one_or_none()
        if payout is None:
            raise PayoutNotFoundError(payout_id)
        return payout

    def list_pending(self, limit: int = 100) -> list[CommissionPayout]:
        return (
            self.db.query(CommissionPayout)
            .filter(CommissionPayout.status == "pending")
            .order_by(CommissionPayout.created_at.asc())
            .limit(limit)
            .all()
        )

    def list_failed(self, limit: int = 100) -> list[CommissionPayout]:
        return (
            self.db.query(CommissionPayout)
            .filter(CommissionPayout.status == "failed")
            .order_by(CommissionPayout.processed_at.desc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, payout: CommissionPayout, new_status: str, actor: str = "system") -> None:
        old = payout.status
        if not can_transition_payout(old, new_status):
            raise IllegalTransitionError("payout", payout.id, old, new_status)
        payout.status = new_status
        if new_status in ("paid", "failed"):
            payout.processed_at = datetime.now(timezone.utc)
        self.db.add(payout)
        AuditService(self.db).log(
            actor,
            None,
            f"payout_{new_status}",
            "commission_payout",
            payout.id,
            {"old_status": old, "new_status": new_status},
        )
        self.db.flush()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _call_provider(self, provider: PayoutProvider, transfer: PayoutTransfer) -> TransferResult:
        call = provider.transfer
        if self.breaker_factory is not None:
            breaker = self.breaker_factory(provider.name)
            call = functools.partial(breaker.call, provider.transfer)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"payout-{provider.name}")
        try:
            future = executor.submit(call, transfer)
            return future.result(timeout=self.timeout)
        finally:
            # a timed-out call keeps running in the background; never wait on it
            executor.shutdown(wait=False, cancel_futures=True)

    def dispatch(self, payout_id: str, provider_name: str | None = None) -> DispatchResult:
        """
        Send one pending payout through `provider_name` (defaults to the
        payout's payment method).

        Raises PayoutNotFoundError, UnsupportedPayoutProvider (payout stays
        pending) or IllegalTransitionError (payout not pending).
        """
        payout = self.get(payout_id, lock=True)
        provider = self.factory.create(provider_name or payout.payment_method)

        self._transition(payout, "processing")
        transfer = PayoutTransfer.from_payout(payout)
        self.db.commit()
        logger.info(
            "payout_processing",
            extra={"payout_id": payout_id, "provider": provider.name, "net_amount": transfer.net_amount},
        )

        result: TransferResult | None = None
        error: str | None = None
        started = time.monotonic()
        try:
            result = self._call_provider(provider, transfer)
        except FuturesTimeoutError:
            error = f"provider timed out after {self.timeout}s"
        except pybreaker.CircuitBreakerError:
            error = f"circuit breaker open for {provider.name}"
        except PayoutProviderError as exc:
            error = str(exc)
        except Exception as exc:
            logger.exception(
                "payout_provider_unexpected_error",
                extra={"payout_id": payout_id, "provider": provider.name},
            )
            error = f"{type(exc).__name__}: {exc}"
        duration = time.monotonic() - started
        payout_provider_duration_seconds.labels(provider=provider.name).observe(duration)

        payout = self.get(payout_id, lock=True)
        if result is not None:
            payout.external_transaction_id = result.transaction_id
            self._transition(payout, "paid")
        else:
            payout.error = error
            self._transition(payout, "failed")
        self.db.commit()

        status = payout.status
        payouts_dispatched_total.labels(provider=provider.name, status=status).inc()
        log_extra = {
            "payout_id": payout_id,
            "provider": provider.name,
            "status": status,
            "duration_ms": int(duration * 1000),
        }
        if result is not None:
            logger.info("payout_dispatched", extra={**log_extra, "transaction_id": result.transaction_id})
        else:
            logger.error("payout_dispatch_failed", extra={**log_extra, "error": error})

        self._notify(payout, provider.name, error)
        return DispatchResult(
            payout_id=payout_id,
            provider=provider.name,
            status=status,
            transaction_id=result.transaction_id if result else None,
            error=error,
        )

    def _notify(self, payout: CommissionPayout, provider_name: str, error: str | None) -> None:
        try:
            notifications = NotificationService(self.db)
            if payout.status == "paid":
                notifications.payout_completed(payout, provider_name)
            else:
                notifications.payout_failed(payout, provider_name, error or "unknown error")
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(
                "payout_notification_failed",
                extra={"payout_id": payout.id, "status": payout.status},
            )

    # ------------------------------------------------------------------
    # Re-queue
    # ------------------------------------------------------------------

    def _active_for_period(self, payout: CommissionPayout) -> CommissionPayout | None:
        return (
            self.db.query(CommissionPayout)
            .filter(
                CommissionPayout.referrer_id == payout.referrer_id,
                CommissionPayout.period_start == payout.period_start,
                CommissionPayout.period_end == payout.period_end,
                CommissionPayout.status.in_(PAYOUT_ACTIVE_STATUSES),
            )
            .first()
        )

    def requeue_failed(self, payout_id: str, actor_id: str | None = None) -> AggregationResult:
        """
        Create a fresh pending payout for a failed one's period. The failed
        row is left untouched. Caller commits.
        """
        failed = self.get(payout_id)
        if failed.status != "failed":
            raise IllegalTransitionError("payout", payout_id, failed.status, "requeued")

        active = self._active_for_period(failed)
        if active:
            return AggregationResult(failed.referrer_id, PayoutOutcome.ALREADY_EXISTS, active.amount, active.id)

        payout = CommissionPayout(
            referrer_id=failed.referrer_id,
            period_start=failed.period_start,
            period_end=failed.period_end,
            amount=failed.amount,
            fee_amount=failed.fee_amount,
            net_amount=failed.net_amount,
            currency=failed.currency,
            payment_method=failed.payment_method,
            payment_details=dict(failed.payment_details or {}),
            status="pending",
            requeued_from_id=failed.id,
            root_payout_id=failed.root_payout_id or failed.id,
        )
        try:
            with self.db.begin_nested():
                self.db.add(payout)
        except IntegrityError:
            active = self._active_for_period(failed)
            if active is None:
                raise
            return AggregationResult(failed.referrer_id, PayoutOutcome.ALREADY_EXISTS, active.amount, active.id)

        AuditService(self.db).log(
            "admin",
            actor_id,
            "payout_requeued",
            "commission_payout",
            payout.id,
            {"requeued_from_id": failed.id, "root_payout_id": payout.root_payout_id},
        )
        logger.info(
            "payout_requeued",
            extra={"payout_id": payout.id, "referrer_id": payout.referrer_id, "amount": payout.amount},
        )
        return AggregationResult(
            payout.referrer_id,
            PayoutOutcome.CREATED,
            payout.amount,
            payout_id=payout.id,
            fee_amount=payout.fee_amount,
            net_amount=payout.net_amount,
        )
