"""Tests for PayoutDispatcher: state machine, failures, timeout, notifications."""
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pybreaker
import pytest

from marketplace.core.config import settings
from marketplace.core.errors import (
    IllegalTransitionError,
    PayoutProviderError,
    UnsupportedPayoutProvider,
    is_transient_http_status,
)
from marketplace.models.commission_payout import CommissionPayout
from marketplace.models.notification import Notification
from marketplace.services.audit.service import AuditService
from marketplace.services.circuit_breaker import PAYOUT_BREAKER_EXCLUDE, is_payout_data_error
from marketplace.services.payouts.dispatcher import PayoutDispatcher, can_transition_payout
from marketplace.services.payouts.providers.base import PayoutProvider, TransferResult
from marketplace.services.payouts.providers.factory import PayoutProviderFactory
from marketplace.services.payouts.results import PayoutOutcome


def _factory(transfer=None, name="bank_transfer"):
    provider = MagicMock()
    provider.name = name
    provider.transfer.side_effect = transfer or (lambda t: TransferResult(transaction_id=f"tx-{t.id}", provider=name))
    factory = MagicMock()
    factory.create.return_value = provider
    return factory, provider


@pytest.fixture
def payout(db, period, make_user):
    referrer = make_user()
    payout = CommissionPayout(
        referrer_id=referrer.id,
        period_start=period[0],
        period_end=period[1],
        amount=Decimal("100.00"),
        fee_amount=Decimal("2.00"),
        net_amount=Decimal("98.00"),
        currency="USD",
        payment_method="bank_transfer",
        payment_details={"iban": "DE89370400440532013000"},
        status="pending",
    )
    db.add(payout)
    db.commit()
    return payout


def _transitions(db, payout_id):
    rows = AuditService(db).history("commission_payout", payout_id, action_prefix="payout_")
    return [(r.payload["old_status"], r.payload["new_status"]) for r in rows]


class TestTransitionTable:
    @pytest.mark.parametrize(
        "old, new, allowed",
        [
            ("pending", "processing", True),
            ("processing", "paid", True),
            ("processing", "failed", True),
            ("pending", "paid", False),
            ("paid", "processing", False),
            ("failed", "paid", False),
            ("failed", "processing", False),
        ],
    )
    def test_table(self, old, new, allowed):
        assert can_transition_payout(old, new) is allowed


class TestDispatch:
    def test_success_marks_paid(self, db, payout):
        factory, provider = _factory()
        result = PayoutDispatcher(db, factory=factory, breaker_factory=None).dispatch(payout.id, "bank_transfer")

        assert result.paid
        assert result.transaction_id == f"tx-{payout.id}"
        db.refresh(payout)
        assert payout.status == "paid"
        assert payout.external_transaction_id == f"tx-{payout.id}"
        assert payout.processed_at is not None
        assert _transitions(db, payout.id) == [("pending", "processing"), ("processing", "paid")]
        sent = provider.transfer.call_args[0][0]
        assert sent.net_amount == Decimal("98.00")
        assert db.query(Notification).filter(Notification.type == "payout_completed").count() == 1

    def test_processing_committed_before_provider_call(self, db, payout, session_factory):
        seen = {}

        def transfer(t):
            other = session_factory()
            try:
                seen["status"] = other.get(CommissionPayout, t.id).status
            finally:
                other.close()
            return TransferResult(transaction_id="tx", provider="bank_transfer")

        factory, _ = _factory(transfer)
        PayoutDispatcher(db, factory=factory, breaker_factory=None).dispatch(payout.id)
        assert seen["status"] == "processing"

    def test_provider_failure_marks_failed_and_notifies(self, db, payout):
        factory, _ = _factory(PayoutProviderError("account closed", provider="bank_transfer"))
        result = PayoutDispatcher(db, factory=factory, breaker_factory=None).dispatch(payout.id)

        assert result.status == "failed"
        assert result.error == "account closed"
        db.refresh(payout)
        assert payout.status == "failed"
        assert payout.error == "account closed"
        assert _transitions(db, payout.id) == [("pending", "processing"), ("processing", "failed")]
        notification = db.query(Notification).filter(Notification.type == "payout_failed").one()
        assert notification.data["error"] == "account closed"

    def test_unexpected_provider_exception_marks_failed(self, db, payout):
        factory, _ = _factory(RuntimeError("socket closed"))
        result = PayoutDispatcher(db, factory=factory, breaker_factory=None).dispatch(payout.id)
        assert result.status == "failed"
        assert "socket closed" in result.error

    def test_timeout_marks_failed(self, db, payout):
        def slow(t):
            time.sleep(0.5)
            return TransferResult(transaction_id="late", provider="bank_transfer")

        factory, _ = _factory(slow)
        result = PayoutDispatcher(db, factory=factory, timeout=0.05, breaker_factory=None).dispatch(payout.id)

        assert result.status == "failed"
        assert "timed out" in result.error
        db.refresh(payout)
        assert payout.status == "failed"
        assert payout.external_transaction_id is None

    def test_failed_payout_is_not_retried(self, db, payout):
        factory, provider = _factory(PayoutProviderError("down", provider="bank_transfer"))
        dispatcher = PayoutDispatcher(db, factory=factory, breaker_factory=None)
        dispatcher.dispatch(payout.id)

        with pytest.raises(IllegalTransitionError):
            dispatcher.dispatch(payout.id)
        assert provider.transfer.call_count == 1

    def test_notification_failure_keeps_status(self, db, payout, session_factory):
        factory, _ = _factory()
        with patch("marketplace.services.payouts.dispatcher.NotificationService") as notifications:
            notifications.return_value.payout_completed.side_effect = RuntimeError("smtp down")
            result = PayoutDispatcher(db, factory=factory, breaker_factory=None).dispatch(payout.id)

        assert result.paid
        fresh = session_factory()
        try:
            assert fresh.get(CommissionPayout, payout.id).status == "paid"
        finally:
            fresh.close()

    def test_unsupported_provider_leaves_pending(self, db, payout):
        dispatcher = PayoutDispatcher(db, factory=PayoutProviderFactory(settings), breaker_factory=None)
        with pytest.raises(UnsupportedPayoutProvider):
            dispatcher.dispatch(payout.id, "carrier_pigeon")
        db.rollback()
        db.refresh(payout)
        assert payout.status == "pending"

    def test_breaker_wraps_provider_call(self, db, payout):
        factory, provider = _factory()
        breaker = MagicMock()
        breaker.call.side_effect = lambda fn, t: fn(t)
        PayoutDispatcher(db, factory=factory, breaker_factory=lambda name: breaker).dispatch(payout.id)
        assert breaker.call.call_count == 1


class TestRequeue:
    def test_requeue_creates_linked_pending_payout(self, db, payout):
        factory, _ = _factory(PayoutProviderError("down", provider="bank_transfer"))
        dispatcher = PayoutDispatcher(db, factory=factory, breaker_factory=None)
        dispatcher.dispatch(payout.id)

        result = dispatcher.requeue_failed(payout.id)
        db.commit()

        assert result.outcome == PayoutOutcome.CREATED
        fresh = db.query(CommissionPayout).filter(CommissionPayout.id == result.payout_id).one()
        assert fresh.status == "pending"
        assert fresh.requeued_from_id == payout.id
        assert fresh.amount == payout.amount
        db.refresh(payout)
        assert payout.status == "failed"
        assert [p.id for p in dispatcher.list_failed()] == [payout.id]
        assert [p.id for p in dispatcher.list_pending()] == [fresh.id]

    def test_requeue_twice_returns_existing(self, db, payout):
        factory, _ = _factory(PayoutProviderError("down", provider="bank_transfer"))
        dispatcher = PayoutDispatcher(db, factory=factory, breaker_factory=None)
        dispatcher.dispatch(payout.id)
        first = dispatcher.requeue_failed(payout.id)
        db.commit()

        second = dispatcher.requeue_failed(payout.id)
        assert second.outcome == PayoutOutcome.ALREADY_EXISTS
        assert second.payout_id == first.payout_id

    def test_requeue_requires_failed(self, db, payout):
        with pytest.raises(IllegalTransitionError):
            PayoutDispatcher(db, breaker_factory=None).requeue_failed(payout.id)

    def test_requeue_chain_keeps_idempotency_key(self, db, payout):
        sent = []

        def _fail(transfer):
            sent.append(transfer)
            raise PayoutProviderError("timeout", provider="bank_transfer")

        factory, _ = _factory(_fail)
        dispatcher = PayoutDispatcher(db, factory=factory, breaker_factory=None)
        dispatcher.dispatch(payout.id)
        second = dispatcher.requeue_failed(payout.id)
        db.commit()
        dispatcher.dispatch(second.payout_id)
        third = dispatcher.requeue_failed(second.payout_id)
        db.commit()
        dispatcher.dispatch(third.payout_id)

        assert [t.id for t in sent] == [payout.id, second.payout_id, third.payout_id]
        assert {t.idempotency_key for t in sent} == {f"payout-{payout.id}"}
        last = db.get(CommissionPayout, third.payout_id)
        assert last.root_payout_id == payout.id
        assert last.requeued_from_id == second.payout_id


class _IbanProvider(PayoutProvider):
    name = "bank_transfer"

    def __init__(self, down=False):
        super().__init__({})
        self.down = down

    def is_available(self) -> bool:
        return True

    def transfer(self, payout) -> TransferResult:
        iban = self._destination(payout, "iban")
        if self.down:
            raise PayoutProviderError("bank API returned 503", provider=self.name)
        return TransferResult(transaction_id=f"tx-{iban[-4:]}", provider=self.name)


class TestBreakerExclusion:
    @pytest.fixture
    def make_payout(self, db, period, make_user):
        def _make(details):
            payout = CommissionPayout(
                referrer_id=make_user().id,
                period_start=period[0],
                period_end=period[1],
                amount=Decimal("100.00"),
                fee_amount=Decimal("2.00"),
                net_amount=Decimal("98.00"),
                currency="USD",
                payment_method="bank_transfer",
                payment_details=details,
                status="pending",
            )
            db.add(payout)
            db.commit()
            return payout

        return _make

    def _dispatcher(self, db, breaker, down=False):
        factory = MagicMock()
        factory.create.return_value = _IbanProvider(down=down)
        return PayoutDispatcher(db, factory=factory, breaker_factory=lambda name: breaker)

    def test_missing_destination_does_not_open_breaker(self, db, make_payout):
        breaker = pybreaker.CircuitBreaker(fail_max=2, exclude=PAYOUT_BREAKER_EXCLUDE)
        dispatcher = self._dispatcher(db, breaker)

        for _ in range(3):
            result = dispatcher.dispatch(make_payout({}).id)
            assert result.status == "failed"
            assert "no iban" in result.error

        assert breaker.current_state == pybreaker.STATE_CLOSED
        result = dispatcher.dispatch(make_payout({"iban": "DE89370400440532013000"}).id)
        assert result.paid
        assert result.transaction_id == "tx-3000"

    def test_provider_outage_opens_breaker(self, db, make_payout):
        breaker = pybreaker.CircuitBreaker(fail_max=2, exclude=PAYOUT_BREAKER_EXCLUDE)
        dispatcher = self._dispatcher(db, breaker, down=True)

        dispatcher.dispatch(make_payout({"iban": "DE89370400440532013000"}).id)
        dispatcher.dispatch(make_payout({"iban": "DE89370400440532013000"}).id)

        assert breaker.current_state == pybreaker.STATE_OPEN
        result = dispatcher.dispatch(make_payout({"iban": "DE89370400440532013000"}).id)
        assert result.status == "failed"
        assert "circuit breaker open" in result.error

    def test_data_error_classification(self):
        assert is_payout_data_error(PayoutProviderError("bad iban", provider="bank_transfer", transient=False))
        assert not is_payout_data_error(PayoutProviderError("503", provider="bank_transfer"))
        assert not is_payout_data_error(RuntimeError("boom"))

    @pytest.mark.parametrize(
        "code, transient",
        [(None, True), (500, True), (503, True), (408, True), (429, True), (400, False), (404, False), (422, False)],
    )
    def test_transient_http_status(self, code, transient):
        assert is_transient_http_status(code) is transient
