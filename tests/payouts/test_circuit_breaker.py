"""Tests for the Redis-backed payout circuit breakers."""
from unittest.mock import MagicMock, patch

import pybreaker

from marketplace.services import circuit_breaker
from marketplace.services.circuit_breaker import RedisBreakerStorage, is_payout_data_error, payout_breaker


def _client(values=None):
    client = MagicMock()
    client.hget.side_effect = lambda key, field: (values or {}).get(field)
    return client


def test_breaker_is_shared_per_provider():
    client = _client()
    with patch.dict(circuit_breaker._breakers, clear=True), patch.object(circuit_breaker, "_redis", return_value=client):
        first = payout_breaker("paypal")
        assert payout_breaker("paypal") is first
        assert payout_breaker("bank_transfer") is not first
        assert first.name == "payout:paypal"
        assert first.current_state == pybreaker.STATE_CLOSED
        assert is_payout_data_error in first.excluded_exceptions


def test_storage_reads_hash_fields():
    storage = RedisBreakerStorage("payout:paypal", _client({"state": "open", "failures": "3"}))
    assert storage.state == pybreaker.STATE_OPEN
    assert storage.counter == 3
    assert storage.success_counter == 0
    assert storage.opened_at is None


def test_storage_writes_refresh_ttl():
    client = _client()
    pipe = client.pipeline.return_value
    storage = RedisBreakerStorage("payout:paypal", client)

    storage.increment_counter()

    pipe.hincrby.assert_called_once_with("payout_breaker:payout:paypal", "failures", 1)
    pipe.expire.assert_called_once()
    pipe.execute.assert_called_once()


def test_storage_exposes_name():
    storage = RedisBreakerStorage("payout:paypal", _client())
    assert storage.name == "payout:paypal"
