"""
Per-provider circuit breakers for outbound payout transfers.

Breaker state lives in one Redis hash per provider so every API process and
Celery worker trips and recovers together. A tripped breaker fails the
payout immediately (CircuitBreakerError) instead of waiting for a timeout.
"""
import logging
import threading
from datetime import datetime, timezone

import pybreaker
import redis

from marketplace.core.config import settings
from marketplace.core.errors import PayoutProviderError
from marketplace.utils.metrics import circuit_breaker_state

logger = logging.getLogger(__name__)

_FIELD_STATE = "state"
_FIELD_FAILURES = "failures"
_FIELD_SUCCESSES = "successes"
_FIELD_OPENED_AT = "opened_at"


class RedisBreakerStorage(pybreaker.CircuitBreakerStorage):
    def __init__(self, name: str, client: redis.Redis) -> None:
        super().__init__(name)
        self._name = name
        self.client = client
        self.key = f"payout_breaker:{name}"

    def _write(self, field: str, value) -> None:
        pipe = self.client.pipeline()
        pipe.hset(self.key, field, value)
        pipe.expire(self.key, settings.cb_open_seconds * 2)
        pipe.execute()

    def _incr(self, field: str) -> None:
        pipe = self.client.pipeline()
        pipe.hincrby(self.key, field, 1)
        pipe.expire(self.key, settings.cb_open_seconds * 2)
        pipe.execute()

    def _int(self, field: str) -> int:
        raw = self.client.hget(self.key, field)
        return int(raw) if raw else 0

    @property
    def state(self) -> str:
        return self.client.hget(self.key, _FIELD_STATE) or pybreaker.STATE_CLOSED

    @state.setter
    def state(self, value: str) -> None:
        self._write(_FIELD_STATE, value)
        circuit_breaker_state.labels(name=self.name).set(1 if value == pybreaker.STATE_OPEN else 0)

    @property
    def counter(self) -> int:
        return self._int(_FIELD_FAILURES)

    def increment_counter(self) -> None:
        self._incr(_FIELD_FAILURES)

    def reset_counter(self) -> None:
        self.client.hdel(self.key, _FIELD_FAILURES)

    @property
    def success_counter(self) -> int:
        return self._int(_FIELD_SUCCESSES)

    def increment_success_counter(self) -> None:
        self._incr(_FIELD_SUCCESSES)

    def reset_success_counter(self) -> None:
        self.client.hdel(self.key, _FIELD_SUCCESSES)

    @property
    def opened_at(self) -> datetime | None:
        raw = self.client.hget(self.key, _FIELD_OPENED_AT)
        return datetime.fromtimestamp(float(raw), tz=timezone.utc) if raw else None

    @opened_at.setter
    def opened_at(self, value: datetime) -> None:
        self._write(_FIELD_OPENED_AT, value.timestamp())


class PayoutBreakerListener(pybreaker.CircuitBreakerListener):
    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        log = logger.error if new_state.name == pybreaker.STATE_OPEN else logger.warning
        log(
            "circuit_breaker_state_change",
            extra={
                "breaker_name": cb.name,
                "old_state": old_state.name if old_state else None,
                "new_state": new_state.name,
            },
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.warning(
            "circuit_breaker_failure",
            extra={"breaker_name": cb.name, "error": type(exc).__name__},
        )


def is_payout_data_error(exc: BaseException) -> bool:
    """Errors about one payout (missing destination, rejected details), not about provider health."""
    return isinstance(exc, PayoutProviderError) and not exc.transient


PAYOUT_BREAKER_EXCLUDE = [is_payout_data_error]

_breakers: dict[str, pybreaker.CircuitBreaker] = {}
_lock = threading.Lock()
_client: redis.Redis | None = None


def _redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(settings.redis_url, decode_responses=True, socket_timeout=2)
    return _client


def payout_breaker(provider: str) -> pybreaker.CircuitBreaker:
    """Shared breaker for one payout provider; bulk runs call this from worker threads."""
    name = f"payout:{provider}"
    with _lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = pybreaker.CircuitBreaker(
                fail_max=settings.cb_failure_threshold,
                reset_timeout=settings.cb_open_seconds,
                state_storage=RedisBreakerStorage(name, _redis()),
                exclude=PAYOUT_BREAKER_EXCLUDE,
                listeners=[PayoutBreakerListener()],
                name=name,
            )
            _breakers[name] = breaker
        return breaker
