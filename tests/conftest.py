"""Shared fixtures: environment, a SQLite database per test, row factories."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("CELERY_BROKER_URL", "redis://localhost:6379/1")
os.environ.setdefault("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("YOOKASSA_WEBHOOK_SECRET", "yookassa-test-secret")
os.environ.setdefault("COINGATE_WEBHOOK_SECRET", "coingate-test-secret")
os.environ.setdefault("ADMIN_API_KEY", "admin-test-key")
os.environ.setdefault("JWT_SECRET_KEY", "jwt-test-secret")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from marketplace.db.base import Base
from marketplace.db.session import create_db_engine
import marketplace.models  # noqa: F401  registers every table
from marketplace.models.payment import Payment
from marketplace.models.referral import Referral
from marketplace.models.referral_conversion import ReferralConversion
from marketplace.models.user import User


PERIOD_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 1, 31, 23, 59, 59, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(role="partner", **kwargs):
        user = User(
            id=kwargs.pop("id", str(uuid4())),
            email=kwargs.pop("email", f"{uuid4().hex[:10]}@example.com"),
            role=role,
            payout_details=kwargs.pop("payout_details", {"iban": "DE89370400440532013000"}),
            **kwargs,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_payment(db):
    def _make(provider="stripe", provider_payment_id=None, **kwargs):
        payment = Payment(
            provider=provider,
            provider_payment_id=provider_payment_id or f"pi_{uuid4().hex[:16]}",
            user_id=kwargs.pop("user_id", "buyer-1"),
            product_id=kwargs.pop("product_id", "product-1"),
            amount=kwargs.pop("amount", Decimal("250.00")),
            currency=kwargs.pop("currency", "USD"),
            status=kwargs.pop("status", "pending"),
            provider_metadata=kwargs.pop("provider_metadata", {}),
            **kwargs,
        )
        db.add(payment)
        db.commit()
        return payment

    return _make


@pytest.fixture
def make_referral(db):
    def _make(referrer_id, code="REFCODE1", product_id="product-1", percent=Decimal("10"), **kwargs):
        referral = Referral(
            referrer_id=referrer_id,
            product_id=product_id,
            referral_code=code,
            commission_percent=percent,
            **kwargs,
        )
        db.add(referral)
        db.commit()
        return referral

    return _make


@pytest.fixture
def make_conversion(db):
    """Verified conversion inside the January 2024 test period."""

    def _make(referrer_id, commission, created_at=None, **kwargs):
        when = created_at or PERIOD_START + timedelta(days=10)
        conversion = ReferralConversion(
            referral_id=kwargs.pop("referral_id", str(uuid4())),
            referrer_id=referrer_id,
            purchase_id=kwargs.pop("purchase_id", str(uuid4())),
            purchase_amount=kwargs.pop("purchase_amount", Decimal(commission) * 10),
            commission_percent=kwargs.pop("commission_percent", Decimal("10")),
            commission_amount=Decimal(commission),
            currency="USD",
            is_verified=kwargs.pop("is_verified", True),
            created_at=when,
            verified_at=when,
            **kwargs,
        )
        db.add(conversion)
        db.commit()
        return conversion

    return _make


@pytest.fixture
def client(session_factory):
    from fastapi.testclient import TestClient

    from marketplace.api.routes.admin import get_session_factory
    from marketplace.db.session import get_db
    from marketplace.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def period():
    return PERIOD_START, PERIOD_END
