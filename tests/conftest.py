"""
Shared fixtures

Tests run against a file-backed SQLite database. Every transaction starts
with BEGIN IMMEDIATE, which takes the database write lock up front and
stands in for PostgreSQL's SELECT ... FOR UPDATE in the concurrency tests.
"""

import os

os.environ["ENVIRONMENT"] = "testing"
os.environ.pop("REDIS_URL", None)
os.environ.pop("DATABASE_URL", None)

from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.database import Base  # noqa: E402
from app.models import Account, PosIntegration, PosLocation, PosTransaction  # noqa: E402
from app.services.monitoring.circuit_breakers import reset_breakers  # noqa: E402
from app.services.sms_client import SendResult  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    """SQLite engine with immediate (write-locking) transactions."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30, "check_same_thread": False}
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """
    Session for arranging and asserting test data.

    Every statement opens a BEGIN IMMEDIATE transaction: end it with
    commit() or rollback() before the code under test writes again.
    """
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def fresh_breakers():
    reset_breakers()
    yield
    reset_breakers()


@pytest.fixture
def stub_broker():
    from app.actors import broker

    broker.flush_all()
    yield broker
    broker.flush_all()


@pytest.fixture
def send_queue(session_factory, stub_broker):
    from app.actors import send_review_sms
    from app.services.send_queue import SendQueue

    return SendQueue(session_factory, send_review_sms, default_delay_ms=0)


@pytest.fixture
def make_account(session_factory):
    def _make(**overrides) -> int:
        values = {
            "business_name": "Corner Bakery",
            "review_url": "https://g.page/r/corner-bakery/review",
            "sms_usage_count": 0,
            "sms_usage_limit": 10,
            "subscription_status": "active",
            "sms_message_tone": "friendly",
        }
        values.update(overrides)
        session = session_factory()
        try:
            account = Account(**values)
            session.add(account)
            session.commit()
            return account.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_integration(session_factory):
    def _make(account_id: int, provider: str = "square", **overrides) -> int:
        values = {
            "account_id": account_id,
            "provider": provider,
            "merchant_id": "MERCHANT_1" if provider == "square" else None,
            "shop_domain": "corner-bakery.myshopify.com" if provider == "shopify" else None,
            "access_token": "token-abc",
            "is_active": True,
            "consent_confirmed": True,
            "test_mode": False,
        }
        values.update(overrides)
        session = session_factory()
        try:
            integration = PosIntegration(**values)
            session.add(integration)
            session.commit()
            return integration.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_location(session_factory):
    def _make(integration_id: int, external_location_id: str = "LOC_1", is_enabled: bool = True, name: str = "Main Street") -> int:
        session = session_factory()
        try:
            location = PosLocation(
                pos_integration_id=integration_id,
                external_location_id=external_location_id,
                location_name=name,
                is_enabled=is_enabled
            )
            session.add(location)
            session.commit()
            return location.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_transaction(session_factory):
    def _make(account_id: int, integration_id: int, external_id: str = "PAY_1", **overrides) -> int:
        values = {
            "account_id": account_id,
            "pos_integration_id": integration_id,
            "external_transaction_id": external_id,
            "customer_name": "Jane Doe",
            "customer_phone": "+14155552671",
            "sms_status": "pending",
        }
        values.update(overrides)
        session = session_factory()
        try:
            transaction = PosTransaction(**values)
            session.add(transaction)
            session.commit()
            return transaction.id
        finally:
            session.close()
    return _make


class FakeSmsClient:
    """
    Stand-in for SmsClient that replays scripted results.

    The last result repeats once the script runs out.
    """

    def __init__(self, *results: SendResult):
        self.results = list(results) or [SendResult(success=True, provider_message_id="SM_fake")]
        self.sent = []

    @property
    def configured(self) -> bool:
        return True

    def send(self, to: str, body: str) -> SendResult:
        self.sent.append((to, body))
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


@pytest.fixture
def fake_sms():
    return FakeSmsClient


def job_payload(transaction_id: int, account_id: int, **overrides) -> dict:
    payload = {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "target_phone": "+14155552671",
        "customer_name": "Jane Doe",
        "business_name": "Corner Bakery",
        "review_link": "https://g.page/r/corner-bakery/review",
        "tone": "friendly",
        "custom_message": None,
        "is_test_mode": False,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def payload_for():
    return job_payload


def transient_result(error: Optional[str] = "Twilio 503: unavailable") -> SendResult:
    return SendResult(success=False, error=error, retryable=True, code="503")


@pytest.fixture
def transient():
    return transient_result
