"""Shared fixtures for credit ledger tests."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from credit_ledger.service import CreditLedgerService
from credit_ledger.sql_storage import SqlAlchemyStorage
from credit_ledger.storage import InMemoryStorage


OWNER_ID = "550e8400-e29b-41d4-a716-446655440000"
OTHER_OWNER_ID = "660e8400-e29b-41d4-a716-446655440001"
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage, clock):
    return CreditLedgerService(storage=storage, clock=clock)


@pytest.fixture
def sql_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def sql_storage(sql_engine):
    storage = SqlAlchemyStorage(sql_engine)
    storage.create_schema()
    return storage


def assert_reconciled(service: CreditLedgerService, owner_id: str) -> None:
    history = service.get_history(owner_id)
    ledger_balance = history[-1].balance_after if history else 0
    assert service.get_balance(owner_id) == ledger_balance
    assert service.ledger.verify_chain(owner_id)
