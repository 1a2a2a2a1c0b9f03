"""Shared fixtures: an in-memory app, a controllable clock and a logged-in client."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from app import create_app
from auth_api import SESSION_KEY
from extensions import db
from models_ledger import LedgerReason
from services import get_token_ledger
from staking import StakingConfig

ACCOUNT = "0x00000000000000000000000000000000000000a1"
OTHER = "0x00000000000000000000000000000000000000b2"


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


def make_config(clock, uri: str = "sqlite://") -> dict:
    return {
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": uri,
        "RATELIMIT_ENABLED": False,
        "TOKEN_CLOCK": clock,
        "STAKING_CONFIG": StakingConfig(),
        "LOG_LEVEL": "WARNING",
    }


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 6, 3, 12, 0, 0))


@pytest.fixture
def app(clock):
    app = create_app(make_config(clock))
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ledger(app):
    return get_token_ledger(app)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    with client.session_transaction() as sess:
        sess[SESSION_KEY] = ACCOUNT
    return client


def credit(ledger, account_id: str, amount) -> None:
    """Seed a balance through the ledger store (referral credit)."""
    ledger.store.run(account_id, lambda txn: txn.append(amount, LedgerReason.REFERRAL, {"seed": True}))


def assert_conserved(ledger, account_id: str) -> None:
    account = ledger.store.get_account(account_id)
    cached = account.balance if account is not None else 0
    assert cached == ledger.store.ledger_sum(account_id)
