"""
Shared fixtures for points ledger tests.
"""
import pytest
from datetime import datetime, timedelta

from pointsledger import create_app
from pointsledger.extensions import db


class FakeClock:
    """Controllable clock injected into the ledger engine."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


START = datetime(2025, 1, 1, 12, 0, 0)


@pytest.fixture
def app():
    """App on an in-memory SQLite database with fresh tables."""
    app = create_app('testing')

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed SQLite database, safe to use from several threads."""
    app = create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {
            'connect_args': {'check_same_thread': False, 'timeout': 15},
        },
        'LEDGER_LOCK_TIMEOUT_SECONDS': 10.0,
    })

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def engine(app, clock):
    """The app's ledger engine driven by the fake clock."""
    ledger = app.extensions['ledger_engine']
    ledger.clock = clock
    return ledger


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def check_invariant():
    """
    Assert a user's cached balance equals the sum of their active lots.

    Must be called inside an app context.
    """
    def _check(user_id: int) -> int:
        from sqlalchemy import func
        from pointsledger.models import PointsLot, PointsBalance, LotState

        db.session.expire_all()
        lot_total = db.session.query(
            func.coalesce(func.sum(PointsLot.remaining_amount), 0)
        ).filter(
            PointsLot.user_id == user_id,
            PointsLot.state == LotState.ACTIVE.value
        ).scalar()

        row = db.session.get(PointsBalance, user_id)
        cached = row.balance if row else 0

        assert cached == lot_total, f'user {user_id}: cached {cached} != lots {lot_total}'
        assert cached >= 0

        # No active lot is empty, no retired lot has points left
        lots = PointsLot.query.filter_by(user_id=user_id).all()
        for lot in lots:
            assert 0 <= lot.remaining_amount <= lot.original_amount
            assert (lot.remaining_amount == 0) == (lot.state != LotState.ACTIVE.value)
        return cached

    return _check
