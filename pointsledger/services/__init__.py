"""
Ledger services and the per-app engine accessor.
"""
from datetime import timedelta
from flask import current_app

from .ledger_engine import (
    LedgerEngine,
    EarnResult,
    RedeemResult,
    ExpireSummary,
    BalanceSummary,
    BalanceMismatch,
)
from .ledger_storage import LedgerStorage, SQLAlchemyLedgerStorage
from .rate_table import RateTable

EXTENSION_KEY = 'ledger_engine'


def build_ledger_engine(config) -> LedgerEngine:
    """Create an engine from a Flask config mapping."""
    storage = SQLAlchemyLedgerStorage(lock_timeout=config['LEDGER_LOCK_TIMEOUT_SECONDS'])
    return LedgerEngine(
        storage=storage,
        rate_table=RateTable.from_config(config),
        default_lot_lifetime=timedelta(days=config['POINTS_EXPIRATION_DAYS'])
    )


def init_ledger(app) -> LedgerEngine:
    """Attach one shared engine to the app."""
    engine = build_ledger_engine(app.config)
    app.extensions[EXTENSION_KEY] = engine
    return engine


def get_ledger_engine() -> LedgerEngine:
    """The engine for the current app."""
    return current_app.extensions[EXTENSION_KEY]
