"""
Database models for the points ledger.
"""
from .lot import PointsLot, LotState
from .balance import PointsBalance
from .journal import JournalEntry, JournalKind

__all__ = [
    'PointsLot',
    'LotState',
    'PointsBalance',
    'JournalEntry',
    'JournalKind',
]
