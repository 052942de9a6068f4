"""
Point lot model.

A lot is the batch of points granted by one earning event. Its original
amount never changes; remaining_amount only goes down.
"""
from enum import Enum
from ..extensions import db
from ..utils.clock import utcnow


class LotState(str, Enum):
    """Lot lifecycle. Active lots move to consumed or expired, never back."""
    ACTIVE = 'active'
    CONSUMED = 'consumed'    # Drained to zero by redemptions
    EXPIRED = 'expired'      # valid_until passed with points left


class PointsLot(db.Model):
    """
    Points earned from a single purchase, redeemable until valid_until.

    Invariant: remaining_amount == 0 exactly when state is consumed or expired.
    """
    __tablename__ = 'points_lots'
    __table_args__ = (
        db.CheckConstraint('remaining_amount >= 0', name='ck_points_lots_remaining_nonneg'),
        db.CheckConstraint('remaining_amount <= original_amount', name='ck_points_lots_remaining_le_original'),
        db.Index('ix_points_lots_user_state_valid', 'user_id', 'state', 'valid_until'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)

    original_amount = db.Column(db.Integer, nullable=False)
    remaining_amount = db.Column(db.Integer, nullable=False)
    state = db.Column(db.String(20), nullable=False, default=LotState.ACTIVE.value)

    earned_at = db.Column(db.DateTime, nullable=False)
    valid_until = db.Column(db.DateTime, nullable=False)

    # Earn journal entry that created this lot
    journal_entry_id = db.Column(db.Integer, db.ForeignKey('journal_entries.id'))

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.state == LotState.ACTIVE.value

    def consume(self, points: int) -> int:
        """
        Take up to `points` from this lot.

        Returns:
            Points actually taken
        """
        if not self.is_active:
            raise ValueError(f'Cannot consume from lot {self.id} in state {self.state}')
        taken = min(points, self.remaining_amount)
        self.remaining_amount -= taken
        if self.remaining_amount == 0:
            self.state = LotState.CONSUMED.value
        return taken

    def expire(self) -> int:
        """Zero the lot and mark it expired. Returns the points forfeited."""
        if not self.is_active:
            raise ValueError(f'Cannot expire lot {self.id} in state {self.state}')
        forfeited = self.remaining_amount
        self.remaining_amount = 0
        self.state = LotState.EXPIRED.value
        return forfeited

    def __repr__(self):
        return (
            f'<PointsLot {self.id}: {self.remaining_amount}/{self.original_amount} pts '
            f'for user {self.user_id} ({self.state})>'
        )
