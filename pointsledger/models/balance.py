"""
Per-user cached points balance.
"""
from ..extensions import db
from ..utils.clock import utcnow


class PointsBalance(db.Model):
    """
    Fast-read balance for one user.

    balance always equals the sum of remaining_amount over the user's active
    lots. The row is also what gets locked to serialize a user's operations.
    """
    __tablename__ = 'points_balances'
    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_points_balances_nonneg'),
    )

    user_id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    balance = db.Column(db.Integer, nullable=False, default=0)

    # Lifetime stats
    lifetime_earned = db.Column(db.Integer, nullable=False, default=0)
    lifetime_redeemed = db.Column(db.Integer, nullable=False, default=0)
    lifetime_expired = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<PointsBalance user {self.user_id}: {self.balance} pts>'
