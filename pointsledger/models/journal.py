"""
Append-only journal of ledger operations.
"""
from enum import Enum
from ..extensions import db
from ..utils.clock import utcnow


class JournalKind(str, Enum):
    EARN = 'earn'
    REDEEM = 'redeem'
    EXPIRE = 'expire'


class JournalEntry(db.Model):
    """
    One row per earn, redeem, or expired lot.

    Used for:
    - Points history queries
    - Earn idempotency (external_reference per user)
    - Tracing which lots a redemption drew from
    """
    __tablename__ = 'journal_entries'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'kind', 'external_reference', name='uq_journal_user_kind_reference'),
        db.Index('ix_journal_entries_user_created', 'user_id', 'created_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # Always positive; kind gives the direction
    balance_after = db.Column(db.Integer, nullable=False)
    lot_ids = db.Column(db.JSON, nullable=False, default=list)

    # Purchase id for earn, redemption id for redeem, None for expire
    external_reference = db.Column(db.String(100))

    # Source purchase (earn only)
    purchase_amount = db.Column(db.Numeric(12, 2))
    category = db.Column(db.String(50))
    product_code = db.Column(db.String(50))
    occurred_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f'<JournalEntry {self.id}: {self.kind} {self.amount} pts for user {self.user_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'kind': self.kind,
            'amount': self.amount,
            'balance_after': self.balance_after,
            'lot_ids': list(self.lot_ids or []),
            'external_reference': self.external_reference,
            'purchase_amount': str(self.purchase_amount) if self.purchase_amount is not None else None,
            'category': self.category,
            'product_code': self.product_code,
            'occurred_at': self.occurred_at.isoformat() if self.occurred_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
