"""
Points Ledger Engine.

Owns every mutation of point lots and cached balances:
- earn: one purchase becomes one expiring lot
- redeem: drains active lots, soonest-to-expire first
- expire_due: retires lots whose valid_until has passed

ARCHITECTURE:
- Lots (PointsLot) are the source of truth; PointsBalance caches their sum
- Each operation runs in one atomic unit under the user's lock, so the
  cached balance equals the sum of active lot remainders at every commit
- Every earn/redeem/expired lot appends a JournalEntry
- The engine never retries; BusyError is the caller's to retry
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from ..models import PointsLot, LotState, JournalEntry, JournalKind
from ..utils.clock import utcnow, to_naive_utc
from ..utils.exceptions import (
    LedgerError,
    InvalidInputError,
    InvalidAmountError,
    InsufficientPointsError,
    StorageFailureError,
)
from .ledger_storage import LedgerStorage
from .rate_table import MAX_POINTS, RateTable, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_LOT_LIFETIME = timedelta(days=365)

# Window used by balance_summary for "expiring soon"
EXPIRING_SOON_DAYS = 30

# Matches JournalEntry.product_code
PRODUCT_CODE_MAX_LENGTH = 50


# ==================== Results ====================

@dataclass
class EarnResult:
    """Outcome of earn(). already_processed marks an idempotent replay."""

    user_id: int
    points_earned: int
    balance: int
    lot_id: Optional[int]
    journal_entry_id: int
    valid_until: Optional[datetime]
    already_processed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['valid_until'] = self.valid_until.isoformat() if self.valid_until else None
        return data


@dataclass
class RedeemResult:
    """Outcome of a successful redeem()."""

    user_id: int
    points_redeemed: int
    balance: int
    redemption_id: str
    journal_entry_id: int
    lot_ids: List[int] = field(default_factory=list)


@dataclass
class ExpireSummary:
    """Totals from one expire_due() run."""

    lots_expired: int = 0
    points_expired: int = 0
    users_processed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class BalanceSummary:
    user_id: int
    balance: int
    lifetime_earned: int
    lifetime_redeemed: int
    lifetime_expired: int
    expiring_soon: int
    expiring_within_days: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BalanceMismatch:
    """A user whose cached balance disagrees with their active lots."""

    user_id: int
    cached_balance: int
    lot_total: int

    @property
    def difference(self) -> int:
        return self.cached_balance - self.lot_total


# ==================== Engine ====================

class LedgerEngine:
    """
    Central service for points ledger operations.

    Usage:
        engine = LedgerEngine(storage, rate_table)

        # Record a purchase
        result = engine.earn(user_id, 'order_1234', Decimal('100'), 'groceries')

        # Spend points
        result = engine.redeem(user_id, 150)

        # Scheduled job
        summary = engine.expire_due()
    """

    def __init__(
        self,
        storage: LedgerStorage,
        rate_table: RateTable,
        clock: Callable[[], datetime] = utcnow,
        default_lot_lifetime: timedelta = DEFAULT_LOT_LIFETIME
    ):
        """
        Args:
            storage: Transactional storage with per-user locking
            rate_table: Category to points multiplier lookup
            clock: Zero-argument callable returning naive UTC now
            default_lot_lifetime: How long earned points stay valid
        """
        if default_lot_lifetime <= timedelta(0):
            raise ValueError('default_lot_lifetime must be positive')

        self.storage = storage
        self.rate_table = rate_table
        self.clock = clock
        self.default_lot_lifetime = default_lot_lifetime

    # ==================== Core Operations ====================

    def earn(
        self,
        user_id: int,
        external_reference: str,
        amount: Union[int, float, str, Decimal],
        category: str,
        occurred_at: Optional[datetime] = None,
        lot_lifetime: Optional[timedelta] = None,
        product_code: Optional[str] = None
    ) -> EarnResult:
        """
        Credit points for a purchase.

        A repeated external_reference for the same user returns the original
        result with already_processed=True and credits nothing.

        Args:
            user_id: User earning the points
            external_reference: Purchase/transaction id from the caller
            amount: Purchase amount in currency units
            category: Purchase category, looked up in the rate table
            occurred_at: When the purchase happened (defaults to now)
            lot_lifetime: Validity of the new lot (defaults to engine setting)
            product_code: Purchased product, kept on the journal entry

        Returns:
            EarnResult with points earned and the new balance

        Raises:
            InvalidInputError: bad reference, amount, category, product code
                or lifetime
            BusyError: user's ledger stayed locked past the timeout
            StorageFailureError: storage failed, nothing was written
        """
        self._validate_user_id(user_id)
        if not external_reference or not str(external_reference).strip():
            raise InvalidInputError('external_reference is required', field='external_reference')
        external_reference = str(external_reference).strip()

        if product_code is not None:
            product_code = str(product_code).strip() or None
            if product_code and len(product_code) > PRODUCT_CODE_MAX_LENGTH:
                raise InvalidInputError(
                    f'product_code must be at most {PRODUCT_CODE_MAX_LENGTH} characters',
                    field='product_code'
                )

        lifetime = lot_lifetime if lot_lifetime is not None else self.default_lot_lifetime
        if lifetime <= timedelta(0):
            raise InvalidInputError('lot_lifetime must be positive', field='lot_lifetime')

        points = self.rate_table.points_for(amount, category)
        purchase_amount = to_decimal(amount)
        occurred = to_naive_utc(occurred_at) if occurred_at else self.clock()
        valid_until = occurred + lifetime

        try:
            with self.storage.atomic():
                with self.storage.lock_user(user_id) as balance:
                    prior = self.storage.find_journal_entry(
                        user_id, JournalKind.EARN.value, external_reference
                    )
                    if prior:
                        return self._replayed_earn(prior, balance.balance)

                    if max(balance.balance, balance.lifetime_earned or 0) + points > MAX_POINTS:
                        raise InvalidAmountError(
                            f"Earning {points} pts would take user {user_id} past {MAX_POINTS} points"
                        )

                    now = self.clock()
                    lot = self.storage.add_lot(PointsLot(
                        user_id=user_id,
                        original_amount=points,
                        remaining_amount=points,
                        state=LotState.ACTIVE.value,
                        earned_at=occurred,
                        valid_until=valid_until
                    ))

                    balance.balance += points
                    balance.lifetime_earned = (balance.lifetime_earned or 0) + points

                    entry = self.storage.add_journal_entry(JournalEntry(
                        user_id=user_id,
                        kind=JournalKind.EARN.value,
                        amount=points,
                        balance_after=balance.balance,
                        lot_ids=[lot.id],
                        external_reference=external_reference,
                        purchase_amount=purchase_amount,
                        category=self._category_key(category),
                        product_code=product_code,
                        occurred_at=occurred,
                        created_at=now
                    ))
                    lot.journal_entry_id = entry.id

                    result = EarnResult(
                        user_id=user_id,
                        points_earned=points,
                        balance=balance.balance,
                        lot_id=lot.id,
                        journal_entry_id=entry.id,
                        valid_until=valid_until
                    )
        except StorageFailureError as e:
            if isinstance(e.original_error, IntegrityError):
                # Same reference committed by a concurrent writer
                return self._earn_replay_after_conflict(user_id, external_reference, e)
            raise

        logger.info(
            f"Points earned: user {user_id} +{points} pts from {external_reference} "
            f"({purchase_amount} {self._category_key(category)}). New balance: {result.balance}"
        )
        return result

    def redeem(self, user_id: int, amount: int) -> RedeemResult:
        """
        Spend points, draining lots that expire soonest first.

        Either the full amount is redeemed or nothing changes.

        Args:
            user_id: User redeeming points
            amount: Points to redeem

        Returns:
            RedeemResult with the new balance and redemption id

        Raises:
            InvalidAmountError: amount is not a positive integer
            InsufficientPointsError: balance or redeemable lots fall short
            BusyError: user's ledger stayed locked past the timeout
            StorageFailureError: storage failed, nothing was written
        """
        self._validate_user_id(user_id)
        points = self._validate_points(amount)

        with self.storage.atomic():
            with self.storage.lock_user(user_id, create=False) as balance:
                current = balance.balance if balance else 0
                if points > current:
                    logger.info(
                        f"Redeem rejected: user {user_id} requested {points}, balance {current}"
                    )
                    raise InsufficientPointsError(current, points)

                now = self.clock()
                lots = self.storage.redeemable_lots(user_id, now)

                remaining_to_redeem = points
                touched = []
                for lot in lots:
                    if remaining_to_redeem <= 0:
                        break
                    remaining_to_redeem -= lot.consume(remaining_to_redeem)
                    touched.append(lot.id)

                if remaining_to_redeem > 0:
                    # Balance still counts lots that passed valid_until but
                    # are not expired yet; abort and roll back the walk
                    redeemable = points - remaining_to_redeem
                    logger.warning(
                        f"Redeem shortfall: user {user_id} requested {points}, "
                        f"only {redeemable} redeemable of balance {current}"
                    )
                    raise InsufficientPointsError(redeemable, points)

                balance.balance -= points
                balance.lifetime_redeemed = (balance.lifetime_redeemed or 0) + points

                redemption_id = self._new_redemption_id(user_id)
                entry = self.storage.add_journal_entry(JournalEntry(
                    user_id=user_id,
                    kind=JournalKind.REDEEM.value,
                    amount=points,
                    balance_after=balance.balance,
                    lot_ids=touched,
                    external_reference=redemption_id,
                    created_at=now
                ))

                result = RedeemResult(
                    user_id=user_id,
                    points_redeemed=points,
                    balance=balance.balance,
                    redemption_id=redemption_id,
                    journal_entry_id=entry.id,
                    lot_ids=touched
                )

        logger.info(
            f"Points redeemed: user {user_id} -{points} pts across lots {touched}. "
            f"Redemption {redemption_id}. New balance: {result.balance}"
        )
        return result

    def expire_due(self, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> ExpireSummary:
        """
        Expire every active lot whose valid_until is before now.

        Each user is processed in their own atomic unit, so one user's
        failure is recorded and the run moves on. Safe to call repeatedly.

        Args:
            now: Cutoff time (defaults to the clock)
            batch_size: Max users to process this run (all if None)

        Returns:
            ExpireSummary with counts and per-user errors
        """
        cutoff = to_naive_utc(now) if now else self.clock()
        summary = ExpireSummary()

        user_ids = self.storage.users_with_due_lots(cutoff, limit=batch_size)

        for user_id in user_ids:
            try:
                lots_expired, points_expired = self._expire_user(user_id, cutoff)
            except LedgerError as e:
                logger.error(f"Points expiration failed for user {user_id}: {e.message}")
                summary.errors.append({
                    'user_id': user_id,
                    'code': e.code,
                    'message': e.message,
                    'retryable': e.retryable
                })
                continue

            if lots_expired:
                summary.users_processed += 1
                summary.lots_expired += lots_expired
                summary.points_expired += points_expired

        logger.info(
            f"Points expiration completed: {summary.points_expired} points from "
            f"{summary.lots_expired} lots across {summary.users_processed} users "
            f"({len(summary.errors)} errors)"
        )
        return summary

    # ==================== Read Operations ====================

    def current_balance(self, user_id: int) -> int:
        """Cached balance for a user; 0 if they never earned."""
        self._validate_user_id(user_id)
        balance = self.storage.get_balance(user_id)
        return balance.balance if balance else 0

    def history(
        self,
        user_id: int,
        kind: Union[JournalKind, str, None] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[JournalEntry]:
        """
        Journal entries for a user, oldest first.

        Args:
            user_id: User whose history to read
            kind: Only entries of this kind (earn, redeem, expire)
            start: Inclusive lower bound on created_at
            end: Inclusive upper bound on created_at
            limit: Max entries to return
            offset: Entries to skip
        """
        self._validate_user_id(user_id)
        kind_value = self._parse_kind(kind)

        if start and end and to_naive_utc(start) > to_naive_utc(end):
            raise InvalidInputError('start must not be after end', field='start')
        if limit is not None and limit <= 0:
            raise InvalidInputError('limit must be positive', field='limit')
        if offset < 0:
            raise InvalidInputError('offset must not be negative', field='offset')

        return self.storage.journal_entries(
            user_id,
            kind=kind_value,
            start=to_naive_utc(start) if start else None,
            end=to_naive_utc(end) if end else None,
            limit=limit,
            offset=offset
        )

    def balance_summary(self, user_id: int, within_days: int = EXPIRING_SOON_DAYS) -> BalanceSummary:
        """Balance, lifetime totals and points expiring within the window."""
        self._validate_user_id(user_id)
        if within_days <= 0:
            raise InvalidInputError('within_days must be positive', field='within_days')

        now = self.clock()
        balance = self.storage.get_balance(user_id)
        expiring = self.storage.expiring_points(user_id, now, now + timedelta(days=within_days))

        return BalanceSummary(
            user_id=user_id,
            balance=balance.balance if balance else 0,
            lifetime_earned=balance.lifetime_earned if balance else 0,
            lifetime_redeemed=balance.lifetime_redeemed if balance else 0,
            lifetime_expired=balance.lifetime_expired if balance else 0,
            expiring_soon=expiring,
            expiring_within_days=within_days
        )

    def reconcile(self, user_id: Optional[int] = None) -> List[BalanceMismatch]:
        """
        Compare cached balances with the sum of active lots.

        Read-only. An empty list means every checked user is consistent.
        """
        lot_totals = self.storage.active_lot_totals(user_id)
        cached = self.storage.cached_balances(user_id)

        mismatches = []
        for uid in sorted(set(lot_totals) | set(cached)):
            lot_total = lot_totals.get(uid, 0)
            cached_balance = cached.get(uid, 0)
            if lot_total != cached_balance:
                mismatches.append(BalanceMismatch(uid, cached_balance, lot_total))

        if mismatches:
            logger.error(f"Balance reconciliation found {len(mismatches)} mismatched users")
        return mismatches

    # ==================== Helpers ====================

    def _expire_user(self, user_id: int, cutoff: datetime):
        """Expire one user's due lots in a single atomic unit."""
        with self.storage.atomic():
            with self.storage.lock_user(user_id, create=False) as balance:
                lots = self.storage.due_lots(user_id, cutoff)
                if not lots:
                    return 0, 0

                if balance is None:
                    raise StorageFailureError(
                        f"User {user_id} has active lots but no balance row"
                    )

                created_at = self.clock()
                total = 0
                for lot in lots:
                    forfeited = lot.expire()
                    total += forfeited
                    balance.balance -= forfeited
                    self.storage.add_journal_entry(JournalEntry(
                        user_id=user_id,
                        kind=JournalKind.EXPIRE.value,
                        amount=forfeited,
                        balance_after=balance.balance,
                        lot_ids=[lot.id],
                        created_at=created_at
                    ))
                    logger.info(f"Expired {forfeited} pts from lot {lot.id} for user {user_id}")

                if balance.balance < 0:
                    raise StorageFailureError(
                        f"Expiring lots would make user {user_id} balance negative"
                    )
                balance.lifetime_expired = (balance.lifetime_expired or 0) + total

        return len(lots), total

    def _replayed_earn(self, prior: JournalEntry, balance: int) -> EarnResult:
        lot_ids = list(prior.lot_ids or [])
        lot = self.storage.get_lot(lot_ids[0]) if lot_ids else None
        logger.info(
            f"Earn replay ignored: user {prior.user_id} reference {prior.external_reference} "
            f"already credited {prior.amount} pts"
        )
        return EarnResult(
            user_id=prior.user_id,
            points_earned=prior.amount,
            balance=balance,
            lot_id=lot.id if lot else None,
            journal_entry_id=prior.id,
            valid_until=lot.valid_until if lot else None,
            already_processed=True
        )

    def _earn_replay_after_conflict(self, user_id: int, external_reference: str, error: StorageFailureError) -> EarnResult:
        prior = self.storage.find_journal_entry(user_id, JournalKind.EARN.value, external_reference)
        if prior is None:
            raise error
        return self._replayed_earn(prior, self.current_balance(user_id))

    def _new_redemption_id(self, user_id: int) -> str:
        return f"RED_{user_id}_{uuid4().hex[:16]}"

    def _category_key(self, category: str) -> str:
        return str(category).strip().lower()

    @staticmethod
    def _validate_user_id(user_id) -> None:
        if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
            raise InvalidInputError(f'Invalid user_id: {user_id!r}', field='user_id')

    @staticmethod
    def _validate_points(amount) -> int:
        if isinstance(amount, bool):
            raise InvalidAmountError('Points amount must be a positive integer')
        if isinstance(amount, Decimal) and not amount.is_finite():
            raise InvalidAmountError('Points amount must be a positive integer')
        if isinstance(amount, Decimal) and amount == amount.to_integral_value():
            amount = int(amount)
        if not isinstance(amount, int):
            raise InvalidAmountError('Points amount must be a positive integer')
        if amount <= 0:
            raise InvalidAmountError('Points amount must be positive')
        return amount

    @staticmethod
    def _parse_kind(kind) -> Optional[str]:
        if kind is None or kind == '':
            return None
        if isinstance(kind, JournalKind):
            return kind.value
        try:
            return JournalKind(str(kind).strip().lower()).value
        except ValueError:
            raise InvalidInputError(f"Unknown journal kind: '{kind}'", field='kind')
