"""
Transactional storage for the points ledger.

The engine only talks to a LedgerStorage: a unit of work (atomic), a scoped
per-user lock (lock_user), and the lot/journal/balance queries it needs.
SQLAlchemyLedgerStorage is the Flask-SQLAlchemy implementation.

Locking model:
- lock_user() must be called inside atomic().
- A user lock is held until the enclosing atomic() commits or rolls back,
  the same lifetime as a SELECT ... FOR UPDATE row lock.
- Waiting longer than the configured timeout raises BusyError.
"""
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from sqlalchemy import func, select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, scoped_session

from ..extensions import db
from ..models import PointsLot, LotState, PointsBalance, JournalEntry
from ..utils.exceptions import BusyError, LedgerError, StorageFailureError

logger = logging.getLogger(__name__)

# Driver error markers for "lock wait exceeded"
_PG_LOCK_NOT_AVAILABLE = '55P03'
_MYSQL_LOCK_WAIT_TIMEOUT = 1205
_SQLITE_LOCKED_MESSAGES = ('database is locked', 'database table is locked')


class LedgerStorage(ABC):
    """Storage capabilities the ledger engine relies on."""

    @abstractmethod
    def atomic(self):
        """Context manager for one all-or-nothing unit of work."""

    @abstractmethod
    def lock_user(self, user_id: int, create: bool = True):
        """
        Context manager yielding the user's PointsBalance once the caller
        exclusively owns that user's ledger state. Yields None when the user
        has no balance row and create is False.
        """

    @abstractmethod
    def get_balance(self, user_id: int) -> Optional[PointsBalance]:
        """Read the cached balance row without locking."""

    @abstractmethod
    def find_journal_entry(self, user_id: int, kind: str, external_reference: str) -> Optional[JournalEntry]:
        pass

    @abstractmethod
    def get_lot(self, lot_id: int) -> Optional[PointsLot]:
        pass

    @abstractmethod
    def redeemable_lots(self, user_id: int, now: datetime) -> List[PointsLot]:
        """Active lots with valid_until after now, soonest expiry first."""

    @abstractmethod
    def due_lots(self, user_id: int, now: datetime) -> List[PointsLot]:
        """Active lots with points left whose valid_until is before now."""

    @abstractmethod
    def users_with_due_lots(self, now: datetime, limit: Optional[int] = None) -> List[int]:
        pass

    @abstractmethod
    def add_lot(self, lot: PointsLot) -> PointsLot:
        pass

    @abstractmethod
    def add_journal_entry(self, entry: JournalEntry) -> JournalEntry:
        pass

    @abstractmethod
    def journal_entries(
        self,
        user_id: int,
        kind: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[JournalEntry]:
        pass

    @abstractmethod
    def expiring_points(self, user_id: int, now: datetime, until: datetime) -> int:
        pass

    @abstractmethod
    def active_lot_totals(self, user_id: Optional[int] = None) -> Dict[int, int]:
        """Sum of remaining points on active lots, per user."""

    @abstractmethod
    def cached_balances(self, user_id: Optional[int] = None) -> Dict[int, int]:
        pass


class UserLockRegistry:
    """
    In-process exclusive locks keyed by user id.

    Entries are reference counted so the registry does not grow with the
    number of users ever seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, list] = {}

    def acquire(self, user_id: int, timeout: float) -> bool:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[user_id] = entry
            entry[1] += 1

        acquired = entry[0].acquire(timeout=timeout)
        if not acquired:
            self._drop_ref(user_id)
        return acquired

    def release(self, user_id: int) -> None:
        with self._guard:
            entry = self._locks.get(user_id)
        if entry is None:
            return
        entry[0].release()
        self._drop_ref(user_id)

    def _drop_ref(self, user_id: int) -> None:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[user_id]

    def __len__(self):
        return len(self._locks)


def is_lock_timeout(error: Exception) -> bool:
    """True when a driver error means a lock wait ran out."""
    if not isinstance(error, DBAPIError):
        return False

    orig = error.orig
    if getattr(orig, 'pgcode', None) == _PG_LOCK_NOT_AVAILABLE:
        return True
    if getattr(orig, 'sqlstate', None) == _PG_LOCK_NOT_AVAILABLE:
        return True

    args = getattr(orig, 'args', ())
    if args and args[0] == _MYSQL_LOCK_WAIT_TIMEOUT:
        return True

    message = str(orig).lower()
    return any(marker in message for marker in _SQLITE_LOCKED_MESSAGES)


class SQLAlchemyLedgerStorage(LedgerStorage):
    """
    LedgerStorage backed by the Flask-SQLAlchemy session.

    Usage:
        storage = SQLAlchemyLedgerStorage(lock_timeout=5)

        with storage.atomic():
            with storage.lock_user(user_id) as balance:
                balance.balance += 10
    """

    def __init__(self, lock_timeout: float = 5.0, session=None):
        """
        Args:
            lock_timeout: Seconds to wait for a user lock before BusyError
            session: Optional session; defaults to db.session
        """
        self.lock_timeout = lock_timeout
        self._session = session
        self._user_locks = UserLockRegistry()
        self._local = threading.local()

    @property
    def session(self) -> Session:
        """The current Session, resolved from the scoped proxy."""
        session = self._session if self._session is not None else db.session
        if isinstance(session, scoped_session):
            return session()
        return session

    # ==================== Unit of Work ====================

    @contextmanager
    def atomic(self) -> Iterator:
        """
        Run the block as one transaction.

        Commits when the block finishes. Any exception, including
        KeyboardInterrupt and SystemExit, rolls the whole block back.
        Nested calls join the outer unit.
        """
        if getattr(self._local, 'held', None) is not None:
            yield self.session
            return

        session = self.session
        # Start from a fresh transaction so reads see the latest commits
        if session.in_transaction():
            session.commit()

        self._local.held = []
        try:
            yield session
            session.commit()
        except LedgerError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise self.translate_error(e) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            held = self._local.held
            self._local.held = None
            for user_id in reversed(held):
                self._user_locks.release(user_id)

    @contextmanager
    def lock_user(self, user_id: int, create: bool = True) -> Iterator[Optional[PointsBalance]]:
        held = getattr(self._local, 'held', None)
        if held is None:
            raise RuntimeError('lock_user() must be called inside atomic()')

        if user_id not in held:
            if not self._user_locks.acquire(user_id, self.lock_timeout):
                logger.warning(f"Lock wait exceeded {self.lock_timeout}s for user {user_id}")
                raise BusyError(user_id)
            held.append(user_id)

        try:
            self._set_lock_timeout()
            balance = self._select_balance_for_update(user_id)
            if balance is None and create:
                balance = PointsBalance(
                    user_id=user_id,
                    balance=0,
                    lifetime_earned=0,
                    lifetime_redeemed=0,
                    lifetime_expired=0
                )
                self.session.add(balance)
                self.session.flush()
        except IntegrityError as e:
            # Another process created the row first; the caller may retry
            raise BusyError(user_id, f"Ledger for user {user_id} was initialized concurrently, retry") from e
        except SQLAlchemyError as e:
            raise self.translate_error(e) from e

        # Released by atomic() once the unit ends
        yield balance

    def _select_balance_for_update(self, user_id: int) -> Optional[PointsBalance]:
        stmt = (
            select(PointsBalance)
            .where(PointsBalance.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def _set_lock_timeout(self) -> None:
        """Bound row lock waits on backends that support it."""
        dialect = self.session.get_bind().dialect.name
        millis = max(int(self.lock_timeout * 1000), 1)
        if dialect == 'postgresql':
            self.session.execute(text(f"SET LOCAL lock_timeout = '{millis}ms'"))
        elif dialect in ('mysql', 'mariadb'):
            seconds = max(int(round(self.lock_timeout)), 1)
            self.session.execute(text(f"SET SESSION innodb_lock_wait_timeout = {seconds}"))

    def translate_error(self, error: SQLAlchemyError) -> LedgerError:
        if is_lock_timeout(error):
            return BusyError(message=f"Ledger storage lock wait exceeded: {error.__class__.__name__}")
        logger.error(f"Ledger storage failure: {error}")
        return StorageFailureError(f"Ledger storage failure: {error.__class__.__name__}", original_error=error)

    @contextmanager
    def _reading(self) -> Iterator:
        """Wrap read queries so driver errors surface as ledger errors."""
        try:
            yield self.session
        except SQLAlchemyError as e:
            raise self.translate_error(e) from e

    # ==================== Queries ====================

    def get_balance(self, user_id: int) -> Optional[PointsBalance]:
        with self._reading() as session:
            return session.get(PointsBalance, user_id)

    def find_journal_entry(self, user_id: int, kind: str, external_reference: str) -> Optional[JournalEntry]:
        with self._reading() as session:
            stmt = select(JournalEntry).where(
                JournalEntry.user_id == user_id,
                JournalEntry.kind == kind,
                JournalEntry.external_reference == external_reference
            )
            return session.execute(stmt).scalar_one_or_none()

    def get_lot(self, lot_id: int) -> Optional[PointsLot]:
        with self._reading() as session:
            return session.get(PointsLot, lot_id)

    def redeemable_lots(self, user_id: int, now: datetime) -> List[PointsLot]:
        stmt = (
            select(PointsLot)
            .where(
                PointsLot.user_id == user_id,
                PointsLot.state == LotState.ACTIVE.value,
                PointsLot.remaining_amount > 0,
                PointsLot.valid_until > now
            )
            .order_by(PointsLot.valid_until.asc(), PointsLot.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        with self._reading() as session:
            return list(session.execute(stmt).scalars())

    def due_lots(self, user_id: int, now: datetime) -> List[PointsLot]:
        stmt = (
            select(PointsLot)
            .where(
                PointsLot.user_id == user_id,
                PointsLot.state == LotState.ACTIVE.value,
                PointsLot.remaining_amount > 0,
                PointsLot.valid_until < now
            )
            .order_by(PointsLot.valid_until.asc(), PointsLot.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        with self._reading() as session:
            return list(session.execute(stmt).scalars())

    def users_with_due_lots(self, now: datetime, limit: Optional[int] = None) -> List[int]:
        stmt = (
            select(PointsLot.user_id)
            .where(
                PointsLot.state == LotState.ACTIVE.value,
                PointsLot.remaining_amount > 0,
                PointsLot.valid_until < now
            )
            .group_by(PointsLot.user_id)
            .order_by(func.min(PointsLot.valid_until).asc(), PointsLot.user_id.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        with self._reading() as session:
            return [row[0] for row in session.execute(stmt)]

    def add_lot(self, lot: PointsLot) -> PointsLot:
        self.session.add(lot)
        self.session.flush()
        return lot

    def add_journal_entry(self, entry: JournalEntry) -> JournalEntry:
        self.session.add(entry)
        self.session.flush()
        return entry

    def journal_entries(
        self,
        user_id: int,
        kind: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[JournalEntry]:
        stmt = select(JournalEntry).where(JournalEntry.user_id == user_id)
        if kind:
            stmt = stmt.where(JournalEntry.kind == kind)
        if start:
            stmt = stmt.where(JournalEntry.created_at >= start)
        if end:
            stmt = stmt.where(JournalEntry.created_at <= end)

        stmt = stmt.order_by(JournalEntry.created_at.asc(), JournalEntry.id.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)

        with self._reading() as session:
            return list(session.execute(stmt).scalars())

    def expiring_points(self, user_id: int, now: datetime, until: datetime) -> int:
        stmt = select(func.coalesce(func.sum(PointsLot.remaining_amount), 0)).where(
            PointsLot.user_id == user_id,
            PointsLot.state == LotState.ACTIVE.value,
            PointsLot.valid_until > now,
            PointsLot.valid_until <= until
        )
        with self._reading() as session:
            return int(session.execute(stmt).scalar() or 0)

    def active_lot_totals(self, user_id: Optional[int] = None) -> Dict[int, int]:
        stmt = (
            select(PointsLot.user_id, func.sum(PointsLot.remaining_amount))
            .where(PointsLot.state == LotState.ACTIVE.value)
            .group_by(PointsLot.user_id)
        )
        if user_id is not None:
            stmt = stmt.where(PointsLot.user_id == user_id)
        with self._reading() as session:
            return {uid: int(total or 0) for uid, total in session.execute(stmt)}

    def cached_balances(self, user_id: Optional[int] = None) -> Dict[int, int]:
        stmt = select(PointsBalance.user_id, PointsBalance.balance)
        if user_id is not None:
            stmt = stmt.where(PointsBalance.user_id == user_id)
        with self._reading() as session:
            return {uid: int(balance or 0) for uid, balance in session.execute(stmt)}
