"""
Counter stores backing the daily quota ledger.

Two implementations share one interface: ``SqlCounterStore`` persists
counters through SQLAlchemy and ``MemoryCounterStore`` keeps them in a
process-local dict guarded by a single lock. ``create_counter_store`` picks
one from configuration at startup.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import and_, case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from datamocker.errors import StorageUnavailable
from datamocker.models import QuotaCounter

logger = logging.getLogger(__name__)

# How often increments trigger a sweep of expired counters
SWEEP_INTERVAL_SECONDS = 3600


class CounterStore(ABC):
    """Atomic counters keyed by opaque strings."""

    @abstractmethod
    def get(self, key: str) -> int:
        """Current value, 0 when the key is absent or expired."""
        ...

    @abstractmethod
    def increment(self, key: str) -> int:
        """Atomically add one and return the new value (1 for a new key)."""
        ...

    @abstractmethod
    def expire(self, key: str, seconds: int) -> None:
        """Make the key disappear ``seconds`` from now."""
        ...

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete every expired counter. Returns the number removed."""
        ...


class MemoryCounterStore(CounterStore):
    """
    Process-local counters. Suitable for a single worker or for tests.

    Expired keys are dropped when read, and ``increment`` sweeps the whole
    map at most once per ``sweep_interval`` seconds so keys that are never
    read again (yesterday's) do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = SWEEP_INTERVAL_SECONDS):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        self._lock = threading.Lock()
        # key -> (count, expires_at epoch seconds or None)
        self._counters: Dict[str, Tuple[int, Optional[float]]] = {}

    def __len__(self) -> int:
        return len(self._counters)

    def _live(self, key: str) -> Optional[Tuple[int, Optional[float]]]:
        entry = self._counters.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._counters[key]
            return None
        return entry

    def _sweep(self) -> int:
        # Caller holds the lock
        now = self._clock()
        expired = [k for k, (_, exp) in self._counters.items() if exp is not None and exp <= now]
        for key in expired:
            del self._counters[key]
        self._next_sweep = now + self._sweep_interval
        return len(expired)

    def get(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else 0

    def increment(self, key: str) -> int:
        with self._lock:
            if self._clock() >= self._next_sweep:
                self._sweep()
            entry = self._live(key)
            count, expires_at = entry if entry else (0, None)
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    def expire(self, key: str, seconds: int) -> None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return
            self._counters[key] = (entry[0], self._clock() + seconds)

    def purge_expired(self) -> int:
        with self._lock:
            return self._sweep()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SqlCounterStore(CounterStore):
    """
    Counters persisted in the ``quota_counters`` table.

    Increments are a single ``UPDATE ... SET count = count + 1`` so concurrent
    writers never lose updates. Any SQLAlchemy failure surfaces as
    ``StorageUnavailable``. At most once per ``sweep_interval`` seconds an
    increment also deletes expired rows.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = _utcnow,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._sweep_interval = timedelta(seconds=sweep_interval)
        self._next_sweep = clock() + self._sweep_interval
        self._sweep_lock = threading.Lock()

    def _maybe_sweep(self) -> None:
        # One sweeper at a time; other writers skip rather than wait
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            now = self._clock()
            if now < self._next_sweep:
                return
            self._next_sweep = now + self._sweep_interval
            try:
                removed = self.purge_expired()
            except StorageUnavailable:
                logger.warning("Skipping counter sweep, store unavailable")
                return
            if removed:
                logger.info(f"Swept {removed} expired counters")
        finally:
            self._sweep_lock.release()

    def _is_expired(self, now: datetime):
        return and_(QuotaCounter.expires_at.isnot(None), QuotaCounter.expires_at <= now)

    def get(self, key: str) -> int:
        try:
            with self._session_factory() as db:
                row = db.execute(
                    select(QuotaCounter.count, QuotaCounter.expires_at).where(QuotaCounter.key == key)
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"Counter store read failed for {key}: {e}")
            raise StorageUnavailable("Counter store is unavailable") from e

        if row is None:
            return 0
        count, expires_at = row
        if expires_at is not None and expires_at <= self._clock():
            return 0
        return count

    def _atomic_update(self, db: Session, key: str, now: datetime) -> int:
        expired = self._is_expired(now)
        result = db.execute(
            update(QuotaCounter)
            .where(QuotaCounter.key == key)
            .values(
                count=case((expired, 1), else_=QuotaCounter.count + 1),
                expires_at=case((expired, None), else_=QuotaCounter.expires_at),
            )
        )
        return result.rowcount

    def increment(self, key: str) -> int:
        self._maybe_sweep()
        try:
            with self._session_factory() as db:
                now = self._clock()
                if self._atomic_update(db, key, now) == 0:
                    db.add(QuotaCounter(key=key, count=1, expires_at=None))
                    try:
                        db.commit()
                    except IntegrityError:
                        # Another writer created the row first
                        db.rollback()
                        self._atomic_update(db, key, now)
                        db.commit()
                else:
                    db.commit()
                return db.execute(
                    select(QuotaCounter.count).where(QuotaCounter.key == key)
                ).scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Counter store increment failed for {key}: {e}")
            raise StorageUnavailable("Counter store is unavailable") from e

    def expire(self, key: str, seconds: int) -> None:
        try:
            with self._session_factory() as db:
                db.execute(
                    update(QuotaCounter)
                    .where(QuotaCounter.key == key)
                    .values(expires_at=self._clock() + timedelta(seconds=seconds))
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Counter store expire failed for {key}: {e}")
            raise StorageUnavailable("Counter store is unavailable") from e

    def purge_expired(self) -> int:
        """Delete counters whose expiry has passed. Returns the number removed."""
        try:
            with self._session_factory() as db:
                rows = db.query(QuotaCounter).filter(self._is_expired(self._clock())).delete(
                    synchronize_session=False
                )
                db.commit()
                return rows
        except SQLAlchemyError as e:
            logger.error(f"Counter purge failed: {e}")
            raise StorageUnavailable("Counter store is unavailable") from e


def create_counter_store(kind: str, session_factory: Optional[sessionmaker] = None) -> CounterStore:
    """Build the configured counter store ("sql" or "memory")."""
    if kind == "memory":
        logger.info("Using in-process counter store")
        return MemoryCounterStore()
    if kind == "sql":
        if session_factory is None:
            raise ValueError("SQL counter store requires a session factory")
        logger.info("Using SQL counter store")
        return SqlCounterStore(session_factory)
    raise ValueError(f"Unknown counter store: {kind}")
