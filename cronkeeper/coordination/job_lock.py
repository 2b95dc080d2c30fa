"""
Cronkeeper: Distributed Job Lock

Table-row mutex that serialises same-named jobs across worker processes.
Session-scoped advisory locks are not usable behind a transaction-mode
connection pooler, so each lock is a row in ``job_locks`` guarded by a
compare-and-swap on an opaque token, with a TTL as the recovery path for
crashed holders.

Key responsibilities:
- Acquire a lock by inserting a row or taking over an expired one
- Release and extend a lock only with the token that acquired it
- Delete expired rows as a maintenance operation

State per job_name::

    Unlocked --acquire--> Locked(token, expiry)
    Locked --release(token)--> Unlocked
    Locked --now > expiry--> treated as Unlocked (row may remain)

External dependencies:
- psycopg2: PostgreSQL-backed store (runtime_db)

Database tables accessed:
- runtime_db.job_locks (Read/Write)

Thread safety: DistributedLock is stateless; InMemoryLockStore guards its
dict with a lock. Cross-process safety comes from the store's atomic
conditional writes.

Author: Cronkeeper Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Generator, Iterator, Optional

import psycopg2
from psycopg2 import errors as pg_errors

from cronkeeper.core.database import DatabaseError, DatabaseManager
from cronkeeper.core.ids import generate_lock_token
from cronkeeper.core.logging import get_logger
from cronkeeper.core.time import utc_now

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 600

LOCK_HELD_MESSAGE = "Lock already held by another process"
LOCK_RACE_MESSAGE = "Failed to acquire lock (race condition)"


class LockStoreError(Exception):
    """Raised when the lock store cannot be read or written."""


class LockContentionError(Exception):
    """Raised by :meth:`DistributedLock.hold` when another process holds the lock."""

    def __init__(self, job_name: str, reason: Optional[str] = None) -> None:
        super().__init__(f"Job '{job_name}' is locked: {reason or LOCK_HELD_MESSAGE}")
        self.job_name = job_name
        self.reason = reason


# ============================================================================
# Data Models
# ============================================================================


@dataclass(frozen=True)
class LockRecord:
    """One row of ``job_locks``."""

    job_name: str
    lock_token: str
    locked_until: datetime
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.locked_until


@dataclass(frozen=True)
class LockResult:
    """Outcome of :meth:`DistributedLock.acquire`.

    Attributes:
        granted: True if the caller now holds the lock.
        token: Token required for release/extend when granted.
        reason: Human-readable reason when not granted.
        contended: True when another process holds (or just won) the
            lock; False when the store itself failed.
    """

    granted: bool
    token: Optional[str] = None
    reason: Optional[str] = None
    contended: bool = False


# ============================================================================
# Lock stores
# ============================================================================


class LockStore(ABC):
    """Storage port with compare-and-swap semantics.

    Implementations raise :class:`LockStoreError` for infrastructure
    failures and return ``False``/``None`` for ordinary misses.
    """

    @abstractmethod
    def get(self, job_name: str) -> Optional[LockRecord]:
        """Return the current lock row for ``job_name``, if any."""

    @abstractmethod
    def insert_if_absent(self, record: LockRecord) -> bool:
        """Insert ``record``; return False if a row already exists."""

    @abstractmethod
    def compare_and_swap(
        self,
        job_name: str,
        expected_token: str,
        new_token: str,
        locked_until: datetime,
        updated_at: datetime,
    ) -> bool:
        """Replace the row only if it still carries ``expected_token``."""

    @abstractmethod
    def update_expiry(
        self,
        job_name: str,
        token: str,
        locked_until: datetime,
        updated_at: datetime,
    ) -> bool:
        """Move the expiry of the row owned by ``token``."""

    @abstractmethod
    def delete(self, job_name: str, token: str) -> bool:
        """Delete the row owned by ``token``; return True if one was removed."""

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        """Delete all rows with ``locked_until < now`` and return the count."""


class InMemoryLockStore(LockStore):
    """Process-local store for single-worker deployments and tests."""

    def __init__(self) -> None:
        self._rows: Dict[str, LockRecord] = {}
        self._mutex = threading.Lock()

    def get(self, job_name: str) -> Optional[LockRecord]:
        with self._mutex:
            return self._rows.get(job_name)

    def insert_if_absent(self, record: LockRecord) -> bool:
        with self._mutex:
            if record.job_name in self._rows:
                return False
            self._rows[record.job_name] = record
            return True

    def compare_and_swap(
        self,
        job_name: str,
        expected_token: str,
        new_token: str,
        locked_until: datetime,
        updated_at: datetime,
    ) -> bool:
        with self._mutex:
            current = self._rows.get(job_name)
            if current is None or current.lock_token != expected_token:
                return False
            self._rows[job_name] = LockRecord(job_name, new_token, locked_until, updated_at)
            return True

    def update_expiry(
        self,
        job_name: str,
        token: str,
        locked_until: datetime,
        updated_at: datetime,
    ) -> bool:
        with self._mutex:
            current = self._rows.get(job_name)
            if current is None or current.lock_token != token:
                return False
            self._rows[job_name] = replace(
                current, locked_until=locked_until, updated_at=updated_at
            )
            return True

    def delete(self, job_name: str, token: str) -> bool:
        with self._mutex:
            current = self._rows.get(job_name)
            if current is None or current.lock_token != token:
                return False
            del self._rows[job_name]
            return True

    def delete_expired(self, now: datetime) -> int:
        with self._mutex:
            expired = [name for name, row in self._rows.items() if row.locked_until < now]
            for name in expired:
                del self._rows[name]
            return len(expired)


class PostgresLockStore(LockStore):
    """Lock store backed by ``runtime_db.job_locks``.

    The primary key on ``job_name`` makes the insert atomic; takeover and
    release are single UPDATE/DELETE statements filtered on the token.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        self.db_manager = db_manager

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (psycopg2.Error, DatabaseError) as exc:
            raise LockStoreError(f"job_locks {operation} failed: {exc}") from exc

    def _execute_write(self, sql: str, params: tuple) -> int:
        with self.db_manager.get_runtime_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                affected = cursor.rowcount
                conn.commit()
            finally:
                cursor.close()
        return affected

    def get(self, job_name: str) -> Optional[LockRecord]:
        sql = """
            SELECT job_name, lock_token, locked_until, updated_at
            FROM job_locks
            WHERE job_name = %s
        """
        with self._errors("select"):
            with self.db_manager.get_runtime_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql, (job_name,))
                    row = cursor.fetchone()
                finally:
                    cursor.close()

        if row is None:
            return None
        name, token, locked_until, updated_at = row
        return LockRecord(
            job_name=name,
            lock_token=token,
            locked_until=locked_until,
            updated_at=updated_at,
        )

    def insert_if_absent(self, record: LockRecord) -> bool:
        sql = """
            INSERT INTO job_locks (job_name, lock_token, locked_until, updated_at)
            VALUES (%s, %s, %s, %s)
        """
        params = (record.job_name, record.lock_token, record.locked_until, record.updated_at)
        with self._errors("insert"):
            with self.db_manager.get_runtime_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql, params)
                    conn.commit()
                except pg_errors.UniqueViolation:
                    conn.rollback()
                    return False
                finally:
                    cursor.close()
        return True

    def compare_and_swap(
        self,
        job_name: str,
        expected_token: str,
        new_token: str,
        locked_until: datetime,
        updated_at: datetime,
    ) -> bool:
        sql = """
            UPDATE job_locks
            SET lock_token = %s, locked_until = %s, updated_at = %s
            WHERE job_name = %s AND lock_token = %s
        """
        with self._errors("takeover"):
            affected = self._execute_write(
                sql, (new_token, locked_until, updated_at, job_name, expected_token)
            )
        return affected == 1

    def update_expiry(
        self,
        job_name: str,
        token: str,
        locked_until: datetime,
        updated_at: datetime,
    ) -> bool:
        sql = """
            UPDATE job_locks
            SET locked_until = %s, updated_at = %s
            WHERE job_name = %s AND lock_token = %s
        """
        with self._errors("extend"):
            affected = self._execute_write(sql, (locked_until, updated_at, job_name, token))
        return affected == 1

    def delete(self, job_name: str, token: str) -> bool:
        sql = "DELETE FROM job_locks WHERE job_name = %s AND lock_token = %s"
        with self._errors("delete"):
            affected = self._execute_write(sql, (job_name, token))
        return affected > 0

    def delete_expired(self, now: datetime) -> int:
        sql = "DELETE FROM job_locks WHERE locked_until < %s"
        with self._errors("cleanup"):
            return self._execute_write(sql, (now,))


# ============================================================================
# Distributed lock
# ============================================================================


class DistributedLock:
    """Optimistic, TTL-based mutual exclusion over a :class:`LockStore`.

    ``acquire`` never blocks: a held lock returns ``granted=False``
    immediately so the caller can exit cleanly.
    """

    def __init__(
        self,
        store: LockStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        token_factory: Callable[[], str] = generate_lock_token,
    ) -> None:
        self.store = store
        self._clock = clock
        self._token_factory = token_factory

    def acquire(self, job_name: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS) -> LockResult:
        """Try to take the lock for ``job_name`` for ``ttl_seconds``."""

        now = self._clock()
        token = self._token_factory()
        locked_until = now + timedelta(seconds=ttl_seconds)

        try:
            existing = self.store.get(job_name)

            if existing is None:
                record = LockRecord(job_name, token, locked_until, now)
                if self.store.insert_if_absent(record):
                    logger.info("Lock acquired: job=%s until=%s", job_name, locked_until)
                    return LockResult(granted=True, token=token)
                logger.info("Lock for job=%s taken by a concurrent insert", job_name)
                return LockResult(granted=False, reason=LOCK_HELD_MESSAGE, contended=True)

            if not existing.is_expired(now):
                logger.info(
                    "Lock for job=%s held until %s", job_name, existing.locked_until
                )
                return LockResult(granted=False, reason=LOCK_HELD_MESSAGE, contended=True)

            if self.store.compare_and_swap(
                job_name, existing.lock_token, token, locked_until, now
            ):
                logger.info(
                    "Lock acquired from expired holder: job=%s expired_at=%s",
                    job_name,
                    existing.locked_until,
                )
                return LockResult(granted=True, token=token)

            # Lost the takeover race, or the row vanished underneath us.
            logger.info("Lock takeover for job=%s lost a race", job_name)
            return LockResult(granted=False, reason=LOCK_RACE_MESSAGE, contended=True)

        except LockStoreError as exc:
            logger.error("Lock acquire failed for job=%s: %s", job_name, exc)
            return LockResult(granted=False, reason=str(exc), contended=False)

    def release(self, job_name: str, token: str) -> None:
        """Release the lock if ``token`` still owns it.

        Failures are logged and swallowed; the TTL bounds how long a stale
        row can block other workers.
        """

        try:
            released = self.store.delete(job_name, token)
        except LockStoreError as exc:
            logger.warning("Failed to release lock for job=%s: %s", job_name, exc)
            return

        if released:
            logger.info("Lock released: job=%s", job_name)
        else:
            logger.warning("Lock for job=%s was not owned by this token on release", job_name)

    def extend(
        self,
        job_name: str,
        token: str,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ) -> bool:
        """Push the expiry of an owned lock to ``now + ttl_seconds``."""

        now = self._clock()
        try:
            extended = self.store.update_expiry(
                job_name, token, now + timedelta(seconds=ttl_seconds), now
            )
        except LockStoreError as exc:
            logger.warning("Failed to extend lock for job=%s: %s", job_name, exc)
            return False

        if not extended:
            logger.warning("Lock for job=%s not extended: token no longer owns it", job_name)
        return extended

    def cleanup_expired(self) -> int:
        """Delete expired lock rows. Safe to run at any time."""

        try:
            count = self.store.delete_expired(self._clock())
        except LockStoreError as exc:
            logger.warning("Expired lock cleanup failed: %s", exc)
            return 0

        if count:
            logger.info("Cleaned up %d expired locks", count)
        return count

    @contextmanager
    def hold(
        self,
        job_name: str,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ) -> Generator[str, None, None]:
        """Hold the lock for the duration of a ``with`` block.

        Yields:
            The lock token.

        Raises:
            LockContentionError: If another process holds the lock.
            LockStoreError: If the store failed during acquisition.
        """

        result = self.acquire(job_name, ttl_seconds)
        if not result.granted:
            if result.contended:
                raise LockContentionError(job_name, result.reason)
            raise LockStoreError(result.reason or "Lock acquisition failed")

        assert result.token is not None
        try:
            yield result.token
        finally:
            self.release(job_name, result.token)
