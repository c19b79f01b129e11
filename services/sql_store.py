"""
Relational contact store backed by SQLAlchemy asyncio
Each transaction runs on its own AsyncSession. Driver errors are translated
into the reconciliation error taxonomy so callers can tell transient
conflicts from outages.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, text, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import DatabaseManager
from models.contact import Contact
from services.contact_store import ContactStore, acquire_lock
from services.exceptions import (
    ConflictError,
    IntegrityFault,
    ReconciliationError,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


def _sqlstate(error: sa_exc.DBAPIError) -> Optional[str]:
    orig = getattr(error, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


@contextmanager
def translate_errors(operation: str):
    """Map SQLAlchemy / driver failures onto reconciliation errors"""
    try:
        yield
    except ReconciliationError:
        raise
    except sa_exc.DBAPIError as e:
        if _sqlstate(e) in RETRYABLE_SQLSTATES or "database is locked" in str(e.orig):
            logger.warning(f"Conflict during {operation}: {e.orig}")
            raise ConflictError(f"Concurrent update detected during {operation}") from e
        if isinstance(e, sa_exc.IntegrityError):
            raise IntegrityFault(f"Constraint violated during {operation}: {e.orig}") from e
        if isinstance(e, (sa_exc.OperationalError, sa_exc.InterfaceError)) or e.connection_invalidated:
            raise StoreUnavailable(f"Contact store failed during {operation}") from e
        raise
    except (sa_exc.TimeoutError, OSError, asyncio.TimeoutError) as e:
        raise StoreUnavailable(f"Contact store unreachable during {operation}") from e


class SqlTransaction:

    def __init__(self, session: AsyncSession, holds_lock: bool = False):
        self.session = session
        self.holds_lock = holds_lock


class SqlContactStore(ContactStore):
    """
    Contact store over the contacts table

    Isolation comes from the engine (see DB_ISOLATION_LEVEL); matched rows
    are additionally locked with SELECT ... FOR UPDATE where the dialect
    supports it, and PostgreSQL transactions carry a lock_timeout.

    SQLite has no row locks and every session shares one connection, so
    transactions on that dialect run one at a time behind an asyncio lock.
    """

    def __init__(self, db_manager: DatabaseManager, lock_timeout_ms: Optional[int] = None):
        self.db_manager = db_manager
        self.lock_timeout_ms = settings.DB_LOCK_TIMEOUT_MS if lock_timeout_ms is None else lock_timeout_ms
        self._serial_lock = asyncio.Lock() if db_manager.dialect_name == "sqlite" else None

    async def begin(self) -> SqlTransaction:
        if self._serial_lock is not None:
            timeout = self.lock_timeout_ms / 1000 if self.lock_timeout_ms else None
            if not await acquire_lock(self._serial_lock, timeout):
                logger.warning(f"SQLite transaction lock not acquired within {timeout}s")
                raise ConflictError("Timed out waiting for the SQLite transaction lock")

        session = self.db_manager.SessionLocal()
        try:
            with translate_errors("begin"):
                await session.begin()
                if self.db_manager.dialect_name == "postgresql" and self.lock_timeout_ms:
                    await session.execute(text(f"SET LOCAL lock_timeout = {int(self.lock_timeout_ms)}"))
        except BaseException:
            await session.close()
            self._release_serial_lock()
            raise
        return SqlTransaction(session, holds_lock=self._serial_lock is not None)

    async def commit(self, tx: SqlTransaction) -> None:
        try:
            with translate_errors("commit"):
                await tx.session.commit()
        except BaseException:
            await tx.session.rollback()
            raise
        finally:
            await self._close(tx)

    async def rollback(self, tx: SqlTransaction) -> None:
        try:
            await tx.session.rollback()
        finally:
            await self._close(tx)

    async def _close(self, tx: SqlTransaction) -> None:
        try:
            await tx.session.close()
        finally:
            if tx.holds_lock:
                tx.holds_lock = False
                self._release_serial_lock()

    def _release_serial_lock(self) -> None:
        if self._serial_lock is not None:
            self._serial_lock.release()

    async def find_contacts(self, email, phone_number, tx) -> List[Contact]:
        conditions = []
        if email is not None:
            conditions.append(Contact.email == email)
        if phone_number is not None:
            conditions.append(Contact.phone_number == phone_number)
        if not conditions:
            return []

        query = (
            select(Contact)
            .where(or_(*conditions), Contact.deleted_at.is_(None))
            .order_by(Contact.created_at, Contact.id)
            .with_for_update()
        )
        with translate_errors("find_contacts"):
            result = await tx.session.execute(query)
            return list(result.scalars().all())

    async def find_by_id(self, contact_id: int, tx) -> Optional[Contact]:
        query = select(Contact).where(Contact.id == contact_id, Contact.deleted_at.is_(None))
        with translate_errors("find_by_id"):
            result = await tx.session.execute(query)
            return result.scalar_one_or_none()

    async def create_contact(self, fields: Dict[str, Any], tx) -> Contact:
        contact = Contact(**fields)
        with translate_errors("create_contact"):
            tx.session.add(contact)
            await tx.session.flush()  # Get the ID
        return contact

    async def update_contact(self, contact_id: int, fields: Dict[str, Any], tx) -> None:
        statement = (
            update(Contact)
            .where(Contact.id == contact_id)
            .values(**fields)
            .execution_options(synchronize_session="evaluate")
        )
        with translate_errors("update_contact"):
            result = await tx.session.execute(statement)
        if result.rowcount == 0:
            raise IntegrityFault(f"Contact {contact_id} does not exist")

    async def find_cluster(self, primary_id: int, tx) -> List[Contact]:
        query = (
            select(Contact)
            .where(
                or_(Contact.id == primary_id, Contact.linked_id == primary_id),
                Contact.deleted_at.is_(None),
            )
            .order_by(Contact.created_at, Contact.id)
            .execution_options(populate_existing=True)
        )
        with translate_errors("find_cluster"):
            result = await tx.session.execute(query)
            return list(result.scalars().all())

    async def ping(self) -> bool:
        return await self.db_manager.test_connection()
