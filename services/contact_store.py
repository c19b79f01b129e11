"""
Contact store contract used by the identity service
Implementations provide transactional access to contacts through a
narrow query interface; the service never touches sessions directly.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from models.contact import Contact

logger = logging.getLogger(__name__)


async def acquire_lock(lock: asyncio.Lock, timeout: Optional[float]) -> bool:
    """
    Acquire lock within timeout seconds (None waits forever)

    Returns False on timeout. An acquire that completes after the caller gave
    up is released again, so the lock is never left held by nobody.
    """
    waiter = asyncio.ensure_future(lock.acquire())
    try:
        done, _ = await asyncio.wait({waiter}, timeout=timeout)
    except asyncio.CancelledError:
        _abandon(lock, waiter)
        raise
    if done:
        return True
    _abandon(lock, waiter)
    return False


def _abandon(lock: asyncio.Lock, waiter: asyncio.Future) -> None:
    def release_if_acquired(future):
        if not future.cancelled() and future.exception() is None:
            lock.release()

    waiter.cancel()
    waiter.add_done_callback(release_if_acquired)


class ContactStore(ABC):
    """
    Transactional contact storage

    All reads exclude soft-deleted contacts. Every query takes the
    transaction handle returned by begin().
    """

    @abstractmethod
    async def begin(self) -> Any:
        ...

    @abstractmethod
    async def commit(self, tx) -> None:
        ...

    @abstractmethod
    async def rollback(self, tx) -> None:
        ...

    @abstractmethod
    async def find_contacts(
        self, email: Optional[str], phone_number: Optional[str], tx
    ) -> List[Contact]:
        """Contacts whose email OR phone number equals the given value, oldest first"""

    @abstractmethod
    async def find_by_id(self, contact_id: int, tx) -> Optional[Contact]:
        ...

    @abstractmethod
    async def create_contact(self, fields: Dict[str, Any], tx) -> Contact:
        ...

    @abstractmethod
    async def update_contact(self, contact_id: int, fields: Dict[str, Any], tx) -> None:
        ...

    @abstractmethod
    async def find_cluster(self, primary_id: int, tx) -> List[Contact]:
        """The primary and every contact linked to it, ordered by created_at then id"""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @asynccontextmanager
    async def transaction(self):
        """
        Run a block inside one store transaction
        Usage:
            async with store.transaction() as tx:
                await store.find_contacts(email, phone, tx)
        """
        tx = await self.begin()
        try:
            yield tx
        except BaseException as e:
            logger.debug(f"Rolling back transaction after {type(e).__name__}: {e}")
            await self.rollback(tx)
            raise
        await self.commit(tx)
