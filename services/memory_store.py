"""
In-process contact store
Keeps contacts in a dict guarded by an asyncio lock. Transactions are fully
serialized, which gives the same guarantees as serializable isolation.
"""

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional

from models.contact import Contact
from services.contact_store import ContactStore, acquire_lock
from services.exceptions import ConflictError, IntegrityFault

logger = logging.getLogger(__name__)


def _copy(contact: Contact) -> Contact:
    return Contact(**contact.to_dict())


def _live(contact: Contact) -> bool:
    return contact.deleted_at is None


class MemoryTransaction:
    """Rows snapshot taken at begin, restored on rollback"""

    def __init__(self, snapshot: Dict[int, Contact]):
        self.snapshot = snapshot
        self.closed = False


class InMemoryContactStore(ContactStore):

    def __init__(self, lock_timeout_ms: Optional[int] = None):
        self._rows: Dict[int, Contact] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._lock_timeout = lock_timeout_ms / 1000 if lock_timeout_ms else None

    async def begin(self) -> MemoryTransaction:
        if not await acquire_lock(self._lock, self._lock_timeout):
            logger.warning(f"Contact store lock not acquired within {self._lock_timeout}s")
            raise ConflictError("Timed out waiting for the contact store lock")
        return MemoryTransaction({cid: _copy(c) for cid, c in self._rows.items()})

    async def commit(self, tx: MemoryTransaction) -> None:
        self._release(tx)

    async def rollback(self, tx: MemoryTransaction) -> None:
        if not tx.closed:
            self._rows = tx.snapshot
        self._release(tx)

    def _release(self, tx: MemoryTransaction) -> None:
        if tx.closed:
            return
        tx.closed = True
        self._lock.release()

    def _sorted(self, contacts) -> List[Contact]:
        return [_copy(c) for c in sorted(contacts, key=Contact.seniority_key)]

    async def find_contacts(self, email, phone_number, tx) -> List[Contact]:
        if email is None and phone_number is None:
            return []
        return self._sorted(
            c for c in self._rows.values()
            if _live(c) and (
                (email is not None and c.email == email)
                or (phone_number is not None and c.phone_number == phone_number)
            )
        )

    async def find_by_id(self, contact_id: int, tx) -> Optional[Contact]:
        contact = self._rows.get(contact_id)
        if contact is None or not _live(contact):
            return None
        return _copy(contact)

    async def create_contact(self, fields: Dict[str, Any], tx) -> Contact:
        contact = Contact(**fields)
        contact.id = next(self._ids)
        self._rows[contact.id] = contact
        return _copy(contact)

    async def update_contact(self, contact_id: int, fields: Dict[str, Any], tx) -> None:
        contact = self._rows.get(contact_id)
        if contact is None:
            raise IntegrityFault(f"Contact {contact_id} does not exist")
        for name, value in fields.items():
            setattr(contact, name, value)

    async def find_cluster(self, primary_id: int, tx) -> List[Contact]:
        return self._sorted(
            c for c in self._rows.values()
            if _live(c) and (c.id == primary_id or c.linked_id == primary_id)
        )

    async def ping(self) -> bool:
        return True

    def dump(self) -> List[Contact]:
        """Every stored contact, soft-deleted ones included, oldest first"""
        return self._sorted(self._rows.values())

    def __len__(self):
        return len(self._rows)
