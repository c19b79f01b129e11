"""
Shared fixtures for the identity reconciliation tests
"""

import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("DB_ISOLATION_LEVEL", "")

import pytest

from models.contact import PRIMARY, SECONDARY
from services.identity_service import IdentityService
from services.memory_store import InMemoryContactStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Returns strictly increasing timestamps, one step per call"""

    def __init__(self, start=T0, step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now += self.step
        return current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryContactStore(lock_timeout_ms=1000)


@pytest.fixture
def service(store, clock):
    return IdentityService(store, secondary_fields="duplicate", max_retries=2, clock=clock)


@pytest.fixture
def seed(clock):
    """Insert a contact directly through a store, bypassing the service"""

    async def _seed(store, email=None, phone_number=None, linked_id=None,
                    created_at=None, deleted_at=None):
        created_at = created_at or clock()
        async with store.transaction() as tx:
            return await store.create_contact(
                {
                    "email": email,
                    "phone_number": phone_number,
                    "linked_id": linked_id,
                    "link_precedence": SECONDARY if linked_id else PRIMARY,
                    "created_at": created_at,
                    "updated_at": created_at,
                    "deleted_at": deleted_at,
                },
                tx,
            )

    return _seed


@pytest.fixture
def check_invariants():
    """Assert every live contact sits in exactly one flat cluster"""

    def _check(contacts):
        live = {c.id: c for c in contacts if c.deleted_at is None}
        for contact in live.values():
            if contact.is_primary():
                assert contact.linked_id is None, contact
            else:
                parent = live.get(contact.linked_id)
                assert parent is not None, f"orphan secondary {contact}"
                assert parent.is_primary(), f"secondary chain {contact} -> {parent}"

    return _check
