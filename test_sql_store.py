"""Tests for the SQLAlchemy contact store, run against in-memory SQLite."""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import exc as sa_exc
from sqlalchemy import select

from database import DatabaseManager
from models.contact import Contact
from services.exceptions import ConflictError, IntegrityFault, StoreUnavailable
from services.identity_service import IdentityService
from services.sql_store import SqlContactStore, translate_errors


@pytest_asyncio.fixture
async def db_manager():
    manager = DatabaseManager("sqlite+aiosqlite://", isolation_level=None, echo=False)
    await manager.create_tables()
    yield manager
    await manager.dispose()


@pytest.fixture
def sql_store(db_manager):
    return SqlContactStore(db_manager)


@pytest.fixture
def sql_service(sql_store, clock):
    return IdentityService(sql_store, secondary_fields="duplicate", max_retries=0, clock=clock)


async def test_connection_and_ping(db_manager, sql_store):
    assert db_manager.dialect_name == "sqlite"
    assert await sql_store.ping()


async def test_new_identity_then_extension(sql_service, sql_store):
    first = await sql_service.identify(email="a@x.com")
    assert first.emails == ["a@x.com"]
    assert first.secondaryContactIds == []

    second = await sql_service.identify(email="a@x.com", phone_number="555")

    assert second.primaryContactId == first.primaryContactId
    assert second.emails == ["a@x.com"]
    assert second.phoneNumbers == ["555"]
    assert len(second.secondaryContactIds) == 1

    again = await sql_service.identify(email="a@x.com", phone_number="555")
    assert again == second


async def test_merge_reparents_secondaries(sql_service, sql_store, seed):
    a = await seed(sql_store, email="a@x.com")
    b = await seed(sql_store, phone_number="555")
    b_child = await seed(sql_store, email="b@x.com", phone_number="555", linked_id=b.id)

    summary = await sql_service.identify(email="a@x.com", phone_number="555")

    assert summary.primaryContactId == a.id
    assert summary.secondaryContactIds == [b.id, b_child.id]
    assert summary.emails == ["a@x.com", "b@x.com"]
    async with sql_store.transaction() as tx:
        demoted = await sql_store.find_by_id(b.id, tx)
        child = await sql_store.find_by_id(b_child.id, tx)
    assert demoted.is_secondary()
    assert demoted.linked_id == a.id
    assert child.linked_id == a.id


async def test_soft_deleted_rows_are_invisible(sql_store, seed, clock):
    gone = await seed(sql_store, email="a@x.com", deleted_at=clock())
    live = await seed(sql_store, phone_number="555")

    async with sql_store.transaction() as tx:
        assert await sql_store.find_by_id(gone.id, tx) is None
        matches = await sql_store.find_contacts("a@x.com", "555", tx)
        assert [c.id for c in matches] == [live.id]
        assert await sql_store.find_cluster(gone.id, tx) == []


async def test_rollback_discards_writes(sql_store, seed):
    a = await seed(sql_store, email="a@x.com")

    with pytest.raises(RuntimeError):
        async with sql_store.transaction() as tx:
            await sql_store.update_contact(a.id, {"email": "changed@x.com"}, tx)
            raise RuntimeError("abort")

    async with sql_store.transaction() as tx:
        assert (await sql_store.find_by_id(a.id, tx)).email == "a@x.com"


async def test_update_of_unknown_contact_is_an_integrity_fault(sql_store):
    with pytest.raises(IntegrityFault):
        async with sql_store.transaction() as tx:
            await sql_store.update_contact(42, {"email": "a@x.com"}, tx)


async def test_check_constraint_violation_is_an_integrity_fault(sql_store, clock):
    now = clock()
    with pytest.raises(IntegrityFault):
        async with sql_store.transaction() as tx:
            await sql_store.create_contact(
                {
                    "email": "a@x.com",
                    "link_precedence": "secondary",
                    "linked_id": None,
                    "created_at": now,
                    "updated_at": now,
                },
                tx,
            )


# ---------------------------------------------------------------------------
# Concurrency on SQLite
# ---------------------------------------------------------------------------

async def all_contacts(db_manager):
    async with db_manager.get_session() as session:
        result = await session.execute(select(Contact).order_by(Contact.id))
        return list(result.scalars().all())


async def test_concurrent_creation_yields_one_primary(sql_service, db_manager):
    first, second = await asyncio.gather(
        sql_service.identify(email="dup@x.com"),
        sql_service.identify(email="dup@x.com"),
    )

    assert first.primaryContactId == second.primaryContactId
    contacts = await all_contacts(db_manager)
    assert [(c.id, c.link_precedence) for c in contacts] == [(first.primaryContactId, "primary")]


async def test_concurrent_overlapping_observations_converge(sql_service, db_manager, check_invariants):
    await asyncio.gather(
        sql_service.identify(email="a@x.com"),
        sql_service.identify(phone_number="555"),
        sql_service.identify(email="a@x.com", phone_number="555"),
        sql_service.identify(email="b@x.com", phone_number="555"),
    )

    contacts = await all_contacts(db_manager)
    check_invariants(contacts)
    assert len([c for c in contacts if c.is_primary()]) == 1


async def test_sqlite_transactions_wait_for_each_other(db_manager):
    store = SqlContactStore(db_manager, lock_timeout_ms=20)
    held = await store.begin()

    with pytest.raises(ConflictError):
        await store.begin()

    await store.rollback(held)
    await store.commit(await store.begin())


# ---------------------------------------------------------------------------
# Driver error translation
# ---------------------------------------------------------------------------

class FakeDriverError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


@pytest.mark.parametrize("sqlstate", ["40001", "40P01", "55P03"])
def test_serialization_failures_become_conflicts(sqlstate):
    with pytest.raises(ConflictError):
        with translate_errors("commit"):
            raise sa_exc.OperationalError("COMMIT", {}, FakeDriverError("conflict", sqlstate))


def test_locked_sqlite_database_is_a_conflict():
    with pytest.raises(ConflictError):
        with translate_errors("find_contacts"):
            raise sa_exc.OperationalError("SELECT", {}, FakeDriverError("database is locked"))


def test_operational_failure_is_store_unavailable():
    with pytest.raises(StoreUnavailable):
        with translate_errors("begin"):
            raise sa_exc.OperationalError("SELECT 1", {}, FakeDriverError("connection refused", "08006"))


def test_connection_reset_is_store_unavailable():
    with pytest.raises(StoreUnavailable):
        with translate_errors("begin"):
            raise ConnectionResetError("peer went away")


def test_reconciliation_errors_pass_through():
    with pytest.raises(IntegrityFault):
        with translate_errors("update_contact"):
            raise IntegrityFault("already classified")


async def test_create_tables_script_bootstraps_schema():
    import create_tables

    assert await create_tables.main("sqlite+aiosqlite://")
