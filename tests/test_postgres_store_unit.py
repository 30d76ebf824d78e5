import contextlib

import pytest
from psycopg import errors

from taskdock.logging import get_logger
from taskdock.service.errors import StoreUnavailable
from taskdock.storage.errors import ConstraintViolation
from taskdock.storage.postgres import PostgresStore, containment_filter


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://stub"
    store.logger = get_logger("test")
    return store


def test_containment_filter_nests_dotted_keys():
    assert containment_filter({"id": "u1", "sessions.token": "t"}) == {
        "id": "u1",
        "sessions": [{"token": "t"}],
    }
    assert containment_filter({"a.b.c": 1}) == {"a": [{"b": [{"c": 1}]}]}
    assert containment_filter({}) == {}


def test_stub_pool_blocks_database_access():
    store = _store(DummyPool())
    with pytest.raises(AssertionError):
        store.find_one("users", {"id": "u1"})


def test_find_one_uses_containment_query():
    conn = FakeConnection([FakeCursor(row={"body": {"id": "u1", "email": "a@x.com"}})])
    store = _store(FakePool(conn))
    assert store.find_one("users", {"sessions.token": "t"}) == {"id": "u1", "email": "a@x.com"}
    sql, params = conn.statements[0]
    assert "body @> %s" in sql
    assert params[0] == "users"
    assert params[1].obj == {"sessions": [{"token": "t"}]}


def test_update_one_locks_row_and_applies_patch():
    conn = FakeConnection(
        [FakeCursor(row={"id": "1.2.3.4", "body": {"id": "1.2.3.4", "count": 2}}), FakeCursor()]
    )
    store = _store(FakePool(conn))
    assert store.update_one("ip_records", {"address": "1.2.3.4"}, {"$inc": {"count": 1}}) == 1
    select_sql, _ = conn.statements[0]
    update_sql, update_params = conn.statements[1]
    assert "FOR UPDATE" in select_sql
    assert update_sql.startswith("UPDATE documents SET body")
    assert update_params[0].obj == {"id": "1.2.3.4", "count": 3}


def test_update_one_without_match_returns_zero():
    conn = FakeConnection([FakeCursor(row=None)])
    store = _store(FakePool(conn))
    assert store.update_one("users", {"id": "missing"}, {"$set": {"email": "x"}}) == 0
    assert len(conn.statements) == 1


def test_unique_violation_maps_to_constraint_violation():
    conn = FakeConnection([errors.UniqueViolation("duplicate key")])
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation):
        store.save("users", {"id": "u2", "email": "a@x.com"})


def test_insert_has_no_upsert_clause_and_maps_duplicates():
    conn = FakeConnection([FakeCursor(), errors.UniqueViolation("duplicate key")])
    store = _store(FakePool(conn))
    store.insert("ip_records", {"id": "1.2.3.4", "address": "1.2.3.4", "count": 1})
    assert "ON CONFLICT" not in conn.statements[0][0]
    with pytest.raises(ConstraintViolation):
        store.insert("ip_records", {"id": "1.2.3.4", "address": "1.2.3.4", "count": 1})


def test_operational_error_maps_to_store_unavailable():
    conn = FakeConnection([errors.OperationalError("connection refused")])
    store = _store(FakePool(conn))
    with pytest.raises(StoreUnavailable) as excinfo:
        store.find_many("lists", {"owner_id": "u1"})
    assert excinfo.value.status_code == 503


def test_delete_many_reports_rowcount():
    conn = FakeConnection([FakeCursor(rowcount=4)])
    store = _store(FakePool(conn))
    assert store.delete_many("tasks", {"list_id": "l1"}) == 4


def test_save_requires_id():
    store = _store(DummyPool())
    with pytest.raises(ValueError):
        store.save("users", {"email": "a@x.com"})
