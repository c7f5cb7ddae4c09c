"""Unit tests for PostgresStore query handling with a scripted connection."""

from __future__ import annotations

from contextlib import contextmanager

import pytest
from psycopg import errors

from stepflow.storage.errors import ConstraintViolation
from stepflow.storage.models import StepDefinition
from stepflow.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def executemany(self, query, params_seq):
        if self.conn.raise_on_executemany:
            raise self.conn.raise_on_executemany
        self.conn.batches.append((query, list(params_seq)))


class FakeConnection:
    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.queries = []
        self.batches = []
        self.raise_on_executemany = None

    def execute(self, query, params=None):
        self.queries.append((" ".join(query.split()), params))
        rows = self.responses.pop(0) if self.responses else []
        return FakeResult(rows)

    def cursor(self):
        return FakeCursor(self)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    return store


def _definitions():
    return [
        StepDefinition.from_dict({"id": "a", "action": "GO", "parameters": {"x": 1}}, 0),
        StepDefinition.from_dict({"id": "b", "type": "delay"}, 1),
    ]


def test_bulk_step_insert_uses_one_batch():
    conn = FakeConnection()
    records = _store(conn).create_execution_steps("exec-1", _definitions())

    assert [(r.step_index, r.step_id, r.status) for r in records] == [
        (0, "a", "pending"),
        (1, "b", "pending"),
    ]
    [(query, rows)] = conn.batches
    assert "INSERT INTO workflow_execution_step" in query
    assert rows[0][1:7] == ("exec-1", 0, "a", "Step 1", "action", "pending")
    assert rows[0][7] == '{"x": 1}'


def test_bulk_step_insert_twice_is_a_conflict():
    conn = FakeConnection()
    conn.raise_on_executemany = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation, match="already created"):
        _store(conn).create_execution_steps("exec-1", _definitions())


def test_step_update_guards_source_status():
    row = {
        "id": "rec-1",
        "execution_id": "exec-1",
        "step_index": 0,
        "step_id": "a",
        "step_name": "A",
        "step_type": "action",
        "status": "running",
        "input_data": {},
        "logs": [],
        "attempts": 0,
    }
    conn = FakeConnection(responses=[[row]])
    record = _store(conn).update_execution_step("rec-1", status="running")

    assert record.status == "running"
    query, params = conn.queries[0]
    assert "WHERE id = %s AND status = ANY(%s)" in query
    assert params[-1] == ["pending"]


def test_illegal_step_transition_reports_current_status():
    conn = FakeConnection(responses=[[], [{"status": "completed"}]])
    with pytest.raises(ConstraintViolation) as excinfo:
        _store(conn).update_execution_step("rec-1", status="failed")
    assert excinfo.value.detail == {
        "step_record_id": "rec-1",
        "from": "completed",
        "to": "failed",
    }


def test_missing_execution_update_is_not_found():
    conn = FakeConnection(responses=[[], []])
    with pytest.raises(ConstraintViolation, match="execution not found"):
        _store(conn).update_execution("exec-404", status="completed")


def test_jsonb_text_results_are_not_reparsed():
    row = {
        "id": "rec-1",
        "execution_id": "exec-1",
        "step_index": 0,
        "step_id": "a",
        "step_name": "A",
        "step_type": "action",
        "status": "completed",
        "input_data": {},
        "output_data": "42",
        "logs": ["true"],
        "attempts": 1,
    }
    conn = FakeConnection(responses=[[row]])
    [record] = _store(conn).list_execution_steps("exec-1")

    assert record.output_data == "42"
    assert record.logs == ["true"]
