import importlib
import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import jwt
import psycopg2
import pytest


os.environ["AUTH_SECRET"] = "dashboard-test-auth-secret-0123456789abcdef"
os.environ.pop("DASHBOARD_PARALLEL_QUERIES", None)
os.environ.pop("ADMIN_ROLE_IDS", None)
app_module = importlib.import_module("app")
models = importlib.import_module("models")

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
ADMIN_ROLE = 1
USER_ROLE = 5


class CursorStub:
    def __init__(self, fetchall_items=None, fail_with=None):
        self.fetchall_items = list(fetchall_items or [])
        self.fail_with = fail_with
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((query, params))
        if self.fail_with is not None:
            raise self.fail_with

    def fetchall(self):
        if self.fetchall_items:
            return self.fetchall_items.pop(0)
        return []


class ConnStub:
    def __init__(self, rollback_error=None):
        self.rollbacks = 0
        self.closed = 0
        self.rollback_error = rollback_error

    def rollback(self):
        self.rollbacks += 1
        if self.rollback_error is not None:
            raise self.rollback_error


class PoolStub:
    def __init__(self, conn, getconn_error=None):
        self.conn = conn
        self.getconn_error = getconn_error
        self.checked_out = 0
        self.returned = []

    def getconn(self):
        if self.getconn_error is not None:
            raise self.getconn_error
        self.checked_out += 1
        return self.conn

    def putconn(self, conn, close=False):
        self.returned.append((conn, close))


def bind_db(monkeypatch, fetchall_items=None, fail_with=None, rollback_error=None, getconn_error=None):
    cursor = CursorStub(fetchall_items=fetchall_items, fail_with=fail_with)
    conn = ConnStub(rollback_error=rollback_error)
    pool = PoolStub(conn, getconn_error=getconn_error)
    monkeypatch.setattr(models, "get_pool", lambda: pool)
    monkeypatch.setattr(models, "dict_cursor", lambda _conn: cursor)
    return pool, cursor


class FakeDatabase:
    """Stands in for the pooled query layer, answering by statement name."""

    def __init__(self, results=None, fail_on=None):
        self.results = dict(results or {})
        self.fail_on = fail_on
        self.calls = []
        self.connections_opened = 0
        self.connections_released = 0

    def run_query(self, conn, name, sql, params=None):
        self.calls.append((name, sql, params))
        if name == self.fail_on:
            raise models.QueryExecutionError(name, 'relation "efiling_files" does not exist')
        return [dict(row) for row in self.results.get(name, [])]

    def fetch_all(self, name, sql, params=None):
        with self.db_connection() as conn:
            return self.run_query(conn, name, sql, params)

    @contextmanager
    def db_connection(self):
        self.connections_opened += 1
        try:
            yield object()
        finally:
            self.connections_released += 1


def bind_dashboard_db(monkeypatch, results=None, fail_on=None):
    db = FakeDatabase(results=results, fail_on=fail_on)
    monkeypatch.setattr(models, "run_query", db.run_query)
    monkeypatch.setattr(models, "fetch_all", db.fetch_all)
    monkeypatch.setattr(models, "db_connection", db.db_connection)
    return db


def make_token(user_id=7, role=USER_ROLE, secret="dashboard-test-auth-secret-0123456789abcdef", expires_in=timedelta(hours=1), **extra):
    issued = datetime.now(timezone.utc)
    payload = {"sub": str(user_id), "user": {"id": user_id, "role": role}, "iat": issued, "exp": issued + expires_in}
    payload.update(extra)
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def client():
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c


def login_as(client, user_id=1, role=ADMIN_ROLE):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
        sess["user_role"] = role


def operational_error(message="server closed the connection unexpectedly"):
    return psycopg2.OperationalError(message)
