import logging
import threading
import time
from datetime import datetime, timezone

import psycopg2
import psycopg2.pool
import pytest

import dashboard
import models

from conftest import NOW, bind_db, operational_error


def test_fetch_all_runs_statement_and_returns_connection(monkeypatch):
    pool, cursor = bind_db(monkeypatch, fetchall_items=[[{"id": 1}, {"id": 2}]])

    rows = models.fetch_all("files", "SELECT id FROM efiling_files WHERE id > %(min_id)s", {"min_id": 0})

    assert [r["id"] for r in rows] == [1, 2]
    assert cursor.executed == [("SELECT id FROM efiling_files WHERE id > %(min_id)s", {"min_id": 0})]
    assert pool.checked_out == 1
    assert pool.returned == [(pool.conn, False)]
    assert pool.conn.rollbacks == 1


def test_query_failure_is_wrapped_and_connection_still_returned(monkeypatch):
    pool, _ = bind_db(monkeypatch, fail_with=operational_error("canceling statement due to statement timeout"))

    with pytest.raises(models.QueryExecutionError) as exc:
        models.fetch_all("overall", "SELECT 1")

    assert exc.value.statement == "overall"
    assert "statement timeout" in exc.value.details
    assert len(pool.returned) == 1


def test_release_discards_connection_that_cannot_roll_back(monkeypatch):
    pool, _ = bind_db(monkeypatch, rollback_error=psycopg2.InterfaceError("connection already closed"))

    models.fetch_all("files", "SELECT 1")

    assert pool.returned == [(pool.conn, True)]


def test_get_db_wraps_pool_exhaustion(monkeypatch):
    bind_db(monkeypatch, getconn_error=psycopg2.pool.PoolError("connection pool exhausted"))

    with pytest.raises(models.QueryExecutionError) as exc:
        models.get_db()

    assert exc.value.statement == "connect"
    assert "exhausted" in exc.value.details


def test_db_connection_releases_on_caller_exception(monkeypatch):
    pool, _ = bind_db(monkeypatch)

    with pytest.raises(RuntimeError):
        with models.db_connection():
            raise RuntimeError("boom")

    assert len(pool.returned) == 1


def test_slow_query_is_logged(monkeypatch, caplog):
    bind_db(monkeypatch, fetchall_items=[[{"id": 1}]])
    monkeypatch.setattr(models.config, "SLOW_QUERY_MS", -1)

    with caplog.at_level(logging.WARNING, logger="models"):
        models.fetch_all("by_town", "SELECT 1")

    assert "Slow query 'by_town'" in caplog.text


def test_get_efiling_profile(monkeypatch):
    _, cursor = bind_db(monkeypatch, fetchall_items=[[{"id": 11, "department_id": 5, "district_id": None, "town_id": None, "division_id": None}]])
    profile = models.get_efiling_profile(7)
    assert profile["id"] == 11
    assert cursor.executed[0][1] == {"user_id": 7}
    assert "eu.is_active = true" in cursor.executed[0][0]

    bind_db(monkeypatch, fetchall_items=[[]])
    assert models.get_efiling_profile(8) is None


def test_get_department_performance_filters_inactive_departments(monkeypatch):
    since = datetime(2026, 2, 1, tzinfo=timezone.utc)

    _, cursor = bind_db(monkeypatch, fetchall_items=[[{"department_id": 1}]])
    assert models.get_department_performance(since)[0]["department_id"] == 1
    sql, params = cursor.executed[0]
    assert "WHERE d.is_active = true" in sql
    assert params == {"since": since}

    _, cursor = bind_db(monkeypatch)
    models.get_department_performance(since, include_inactive=True)
    assert "WHERE d.is_active = true" not in cursor.executed[0][0]


def test_check_database(monkeypatch):
    bind_db(monkeypatch, fetchall_items=[[{"ok": 1}]])
    assert models.check_database() is True

    bind_db(monkeypatch, fail_with=operational_error())
    assert models.check_database() is False


class TrackedConnection:
    def __init__(self, tracker):
        self.tracker = tracker
        self.closed = 0

    def rollback(self):
        pass

    def close(self):
        if not self.closed:
            self.closed = 1
            self.tracker.disconnect()


class ConnectionTracker:
    """Counts live connections handed out by a real ThreadedConnectionPool."""

    def __init__(self):
        self.lock = threading.Lock()
        self.open = 0
        self.peak = 0

    def connect(self, *args, **kwargs):
        with self.lock:
            self.open += 1
            self.peak = max(self.peak, self.open)
        return TrackedConnection(self)

    def disconnect(self):
        with self.lock:
            self.open -= 1


class SlowCursor:
    def execute(self, query, params=None):
        time.sleep(0.005)

    def fetchall(self):
        return []


def test_concurrent_parallel_dashboards_wait_for_free_connections(monkeypatch):
    tracker = ConnectionTracker()
    monkeypatch.setattr(psycopg2, "connect", tracker.connect)
    pool = psycopg2.pool.ThreadedConnectionPool(0, 3, dsn="dbname=efiling")
    monkeypatch.setattr(models, "get_pool", lambda: pool)
    monkeypatch.setattr(models, "_checkout_slots", threading.BoundedSemaphore(3))
    monkeypatch.setattr(models, "dict_cursor", lambda _conn: SlowCursor())
    scope = dashboard.resolve_visibility_scope(True, None)
    failures = []

    def load_dashboard():
        try:
            dashboard.collect_dashboard_rows(scope, NOW, parallel=True, max_workers=3)
        except models.QueryExecutionError as e:
            failures.append(e)

    threads = [threading.Thread(target=load_dashboard) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert failures == []
    assert 0 < tracker.peak <= 3
    assert tracker.open == 0


def test_get_db_times_out_when_every_connection_is_checked_out(monkeypatch):
    pool, _ = bind_db(monkeypatch)
    slots = threading.BoundedSemaphore(1)
    monkeypatch.setattr(models, "_checkout_slots", slots)
    monkeypatch.setattr(models.config, "DB_POOL_WAIT_SECONDS", 0.01)

    held = models.get_db()
    with pytest.raises(models.QueryExecutionError) as exc:
        models.get_db()
    assert exc.value.statement == "connect"
    assert "timed out" in exc.value.details

    models.release_db(held)
    assert models.get_db() is pool.conn
    assert pool.checked_out == 2


def test_failed_checkout_gives_its_slot_back(monkeypatch):
    bind_db(monkeypatch, getconn_error=psycopg2.pool.PoolError("connection pool exhausted"))
    monkeypatch.setattr(models, "_checkout_slots", threading.BoundedSemaphore(1))
    monkeypatch.setattr(models.config, "DB_POOL_WAIT_SECONDS", 0.01)

    for _ in range(2):
        with pytest.raises(models.QueryExecutionError) as exc:
            models.get_db()
        assert "exhausted" in exc.value.details
