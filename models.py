import logging
import threading
import time
from contextlib import contextmanager

import psycopg2
import psycopg2.extras
import psycopg2.pool

from config import Config

config = Config()
logger = logging.getLogger(__name__)

_pool = None
_pool_lock = threading.Lock()
# ThreadedConnectionPool raises instead of blocking once maxconn is checked out.
_checkout_slots = threading.BoundedSemaphore(config.DB_POOL_MAX)


class QueryExecutionError(Exception):
    """A data-access failure. ``details`` carries the driver message."""

    def __init__(self, statement, details=None):
        super().__init__(f"Query '{statement}' failed")
        self.statement = statement
        self.details = details


# ========================================
# CONNECTION POOL
# ========================================

def get_pool():
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                _pool = psycopg2.pool.ThreadedConnectionPool(
                    config.DB_POOL_MIN,
                    config.DB_POOL_MAX,
                    **config.get_psycopg2_kwargs()
                )
                logger.info(
                    "Database pool created (min=%s, max=%s, schema=%s)",
                    config.DB_POOL_MIN, config.DB_POOL_MAX, config.DB_SCHEMA
                )
    return _pool


def close_pool():
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.closeall()
            _pool = None
            logger.info("Database pool closed")


def get_db():
    """Check a connection out of the pool, waiting while every connection is in use."""
    if not _checkout_slots.acquire(timeout=config.DB_POOL_WAIT_SECONDS):
        logger.error("Timed out after %ss waiting for a free database connection", config.DB_POOL_WAIT_SECONDS)
        raise QueryExecutionError('connect', 'timed out waiting for a free database connection')
    try:
        return get_pool().getconn()
    except psycopg2.Error as e:
        _checkout_slots.release()
        logger.error("Could not acquire a database connection: %s", e)
        raise QueryExecutionError('connect', str(e).strip()) from e


def release_db(conn):
    """Return a connection to the pool, discarding it if it is unusable."""
    broken = False
    try:
        if not conn.closed:
            conn.rollback()
    except psycopg2.Error:
        broken = True
    try:
        get_pool().putconn(conn, close=broken or bool(conn.closed))
    finally:
        _checkout_slots.release()


@contextmanager
def db_connection():
    conn = get_db()
    try:
        yield conn
    finally:
        release_db(conn)


def dict_cursor(conn):
    return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


# ========================================
# QUERY EXECUTION
# ========================================

def run_query(conn, name, sql, params=None):
    """Execute one named read-only statement and return its rows as dicts."""
    cur = dict_cursor(conn)
    started = time.perf_counter()
    try:
        cur.execute(sql, params)
        rows = cur.fetchall()
    except psycopg2.Error as e:
        logger.error("Query '%s' failed: %s", name, str(e).strip())
        raise QueryExecutionError(name, str(e).strip()) from e
    elapsed_ms = (time.perf_counter() - started) * 1000
    if elapsed_ms > config.SLOW_QUERY_MS:
        logger.warning("Slow query '%s' took %.0f ms (%s rows)", name, elapsed_ms, len(rows))
    return rows


def fetch_all(name, sql, params=None):
    """Run a statement on its own pooled connection."""
    with db_connection() as conn:
        return run_query(conn, name, sql, params)


def fetch_one(name, sql, params=None):
    rows = fetch_all(name, sql, params)
    return rows[0] if rows else None


def check_database():
    try:
        row = fetch_one('healthcheck', "SELECT 1 AS ok")
    except QueryExecutionError:
        return False
    return bool(row and row.get('ok') == 1)


# ========================================
# USER PROFILE
# ========================================

def get_efiling_profile(user_id):
    """Active e-filing profile of an application user, or None."""
    return fetch_one('efiling_profile', """
        SELECT eu.id, eu.department_id, eu.district_id, eu.town_id, eu.division_id
        FROM efiling_users eu
        JOIN users u ON eu.user_id = u.id
        WHERE u.id = %(user_id)s AND eu.is_active = true
        LIMIT 1
    """, {'user_id': user_id})


# ========================================
# REPORTS
# ========================================

def get_department_performance(since, include_inactive=False):
    active_filter = '' if include_inactive else 'WHERE d.is_active = true'
    return fetch_all('department_performance', f"""
        WITH department_stats AS (
            SELECT
                d.id AS department_id,
                d.name AS department_name,
                d.is_active,
                COUNT(DISTINCT f.id) AS total_files,
                COUNT(DISTINCT CASE WHEN s.code = 'COMPLETED' THEN f.id END) AS completed_files,
                COUNT(DISTINCT CASE WHEN s.code IN ('PENDING_APPROVAL', 'IN_PROGRESS') THEN f.id END) AS pending_files,
                COUNT(DISTINCT CASE WHEN f.sla_breached IS TRUE THEN f.id END) AS overdue_files,
                AVG(EXTRACT(EPOCH FROM (f.updated_at - f.created_at)) / 86400) AS avg_processing_days,
                COUNT(DISTINCT eu.id) AS active_users
            FROM efiling_departments d
            LEFT JOIN efiling_files f ON d.id = f.department_id
                AND f.created_at >= %(since)s
            LEFT JOIN efiling_file_status s ON f.status_id = s.id
            LEFT JOIN efiling_users eu ON d.id = eu.department_id
                AND eu.is_active = true
            {active_filter}
            GROUP BY d.id, d.name, d.is_active
        )
        SELECT
            department_id,
            department_name,
            is_active,
            total_files,
            completed_files,
            pending_files,
            overdue_files,
            COALESCE(avg_processing_days, 0) AS avg_processing_days,
            active_users,
            CASE
                WHEN total_files > 0 THEN ROUND(completed_files::numeric * 100 / total_files)
                ELSE 0
            END AS sla_compliance
        FROM department_stats
        ORDER BY total_files DESC, sla_compliance DESC
    """, {'since': since})
