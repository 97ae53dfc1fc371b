"""
Simple PostgreSQL database functions for the payment reconciliation service
Direct database connections with raw SQL queries for transparency and performance
"""

import os
import asyncio
import logging
import threading
import time
import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor
from typing import Optional, Dict, List, Any

logger = logging.getLogger(__name__)

_connection_pool = None
_pool_lock = threading.Lock()
_database_url: Optional[str] = None

# Connection-level failures that warrant a retry for reads
RETRYABLE_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def configure_database(database_url: Optional[str]) -> None:
    """Set the DSN used by the connection pool (falls back to DATABASE_URL)"""
    global _database_url
    _database_url = database_url


def _get_database_url() -> str:
    database_url = _database_url or os.getenv('DATABASE_URL')
    if not database_url:
        raise ValueError("DATABASE_URL environment variable not found")
    return database_url


def get_connection_pool():
    """Get or create database connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                try:
                    _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                        minconn=2,
                        maxconn=20,
                        dsn=_get_database_url(),
                        cursor_factory=RealDictCursor,
                        connect_timeout=5,
                        keepalives_idle=600,
                        keepalives_interval=30,
                        keepalives_count=3,
                        sslmode='prefer'
                    )
                    logger.info("✅ Connection pool created (2-20 connections)")
                except Exception as e:
                    logger.error(f"Failed to create connection pool: {e}")
                    raise
    return _connection_pool


def close_connection_pool() -> None:
    """Close every pooled connection"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 Connection pool closed")


def get_connection():
    """Get a pooled database connection in autocommit mode"""
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn


def return_connection(conn, is_broken=False):
    """Return connection to pool"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except Exception as e:
        logger.warning(f"⚠️ Could not return connection to pool: {e}")
        conn.close()


async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a SELECT query and return results using connection pool with retry"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    results = cursor.fetchall()
                    return [dict(row) for row in results] if results else []
            except RETRYABLE_ERRORS as e:
                if conn:
                    return_connection(conn, is_broken=True)
                    conn = None
                if attempt < max_retries - 1:
                    logger.warning(f"🔄 Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + (attempt * 0.5))
                    continue
                logger.error(f"💥 All database connection attempts failed after {max_retries} retries: {e}")
                raise
            finally:
                if conn:
                    return_connection(conn)
        return []

    return await asyncio.to_thread(_execute)


async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE query and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except RETRYABLE_ERRORS as e:
            broken = True
            logger.error(f"💥 Database update connection failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def execute_returning(query: str, params: Optional[tuple] = None) -> Optional[Dict]:
    """Execute an INSERT/UPDATE ... RETURNING statement and return the first row"""

    def _execute() -> Optional[Dict]:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
                return dict(row) if row else None
        except RETRYABLE_ERRORS as e:
            broken = True
            logger.error(f"💥 Database write connection failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def init_database():
    """Initialize database tables if they don't exist"""
    def _init():
        conn = get_connection()
        try:
            with conn.cursor() as cursor:
                # Payment orders (version column drives compare-and-swap)
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS payment_orders (
                        id TEXT PRIMARY KEY,
                        server_id VARCHAR(255) NOT NULL,
                        user_id VARCHAR(255) NOT NULL,
                        product_selection JSONB NOT NULL,
                        order_number VARCHAR(32) UNIQUE NOT NULL,
                        payment_address VARCHAR(255) NOT NULL,
                        currency VARCHAR(16) NOT NULL,
                        network VARCHAR(64) NOT NULL,
                        expected_amount NUMERIC(36,18) NOT NULL,
                        received_amount NUMERIC(36,18) NOT NULL DEFAULT 0,
                        seen_transaction_hashes TEXT[] NOT NULL DEFAULT '{}',
                        status VARCHAR(20) NOT NULL DEFAULT 'pending',
                        transaction_hash VARCHAR(255),
                        subscription_id VARCHAR(255),
                        key_handle TEXT,
                        fiat_amount NUMERIC(18,2),
                        fiat_currency VARCHAR(8),
                        exchange_rate NUMERIC(36,18),
                        failure_reason TEXT,
                        version INTEGER NOT NULL DEFAULT 0,
                        created_at TIMESTAMPTZ NOT NULL,
                        expires_at TIMESTAMPTZ NOT NULL,
                        confirmed_at TIMESTAMPTZ,
                        updated_at TIMESTAMPTZ
                    )
                """)

                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_payment_orders_address_network
                    ON payment_orders (payment_address, network)
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_payment_orders_open_expiry
                    ON payment_orders (expires_at) WHERE status IN ('pending', 'underpaid')
                """)

                cursor.execute("CREATE SEQUENCE IF NOT EXISTS payment_order_number_seq")

                # Provider notification subscriptions
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS payment_subscriptions (
                        provider_subscription_id VARCHAR(255) PRIMARY KEY,
                        address VARCHAR(255) NOT NULL,
                        network VARCHAR(64) NOT NULL,
                        callback_url TEXT NOT NULL,
                        correlation_token VARCHAR(255) NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL,
                        released_at TIMESTAMPTZ,
                        UNIQUE (address, network, callback_url)
                    )
                """)

                # Append-only webhook audit log
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS webhook_log (
                        id BIGSERIAL PRIMARY KEY,
                        order_id TEXT,
                        raw_payload TEXT NOT NULL,
                        received_at TIMESTAMPTZ NOT NULL,
                        outcome VARCHAR(20) NOT NULL,
                        detail TEXT NOT NULL DEFAULT ''
                    )
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_webhook_log_order
                    ON webhook_log (order_id, received_at)
                """)

            logger.info("✅ Database tables initialized")
        finally:
            return_connection(conn)

    await asyncio.to_thread(_init)


async def check_database_health() -> bool:
    """Lightweight liveness probe"""
    try:
        rows = await execute_query("SELECT 1 AS ok")
        return bool(rows) and rows[0].get('ok') == 1
    except Exception as e:
        logger.warning(f"⚠️ Database health check failed: {e}")
        return False
