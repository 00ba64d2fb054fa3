"""
Database helpers — connection pool management, the dedicated listener
connection, schema initialisation, and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  Two stores are involved:

- **source**: the primary application's database.  The engine only
  SELECTs from ``users`` and provisions the change-notification trigger.
- **chat**: the chat application's database.  The engine upserts and
  deletes rows in ``users`` and appends to ``sync_errors``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.db")


def _connect_kwargs(config: Dict[str, Any], password: Optional[str]) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "host": config.get("host", "localhost"),
        "port": int(config.get("port", 5432)),
        "database": config["database"],
        "user": config.get("user", "postgres"),
    }
    if password:
        kwargs["password"] = password
    return kwargs


def describe(config: Dict[str, Any]) -> str:
    """``user@host:port/database`` for log lines (never includes secrets)."""
    return "%s@%s:%s/%s" % (
        config.get("user", "postgres"),
        config.get("host", "localhost"),
        config.get("port", 5432),
        config.get("database", "?"),
    )


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(
    config: Dict[str, Any],
    password: Optional[str] = None,
) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``,
                and optionally ``min_size``, ``max_size``,
                ``command_timeout``.
        password: Password retrieved from the keychain, if any.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
        OSError: If the host is unreachable.
    """
    min_size = int(config.get("min_size", 2))
    max_size = max(min_size, int(config.get("max_size", 10)))
    pool = await asyncpg.create_pool(
        min_size=min_size,
        max_size=max_size,
        command_timeout=float(config.get("command_timeout", 60)),
        **_connect_kwargs(config, password),
    )
    logger.info(
        "Database pool created: %s (min=%d max=%d)",
        describe(config),
        min_size,
        max_size,
    )
    return pool


async def open_listen_connection(
    config: Dict[str, Any],
    password: Optional[str] = None,
) -> asyncpg.Connection:
    """Open a standalone connection for ``LISTEN``.

    Notifications are delivered per-connection, so the listener needs a
    connection held open indefinitely and never returned to a pool.
    """
    conn = await asyncpg.connect(**_connect_kwargs(config, password))
    logger.info("Listener connection opened: %s", describe(config))
    return conn


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------

_SYNC_ERRORS_DDL = (
    """
    CREATE TABLE IF NOT EXISTS sync_errors (
        id              SERIAL PRIMARY KEY,
        error_type      VARCHAR(100) NOT NULL,
        user_id         VARCHAR(255),
        error_message   TEXT NOT NULL,
        error_stack     TEXT,
        additional_data JSONB,
        created_at      TIMESTAMP NOT NULL DEFAULT NOW(),
        resolved        BOOLEAN DEFAULT FALSE,
        resolved_at     TIMESTAMP,
        retry_count     INTEGER DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_errors_error_type ON sync_errors(error_type)",
    "CREATE INDEX IF NOT EXISTS idx_sync_errors_user_id ON sync_errors(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_errors_created_at ON sync_errors(created_at DESC)",
    """
    CREATE INDEX IF NOT EXISTS idx_sync_errors_resolved
    ON sync_errors(resolved) WHERE resolved = FALSE
    """,
)


async def init_error_table(pool: asyncpg.Pool) -> None:
    """Create the ``sync_errors`` table and its indexes if missing.

    Executed once at service startup against the chat database.
    Idempotent (uses IF NOT EXISTS).
    """
    async with pool.acquire() as conn:
        for statement in _SYNC_ERRORS_DDL:
            await conn.execute(statement)
    logger.debug("sync_errors schema ensured")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
