"""
PostgreSQL access for both stores.

Uses ``asyncpg`` pools (one per store) so concurrent callers never open
more than ``max_size`` connections each.  All queries use parameterized
placeholders ($1, $2, ...) — **never** string interpolation of values.
Table names come from settings and are validated as plain identifiers
before being formatted into SQL.

Every call goes through :func:`shared.retry.retry_async`; the final
failure surfaces as :class:`shared.retry.RetryExhaustedError` and the
caller decides how to record it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

import asyncpg

from shared.retry import RetryPolicy, retry_async
from usersync.transform import ChatUser

logger = logging.getLogger("usersync.gateway")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

SOURCE_COLUMNS = """
    id, first_name, last_name, email, phone, email_verified,
    phone_verified, password, auth_provider, google_id, facebook_id,
    role, status, customer_preferences, profile_picture,
    notification_via_app, notification_via_email, notification_via_sms,
    terms_and_conditions, average_rating, total_ratings, total_hires,
    total_views, last_hired_at, is_verified, is_featured, search_boost,
    created_at, updated_at, bio
"""

ELIGIBLE_FILTER = "status = 'active' AND id IS NOT NULL"

_TRIGGER_EXISTS_SQL = (
    "SELECT EXISTS (SELECT 1 FROM pg_trigger WHERE tgname = $1 AND NOT tgisinternal)"
)


def validate_identifier(name: str) -> str:
    """Return ``name`` if it is a safe (optionally schema-qualified) identifier."""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


class UserGateway:
    """Reads eligible users from the source store, writes the chat store.

    Args:
        source_pool: ``asyncpg`` pool on the source database.
        chat_pool: ``asyncpg`` pool on the chat database.
        policy: Retry budget applied to every call.
        source_table: Source users table.
        chat_table: Chat users table.
        sleep: Backoff sleep (injectable for tests).
    """

    def __init__(
        self,
        source_pool: asyncpg.Pool,
        chat_pool: asyncpg.Pool,
        policy: Optional[RetryPolicy] = None,
        source_table: str = "users",
        chat_table: str = "users",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._source = source_pool
        self._chat = chat_pool
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self.source_table = validate_identifier(source_table)
        self.chat_table = validate_identifier(chat_table)

        self._count_eligible_sql = (
            f"SELECT COUNT(*) FROM {self.source_table} WHERE {ELIGIBLE_FILTER}"
        )
        self._changed_since_sql = (
            f"SELECT {SOURCE_COLUMNS} FROM {self.source_table} "
            f"WHERE {ELIGIBLE_FILTER} AND updated_at > $3::timestamptz "
            "ORDER BY updated_at DESC, id LIMIT $1 OFFSET $2"
        )
        self._all_page_sql = (
            f"SELECT {SOURCE_COLUMNS} FROM {self.source_table} "
            f"WHERE {ELIGIBLE_FILTER} "
            "ORDER BY id LIMIT $1 OFFSET $2"
        )
        self._recent_source_sql = (
            f"SELECT COUNT(*) FROM {self.source_table} "
            f"WHERE {ELIGIBLE_FILTER} "
            "AND updated_at > NOW() - make_interval(hours => $1)"
        )
        self._count_chat_sql = f"SELECT COUNT(*) FROM {self.chat_table}"
        self._recent_chat_sql = (
            f"SELECT COUNT(*) FROM {self.chat_table} "
            'WHERE "updatedAt" > NOW() - make_interval(hours => $1)'
        )
        self._upsert_sql = f"""
            INSERT INTO {self.chat_table} (
                id, "externalId", name, phone, email, role, "socketId",
                "isOnline", "lastSeen", avatar, "metaData", "createdAt",
                "updatedAt", "firstName", "lastName"
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
            ON CONFLICT ("externalId")
            DO UPDATE SET
                name = EXCLUDED.name,
                phone = EXCLUDED.phone,
                email = EXCLUDED.email,
                role = EXCLUDED.role,
                avatar = EXCLUDED.avatar,
                "metaData" = EXCLUDED."metaData",
                "createdAt" = EXCLUDED."createdAt",
                "updatedAt" = EXCLUDED."updatedAt",
                "firstName" = EXCLUDED."firstName",
                "lastName" = EXCLUDED."lastName"
            RETURNING id
        """
        self._delete_sql = (
            f'DELETE FROM {self.chat_table} WHERE "externalId" = $1 RETURNING id'
        )

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def _call(self, label: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_async(operation, self._policy, label=label, sleep=self._sleep)

    # ------------------------------------------------------------------
    # Source reads
    # ------------------------------------------------------------------

    async def count_eligible(self) -> int:
        """Number of active source users."""
        count = await self._call(
            "count eligible users",
            lambda: self._source.fetchval(self._count_eligible_sql),
        )
        return int(count or 0)

    async def fetch_changed_since(
        self,
        since: datetime,
        limit: int,
        offset: int,
    ) -> List[asyncpg.Record]:
        """One page of eligible users updated after ``since``, newest first."""
        return await self._call(
            f"fetch changed users (offset={offset})",
            lambda: self._source.fetch(self._changed_since_sql, limit, offset, since),
        )

    async def fetch_all_page(self, limit: int, offset: int) -> List[asyncpg.Record]:
        """One page of all eligible users ordered by id."""
        return await self._call(
            f"fetch users page (offset={offset})",
            lambda: self._source.fetch(self._all_page_sql, limit, offset),
        )

    async def count_recent_source(self, hours: int = 1) -> int:
        count = await self._call(
            "count recent source users",
            lambda: self._source.fetchval(self._recent_source_sql, hours),
        )
        return int(count or 0)

    async def trigger_installed(self, trigger_name: str = "user_changes_trigger") -> bool:
        """Whether the change-notification trigger exists on the source store."""
        exists = await self._call(
            "check change trigger",
            lambda: self._source.fetchval(_TRIGGER_EXISTS_SQL, trigger_name),
        )
        return bool(exists)

    # ------------------------------------------------------------------
    # Chat writes
    # ------------------------------------------------------------------

    def _user_params(self, user: ChatUser) -> tuple:
        """Extract ordered parameters from a transformed user."""
        return (
            user.id,
            user.external_id,
            user.name,
            user.phone,
            user.email,
            user.role,
            user.socket_id,
            user.is_online,
            user.last_seen,
            user.avatar,
            json.dumps(user.meta_data, default=str),
            user.created_at,
            user.updated_at,
            user.first_name,
            user.last_name,
        )

    async def upsert_user(self, user: ChatUser) -> Any:
        """Insert or update the chat row keyed on ``externalId``.

        Returns:
            The chat row's ``id``.
        """
        params = self._user_params(user)
        row_id = await self._call(
            f"upsert user {user.external_id}",
            lambda: self._chat.fetchval(self._upsert_sql, *params),
        )
        logger.debug("Upserted user %s (%s)", user.external_id, user.name)
        return row_id

    async def delete_user(self, external_id: str) -> bool:
        """Delete the chat row for ``external_id``.

        Returns:
            ``True`` if a row was removed, ``False`` if none existed.
        """
        row_id = await self._call(
            f"delete user {external_id}",
            lambda: self._chat.fetchval(self._delete_sql, str(external_id)),
        )
        if row_id is None:
            logger.debug("Delete for %s matched no chat row", external_id)
            return False
        logger.info("User deleted from chat: %s", external_id)
        return True

    # ------------------------------------------------------------------
    # Chat reads
    # ------------------------------------------------------------------

    async def count_destination(self) -> int:
        count = await self._call(
            "count chat users",
            lambda: self._chat.fetchval(self._count_chat_sql),
        )
        return int(count or 0)

    async def count_recent_destination(self, hours: int = 1) -> int:
        count = await self._call(
            "count recent chat users",
            lambda: self._chat.fetchval(self._recent_chat_sql, hours),
        )
        return int(count or 0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close both pools, waiting for checked-out connections."""
        for name, pool in (("source", self._source), ("chat", self._chat)):
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close %s database pool", name)
