"""
The upsert/delete path shared by the change feed and the reconciler.

Each call handles exactly one user and never raises for per-record
failures: the error is recorded in ``sync_errors``, counted, and the
caller moves on to the next record.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from shared.errorlog import SyncErrorLogger
from usersync.errors import ErrorType, retry_count_of
from usersync.gateway import UserGateway
from usersync.state import EngineState
from usersync.transform import is_eligible, transform_user

logger = logging.getLogger("usersync.pipeline")


def _triage_context(record: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "name": f"{record.get('first_name') or ''} {record.get('last_name') or ''}".strip(),
        "phone": record.get("phone"),
        "email": record.get("email"),
    }


class UserPipeline:
    """Transform + upsert (or delete) one user, recording any failure."""

    def __init__(
        self,
        gateway: UserGateway,
        error_log: SyncErrorLogger,
        state: EngineState,
    ) -> None:
        self.gateway = gateway
        self.error_log = error_log
        self.state = state

    async def upsert(
        self,
        record: Mapping[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Sync one source record.

        Ineligible records (not active, or without id) are skipped and
        reported as not synced without touching the chat store.

        Returns:
            ``True`` if the chat row was written.
        """
        if not is_eligible(record):
            logger.debug("Skipping ineligible user %s", record.get("id"))
            return False

        user_id = record.get("id")
        try:
            user = transform_user(record)
            await self.gateway.upsert_user(user)
        except Exception as exc:
            self.state.record_errors()
            logger.warning("Error syncing user %s: %s", user_id, exc)
            await self.error_log.record_exception(
                ErrorType.SYNC_USER_FAILED,
                exc,
                user_id=str(user_id) if user_id is not None else None,
                context={**_triage_context(record), **(context or {})},
                retry_count=retry_count_of(exc),
            )
            return False

        self.state.record_synced()
        return True

    async def delete(
        self,
        user_id: Any,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Remove the chat row for ``user_id``.

        A missing row is already-consistent state and counts as success.

        Returns:
            ``False`` only when the delete failed.
        """
        try:
            await self.gateway.delete_user(str(user_id))
        except Exception as exc:
            self.state.record_errors()
            logger.warning("Error deleting user %s: %s", user_id, exc)
            await self.error_log.record_exception(
                ErrorType.DELETE_USER_FAILED,
                exc,
                user_id=str(user_id),
                context=context,
                retry_count=retry_count_of(exc),
            )
            return False
        return True
