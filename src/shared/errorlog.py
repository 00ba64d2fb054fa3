"""
Sync error persistence — writes one record per failed sync operation to
both a JSON Lines file and the chat database's ``sync_errors`` table.

Every failure the engine gives up on (a user that could not be upserted,
a batch pass that aborted, a listener that ran out of reconnects) is
recorded with a classification tag, the affected user id, the message,
the stack trace, and a context dict for postmortem triage.

Writes are best-effort: a failure of either sink is reported to the
standard logger only, and the record is never re-queued.
"""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.errorlog")

_DEFAULT_LOG_PATH = Path("/var/log/user-sync/sync-errors.log")
_INSERT_ERROR_SQL = (
    "INSERT INTO sync_errors "
    "(error_type, user_id, error_message, error_stack, additional_data, retry_count) "
    "VALUES ($1, $2, $3, $4, $5::jsonb, $6)"
)


@dataclass(slots=True)
class SyncErrorRecord:
    """Single error event prepared for async batch flushing."""

    error_type: str
    user_id: Optional[str]
    message: str
    stack: Optional[str]
    context_json: str
    retry_count: int
    created_at: str

    def json_line(self) -> str:
        return json.dumps(
            {
                "timestamp": self.created_at,
                "error_type": self.error_type,
                "user_id": self.user_id,
                "message": self.message,
                "stack": self.stack,
                "context": json.loads(self.context_json),
                "retry_count": self.retry_count,
            }
        ) + "\n"

    def db_params(self) -> tuple:
        return (
            self.error_type,
            self.user_id,
            self.message,
            self.stack,
            self.context_json,
            self.retry_count,
        )


class SyncErrorLogger:
    """Buffered error logger that writes to both file and database.

    Args:
        pool: ``asyncpg`` pool on the chat database (needs INSERT on
              ``sync_errors``).
        log_path: Path to the JSON Lines error log file.  ``None``
                  disables the file sink.
        queue_size: Max queued records; further records are dropped
                    (and logged) until the writer catches up.
        flush_batch_size: Number of queued records to flush per write batch.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        log_path: Optional[Path] = _DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = log_path
        self._queue: asyncio.Queue[SyncErrorRecord | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False
        self._dropped = 0

    @property
    def dropped(self) -> int:
        """Records discarded because the queue was full or the logger closed."""
        return self._dropped

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            loop = asyncio.get_running_loop()
            self._worker_task = loop.create_task(
                self._worker(),
                name="user-sync-error-writer",
            )

    async def _write_batch(self, batch: list[SyncErrorRecord]) -> None:
        if not batch:
            return

        # 1. File write (one append for the full batch)
        if self._log_path is not None:
            try:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._log_path, "a", encoding="utf-8") as handle:
                    handle.write("".join(item.json_line() for item in batch))
            except OSError:
                logger.exception("Failed to write sync error log file")

        # 2. DB insert (single round-trip via executemany)
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_ERROR_SQL,
                    [item.db_params() for item in batch],
                )
        except Exception:
            logger.exception(
                "Failed to write %d sync error record(s) to database", len(batch)
            )

    async def _worker(self) -> None:
        """Drain queue and flush records in small batches."""
        stop = False
        while True:
            record = await self._queue.get()
            if record is None:
                self._queue.task_done()
                break

            batch = [record]

            while len(batch) < self._flush_batch_size:
                try:
                    maybe_next = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break

                if maybe_next is None:
                    self._queue.task_done()
                    stop = True
                    break
                batch.append(maybe_next)

            await self._write_batch(batch)
            for _ in batch:
                self._queue.task_done()

            if stop:
                break

    async def record(
        self,
        error_type: str,
        message: str,
        *,
        user_id: Optional[str] = None,
        stack: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        retry_count: int = 0,
    ) -> None:
        """Queue one sync error for persistence.

        Args:
            error_type: Classification tag (e.g. ``"SYNC_USER_FAILED"``).
            message: Error message text.
            user_id: Affected source user id, if any.
            stack: Formatted stack trace.
            context: JSON-serialisable triage data (offset, name, email...).
            retry_count: Retries spent before giving up.
        """
        error_type = getattr(error_type, "value", error_type)
        record = SyncErrorRecord(
            error_type=str(error_type),
            user_id=str(user_id) if user_id is not None else None,
            message=message,
            stack=stack,
            context_json=json.dumps(context or {}, default=str),
            retry_count=max(0, int(retry_count)),
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.error(
            "Sync error [%s]%s: %s",
            record.error_type,
            f" user={record.user_id}" if record.user_id else "",
            message,
        )
        if self._closed:
            self._dropped += 1
            logger.debug("Dropping sync error after logger close: %s", record.error_type)
            return
        self._ensure_worker()
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Sync error queue full; dropped %s record (dropped=%d)",
                record.error_type,
                self._dropped,
            )

    async def record_exception(
        self,
        error_type: str,
        exc: BaseException,
        *,
        user_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        retry_count: int = 0,
    ) -> None:
        """Convenience wrapper deriving message and stack from ``exc``."""
        stack = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
        await self.record(
            error_type,
            str(exc) or type(exc).__name__,
            user_id=user_id,
            stack=stack,
            context=context,
            retry_count=retry_count,
        )

    async def close(self) -> None:
        """Flush queued records and stop the background writer."""
        if self._closed:
            return
        self._closed = True
        worker = self._worker_task
        if worker is not None:
            await self._queue.put(None)
            await worker
