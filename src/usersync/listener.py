"""
Real-time change feed over PostgreSQL LISTEN/NOTIFY.

A row-level trigger on the source ``users`` table publishes every
INSERT/UPDATE/DELETE on a notification channel.  The listener holds one
dedicated connection (outside the pool) subscribed to that channel and
feeds each payload through an internal queue to a single consumer task,
so events from the channel are applied in the order they arrived.

State machine::

    DISCONNECTED -> CONNECTING -> LISTENING
                        ^             |  (connection lost / error)
                        |             v
                        +------ RECONNECTING --(attempts exhausted)--> GIVEN_UP

A decode or per-record failure is recorded and the listener keeps
running.  After ``max_reconnect_attempts`` consecutive failures the
listener gives up until the process restarts; the scheduled reconciler
keeps the chat table converging in the meantime.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import asyncpg

from shared.errorlog import SyncErrorLogger
from shared.retry import backoff_delay
from usersync.errors import ErrorType, NotificationDecodeError
from usersync.gateway import validate_identifier
from usersync.pipeline import UserPipeline
from usersync.state import EngineState, ListenerStatus
from usersync.transform import ACTIVE_STATUS

logger = logging.getLogger("usersync.listener")

OPERATIONS = frozenset({"INSERT", "UPDATE", "DELETE"})

_TRIGGER_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION notify_user_changes()
RETURNS TRIGGER AS $$
BEGIN
  IF TG_OP = 'DELETE' THEN
    PERFORM pg_notify('{channel}', json_build_object(
      'operation', TG_OP,
      'id', OLD.id
    )::text);
    RETURN OLD;
  ELSE
    PERFORM pg_notify('{channel}', json_build_object(
      'operation', TG_OP,
      'data', row_to_json(NEW)
    )::text);
    RETURN NEW;
  END IF;
END;
$$ LANGUAGE plpgsql;
"""

_TRIGGER_SQL = """
DROP TRIGGER IF EXISTS user_changes_trigger ON {table};
CREATE TRIGGER user_changes_trigger
AFTER INSERT OR UPDATE OR DELETE ON {table}
FOR EACH ROW EXECUTE FUNCTION notify_user_changes();
"""


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A decoded change notification."""

    operation: str
    user_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


def decode_notification(payload: str) -> ChangeEvent:
    """Decode a trigger payload into a :class:`ChangeEvent`.

    Raises:
        NotificationDecodeError: For malformed JSON, unknown operations,
            or a payload missing its ``id`` / ``data`` member.
    """
    try:
        message = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise NotificationDecodeError(f"invalid JSON payload: {exc}", payload) from exc

    if not isinstance(message, dict):
        raise NotificationDecodeError("payload is not a JSON object", payload)

    operation = str(message.get("operation") or "").upper()
    if operation not in OPERATIONS:
        raise NotificationDecodeError(
            f"unknown operation {message.get('operation')!r}", payload
        )

    if operation == "DELETE":
        user_id = message.get("id")
        if user_id in (None, ""):
            raise NotificationDecodeError("DELETE payload has no id", payload)
        return ChangeEvent(operation=operation, user_id=str(user_id))

    data = message.get("data")
    if not isinstance(data, dict):
        raise NotificationDecodeError(f"{operation} payload has no data", payload)
    user_id = data.get("id")
    return ChangeEvent(
        operation=operation,
        user_id=str(user_id) if user_id is not None else None,
        data=data,
    )


class ChangeFeedListener:
    """Owns the LISTEN connection, its reconnection, and event dispatch.

    Args:
        connect: Coroutine factory opening a fresh source connection.
        pipeline: Shared upsert/delete path.
        state: Engine state (listener status, reconnect counter).
        error_log: Sync error sink.
        channel: Notification channel name.
        source_table: Table the trigger is attached to.
        max_reconnect_attempts: Consecutive failures before giving up.
        initial_delay: First reconnect delay in seconds.
        multiplier: Backoff growth factor.
        max_delay: Reconnect delay cap in seconds.
        queue_size: Max undelivered notifications held in memory.
        sleep: Backoff sleep (injectable for tests).
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[asyncpg.Connection]],
        pipeline: UserPipeline,
        state: EngineState,
        error_log: SyncErrorLogger,
        channel: str = "user_changes",
        source_table: str = "users",
        max_reconnect_attempts: int = 10,
        initial_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 60.0,
        queue_size: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._connect = connect
        self.pipeline = pipeline
        self.state = state
        self.error_log = error_log
        self.channel = validate_identifier(channel)
        self.source_table = validate_identifier(source_table)
        self.max_reconnect_attempts = max(0, int(max_reconnect_attempts))
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self._sleep = sleep
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max(1, queue_size))
        self._conn: asyncpg.Connection | None = None
        self._lost = asyncio.Event()
        self._run_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._ever_connected = False
        self._start_failure_recorded = False
        self._dropped = 0

    @property
    def status(self) -> ListenerStatus:
        return self.state.listener_status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the connection loop and the event consumer."""
        if self._run_task is not None:
            return
        self._consumer_task = asyncio.create_task(
            self._consume(), name="user-sync-change-consumer"
        )
        self._run_task = asyncio.create_task(
            self._run(), name="user-sync-change-listener"
        )

    async def wait_closed(self) -> None:
        """Block until the connection loop ends (stopped or given up)."""
        if self._run_task is not None:
            await asyncio.shield(self._run_task)

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Close the LISTEN connection and drain queued events."""
        run_task, self._run_task = self._run_task, None
        if run_task is not None and not run_task.done():
            run_task.cancel()
            try:
                await run_task
            except asyncio.CancelledError:
                pass
        await self._close_connection()

        consumer, self._consumer_task = self._consumer_task, None
        if consumer is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Change feed drain timed out with %d event(s) pending",
                    self._queue.qsize(),
                )
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

        if self.state.listener_status != ListenerStatus.GIVEN_UP:
            self.state.set_listener_status(ListenerStatus.DISCONNECTED)
        logger.info("Real-time sync stopped")

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            self.state.set_listener_status(ListenerStatus.CONNECTING)
            try:
                await self._establish()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._close_connection()
                logger.warning("Real-time sync connection failed: %s", exc)
                # Only the first startup failure is recorded; later ones
                # end in REALTIME_RECONNECT_EXHAUSTED if they persist.
                if not self._ever_connected and not self._start_failure_recorded:
                    self._start_failure_recorded = True
                    await self.error_log.record_exception(
                        ErrorType.REALTIME_SYNC_START_FAILED,
                        exc,
                        context={"channel": self.channel},
                    )
                if not await self._wait_before_reconnect():
                    return
                continue

            self._ever_connected = True
            self.state.reset_reconnect_attempts()
            self.state.set_listener_status(ListenerStatus.LISTENING)
            logger.info(
                "Real-time sync started - listening on channel %s", self.channel
            )

            # No timeout: the connection's termination callback is the wake-up.
            await self._lost.wait()

            logger.warning("Real-time sync connection lost; reconnecting")
            await self._close_connection()
            if not await self._wait_before_reconnect():
                return

    async def _establish(self) -> None:
        self._lost.clear()
        conn = await self._connect()
        self._conn = conn
        await self.ensure_trigger(conn)
        conn.add_termination_listener(self._on_terminated)
        await conn.add_listener(self.channel, self._on_notification)

    async def ensure_trigger(self, conn: asyncpg.Connection) -> None:
        """Create (or replace) the notify function and row trigger."""
        await conn.execute(_TRIGGER_FUNCTION_SQL.format(channel=self.channel))
        await conn.execute(_TRIGGER_SQL.format(table=self.source_table))
        logger.debug("Change trigger ensured on %s", self.source_table)

    async def _wait_before_reconnect(self) -> bool:
        """Back off before the next attempt.  ``False`` means give up."""
        attempt = self.state.next_reconnect_attempt()
        if attempt > self.max_reconnect_attempts:
            self.state.set_listener_status(ListenerStatus.GIVEN_UP)
            message = (
                f"Real-time sync gave up after {self.max_reconnect_attempts} "
                "reconnection attempts"
            )
            logger.error(message)
            await self.error_log.record(
                ErrorType.REALTIME_RECONNECT_EXHAUSTED,
                message,
                context={"channel": self.channel, "attempts": attempt - 1},
                retry_count=attempt - 1,
            )
            return False

        self.state.set_listener_status(ListenerStatus.RECONNECTING)
        delay = backoff_delay(attempt, self.initial_delay, self.multiplier, self.max_delay)
        logger.info(
            "Reconnecting real-time sync in %.1fs (attempt %d/%d)",
            delay,
            attempt,
            self.max_reconnect_attempts,
        )
        await self._sleep(delay)
        return True

    async def _close_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.remove_termination_listener(self._on_terminated)
        except Exception:
            logger.debug("Termination listener already removed", exc_info=True)
        try:
            if not conn.is_closed():
                await conn.close(timeout=5)
        except Exception:
            logger.warning("Error closing listener connection", exc_info=True)
            conn.terminate()

    # ------------------------------------------------------------------
    # asyncpg callbacks (run on the event loop, must not block)
    # ------------------------------------------------------------------

    def _on_notification(
        self, connection: Any, pid: int, channel: str, payload: str
    ) -> None:
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Change feed queue full; dropped notification (dropped=%d). "
                "The next catch-up pass will reconcile it.",
                self._dropped,
            )

    def _on_terminated(self, connection: Any) -> None:
        self._lost.set()

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self.handle_payload(payload)
            except Exception:
                logger.exception("Unexpected error processing change notification")
            finally:
                self._queue.task_done()

    async def handle_payload(self, payload: str) -> None:
        """Decode one notification and apply it."""
        try:
            event = decode_notification(payload)
        except NotificationDecodeError as exc:
            self.state.record_errors()
            await self.error_log.record_exception(
                ErrorType.REALTIME_NOTIFICATION_FAILED,
                exc,
                context={"channel": self.channel, "payload": payload[:2000]},
            )
            return
        await self.handle_event(event)

    async def handle_event(self, event: ChangeEvent) -> None:
        context = {"source": "realtime", "operation": event.operation}
        if event.operation == "DELETE":
            await self.pipeline.delete(event.user_id, context=context)
            return

        data = event.data or {}
        if data.get("status") != ACTIVE_STATUS:
            # Soft-deleted users are not purged here; only DELETE events
            # remove chat rows.
            logger.debug(
                "Ignoring %s for inactive user %s", event.operation, event.user_id
            )
            return
        await self.pipeline.upsert(data, context=context)
