"""
User sync entry point — copies active users from the source database into
the chat database, in real time and on a schedule.

Runs as a long-lived systemd service (``user-sync setup``) or as one-shot
maintenance commands.

Key behaviours:
    - Loads configuration from ``/etc/user-sync/settings.toml``.
    - Database passwords come from the system keychain, never the file.
    - Handles SIGTERM / SIGINT for graceful shutdown.
    - Any exception escaping the engine boundaries is recorded as
      ``UNCAUGHT_EXCEPTION`` and the process exits non-zero after a
      graceful shutdown.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import asyncpg
import toml

from shared.db import (
    get_connection_pool,
    health_check,
    init_error_table,
    open_listen_connection,
)
from shared.errorlog import SyncErrorLogger
from shared.retry import RetryPolicy
from shared.secrets import get_optional_secret
from usersync.coordinator import SyncCoordinator
from usersync.errors import ErrorType
from usersync.gateway import UserGateway
from usersync.listener import ChangeFeedListener
from usersync.metrics import build_registry, start_metrics_server
from usersync.pipeline import UserPipeline
from usersync.reconciler import BatchReconciler
from usersync.state import EngineState, ListenerStatus

logger = logging.getLogger("usersync.main")

# Default path, overridable via USER_SYNC_CONFIG or --config
_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("USER_SYNC_CONFIG", "/etc/user-sync/settings.toml")
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("source_database", "database"),
        ("chat_database", "database"),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


def _number(
    section: Dict[str, Any],
    name: str,
    key: str,
    default: Any,
    cast: Callable[[Any], Any],
    minimum: Optional[float] = None,
) -> Any:
    """Read ``section[key]`` as ``cast``, falling back to ``default`` when invalid."""
    raw = section.get(key, default)
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s.%s=%r; using %s", name, key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s.%s=%r below minimum %s; clamping", name, key, raw, minimum)
        value = cast(minimum)
    return value


@dataclass(frozen=True)
class SyncSettings:
    """Validated engine settings (everything except the database sections)."""

    interval_minutes: float = 5.0
    lookback_multiplier: float = 3.0
    page_size: int = 500
    full_page_size: int = 1000
    shutdown_timeout: float = 30.0
    overrun_warning_ratio: float = 0.8
    verify_tolerance: int = 5
    error_log_path: Optional[Path] = Path("/var/log/user-sync/sync-errors.log")
    source_table: str = "users"
    chat_table: str = "users"
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    channel: str = "user_changes"
    max_reconnect_attempts: int = 10
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    queue_size: int = 1000
    max_consecutive_failures: int = 3
    max_sync_age_minutes: float = 15.0
    metrics_port: int = 0
    metrics_host: str = "0.0.0.0"


def sync_settings(config: Dict[str, Any]) -> SyncSettings:
    """Coerce the ``[sync]``, ``[retry]``, ``[realtime]``, ``[health]``
    and ``[metrics]`` sections into :class:`SyncSettings`."""
    sync = config.get("sync", {})
    realtime = config.get("realtime", {})
    health = config.get("health", {})
    metrics = config.get("metrics", {})

    interval = _number(sync, "sync", "interval_minutes", 5.0, float, minimum=0.1)
    raw_log_path = sync.get("error_log_path", "/var/log/user-sync/sync-errors.log")

    return SyncSettings(
        interval_minutes=interval,
        lookback_multiplier=_number(sync, "sync", "lookback_multiplier", 3.0, float, minimum=1),
        page_size=_number(sync, "sync", "page_size", 500, int, minimum=1),
        full_page_size=_number(sync, "sync", "full_page_size", 1000, int, minimum=1),
        shutdown_timeout=_number(
            sync, "sync", "shutdown_timeout_seconds", 30.0, float, minimum=0
        ),
        overrun_warning_ratio=_number(
            sync, "sync", "overrun_warning_ratio", 0.8, float, minimum=0
        ),
        verify_tolerance=_number(sync, "sync", "verify_tolerance", 5, int, minimum=0),
        error_log_path=Path(raw_log_path) if raw_log_path else None,
        source_table=str(sync.get("source_table", "users")),
        chat_table=str(sync.get("chat_table", "users")),
        retry=RetryPolicy.from_config(config.get("retry", {})),
        channel=str(realtime.get("channel", "user_changes")),
        max_reconnect_attempts=_number(
            realtime, "realtime", "max_reconnect_attempts", 10, int, minimum=0
        ),
        reconnect_initial_delay=_number(
            realtime, "realtime", "reconnect_initial_delay_seconds", 1.0, float, minimum=0
        ),
        reconnect_max_delay=_number(
            realtime, "realtime", "reconnect_max_delay_seconds", 60.0, float, minimum=0
        ),
        queue_size=_number(realtime, "realtime", "queue_size", 1000, int, minimum=1),
        max_consecutive_failures=_number(
            health, "health", "max_consecutive_failures", 3, int, minimum=1
        ),
        max_sync_age_minutes=_number(
            health, "health", "max_sync_age_minutes", interval * 3, float, minimum=0
        ),
        metrics_port=_number(metrics, "metrics", "port", 0, int, minimum=0),
        metrics_host=str(metrics.get("host", "0.0.0.0")),
    )


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


@dataclass
class Engine:
    """Every long-lived component of one process."""

    settings: SyncSettings
    state: EngineState
    error_log: SyncErrorLogger
    gateway: UserGateway
    pipeline: UserPipeline
    reconciler: BatchReconciler
    coordinator: SyncCoordinator
    listener: Optional[ChangeFeedListener] = None
    source_pool: Optional[asyncpg.Pool] = None
    chat_pool: Optional[asyncpg.Pool] = None


async def build_engine(
    config: Dict[str, Any],
    settings: SyncSettings,
    with_listener: bool = False,
) -> Engine:
    """Open both pools and assemble the engine.

    Raises:
        Exception: Whatever pool creation raised; a source-pool failure is
            also recorded as ``POOL_ERROR``.
    """
    chat_config = dict(config["chat_database"])
    source_config = dict(config["source_database"])

    chat_pool = await get_connection_pool(
        chat_config, get_optional_secret("chat_db_password")
    )
    await init_error_table(chat_pool)
    error_log = SyncErrorLogger(chat_pool, log_path=settings.error_log_path)

    source_password = get_optional_secret("source_db_password")
    try:
        source_pool = await get_connection_pool(source_config, source_password)
    except Exception as exc:
        logger.error("Could not create source database pool: %s", exc)
        await error_log.record_exception(
            ErrorType.POOL_ERROR, exc, context={"store": "source"}
        )
        await error_log.close()
        await chat_pool.close()
        raise

    state = EngineState()
    gateway = UserGateway(
        source_pool,
        chat_pool,
        policy=settings.retry,
        source_table=settings.source_table,
        chat_table=settings.chat_table,
    )
    pipeline = UserPipeline(gateway, error_log, state)
    reconciler = BatchReconciler(
        pipeline,
        page_size=settings.page_size,
        full_page_size=settings.full_page_size,
    )

    listener = None
    if with_listener:
        listener = ChangeFeedListener(
            lambda: open_listen_connection(source_config, source_password),
            pipeline,
            state,
            error_log,
            channel=settings.channel,
            source_table=settings.source_table,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            initial_delay=settings.reconnect_initial_delay,
            multiplier=settings.retry.multiplier,
            max_delay=settings.reconnect_max_delay,
            queue_size=settings.queue_size,
        )

    coordinator = SyncCoordinator(
        gateway,
        reconciler,
        state,
        error_log,
        listener=listener,
        interval_minutes=settings.interval_minutes,
        lookback_multiplier=settings.lookback_multiplier,
        shutdown_timeout=settings.shutdown_timeout,
        overrun_warning_ratio=settings.overrun_warning_ratio,
        verify_tolerance=settings.verify_tolerance,
        max_consecutive_failures=settings.max_consecutive_failures,
        max_sync_age_minutes=settings.max_sync_age_minutes,
    )
    return Engine(
        settings=settings,
        state=state,
        error_log=error_log,
        gateway=gateway,
        pipeline=pipeline,
        reconciler=reconciler,
        coordinator=coordinator,
        listener=listener,
        source_pool=source_pool,
        chat_pool=chat_pool,
    )


def _start_metrics(engine: Engine) -> None:
    if engine.settings.metrics_port <= 0:
        return
    registry = build_registry(engine.state, engine.coordinator.health)
    try:
        start_metrics_server(
            registry, engine.settings.metrics_port, engine.settings.metrics_host
        )
    except OSError:
        logger.exception(
            "Could not start metrics server on port %d", engine.settings.metrics_port
        )


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_setup(engine: Engine) -> int:
    """Full lifecycle until a signal arrives."""
    _start_metrics(engine)
    run_task = asyncio.create_task(
        engine.coordinator.run(_shutdown_event.is_set), name="user-sync-lifecycle"
    )
    while not run_task.done() and not _shutdown_event.is_set():
        await asyncio.wait({run_task}, timeout=0.5)

    if run_task.done():
        # Returns normally only when stopped; anything else is fatal.
        run_task.result()
        return 0

    await engine.coordinator.shutdown()
    run_task.cancel()
    try:
        await run_task
    except asyncio.CancelledError:
        pass
    return 0


async def cmd_sync_all(engine: Engine) -> int:
    result = await engine.coordinator.run_full_pass()
    if result is None:
        print("Full sync failed; see the sync_errors table")
        return 1
    print(f"Complete sync finished: {result.synced} synced, {result.failed} errors")
    return 0


async def cmd_catch_up(engine: Engine, minutes: Optional[float] = None) -> int:
    since = None
    if minutes is not None:
        since = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    result = await engine.coordinator.run_catch_up_pass(since)
    if result is None:
        print("Catch-up sync failed; see the sync_errors table")
        return 1
    print(f"Catch-up sync finished: {result.synced} synced, {result.failed} errors")
    return 0


async def cmd_verify(engine: Engine) -> int:
    result = await engine.coordinator.verify_status()
    _print_json(result)
    return 0 if result.get("consistent") else 1


async def cmd_realtime(engine: Engine) -> int:
    """Change feed only, until a signal or the listener gives up."""
    listener = engine.listener
    if listener is None:
        raise RuntimeError("realtime command requires a change feed listener")
    _start_metrics(engine)
    listener.start()
    closed = asyncio.ensure_future(listener.wait_closed())
    while not closed.done() and not _shutdown_event.is_set():
        await asyncio.wait({closed}, timeout=0.5)

    if not closed.done():
        closed.cancel()
        return 0
    # The connection loop only ends on its own by giving up or crashing.
    closed.result()
    if listener.status == ListenerStatus.GIVEN_UP:
        logger.error("Real-time sync gave up; exiting")
        engine.coordinator.report_health()
        return 1
    return 0


async def cmd_status(engine: Engine) -> int:
    """Store reachability, trigger presence, count comparison and engine state."""
    source_ok = await health_check(engine.source_pool)
    chat_ok = await health_check(engine.chat_pool)
    trigger: Optional[bool] = None
    if source_ok:
        try:
            trigger = await engine.gateway.trigger_installed()
        except Exception:
            logger.warning("Could not check change trigger", exc_info=True)
    verify = await engine.coordinator.verify_status()
    _print_json(
        {
            "source_database": "reachable" if source_ok else "unreachable",
            "chat_database": "reachable" if chat_ok else "unreachable",
            "trigger_installed": trigger,
            "verify": verify,
            "engine": engine.coordinator.status(),
        }
    )
    return 0 if source_ok and chat_ok and "error" not in verify else 1


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler — sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(args: argparse.Namespace) -> int:
    """Top-level async entry point: build the engine and dispatch ``args.command``."""
    config = load_config(args.config)
    settings = sync_settings(config)
    try:
        engine = await build_engine(
            config, settings, with_listener=args.command in ("setup", "realtime")
        )
    except Exception:
        logger.critical("Could not connect to the databases", exc_info=True)
        return 1

    try:
        if args.command == "setup":
            return await cmd_setup(engine)
        if args.command == "sync-all":
            return await cmd_sync_all(engine)
        if args.command == "catch-up":
            return await cmd_catch_up(engine, args.minutes)
        if args.command == "verify":
            return await cmd_verify(engine)
        if args.command == "realtime":
            return await cmd_realtime(engine)
        if args.command == "status":
            return await cmd_status(engine)
        raise ValueError(f"Unknown command: {args.command}")
    except Exception as exc:
        logger.critical("Fatal error; shutting down", exc_info=True)
        await engine.error_log.record_exception(
            ErrorType.UNCAUGHT_EXCEPTION, exc, context={"command": args.command}
        )
        return 1
    finally:
        await engine.coordinator.shutdown()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="user-sync",
        description="Keep the chat users table in sync with the source users table",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=_DEFAULT_CONFIG_PATH,
        help="Path to settings.toml",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("setup", help="Full sync, then real-time and scheduled sync")
    sub.add_parser("sync-all", help="Sync every active user once")
    catch_up = sub.add_parser("catch-up", help="Sync users changed recently")
    catch_up.add_argument(
        "--minutes",
        type=float,
        default=None,
        help="Look back this many minutes (default: interval x lookback multiplier)",
    )
    sub.add_parser("verify", help="Compare user counts between the two databases")
    sub.add_parser("realtime", help="Run only the real-time change feed")
    sub.add_parser("status", help="Check database reachability and sync status")
    return parser


def run(argv: Optional[list[str]] = None) -> None:
    """Synchronous entry point (console script, ``__main__`` or systemd)."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    if not args.config.exists():
        print(f"Config not found: {args.config}", file=sys.stderr)
        raise SystemExit(1)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    raise SystemExit(asyncio.run(main(args)))


if __name__ == "__main__":
    run()
