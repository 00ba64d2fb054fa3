"""
Batch reconciliation — the self-healing catch-up path.

A catch-up pass re-reads every eligible source user whose ``updated_at``
falls inside a trailing lookback window and replays it through the
upsert pipeline, newest first.  The window is ``interval * multiplier``
minutes, so consecutive passes overlap and anything the change feed
missed (reconnect gap, dropped notification, downtime) is picked up
within one extra cycle.  Re-upserting unchanged users is harmless.

A full pass has no time filter and walks all eligible users by id; it
is used once at startup and on demand.

Per-record failures never abort a pass.  A failing page or count query
does, and is raised as :class:`usersync.errors.SyncPassError`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from usersync.errors import SyncPassError
from usersync.pipeline import UserPipeline
from usersync.progress import PassProgress
from usersync.transform import is_eligible

logger = logging.getLogger("usersync.reconciler")


def lookback_since(
    interval_minutes: float,
    lookback_multiplier: float,
    now: Optional[datetime] = None,
) -> datetime:
    """Lower bound for a catch-up pass: ``now - interval * multiplier``."""
    now = now or datetime.now(timezone.utc)
    window = max(0.0, float(interval_minutes)) * max(1.0, float(lookback_multiplier))
    return now - timedelta(minutes=window)


@dataclass(slots=True)
class BatchResult:
    """Outcome of one completed pass."""

    kind: str
    synced: int = 0
    failed: int = 0
    pages: int = 0
    duration: float = 0.0
    since: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return self.synced + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "synced": self.synced,
            "failed": self.failed,
            "pages": self.pages,
            "duration_seconds": round(self.duration, 3),
            "since": self.since.isoformat() if self.since else None,
        }


class BatchReconciler:
    """Paginated replay of source users through the upsert pipeline.

    Args:
        pipeline: Shared transform + upsert path.
        page_size: Page size for catch-up passes.
        full_page_size: Page size for full passes.
    """

    def __init__(
        self,
        pipeline: UserPipeline,
        page_size: int = 500,
        full_page_size: int = 1000,
    ) -> None:
        self.pipeline = pipeline
        self.page_size = max(1, int(page_size))
        self.full_page_size = max(1, int(full_page_size))

    @property
    def gateway(self):
        return self.pipeline.gateway

    async def run_catch_up(self, since: datetime) -> BatchResult:
        """Replay eligible users updated after ``since``, newest first."""
        logger.info("Running catch-up sync (since %s)", since.isoformat())
        progress = PassProgress("catch-up")

        async def fetch(offset: int) -> List[Any]:
            return await self.gateway.fetch_changed_since(since, self.page_size, offset)

        result = await self._run_pages(
            "catch-up", fetch, self.page_size, progress, since=since
        )
        result.since = since
        return result

    async def run_full(self) -> BatchResult:
        """Replay every eligible user, ordered by id."""
        start = time.monotonic()
        try:
            total = await self.gateway.count_eligible()
        except Exception as exc:
            raise SyncPassError(f"count query failed: {exc}") from exc
        logger.info("Found %d active users to sync", total)
        if total == 0:
            return BatchResult(kind="full", duration=time.monotonic() - start)

        progress = PassProgress("full", estimated_total=total)

        async def fetch(offset: int) -> List[Any]:
            return await self.gateway.fetch_all_page(self.full_page_size, offset)

        return await self._run_pages("full", fetch, self.full_page_size, progress)

    async def _run_pages(
        self,
        kind: str,
        fetch: Callable[[int], Awaitable[List[Any]]],
        page_size: int,
        progress: PassProgress,
        since: Optional[datetime] = None,
    ) -> BatchResult:
        start = time.monotonic()
        offset = 0
        while True:
            try:
                rows = await fetch(offset)
            except Exception as exc:
                raise SyncPassError(
                    f"{kind} page query failed at offset {offset}: {exc}",
                    offset=offset,
                    synced=progress.synced,
                    failed=progress.failed,
                    since=since.isoformat() if since else None,
                ) from exc

            if not rows:
                if offset == 0:
                    logger.info("No users to sync")
                break

            synced, failed = await self._sync_page(rows, offset, kind)
            progress.update(synced, failed)
            progress.log_page()

            if len(rows) < page_size:
                break
            offset += page_size

        progress.log_complete()
        return BatchResult(
            kind=kind,
            synced=progress.synced,
            failed=progress.failed,
            pages=progress.pages,
            duration=time.monotonic() - start,
        )

    async def _sync_page(self, rows: List[Any], offset: int, kind: str) -> tuple[int, int]:
        synced = 0
        failed = 0
        for row in rows:
            if not is_eligible(row):
                continue
            ok = await self.pipeline.upsert(
                row, context={"pass": kind, "offset": offset}
            )
            if ok:
                synced += 1
            else:
                failed += 1
        return synced, failed
