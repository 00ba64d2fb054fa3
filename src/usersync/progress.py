"""
Reconciliation pass progress with rates and ETA for journalctl output.

:class:`PassProgress` accumulates page results for one batch pass and
logs a human-readable line per page.  When the total is known up front
(full pass) the line includes a percentage and ETA.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("usersync.progress")


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


class PassProgress:
    """Tracks synced/failed counts across the pages of one pass.

    Args:
        label: Pass name for log lines (``"full"`` or ``"catch-up"``).
        estimated_total: Eligible record count, or 0 when unknown.
    """

    def __init__(self, label: str, estimated_total: int = 0) -> None:
        self.label = label
        self.estimated_total = max(0, estimated_total)
        self.pages = 0
        self.synced = 0
        self.failed = 0
        self._start = time.monotonic()

    @property
    def processed(self) -> int:
        return self.synced + self.failed

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Records processed per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.processed / elapsed

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining, or None if no estimate possible."""
        if self.estimated_total <= 0 or self.rate <= 0:
            return None
        remaining = max(0, self.estimated_total - self.processed)
        return remaining / self.rate

    @property
    def success_rate(self) -> int | None:
        """Whole-number success percentage, or None before any record."""
        if self.processed == 0:
            return None
        return round(self.synced / self.processed * 100)

    def update(self, synced: int, failed: int) -> None:
        """Accumulate one page's results."""
        self.pages += 1
        self.synced += synced
        self.failed += failed

    def log_page(self) -> None:
        tag = f"[{self.label} page {self.pages}]"
        rate_str = f"{self.rate:.1f} users/s"
        if self.estimated_total > 0:
            pct = min(100, int(self.processed / self.estimated_total * 100))
            eta = self.eta_seconds
            eta_str = f"ETA: ~{format_duration(eta)}" if eta is not None else ""
            logger.info(
                "%s %d/%d users (%d%%) | %d errors | %s | %s",
                tag,
                self.processed,
                self.estimated_total,
                pct,
                self.failed,
                rate_str,
                eta_str,
            )
        else:
            logger.info(
                "%s %d users | %d errors | %s",
                tag,
                self.processed,
                self.failed,
                rate_str,
            )

    def log_complete(self) -> None:
        rate = self.success_rate
        logger.info(
            "%s pass complete: %d synced, %d errors%s in %s",
            self.label.capitalize(),
            self.synced,
            self.failed,
            f" ({rate}% success)" if rate is not None else "",
            format_duration(self.elapsed_seconds),
        )
