"""Multi-day device usage sync."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from welltime_shared import UsageAccessStatus

from .aggregator import UsageAggregator
from .store import PolicyStore
from .usage_source import UsageSource

logger = logging.getLogger(__name__)

MAX_ICONS_TO_SYNC = 20

# (child_id, package_name) -> public icon URL, or None if there is no icon.
IconFetcher = Callable[[str, str], str | None]


@dataclass
class SyncSummary:
    """Outcome of one sync run.

    ``apps_synced``, ``usage_rows`` and ``failed_days`` describe the critical
    path. Icon counts are best-effort enrichment and never fail a sync.
    """

    access_status: UsageAccessStatus
    apps_synced: int = 0
    usage_rows: int = 0
    days_synced: list[date] = field(default_factory=list)
    failed_days: list[date] = field(default_factory=list)
    cancelled: bool = False
    icons_synced: int = 0
    icon_errors: int = 0

    @property
    def ok(self) -> bool:
        return self.access_status == UsageAccessStatus.GRANTED and not self.failed_days


def day_window_ms(day: date, tz) -> tuple[int, int]:
    """Epoch milliseconds for local midnight of ``day`` and of the next day."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)


class DeviceUsageSync:
    """Pulls samples from the device source and feeds the aggregator."""

    def __init__(
        self,
        aggregator: UsageAggregator,
        source: UsageSource,
        store: PolicyStore,
        icon_fetcher: IconFetcher | None = None,
    ):
        self._aggregator = aggregator
        self._source = source
        self._store = store
        self._icon_fetcher = icon_fetcher

    def sync_days(
        self,
        child_id: str,
        days: int,
        now: datetime,
        cancel: threading.Event | None = None,
    ) -> SyncSummary:
        """Sync today and the ``days - 1`` days before it.

        Each day is ingested independently; a failed day is recorded and the
        others continue. Cancellation is honoured between days and leaves
        already-written days in place.
        """
        status = self._source.access_status()
        if status != UsageAccessStatus.GRANTED:
            logger.info("Usage access is %s, skipping sync", status)
            return SyncSummary(access_status=status)

        summary = SyncSummary(access_status=status)
        observed: dict[str, int] = {}

        for offset in range(max(days, 0)):
            if cancel is not None and cancel.is_set():
                logger.info("Sync cancelled after %d days", len(summary.days_synced))
                summary.cancelled = True
                break

            day = now.date() - timedelta(days=offset)
            start_ms, end_ms = day_window_ms(day, now.tzinfo)
            try:
                samples = self._source.fetch_usage_samples(start_ms, end_ms)
                result = self._aggregator.ingest(child_id, day, samples, now=now)
            except Exception:
                logger.exception("Usage sync failed for %s", day)
                summary.failed_days.append(day)
                continue

            summary.usage_rows += result.rows_written
            summary.days_synced.append(day)
            for row in self._store.list_daily_usage(child_id, day):
                observed[row.package_name] = observed.get(row.package_name, 0) + row.total_seconds

        catalog = self._source.fetch_installed_app_catalog()
        summary.apps_synced = self._aggregator.reconcile_apps(
            child_id, catalog or [], observed, catalog_known=bool(catalog)
        )

        if self._icon_fetcher is not None:
            self._sync_icons(child_id, observed, summary, self._icon_fetcher)

        logger.info(
            "Synced %d usage rows over %d days, %d apps (failed days: %d)",
            summary.usage_rows,
            len(summary.days_synced),
            summary.apps_synced,
            len(summary.failed_days),
        )
        return summary

    def _sync_icons(
        self, child_id: str, observed: dict[str, int], summary: SyncSummary, fetch_icon: IconFetcher
    ) -> None:
        """Fetch icons for the most used apps that have none yet."""
        apps = [
            app
            for app in self._store.list_child_apps(child_id)
            if app.icon_url is None and observed.get(app.package_name, 0) > 0
        ]
        apps.sort(key=lambda app: observed[app.package_name], reverse=True)

        for app in apps[:MAX_ICONS_TO_SYNC]:
            try:
                url = fetch_icon(child_id, app.package_name)
                if url:
                    self._store.set_app_icon(child_id, app.package_name, url)
                    summary.icons_synced += 1
            except Exception:
                logger.warning("Failed to sync icon for %s", app.package_name, exc_info=True)
                summary.icon_errors += 1

