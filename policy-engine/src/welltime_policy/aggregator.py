"""Aggregates raw per-package usage samples into daily and hourly totals.

The device source reports overlapping records for the same package within a
window, so duplicates are merged by taking the maximum, never the sum.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime

from welltime_shared import ChildApp, DailyUsage, HourlyUsage, InstalledApp, UsageSample
from welltime_shared.categories import resolve_app_category

from .errors import IngestionFailed
from .store import PolicyStore

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    packages_touched: int
    rows_written: int


def ms_to_seconds(ms: int | float) -> int:
    """Round milliseconds to the nearest whole second, halves rounding up."""
    return int((ms + 500) // 1000)


def dedupe_samples(samples: Iterable[UsageSample]) -> dict[str, int]:
    """Collapse one window's samples to the max ``total_time_ms`` per package.

    Samples with no foreground time are dropped.
    """
    totals: dict[str, int] = {}
    for sample in samples:
        if sample.total_time_ms <= 0:
            continue
        current = totals.get(sample.package_name, 0)
        totals[sample.package_name] = max(current, sample.total_time_ms)
    return totals


def select_app_rows(
    child_id: str,
    apps: Iterable[InstalledApp],
    observed_usage: Mapping[str, int],
    catalog_known: bool,
) -> list[ChildApp]:
    """Pick the installed-app rows worth persisting.

    With a known catalog, rows are restricted to it. Otherwise keep apps seen
    with usage plus apps not flagged as system apps, so preinstalled system
    packages with no usage are left out.
    """
    apps = list(apps)
    if catalog_known and apps:
        selected = apps
    else:
        selected = [
            app for app in apps if not app.is_system_app or observed_usage.get(app.package_name, 0) > 0
        ]
        listed = {app.package_name for app in apps}
        selected += [
            InstalledApp(package_name=package, app_name=package)
            for package, seconds in observed_usage.items()
            if seconds > 0 and package not in listed
        ]

    rows: dict[str, ChildApp] = {}
    for app in selected:
        rows[app.package_name] = ChildApp(
            child_id=child_id,
            package_name=app.package_name,
            app_name=app.app_name,
            category=resolve_app_category(app.category, app.package_name),
        )
    return list(rows.values())


class UsageAggregator:
    """Writes deduplicated usage totals for one child into the store."""

    def __init__(self, store: PolicyStore, device_id: str | None = None):
        self._store = store
        self._device_id = device_id

    def ingest(
        self,
        child_id: str,
        usage_date: date,
        samples: Iterable[UsageSample],
        now: datetime | None = None,
        hour: int | None = None,
    ) -> IngestResult:
        """Ingest one query window (a calendar day, or one hour of it).

        Idempotent: the same samples always produce the same stored totals.
        All rows for the window are written together or not at all.
        """
        now = now or datetime.now(UTC)
        totals: dict[str, int] = {}
        for package, ms in dedupe_samples(samples).items():
            seconds = ms_to_seconds(ms)
            # Sub-second usage rounds to nothing.
            if seconds > 0:
                totals[package] = seconds
        if not totals:
            return IngestResult(packages_touched=0, rows_written=0)

        try:
            if hour is None:
                self._store.upsert_daily_usage(
                    [
                        DailyUsage(
                            child_id=child_id,
                            package_name=package,
                            usage_date=usage_date,
                            total_seconds=seconds,
                            last_synced_at=now,
                            device_id=self._device_id,
                        )
                        for package, seconds in totals.items()
                    ]
                )
            else:
                self._store.upsert_hourly_usage(
                    [
                        HourlyUsage(
                            child_id=child_id,
                            package_name=package,
                            usage_date=usage_date,
                            hour=hour,
                            total_seconds=seconds,
                            last_synced_at=now,
                            device_id=self._device_id,
                        )
                        for package, seconds in totals.items()
                    ]
                )
        except Exception as exc:
            raise IngestionFailed(f"Failed to store usage for {child_id} on {usage_date}: {exc}") from exc

        logger.debug(
            "Ingested %d packages for child %s on %s (hour=%s)",
            len(totals),
            child_id,
            usage_date,
            hour,
        )
        return IngestResult(packages_touched=len(totals), rows_written=len(totals))

    def reconcile_apps(
        self,
        child_id: str,
        apps: Iterable[InstalledApp],
        observed_usage: Mapping[str, int],
        catalog_known: bool,
    ) -> int:
        """Upsert installed-app metadata. Returns the number of rows written."""
        rows = select_app_rows(child_id, apps, observed_usage, catalog_known)
        if not rows:
            return 0
        try:
            self._store.upsert_child_apps(rows)
        except Exception as exc:
            raise IngestionFailed(f"Failed to store apps for {child_id}: {exc}") from exc
        return len(rows)

    def record_app_open(self, child_id: str, package_name: str, usage_date: date) -> int:
        """Count one app-open event. Returns the new open count."""
        return self._store.increment_open_count(child_id, package_name, usage_date).open_count
