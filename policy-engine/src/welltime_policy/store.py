"""Storage interface for policy records, with an in-process implementation."""

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol

from welltime_shared import (
    AppAccessOverride,
    AppLimit,
    ChildApp,
    DailyLimitSettings,
    DailyUsage,
    HourlyUsage,
    OverrideRequest,
    OverrideStatus,
    RequestStatus,
    TimeRule,
)

from .errors import DuplicateRequest, InvalidState, NotFound


@dataclass
class RequestOutcome:
    """Writes produced by one override-request transition."""

    request: OverrideRequest
    superseded: list[AppAccessOverride] = field(default_factory=list)
    created: AppAccessOverride | None = None


RequestMutation = Callable[[OverrideRequest, list[AppAccessOverride]], RequestOutcome]
OverrideMutation = Callable[[AppAccessOverride], AppAccessOverride | None]


class PolicyStore(Protocol):
    """Persistence operations the engine relies on.

    ``transact_request`` and ``transact_override`` must apply the mutation and
    its writes atomically. ``upsert_daily_usage`` must write all rows or none,
    keeping the larger of the stored and incoming ``total_seconds`` and never
    touching ``open_count``.
    """

    def save_time_rule(self, rule: TimeRule) -> None: ...

    def delete_time_rule(self, child_id: str, rule_id: str) -> None: ...

    def list_time_rules(self, child_id: str) -> list[TimeRule]: ...

    def save_daily_limit(self, settings: DailyLimitSettings) -> None: ...

    def get_daily_limit(self, child_id: str) -> DailyLimitSettings | None: ...

    def save_app_limit(self, limit: AppLimit) -> None: ...

    def delete_app_limit(self, child_id: str, package_name: str) -> None: ...

    def list_app_limits(self, child_id: str) -> list[AppLimit]: ...

    def upsert_child_apps(self, apps: list[ChildApp]) -> None: ...

    def list_child_apps(self, child_id: str) -> list[ChildApp]: ...

    def set_app_icon(self, child_id: str, package_name: str, icon_url: str) -> None: ...

    def upsert_daily_usage(self, rows: list[DailyUsage]) -> None: ...

    def upsert_hourly_usage(self, rows: list[HourlyUsage]) -> None: ...

    def list_daily_usage(self, child_id: str, usage_date: date) -> list[DailyUsage]: ...

    def list_hourly_usage(self, child_id: str, usage_date: date) -> list[HourlyUsage]: ...

    def usage_history(
        self, child_id: str, package_name: str, start: date, end: date
    ) -> dict[date, int]: ...

    def increment_open_count(
        self, child_id: str, package_name: str, usage_date: date
    ) -> DailyUsage: ...

    def create_request(self, request: OverrideRequest) -> OverrideRequest: ...

    def get_request(self, request_id: str) -> OverrideRequest | None: ...

    def list_requests(
        self, child_id: str, status: RequestStatus | None = None
    ) -> list[OverrideRequest]: ...

    def transact_request(self, request_id: str, mutate: RequestMutation) -> RequestOutcome: ...

    def get_override(self, override_id: str) -> AppAccessOverride | None: ...

    def list_overrides(
        self,
        child_id: str | None = None,
        package_name: str | None = None,
        status: OverrideStatus | None = None,
    ) -> list[AppAccessOverride]: ...

    def transact_override(
        self, override_id: str, mutate: OverrideMutation
    ) -> AppAccessOverride: ...


class InMemoryPolicyStore:
    """Thread-safe in-process store.

    A single lock serializes writers, which gives every multi-row operation
    the atomicity the protocol requires.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._time_rules: dict[str, TimeRule] = {}
        self._daily_limits: dict[str, DailyLimitSettings] = {}
        self._app_limits: dict[tuple[str, str], AppLimit] = {}
        self._child_apps: dict[tuple[str, str], ChildApp] = {}
        self._daily_usage: dict[tuple[str, str, date], DailyUsage] = {}
        self._hourly_usage: dict[tuple[str, str, date, int], HourlyUsage] = {}
        self._requests: dict[str, OverrideRequest] = {}
        self._overrides: dict[str, AppAccessOverride] = {}

    # Constraints

    def save_time_rule(self, rule: TimeRule) -> None:
        with self._lock:
            self._time_rules[rule.id] = rule.model_copy(deep=True)

    def delete_time_rule(self, child_id: str, rule_id: str) -> None:
        with self._lock:
            rule = self._time_rules.get(rule_id)
            if rule is not None and rule.child_id == child_id:
                del self._time_rules[rule_id]

    def list_time_rules(self, child_id: str) -> list[TimeRule]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._time_rules.values() if r.child_id == child_id]

    def save_daily_limit(self, settings: DailyLimitSettings) -> None:
        with self._lock:
            self._daily_limits[settings.child_id] = settings.model_copy()

    def get_daily_limit(self, child_id: str) -> DailyLimitSettings | None:
        with self._lock:
            settings = self._daily_limits.get(child_id)
            return settings.model_copy() if settings else None

    def save_app_limit(self, limit: AppLimit) -> None:
        with self._lock:
            self._app_limits[(limit.child_id, limit.package_name)] = limit.model_copy()

    def delete_app_limit(self, child_id: str, package_name: str) -> None:
        with self._lock:
            self._app_limits.pop((child_id, package_name), None)

    def list_app_limits(self, child_id: str) -> list[AppLimit]:
        with self._lock:
            return [lim.model_copy() for (cid, _), lim in self._app_limits.items() if cid == child_id]

    # Installed apps

    def upsert_child_apps(self, apps: list[ChildApp]) -> None:
        with self._lock:
            for app in apps:
                key = (app.child_id, app.package_name)
                existing = self._child_apps.get(key)
                if existing is not None and app.icon_url is None:
                    app = app.model_copy(update={"icon_url": existing.icon_url})
                self._child_apps[key] = app.model_copy()

    def list_child_apps(self, child_id: str) -> list[ChildApp]:
        with self._lock:
            return [a.model_copy() for (cid, _), a in self._child_apps.items() if cid == child_id]

    def set_app_icon(self, child_id: str, package_name: str, icon_url: str) -> None:
        with self._lock:
            app = self._child_apps.get((child_id, package_name))
            if app is None:
                raise NotFound(f"App {package_name} not found for child {child_id}")
            self._child_apps[(child_id, package_name)] = app.model_copy(update={"icon_url": icon_url})

    # Usage

    def upsert_daily_usage(self, rows: list[DailyUsage]) -> None:
        with self._lock:
            merged = {}
            for row in rows:
                key = (row.child_id, row.package_name, row.usage_date)
                existing = merged.get(key) or self._daily_usage.get(key)
                merged[key] = _merge_usage(existing, row)
            self._daily_usage.update(merged)

    def upsert_hourly_usage(self, rows: list[HourlyUsage]) -> None:
        with self._lock:
            merged = {}
            for row in rows:
                key = (row.child_id, row.package_name, row.usage_date, row.hour)
                existing = merged.get(key) or self._hourly_usage.get(key)
                if existing is not None and existing.total_seconds > row.total_seconds:
                    row = row.model_copy(update={"total_seconds": existing.total_seconds})
                merged[key] = row.model_copy()
            self._hourly_usage.update(merged)

    def list_daily_usage(self, child_id: str, usage_date: date) -> list[DailyUsage]:
        with self._lock:
            return [
                row.model_copy()
                for (cid, _, day), row in self._daily_usage.items()
                if cid == child_id and day == usage_date
            ]

    def list_hourly_usage(self, child_id: str, usage_date: date) -> list[HourlyUsage]:
        with self._lock:
            return [
                row.model_copy()
                for (cid, _, day, _), row in self._hourly_usage.items()
                if cid == child_id and day == usage_date
            ]

    def usage_history(
        self, child_id: str, package_name: str, start: date, end: date
    ) -> dict[date, int]:
        with self._lock:
            return {
                day: row.total_seconds
                for (cid, pkg, day), row in self._daily_usage.items()
                if cid == child_id and pkg == package_name and start <= day <= end
            }

    def increment_open_count(
        self, child_id: str, package_name: str, usage_date: date
    ) -> DailyUsage:
        with self._lock:
            key = (child_id, package_name, usage_date)
            row = self._daily_usage.get(key) or DailyUsage(
                child_id=child_id, package_name=package_name, usage_date=usage_date
            )
            row = row.model_copy(update={"open_count": row.open_count + 1})
            self._daily_usage[key] = row
            return row.model_copy()

    # Override requests

    def create_request(self, request: OverrideRequest) -> OverrideRequest:
        with self._lock:
            for existing in self._requests.values():
                if (
                    existing.child_id == request.child_id
                    and existing.package_name == request.package_name
                    and existing.status == RequestStatus.PENDING
                ):
                    raise DuplicateRequest(
                        f"A pending request for {request.package_name} already exists ({existing.id})"
                    )
            self._requests[request.id] = request.model_copy()
            return request.model_copy()

    def get_request(self, request_id: str) -> OverrideRequest | None:
        with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy() if request else None

    def list_requests(
        self, child_id: str, status: RequestStatus | None = None
    ) -> list[OverrideRequest]:
        with self._lock:
            found = [
                r.model_copy()
                for r in self._requests.values()
                if r.child_id == child_id and (status is None or r.status == status)
            ]
        return sorted(found, key=lambda r: r.requested_at, reverse=True)

    def transact_request(self, request_id: str, mutate: RequestMutation) -> RequestOutcome:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise NotFound(f"Override request {request_id} not found")
            active = [
                o.model_copy()
                for o in self._overrides.values()
                if o.child_id == request.child_id
                and o.package_name == request.package_name
                and o.status == OverrideStatus.ACTIVE
            ]
            outcome = mutate(request.model_copy(), active)

            pending = {o.id: o for o in self._overrides.values()}
            for override in outcome.superseded:
                pending[override.id] = override
            if outcome.created is not None:
                pending[outcome.created.id] = outcome.created
            _check_single_active(pending.values())

            self._overrides = {k: v.model_copy() for k, v in pending.items()}
            self._requests[request_id] = outcome.request.model_copy()
            return outcome

    # Access overrides

    def get_override(self, override_id: str) -> AppAccessOverride | None:
        with self._lock:
            override = self._overrides.get(override_id)
            return override.model_copy() if override else None

    def list_overrides(
        self,
        child_id: str | None = None,
        package_name: str | None = None,
        status: OverrideStatus | None = None,
    ) -> list[AppAccessOverride]:
        with self._lock:
            return [
                o.model_copy()
                for o in self._overrides.values()
                if (child_id is None or o.child_id == child_id)
                and (package_name is None or o.package_name == package_name)
                and (status is None or o.status == status)
            ]

    def transact_override(
        self, override_id: str, mutate: OverrideMutation
    ) -> AppAccessOverride:
        with self._lock:
            override = self._overrides.get(override_id)
            if override is None:
                raise NotFound(f"Override {override_id} not found")
            updated = mutate(override.model_copy())
            if updated is None:
                return override.model_copy()
            self._overrides[override_id] = updated.model_copy()
            return updated


def _merge_usage(existing: DailyUsage | None, incoming: DailyUsage) -> DailyUsage:
    if existing is None:
        return incoming.model_copy()
    return incoming.model_copy(
        update={
            "total_seconds": max(existing.total_seconds, incoming.total_seconds),
            "open_count": existing.open_count,
        }
    )


def _check_single_active(overrides: Iterable[AppAccessOverride]) -> None:
    seen: set[tuple[str, str]] = set()
    for override in overrides:
        if override.status != OverrideStatus.ACTIVE:
            continue
        key = (override.child_id, override.package_name)
        if key in seen:
            raise InvalidState(
                f"More than one active override for {override.package_name} (child {override.child_id})"
            )
        seen.add(key)
