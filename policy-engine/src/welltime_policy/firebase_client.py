"""Firestore-backed policy store."""

import logging
from datetime import date
from typing import Any, TypeVar

from google.cloud.firestore import (  # type: ignore[import-untyped]
    SERVER_TIMESTAMP,
    Client,
    Increment,
    Transaction,
    transactional,
)
import pydantic
from pydantic import BaseModel

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
    RuleType,
    TimeRule,
)
from welltime_shared.firestore import document_id, firestore_to_dict, model_to_firestore

from .errors import DuplicateRequest, NotFound
from .store import OverrideMutation, RequestMutation, RequestOutcome

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

TIME_RULES = "timeRules"
USAGE_SETTINGS = "usageSettings"
APP_LIMITS = "appLimits"
CHILD_APPS = "childApps"
DAILY_USAGE = "dailyUsage"
HOURLY_USAGE = "hourlyUsage"
OVERRIDE_REQUESTS = "overrideRequests"
ACCESS_OVERRIDES = "appAccessOverrides"
OVERRIDE_GUARDS = "overrideGuards"


def _parse(model: type[ModelT], data: dict[str, Any] | None) -> ModelT:
    return model.model_validate(firestore_to_dict(data or {}))


def _read_time_rule(doc_id: str, data: dict[str, Any] | None) -> TimeRule | None:
    """Parse a stored rule without failing the whole read on one bad row.

    Rows written by another client may break the write-time checks (a focus
    rule on Saturday, a day index out of range). They are kept as-is so the
    evaluator can ignore the parts that never match. Rows missing required
    fields are skipped.
    """
    fields = firestore_to_dict(data or {})
    try:
        return TimeRule.model_validate(fields)
    except pydantic.ValidationError as exc:
        logger.warning("Time rule %s failed validation, reading it leniently: %s", doc_id, exc)
    try:
        return TimeRule.model_construct(
            id=str(fields.get("id") or doc_id),
            child_id=str(fields["child_id"]),
            rule_type=RuleType(fields["rule_type"]),
            start_seconds=int(fields["start_seconds"]),
            end_seconds=int(fields["end_seconds"]),
            days=[int(day) for day in fields.get("days") or []],
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping unreadable time rule %s", doc_id)
        return None


def _read_app_limit(doc_id: str, data: dict[str, Any] | None) -> AppLimit | None:
    try:
        return _parse(AppLimit, data)
    except pydantic.ValidationError as exc:
        logger.warning("Skipping invalid app limit %s: %s", doc_id, exc)
        return None


class FirestorePolicyStore:
    """Handles all Firestore operations for the policy engine.

    Every call carries a bounded ``timeout`` so a slow backend surfaces as an
    error instead of stalling an app launch.

    Grants and new requests for the same (child, package) are serialized by
    reading and rewriting a guard document inside the transaction.
    """

    def __init__(self, db: Client, timeout: float = 5.0):
        self._db = db
        self._timeout = timeout

    def _doc(self, collection: str, doc_id: str):
        return self._db.collection(collection).document(doc_id)

    def _guard(self, child_id: str, package_name: str):
        return self._doc(OVERRIDE_GUARDS, document_id(child_id, package_name))

    # Constraints

    def save_time_rule(self, rule: TimeRule) -> None:
        self._doc(TIME_RULES, rule.id).set(model_to_firestore(rule), timeout=self._timeout)

    def delete_time_rule(self, child_id: str, rule_id: str) -> None:
        ref = self._doc(TIME_RULES, rule_id)
        doc = ref.get(timeout=self._timeout)
        if doc.exists and doc.to_dict().get("childId") == child_id:
            ref.delete(timeout=self._timeout)

    def list_time_rules(self, child_id: str) -> list[TimeRule]:
        query = self._db.collection(TIME_RULES).where("childId", "==", child_id)
        rules = (_read_time_rule(doc.id, doc.to_dict()) for doc in query.stream(timeout=self._timeout))
        return [rule for rule in rules if rule is not None]

    def save_daily_limit(self, settings: DailyLimitSettings) -> None:
        self._doc(USAGE_SETTINGS, settings.child_id).set(
            model_to_firestore(settings), timeout=self._timeout
        )

    def get_daily_limit(self, child_id: str) -> DailyLimitSettings | None:
        doc = self._doc(USAGE_SETTINGS, child_id).get(timeout=self._timeout)
        return _parse(DailyLimitSettings, doc.to_dict()) if doc.exists else None

    def save_app_limit(self, limit: AppLimit) -> None:
        self._doc(APP_LIMITS, document_id(limit.child_id, limit.package_name)).set(
            model_to_firestore(limit), timeout=self._timeout
        )

    def delete_app_limit(self, child_id: str, package_name: str) -> None:
        self._doc(APP_LIMITS, document_id(child_id, package_name)).delete(timeout=self._timeout)

    def list_app_limits(self, child_id: str) -> list[AppLimit]:
        query = self._db.collection(APP_LIMITS).where("childId", "==", child_id)
        limits = (_read_app_limit(doc.id, doc.to_dict()) for doc in query.stream(timeout=self._timeout))
        return [limit for limit in limits if limit is not None]

    # Installed apps

    def upsert_child_apps(self, apps: list[ChildApp]) -> None:
        batch = self._db.batch()
        for app in apps:
            data = model_to_firestore(app)
            if app.icon_url is None:
                # Keep an icon fetched by an earlier sync.
                data.pop("iconUrl")
            batch.set(self._doc(CHILD_APPS, document_id(app.child_id, app.package_name)), data, merge=True)
        batch.commit(timeout=self._timeout)

    def list_child_apps(self, child_id: str) -> list[ChildApp]:
        query = self._db.collection(CHILD_APPS).where("childId", "==", child_id)
        return [_parse(ChildApp, doc.to_dict()) for doc in query.stream(timeout=self._timeout)]

    def set_app_icon(self, child_id: str, package_name: str, icon_url: str) -> None:
        ref = self._doc(CHILD_APPS, document_id(child_id, package_name))
        if not ref.get(timeout=self._timeout).exists:
            raise NotFound(f"App {package_name} not found for child {child_id}")
        ref.update({"iconUrl": icon_url}, timeout=self._timeout)

    # Usage

    def upsert_daily_usage(self, rows: list[DailyUsage]) -> None:
        refs = [
            self._doc(DAILY_USAGE, document_id(r.child_id, r.package_name, r.usage_date.isoformat()))
            for r in rows
        ]
        self._upsert_max(refs, rows)

    def upsert_hourly_usage(self, rows: list[HourlyUsage]) -> None:
        refs = [
            self._doc(
                HOURLY_USAGE,
                document_id(r.child_id, r.package_name, r.usage_date.isoformat(), r.hour),
            )
            for r in rows
        ]
        self._upsert_max(refs, rows)

    def _upsert_max(self, refs: list, rows: list) -> None:
        """Write rows in one transaction, keeping the larger stored total."""
        timeout = self._timeout

        @transactional
        def run(transaction: Transaction) -> None:
            snapshots = [ref.get(transaction=transaction, timeout=timeout) for ref in refs]
            for ref, snapshot, row in zip(refs, snapshots, rows):
                data = model_to_firestore(row)
                data.pop("openCount", None)
                if snapshot.exists:
                    stored = snapshot.to_dict().get("totalSeconds", 0)
                    data["totalSeconds"] = max(stored, data["totalSeconds"])
                transaction.set(ref, data, merge=True)

        run(self._db.transaction())

    def list_daily_usage(self, child_id: str, usage_date: date) -> list[DailyUsage]:
        query = (
            self._db.collection(DAILY_USAGE)
            .where("childId", "==", child_id)
            .where("usageDate", "==", usage_date.isoformat())
        )
        return [_parse(DailyUsage, doc.to_dict()) for doc in query.stream(timeout=self._timeout)]

    def list_hourly_usage(self, child_id: str, usage_date: date) -> list[HourlyUsage]:
        query = (
            self._db.collection(HOURLY_USAGE)
            .where("childId", "==", child_id)
            .where("usageDate", "==", usage_date.isoformat())
        )
        return [_parse(HourlyUsage, doc.to_dict()) for doc in query.stream(timeout=self._timeout)]

    def usage_history(
        self, child_id: str, package_name: str, start: date, end: date
    ) -> dict[date, int]:
        query = (
            self._db.collection(DAILY_USAGE)
            .where("childId", "==", child_id)
            .where("packageName", "==", package_name)
            .where("usageDate", ">=", start.isoformat())
            .where("usageDate", "<=", end.isoformat())
        )
        rows = [_parse(DailyUsage, doc.to_dict()) for doc in query.stream(timeout=self._timeout)]
        return {row.usage_date: row.total_seconds for row in rows}

    def increment_open_count(
        self, child_id: str, package_name: str, usage_date: date
    ) -> DailyUsage:
        ref = self._doc(DAILY_USAGE, document_id(child_id, package_name, usage_date.isoformat()))
        ref.set(
            {
                "childId": child_id,
                "packageName": package_name,
                "usageDate": usage_date.isoformat(),
                "openCount": Increment(1),
            },
            merge=True,
            timeout=self._timeout,
        )
        return _parse(DailyUsage, ref.get(timeout=self._timeout).to_dict())

    # Override requests

    def create_request(self, request: OverrideRequest) -> OverrideRequest:
        guard = self._guard(request.child_id, request.package_name)
        ref = self._doc(OVERRIDE_REQUESTS, request.id)
        pending_query = (
            self._db.collection(OVERRIDE_REQUESTS)
            .where("childId", "==", request.child_id)
            .where("packageName", "==", request.package_name)
            .where("status", "==", RequestStatus.PENDING.value)
        )
        timeout = self._timeout

        @transactional
        def run(transaction: Transaction) -> None:
            guard.get(transaction=transaction, timeout=timeout)
            existing = list(pending_query.stream(transaction=transaction, timeout=timeout))
            if existing:
                raise DuplicateRequest(
                    f"A pending request for {request.package_name} already exists ({existing[0].id})"
                )
            transaction.create(ref, model_to_firestore(request))
            transaction.set(guard, {"updatedAt": SERVER_TIMESTAMP})

        run(self._db.transaction())
        return request

    def get_request(self, request_id: str) -> OverrideRequest | None:
        doc = self._doc(OVERRIDE_REQUESTS, request_id).get(timeout=self._timeout)
        return _parse(OverrideRequest, doc.to_dict()) if doc.exists else None

    def list_requests(
        self, child_id: str, status: RequestStatus | None = None
    ) -> list[OverrideRequest]:
        query = self._db.collection(OVERRIDE_REQUESTS).where("childId", "==", child_id)
        if status is not None:
            query = query.where("status", "==", status.value)
        found = [_parse(OverrideRequest, doc.to_dict()) for doc in query.stream(timeout=self._timeout)]
        return sorted(found, key=lambda r: r.requested_at, reverse=True)

    def transact_request(self, request_id: str, mutate: RequestMutation) -> RequestOutcome:
        ref = self._doc(OVERRIDE_REQUESTS, request_id)
        timeout = self._timeout

        @transactional
        def run(transaction: Transaction) -> RequestOutcome:
            snapshot = ref.get(transaction=transaction, timeout=timeout)
            if not snapshot.exists:
                raise NotFound(f"Override request {request_id} not found")
            request = _parse(OverrideRequest, snapshot.to_dict())
            guard = self._guard(request.child_id, request.package_name)
            guard.get(transaction=transaction, timeout=timeout)
            active_query = (
                self._db.collection(ACCESS_OVERRIDES)
                .where("childId", "==", request.child_id)
                .where("packageName", "==", request.package_name)
                .where("status", "==", OverrideStatus.ACTIVE.value)
            )
            active = [
                _parse(AppAccessOverride, doc.to_dict())
                for doc in active_query.stream(transaction=transaction, timeout=timeout)
            ]

            outcome = mutate(request, active)

            transaction.set(ref, model_to_firestore(outcome.request))
            for override in outcome.superseded:
                transaction.set(self._doc(ACCESS_OVERRIDES, override.id), model_to_firestore(override))
            if outcome.created is not None:
                transaction.create(
                    self._doc(ACCESS_OVERRIDES, outcome.created.id),
                    model_to_firestore(outcome.created),
                )
            transaction.set(guard, {"updatedAt": SERVER_TIMESTAMP})
            return outcome

        return run(self._db.transaction())

    # Access overrides

    def get_override(self, override_id: str) -> AppAccessOverride | None:
        doc = self._doc(ACCESS_OVERRIDES, override_id).get(timeout=self._timeout)
        return _parse(AppAccessOverride, doc.to_dict()) if doc.exists else None

    def list_overrides(
        self,
        child_id: str | None = None,
        package_name: str | None = None,
        status: OverrideStatus | None = None,
    ) -> list[AppAccessOverride]:
        query = self._db.collection(ACCESS_OVERRIDES)
        if child_id is not None:
            query = query.where("childId", "==", child_id)
        if package_name is not None:
            query = query.where("packageName", "==", package_name)
        if status is not None:
            query = query.where("status", "==", status.value)
        return [_parse(AppAccessOverride, doc.to_dict()) for doc in query.stream(timeout=self._timeout)]

    def transact_override(
        self, override_id: str, mutate: OverrideMutation
    ) -> AppAccessOverride:
        ref = self._doc(ACCESS_OVERRIDES, override_id)
        timeout = self._timeout

        @transactional
        def run(transaction: Transaction) -> AppAccessOverride:
            snapshot = ref.get(transaction=transaction, timeout=timeout)
            if not snapshot.exists:
                raise NotFound(f"Override {override_id} not found")
            override = _parse(AppAccessOverride, snapshot.to_dict())
            updated = mutate(override)
            if updated is None:
                return override
            transaction.set(ref, model_to_firestore(updated))
            return updated

        return run(self._db.transaction())
