"""Final allow/block decisions for an enforcement point."""

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel

from welltime_shared import OverrideStatus

from . import rules
from .cache import LocalCache, PolicySnapshot
from .errors import NotFound, PolicyError
from .store import PolicyStore

logger = logging.getLogger(__name__)


class DecisionReason(StrEnum):
    OVERRIDDEN = "overridden"
    BEDTIME = "bedtime"
    FOCUS = "focus"
    DAILY_LIMIT = "daily_limit"
    APP_LIMIT = "app_limit"


class AccessDecision(BaseModel):
    package_name: str
    allowed: bool
    reason: DecisionReason | None = None
    # Seconds of use left before a limit blocks the app; None if unlimited.
    remaining_seconds: int | None = None
    override_expires_at: datetime | None = None


class BonusStatus(BaseModel):
    """Compliance streak behind an app limit's bonus time."""

    package_name: str
    bonus_enabled: bool
    streak_days: int
    target_days: int
    earned: bool


# How far back usage history is read when counting a compliance streak.
STREAK_LOOKBACK_DAYS = 60


class PolicyCoordinator:
    """Merges active overrides with rule evaluation for a child.

    ``decide`` is the single entry point an enforcement hook calls before an
    app comes to the foreground. An active override wins over every rule.
    """

    def __init__(self, store: PolicyStore, cache: LocalCache | None = None):
        self._store = store
        self._cache = cache

    def load_snapshot(self, child_id: str, now: datetime) -> PolicySnapshot:
        """Read the child's policy and today's usage, falling back to the cache."""
        rules.require_aware(now)
        try:
            snapshot = PolicySnapshot(
                child_id=child_id,
                usage_date=now.date(),
                time_rules=self._store.list_time_rules(child_id),
                daily_limit=self._store.get_daily_limit(child_id),
                app_limits=self._store.list_app_limits(child_id),
                usage_today={
                    row.package_name: row.total_seconds
                    for row in self._store.list_daily_usage(child_id, now.date())
                },
                overrides=self._store.list_overrides(child_id=child_id, status=OverrideStatus.ACTIVE),
                loaded_at=now,
            )
        except PolicyError:
            raise
        except Exception:
            cached = self._cache.load_snapshot(child_id) if self._cache else None
            if cached is None or cached.usage_date != now.date():
                raise
            logger.warning(
                "Policy store unavailable, deciding from snapshot cached at %s",
                cached.loaded_at.isoformat(),
                exc_info=True,
            )
            return cached

        if self._cache is not None:
            try:
                self._cache.save_snapshot(snapshot)
            except OSError:
                logger.warning("Failed to cache policy snapshot", exc_info=True)
        return snapshot

    def decide(self, child_id: str, package_name: str, now: datetime) -> AccessDecision:
        snapshot = self.load_snapshot(child_id, now)
        return self.decide_from_snapshot(snapshot, package_name, now)

    def decide_from_snapshot(
        self, snapshot: PolicySnapshot, package_name: str, now: datetime
    ) -> AccessDecision:
        rules.require_aware(now)
        override = next(
            (
                o
                for o in snapshot.overrides
                if o.package_name == package_name and o.is_in_effect(now)
            ),
            None,
        )
        if override is not None:
            return AccessDecision(
                package_name=package_name,
                allowed=True,
                reason=DecisionReason.OVERRIDDEN,
                override_expires_at=override.expires_at,
            )

        constraint = rules.evaluate(
            snapshot.time_rules,
            snapshot.daily_limit,
            snapshot.app_limits,
            snapshot.usage_today,
            package_name,
            now,
        )
        if constraint is not None:
            logger.debug("Blocking %s for child %s: %s", package_name, snapshot.child_id, constraint)
            return AccessDecision(
                package_name=package_name,
                allowed=False,
                reason=DecisionReason(constraint.value),
                remaining_seconds=0 if constraint in _LIMITS else None,
            )

        return AccessDecision(
            package_name=package_name,
            allowed=True,
            remaining_seconds=_remaining_seconds(snapshot, package_name, now),
        )

    def blocked_packages(
        self, child_id: str, packages: Iterable[str], now: datetime
    ) -> list[AccessDecision]:
        """Decisions for every blocked package among ``packages``."""
        snapshot = self.load_snapshot(child_id, now)
        decisions = (self.decide_from_snapshot(snapshot, pkg, now) for pkg in dict.fromkeys(packages))
        return [decision for decision in decisions if not decision.allowed]

    def bonus_status(self, child_id: str, package_name: str, today: date) -> BonusStatus:
        """Report how many days in a row the child stayed under an app's limit.

        The streak ends yesterday; today's usage is still in progress.
        """
        limit = next(
            (lim for lim in self._store.list_app_limits(child_id) if lim.package_name == package_name),
            None,
        )
        if limit is None:
            raise NotFound(f"No app limit for {package_name} (child {child_id})")

        history = self._store.usage_history(
            child_id,
            package_name,
            today - timedelta(days=STREAK_LOOKBACK_DAYS),
            today - timedelta(days=1),
        )
        return BonusStatus(
            package_name=package_name,
            bonus_enabled=limit.bonus_enabled,
            streak_days=rules.compliance_streak_days(history, limit, today),
            target_days=limit.bonus_streak_target_days,
            earned=rules.has_earned_bonus(history, limit, today),
        )


_LIMITS = (rules.ConstraintType.DAILY_LIMIT, rules.ConstraintType.APP_LIMIT)


def _remaining_seconds(snapshot: PolicySnapshot, package_name: str, now: datetime) -> int | None:
    if package_name in rules.SYSTEM_ALLOWLIST:
        return None
    app_limit = next((lim for lim in snapshot.app_limits if lim.package_name == package_name), None)
    candidates = [
        rules.get_daily_time_remaining(snapshot.daily_limit, snapshot.usage_today, now),
        rules.get_app_time_remaining(app_limit, snapshot.usage_today.get(package_name, 0), now),
    ]
    remaining = [value for value in candidates if value is not None]
    return min(remaining) if remaining else None
