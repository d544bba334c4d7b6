"""Rule evaluation: decides whether a package is blocked at a given instant.

Everything here is a pure function of its arguments. The caller supplies
``now`` as a local wall-clock datetime; nothing reads the system clock.

Priority when several constraints apply: bedtime > focus > daily limit > app limit.
"""

import re
import uuid
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta
from enum import StrEnum

import pydantic

from welltime_shared import AppLimit, DailyLimitSettings, RuleType, TimeRule

from .errors import ValidationError

# Packages that are never blocked and never count toward the daily limit.
SYSTEM_ALLOWLIST = frozenset(
    {
        "com.android.settings",
        "com.android.dialer",
        "com.android.phone",
        "com.android.systemui",
        "com.android.emergency",
        "com.google.android.dialer",
        "com.samsung.android.dialer",
        "com.welltime.app",
    }
)

_CLOCK_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class ConstraintType(StrEnum):
    BEDTIME = "bedtime"
    FOCUS = "focus"
    DAILY_LIMIT = "daily_limit"
    APP_LIMIT = "app_limit"


def day_of_week(now: datetime | date) -> int:
    """Day of week with 0=Sunday..6=Saturday."""
    return (now.weekday() + 1) % 7


def require_aware(now: datetime) -> datetime:
    """Reject naive datetimes; stored grant times are timezone-aware."""
    if now.tzinfo is None:
        raise ValidationError("now must be timezone-aware")
    return now


def seconds_since_midnight(now: datetime) -> int:
    return now.hour * 3600 + now.minute * 60 + now.second


def is_weekend(now: datetime | date) -> bool:
    return day_of_week(now) in (0, 6)


def is_rule_active(rule: TimeRule, now: datetime) -> bool:
    """Check whether a single time rule covers ``now``.

    A window crossing midnight is active after its start on one of its days,
    or before its end on the day after one of its days.
    Focus rules never apply on Saturday or Sunday.
    """
    dow = day_of_week(now)
    now_seconds = seconds_since_midnight(now)

    if rule.rule_type == RuleType.FOCUS and dow not in (1, 2, 3, 4, 5):
        return False

    if rule.end_seconds < rule.start_seconds:
        if now_seconds >= rule.start_seconds and dow in rule.days:
            return True
        yesterday = (dow + 6) % 7
        return now_seconds < rule.end_seconds and yesterday in rule.days

    return dow in rule.days and rule.start_seconds <= now_seconds < rule.end_seconds


def is_within_bedtime(rules: Iterable[TimeRule], now: datetime) -> bool:
    return any(
        is_rule_active(rule, now) for rule in rules if rule.rule_type == RuleType.BEDTIME
    )


def is_within_focus(rules: Iterable[TimeRule], now: datetime) -> bool:
    return any(
        is_rule_active(rule, now) for rule in rules if rule.rule_type == RuleType.FOCUS
    )


def effective_daily_limit(settings: DailyLimitSettings | None, now: datetime | date) -> int | None:
    """Daily limit in seconds including the weekend bonus, or None if unlimited."""
    if settings is None or settings.limit_seconds == 0:
        return None
    bonus = settings.weekend_bonus_seconds if is_weekend(now) else 0
    return settings.limit_seconds + bonus


def calculate_total_usage(
    usage_today: Mapping[str, int],
    exclude: frozenset[str] = SYSTEM_ALLOWLIST,
) -> int:
    """Sum today's usage across packages, skipping allowlisted ones."""
    return sum(seconds for package, seconds in usage_today.items() if package not in exclude)


def is_daily_limit_exceeded(
    settings: DailyLimitSettings | None,
    usage_today: Mapping[str, int],
    now: datetime,
) -> bool:
    limit = effective_daily_limit(settings, now)
    if limit is None:
        return False
    return calculate_total_usage(usage_today) >= limit


def get_daily_time_remaining(
    settings: DailyLimitSettings | None,
    usage_today: Mapping[str, int],
    now: datetime,
) -> int | None:
    """Seconds left today, never negative. None when no limit is configured."""
    limit = effective_daily_limit(settings, now)
    if limit is None:
        return None
    return max(0, limit - calculate_total_usage(usage_today))


def effective_app_limit(limit: AppLimit | None, now: datetime | date) -> int | None:
    """Per-app budget for the day of ``now``.

    None means the app is unrestricted that day, including days the limit
    is not flagged for.
    """
    if limit is None or not limit.applies_on(day_of_week(now)):
        return None
    return limit.effective_limit_seconds


def is_app_limit_exceeded(limit: AppLimit | None, used_seconds: int, now: datetime) -> bool:
    budget = effective_app_limit(limit, now)
    if budget is None:
        return False
    return used_seconds >= budget


def get_app_time_remaining(limit: AppLimit | None, used_seconds: int, now: datetime) -> int | None:
    budget = effective_app_limit(limit, now)
    if budget is None:
        return None
    return max(0, budget - used_seconds)


def evaluate(
    rules: Iterable[TimeRule],
    daily_limit: DailyLimitSettings | None,
    app_limits: Iterable[AppLimit],
    usage_today: Mapping[str, int],
    package_name: str,
    now: datetime,
) -> ConstraintType | None:
    """Return the constraint blocking ``package_name`` at ``now``, if any."""
    if package_name in SYSTEM_ALLOWLIST:
        return None

    rules = list(rules)
    if is_within_bedtime(rules, now):
        return ConstraintType.BEDTIME
    if is_within_focus(rules, now):
        return ConstraintType.FOCUS
    if is_daily_limit_exceeded(daily_limit, usage_today, now):
        return ConstraintType.DAILY_LIMIT

    app_limit = next((lim for lim in app_limits if lim.package_name == package_name), None)
    if is_app_limit_exceeded(app_limit, usage_today.get(package_name, 0), now):
        return ConstraintType.APP_LIMIT
    return None


def blocked_packages(
    rules: Iterable[TimeRule],
    daily_limit: DailyLimitSettings | None,
    app_limits: Iterable[AppLimit],
    usage_today: Mapping[str, int],
    packages: Iterable[str],
    now: datetime,
) -> list[tuple[str, ConstraintType]]:
    """Evaluate every package at once, returning the blocked ones with reasons."""
    rules = list(rules)
    app_limits = list(app_limits)
    result = []
    for package in dict.fromkeys(packages):
        reason = evaluate(rules, daily_limit, app_limits, usage_today, package, now)
        if reason is not None:
            result.append((package, reason))
    return result


def compliance_streak_days(history: Mapping[date, int], limit: AppLimit, today: date) -> int:
    """Count consecutive days before ``today`` the package stayed under its base limit.

    Days the limit does not apply to are skipped without breaking the streak.
    The walk stops at the earliest day present in ``history``.
    """
    if not history:
        return 0
    earliest = min(history)
    streak = 0
    day = today - timedelta(days=1)
    while day >= earliest:
        if limit.applies_on(day_of_week(day)):
            if history.get(day, 0) >= limit.limit_seconds:
                break
            streak += 1
        day -= timedelta(days=1)
    return streak


def has_earned_bonus(history: Mapping[date, int], limit: AppLimit, today: date) -> bool:
    return limit.bonus_enabled and (
        compliance_streak_days(history, limit, today) >= limit.bonus_streak_target_days
    )


def parse_clock(value: str) -> int:
    """Parse a 24h ``HH:MM`` string into seconds since midnight."""
    match = _CLOCK_RE.match(value.strip())
    if not match:
        raise ValidationError(f"Invalid time {value!r}. Use 24h format: HH:MM")
    return int(match.group(1)) * 3600 + int(match.group(2)) * 60


def build_time_rule(
    child_id: str,
    rule_type: RuleType | str,
    start: str,
    end: str,
    days: Iterable[int],
) -> TimeRule:
    """Create a validated time rule from clock strings."""
    try:
        return TimeRule(
            id=uuid.uuid4().hex,
            child_id=child_id,
            rule_type=RuleType(rule_type),
            start_seconds=parse_clock(start),
            end_seconds=parse_clock(end),
            days=list(days),
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc
    except ValueError as exc:
        raise ValidationError(f"Unknown rule type {rule_type!r}") from exc
