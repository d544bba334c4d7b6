"""Data models for the Welltime access policy engine.

These models define the schema for every persisted collection.
Parent and child clients must conform to this schema.
"""

from datetime import date, datetime
from enum import StrEnum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

SECONDS_PER_DAY = 86400
MIN_APP_LIMIT_SECONDS = 60
WEEKDAYS = frozenset({1, 2, 3, 4, 5})


class RuleType(StrEnum):
    BEDTIME = "bedtime"
    FOCUS = "focus"


class RequestStatus(StrEnum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


class OverrideStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class UsageAccessStatus(StrEnum):
    GRANTED = "granted"
    NEEDS_PERMISSION = "needs-permission"
    UNAVAILABLE = "unavailable"


class AppCategory(StrEnum):
    EDUCATION = "education"
    GAMES = "games"
    VIDEO = "video"
    SOCIAL = "social"
    CREATIVITY = "creativity"
    PRODUCTIVITY = "productivity"
    COMMUNICATION = "communication"
    UTILITIES = "utilities"
    OTHER = "other"


DaySeconds = Annotated[int, Field(ge=0, lt=SECONDS_PER_DAY)]


class TimeRule(BaseModel):
    """Store: timeRules/{ruleId}

    A recurring bedtime or focus window. Days use 0=Sunday..6=Saturday.
    A window with end_seconds < start_seconds crosses midnight.
    """

    id: str
    child_id: str
    rule_type: RuleType
    start_seconds: DaySeconds
    end_seconds: DaySeconds
    days: list[int]

    @field_validator("days")
    @classmethod
    def _check_days(cls, days: list[int]) -> list[int]:
        if not days:
            raise ValueError("select at least one day")
        if any(day < 0 or day > 6 for day in days):
            raise ValueError("days must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(days))

    @model_validator(mode="after")
    def _check_focus_days(self) -> "TimeRule":
        if self.rule_type == RuleType.FOCUS and not set(self.days) <= WEEKDAYS:
            raise ValueError("focus time can only be set for weekdays")
        return self

    @property
    def crosses_midnight(self) -> bool:
        return self.end_seconds < self.start_seconds


class DailyLimitSettings(BaseModel):
    """Store: usageSettings/{childId}

    limit_seconds == 0 means no limit is configured.
    """

    child_id: str
    limit_seconds: Annotated[int, Field(ge=0)] = 0
    weekend_bonus_seconds: Annotated[int, Field(ge=0)] = 0


class AppLimit(BaseModel):
    """Store: appLimits/{childId}_{packageName}

    applies_days is indexed 0=Sunday..6=Saturday.
    """

    child_id: str
    package_name: str
    limit_seconds: Annotated[int, Field(ge=MIN_APP_LIMIT_SECONDS)]
    applies_days: tuple[bool, bool, bool, bool, bool, bool, bool] = (True,) * 7
    bonus_enabled: bool = False
    bonus_seconds: Annotated[int, Field(ge=0)] = 0
    bonus_streak_target_days: Annotated[int, Field(ge=1)] = 3

    @field_validator("applies_days")
    @classmethod
    def _check_applies_days(
        cls, days: tuple[bool, bool, bool, bool, bool, bool, bool]
    ) -> tuple[bool, bool, bool, bool, bool, bool, bool]:
        if not any(days):
            raise ValueError("select at least one day")
        return days

    def applies_on(self, dow: int) -> bool:
        return 0 <= dow <= 6 and self.applies_days[dow]

    @property
    def effective_limit_seconds(self) -> int:
        return self.limit_seconds + (self.bonus_seconds if self.bonus_enabled else 0)


class UsageSample(BaseModel):
    """A raw foreground-time sample as reported by the device.

    Not unique: the same package may appear several times per window.
    """

    package_name: str
    total_time_ms: int
    window_start_ms: int
    window_end_ms: int


class InstalledApp(BaseModel):
    """An entry of the device's installed-app catalog."""

    package_name: str
    app_name: str
    category: str | None = None
    is_system_app: bool = False


class ChildApp(BaseModel):
    """Store: childApps/{childId}_{packageName}"""

    child_id: str
    package_name: str
    app_name: str
    category: AppCategory = AppCategory.OTHER
    icon_url: str | None = None


class DailyUsage(BaseModel):
    """Store: dailyUsage/{childId}_{packageName}_{usageDate}"""

    child_id: str
    package_name: str
    usage_date: date
    total_seconds: Annotated[int, Field(ge=0)] = 0
    open_count: Annotated[int, Field(ge=0)] = 0
    last_synced_at: datetime | None = None
    device_id: str | None = None


class HourlyUsage(BaseModel):
    """Store: hourlyUsage/{childId}_{packageName}_{usageDate}_{hour}"""

    child_id: str
    package_name: str
    usage_date: date
    hour: Annotated[int, Field(ge=0, le=23)]
    total_seconds: Annotated[int, Field(ge=0)] = 0
    last_synced_at: datetime | None = None
    device_id: str | None = None


class OverrideRequest(BaseModel):
    """Store: overrideRequests/{requestId}"""

    id: str
    child_id: str
    package_name: str
    app_name: str
    requested_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    granted_by_parent_id: str | None = None
    responded_at: datetime | None = None
    response_note: str | None = None


class AppAccessOverride(BaseModel):
    """Store: appAccessOverrides/{overrideId}

    At most one ACTIVE override may exist per (child_id, package_name).
    """

    id: str
    child_id: str
    package_name: str
    granted_by_parent_id: str
    granted_at: datetime
    expires_at: datetime
    duration_minutes: Annotated[int, Field(gt=0)]
    status: OverrideStatus = OverrideStatus.ACTIVE
    reason: str | None = None

    def is_in_effect(self, now: datetime) -> bool:
        """Active in storage and not yet past its expiry."""
        return self.status == OverrideStatus.ACTIVE and now < self.expires_at
