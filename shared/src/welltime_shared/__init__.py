from .models import (
    AppAccessOverride,
    AppCategory,
    AppLimit,
    ChildApp,
    DailyLimitSettings,
    DailyUsage,
    HourlyUsage,
    InstalledApp,
    OverrideRequest,
    OverrideStatus,
    RequestStatus,
    RuleType,
    TimeRule,
    UsageAccessStatus,
    UsageSample,
)

__all__ = [
    "AppAccessOverride",
    "AppCategory",
    "AppLimit",
    "ChildApp",
    "DailyLimitSettings",
    "DailyUsage",
    "HourlyUsage",
    "InstalledApp",
    "OverrideRequest",
    "OverrideStatus",
    "RequestStatus",
    "RuleType",
    "TimeRule",
    "UsageAccessStatus",
    "UsageSample",
]
