"""Tests for Firestore serialization helpers and app categories."""

from datetime import date

from conftest import CHILD, at
from welltime_shared import (
    AppAccessOverride,
    AppCategory,
    AppLimit,
    DailyUsage,
    OverrideStatus,
)
from welltime_shared.categories import resolve_app_category
from welltime_shared.firestore import (
    document_id,
    firestore_to_dict,
    model_to_firestore,
    to_camel,
    to_snake,
)


def test_case_conversion() -> None:
    assert to_camel("granted_by_parent_id") == "grantedByParentId"
    assert to_snake("grantedByParentId") == "granted_by_parent_id"
    assert to_camel("id") == "id"


def test_usage_row_to_firestore() -> None:
    row = DailyUsage(
        child_id=CHILD,
        package_name="com.game",
        usage_date=date(2024, 1, 16),
        total_seconds=61,
        last_synced_at=at(2024, 1, 16, 18),
    )

    data = model_to_firestore(row)

    assert data["usageDate"] == "2024-01-16"
    assert data["totalSeconds"] == 61
    assert data["lastSyncedAt"] == at(2024, 1, 16, 18)


def test_app_limit_days_become_list() -> None:
    data = model_to_firestore(AppLimit(child_id=CHILD, package_name="com.game", limit_seconds=600))
    assert data["appliesDays"] == [True] * 7


def test_override_round_trip() -> None:
    override = AppAccessOverride(
        id="ov-1",
        child_id=CHILD,
        package_name="com.game",
        granted_by_parent_id="parent-1",
        granted_at=at(2024, 1, 16, 18),
        expires_at=at(2024, 1, 16, 18, 30),
        duration_minutes=30,
    )

    data = model_to_firestore(override)
    assert data["status"] == "active"

    restored = AppAccessOverride.model_validate(firestore_to_dict(data))
    assert restored == override
    assert restored.status == OverrideStatus.ACTIVE


def test_document_id() -> None:
    assert document_id(CHILD, "com.game", date(2024, 1, 16)) == "child-1_com.game_2024-01-16"
    assert document_id("a/b", "c") == "a-b_c"


class TestCategories:
    def test_reported_category_wins(self) -> None:
        assert resolve_app_category("Education", "com.roblox.client") == AppCategory.EDUCATION

    def test_known_package_fallback(self) -> None:
        assert resolve_app_category(None, "com.roblox.client") == AppCategory.GAMES
        assert resolve_app_category("unknown", "com.whatsapp") == AppCategory.COMMUNICATION

    def test_defaults_to_other(self) -> None:
        assert resolve_app_category(None, "com.example.thing") == AppCategory.OTHER
        assert resolve_app_category(None) == AppCategory.OTHER
