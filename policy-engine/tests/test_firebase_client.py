"""Tests for the Firestore store against an in-memory client."""

from datetime import date

import pytest

from conftest import CHILD, PARENT, at
from fakes import FakeFirestore
from welltime_policy import firebase_client
from welltime_policy.coordinator import DecisionReason, PolicyCoordinator
from welltime_policy.errors import DuplicateRequest
from welltime_policy.firebase_client import FirestorePolicyStore
from welltime_policy.overrides import OverrideManager
from welltime_shared import DailyUsage

GAME = "com.roblox.client"
TUESDAY = date(2024, 1, 16)


@pytest.fixture
def db() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def firestore_store(db: FakeFirestore, monkeypatch: pytest.MonkeyPatch) -> FirestorePolicyStore:
    # Run transaction bodies directly against the fake client.
    monkeypatch.setattr(firebase_client, "transactional", lambda func: func)
    return FirestorePolicyStore(db)


def stored_rule(**fields) -> dict:
    data = {
        "id": "rule-1",
        "childId": CHILD,
        "ruleType": "focus",
        "startSeconds": 8 * 3600,
        "endSeconds": 15 * 3600,
        "days": [1, 2, 3, 4, 5],
    }
    data.update(fields)
    return data


class TestStoredRulesFromOtherClients:
    def test_focus_rule_with_saturday_is_inert_on_saturday(
        self, db: FakeFirestore, firestore_store: FirestorePolicyStore
    ) -> None:
        db.data["timeRules"] = {"rule-1": stored_rule(days=[1, 2, 3, 4, 5, 6])}
        coordinator = PolicyCoordinator(firestore_store)

        saturday = coordinator.decide(CHILD, "com.game", at(2024, 1, 13, 12))
        monday = coordinator.decide(CHILD, "com.game", at(2024, 1, 15, 12))

        assert saturday.allowed
        assert not monday.allowed
        assert monday.reason == DecisionReason.FOCUS

    def test_bad_day_index_never_matches(self, db: FakeFirestore, firestore_store: FirestorePolicyStore) -> None:
        db.data["timeRules"] = {"rule-1": stored_rule(ruleType="bedtime", days=[9])}

        assert len(firestore_store.list_time_rules(CHILD)) == 1
        for day in range(13, 20):
            assert PolicyCoordinator(firestore_store).decide(CHILD, "com.game", at(2024, 1, day, 12)).allowed

    def test_unreadable_rule_is_skipped(self, db: FakeFirestore, firestore_store: FirestorePolicyStore) -> None:
        db.data["timeRules"] = {
            "rule-1": stored_rule(ruleType="nap"),
            "rule-2": stored_rule(id="rule-2", ruleType="bedtime", days=[2]),
        }

        assert [rule.id for rule in firestore_store.list_time_rules(CHILD)] == ["rule-2"]

    def test_invalid_app_limit_is_skipped(self, db: FakeFirestore, firestore_store: FirestorePolicyStore) -> None:
        db.data["appLimits"] = {
            f"{CHILD}_{GAME}": {"childId": CHILD, "packageName": GAME, "limitSeconds": 0},
        }

        assert firestore_store.list_app_limits(CHILD) == []
        assert PolicyCoordinator(firestore_store).decide(CHILD, GAME, at(2024, 1, 16, 10)).allowed


class TestOverrideTransactions:
    def test_grant_supersedes_and_creates_in_one_transaction(
        self, db: FakeFirestore, firestore_store: FirestorePolicyStore
    ) -> None:
        manager = OverrideManager(firestore_store)
        first_request = manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18))
        _, first = manager.grant(first_request.id, PARENT, 30, now=at(2024, 1, 16, 18))
        second_request = manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18, 5))

        _, second = manager.grant(second_request.id, PARENT, 60, now=at(2024, 1, 16, 18, 10))

        overrides = db.data["appAccessOverrides"]
        assert overrides[first.id]["status"] == "revoked"
        assert overrides[second.id]["status"] == "active"
        assert db.data["overrideRequests"][second_request.id]["status"] == "granted"
        assert f"{CHILD}_{GAME}" in db.data["overrideGuards"]

        writes = db.transactions[-1].writes
        assert ("set", first.id) in writes
        assert ("create", second.id) in writes
        assert ("set", f"{CHILD}_{GAME}") in writes

    def test_duplicate_pending_request(self, firestore_store: FirestorePolicyStore) -> None:
        manager = OverrideManager(firestore_store)
        manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18))

        with pytest.raises(DuplicateRequest):
            manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18, 1))


class TestUsageUpserts:
    def usage(self, seconds: int) -> DailyUsage:
        return DailyUsage(child_id=CHILD, package_name=GAME, usage_date=TUESDAY, total_seconds=seconds)

    def test_keeps_larger_total(self, firestore_store: FirestorePolicyStore) -> None:
        firestore_store.upsert_daily_usage([self.usage(120)])
        firestore_store.upsert_daily_usage([self.usage(60)])

        (row,) = firestore_store.list_daily_usage(CHILD, TUESDAY)
        assert row.total_seconds == 120

    def test_preserves_open_count(self, firestore_store: FirestorePolicyStore) -> None:
        firestore_store.increment_open_count(CHILD, GAME, TUESDAY)
        firestore_store.increment_open_count(CHILD, GAME, TUESDAY)

        firestore_store.upsert_daily_usage([self.usage(90)])

        (row,) = firestore_store.list_daily_usage(CHILD, TUESDAY)
        assert (row.total_seconds, row.open_count) == (90, 2)
