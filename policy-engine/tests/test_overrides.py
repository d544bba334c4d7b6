"""Tests for the override request lifecycle."""

import threading
from datetime import datetime, timedelta

import pytest

from conftest import CHILD, PARENT, at
from welltime_policy.errors import DuplicateRequest, InvalidState, NotFound, ValidationError
from welltime_policy.overrides import OverrideManager, minutes_until_end_of_day
from welltime_policy.store import InMemoryPolicyStore
from welltime_shared import OverrideStatus, RequestStatus

GAME = "com.roblox.client"


@pytest.fixture
def manager(store: InMemoryPolicyStore) -> OverrideManager:
    return OverrideManager(store)


def request_and_grant(manager: OverrideManager, minutes: int, now: datetime):
    request = manager.create_request(CHILD, GAME, "Roblox", now=now)
    return manager.grant(request.id, PARENT, minutes, now=now)


def active_rows(store: InMemoryPolicyStore):
    return store.list_overrides(child_id=CHILD, package_name=GAME, status=OverrideStatus.ACTIVE)


class TestCreateRequest:
    def test_starts_pending(self, manager: OverrideManager) -> None:
        request = manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18))

        assert request.status == RequestStatus.PENDING
        assert request.granted_by_parent_id is None
        assert [r.id for r in manager.list_pending(CHILD)] == [request.id]

    def test_duplicate_pending_rejected(self, manager: OverrideManager) -> None:
        first = manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18))

        with pytest.raises(DuplicateRequest):
            manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18, 5))
        assert [r.id for r in manager.list_pending(CHILD)] == [first.id]

    def test_new_request_allowed_once_answered(self, manager: OverrideManager) -> None:
        first = manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18))
        manager.deny(first.id, PARENT, now=at(2024, 1, 16, 18, 1))

        second = manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18, 2))
        assert second.id != first.id

    def test_blank_package_rejected(self, manager: OverrideManager) -> None:
        with pytest.raises(ValidationError):
            manager.create_request(CHILD, "  ", "Roblox")

    def test_naive_time_rejected(self, manager: OverrideManager) -> None:
        with pytest.raises(ValidationError):
            manager.create_request(CHILD, GAME, "Roblox", now=datetime(2024, 1, 16, 18))


class TestGrant:
    def test_grant_creates_active_override(self, manager: OverrideManager) -> None:
        now = at(2024, 1, 16, 18)
        request, override = request_and_grant(manager, 30, now)

        assert request.status == RequestStatus.GRANTED
        assert request.granted_by_parent_id == PARENT
        assert request.responded_at == now
        assert override.status == OverrideStatus.ACTIVE
        assert override.expires_at == now + timedelta(minutes=30)
        assert override.duration_minutes == 30
        assert manager.list_pending(CHILD) == []

    def test_second_grant_supersedes_first(self, manager: OverrideManager, store: InMemoryPolicyStore) -> None:
        _, first = request_and_grant(manager, 30, at(2024, 1, 16, 18))
        _, second = request_and_grant(manager, 60, at(2024, 1, 16, 18, 10))

        assert [o.id for o in active_rows(store)] == [second.id]
        assert store.get_override(first.id).status == OverrideStatus.REVOKED

    def test_granting_twice_is_invalid_state_without_side_effects(
        self, manager: OverrideManager, store: InMemoryPolicyStore
    ) -> None:
        request, override = request_and_grant(manager, 30, at(2024, 1, 16, 18))

        with pytest.raises(InvalidState):
            manager.grant(request.id, PARENT, 60, now=at(2024, 1, 16, 18, 5))

        assert [o.id for o in active_rows(store)] == [override.id]
        assert store.get_request(request.id).status == RequestStatus.GRANTED

    def test_deny_after_grant_is_invalid_state(self, manager: OverrideManager) -> None:
        request, _ = request_and_grant(manager, 30, at(2024, 1, 16, 18))

        with pytest.raises(InvalidState):
            manager.deny(request.id, PARENT)

    def test_unknown_request(self, manager: OverrideManager) -> None:
        with pytest.raises(NotFound):
            manager.grant("missing", PARENT, 30)
        with pytest.raises(NotFound):
            manager.deny("missing", PARENT)

    @pytest.mark.parametrize("minutes", [0, -5, True, 2.5])
    def test_invalid_duration(self, manager: OverrideManager, store: InMemoryPolicyStore, minutes) -> None:
        request = manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18))

        with pytest.raises(ValidationError):
            manager.grant(request.id, PARENT, minutes)

        assert store.get_request(request.id).status == RequestStatus.PENDING
        assert active_rows(store) == []

    def test_concurrent_grants_leave_one_active(self, manager: OverrideManager, store: InMemoryPolicyStore) -> None:
        granted = []
        errors = []

        def worker(offset: int) -> None:
            now = at(2024, 1, 16, 18, offset)
            try:
                request = manager.create_request(CHILD, GAME, "Roblox", now=now)
                granted.append(manager.grant(request.id, PARENT, 30, now=now)[1])
            except DuplicateRequest:
                pass
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert granted
        assert len(active_rows(store)) == 1


class TestDeny:
    def test_deny_records_parent_and_note(self, manager: OverrideManager, store: InMemoryPolicyStore) -> None:
        request = manager.create_request(CHILD, GAME, "Roblox", now=at(2024, 1, 16, 18))

        denied = manager.deny(request.id, PARENT, note="Homework first", now=at(2024, 1, 16, 18, 1))

        assert denied.status == RequestStatus.DENIED
        assert denied.granted_by_parent_id == PARENT
        assert denied.response_note == "Homework first"
        assert store.list_overrides(child_id=CHILD) == []


class TestRevoke:
    def test_revoke_ends_access(self, manager: OverrideManager) -> None:
        _, override = request_and_grant(manager, 30, at(2024, 1, 16, 18))

        revoked = manager.revoke(override.id, PARENT, now=at(2024, 1, 16, 18, 5))

        assert revoked.status == OverrideStatus.REVOKED
        assert not manager.is_currently_overridden(CHILD, GAME, at(2024, 1, 16, 18, 6))

    def test_revoke_by_other_parent_not_found(self, manager: OverrideManager) -> None:
        _, override = request_and_grant(manager, 30, at(2024, 1, 16, 18))

        with pytest.raises(NotFound):
            manager.revoke(override.id, "parent-2", now=at(2024, 1, 16, 18, 5))

    def test_revoke_twice_invalid_state(self, manager: OverrideManager) -> None:
        _, override = request_and_grant(manager, 30, at(2024, 1, 16, 18))
        manager.revoke(override.id, PARENT, now=at(2024, 1, 16, 18, 5))

        with pytest.raises(InvalidState):
            manager.revoke(override.id, PARENT, now=at(2024, 1, 16, 18, 6))

    def test_revoke_expired_invalid_state(self, manager: OverrideManager) -> None:
        _, override = request_and_grant(manager, 30, at(2024, 1, 16, 18))

        with pytest.raises(InvalidState):
            manager.revoke(override.id, PARENT, now=at(2024, 1, 16, 18, 30))

    def test_revoke_unknown(self, manager: OverrideManager) -> None:
        with pytest.raises(NotFound):
            manager.revoke("missing", PARENT)


class TestExpiry:
    def test_lazy_expiry_boundary(self, manager: OverrideManager) -> None:
        request_and_grant(manager, 30, at(2024, 1, 16, 18))

        assert manager.is_currently_overridden(CHILD, GAME, at(2024, 1, 16, 18, 29, 59))
        assert not manager.is_currently_overridden(CHILD, GAME, at(2024, 1, 16, 18, 30))
        assert manager.active_overrides(CHILD, at(2024, 1, 16, 18, 30)) == []

    def test_sweep_marks_stale_rows(self, manager: OverrideManager, store: InMemoryPolicyStore) -> None:
        _, override = request_and_grant(manager, 30, at(2024, 1, 16, 18))

        assert manager.sweep_expired(now=at(2024, 1, 16, 18, 10)) == 0
        assert manager.sweep_expired(now=at(2024, 1, 16, 18, 45), child_id=CHILD) == 1
        assert store.get_override(override.id).status == OverrideStatus.EXPIRED
        assert manager.sweep_expired(now=at(2024, 1, 16, 19)) == 0

    def test_active_overrides_sorted_by_expiry(self, manager: OverrideManager) -> None:
        now = at(2024, 1, 16, 18)
        long_request = manager.create_request(CHILD, "com.reader", "Reader", now=now)
        manager.grant(long_request.id, PARENT, 90, now=now)
        request_and_grant(manager, 15, now)

        packages = [o.package_name for o in manager.active_overrides(CHILD, at(2024, 1, 16, 18, 5))]
        assert packages == [GAME, "com.reader"]


class TestMinutesUntilEndOfDay:
    def test_evening(self) -> None:
        assert minutes_until_end_of_day(at(2024, 1, 16, 22, 10)) == 110

    def test_rounds_partial_minute_up(self) -> None:
        assert minutes_until_end_of_day(at(2024, 1, 16, 23, 58, 30)) == 2

    def test_at_least_one_minute(self) -> None:
        assert minutes_until_end_of_day(at(2024, 1, 16, 23, 59, 59)) == 1
