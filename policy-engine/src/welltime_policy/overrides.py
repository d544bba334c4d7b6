"""Override request lifecycle and the temporary access grants it produces.

Requests move PENDING -> GRANTED | DENIED. Grants move ACTIVE -> EXPIRED | REVOKED.
The transition functions below are pure; the store applies their result in a
single transaction, so a concurrent reader never sees two active grants for
the same app.

Expiry is lazy: a grant whose ``expires_at`` has passed is inactive for every
reader, whether or not ``sweep_expired`` has flipped its stored status.
"""

import logging
import math
import uuid
from datetime import UTC, datetime, timedelta
from functools import partial

from welltime_shared import AppAccessOverride, OverrideRequest, OverrideStatus, RequestStatus

from .errors import InvalidState, NotFound, ValidationError
from .rules import require_aware
from .store import PolicyStore, RequestOutcome

logger = logging.getLogger(__name__)


def minutes_until_end_of_day(now: datetime) -> int:
    """Whole minutes from ``now`` until the next local midnight, at least 1."""
    midnight = datetime.combine(now.date() + timedelta(days=1), datetime.min.time(), tzinfo=now.tzinfo)
    return max(1, math.ceil((midnight - now).total_seconds() / 60))


def apply_grant(
    request: OverrideRequest,
    active: list[AppAccessOverride],
    *,
    override_id: str,
    parent_user_id: str,
    duration_minutes: int,
    note: str | None,
    now: datetime,
) -> RequestOutcome:
    """Grant a pending request, revoking any grant it supersedes."""
    _require_pending(request)
    granted = request.model_copy(
        update={
            "status": RequestStatus.GRANTED,
            "granted_by_parent_id": parent_user_id,
            "responded_at": now,
            "response_note": note,
        }
    )
    superseded = [o.model_copy(update={"status": OverrideStatus.REVOKED}) for o in active]
    created = AppAccessOverride(
        id=override_id,
        child_id=request.child_id,
        package_name=request.package_name,
        granted_by_parent_id=parent_user_id,
        granted_at=now,
        expires_at=now + timedelta(minutes=duration_minutes),
        duration_minutes=duration_minutes,
        status=OverrideStatus.ACTIVE,
        reason=note,
    )
    return RequestOutcome(request=granted, superseded=superseded, created=created)


def apply_deny(
    request: OverrideRequest,
    active: list[AppAccessOverride],
    *,
    parent_user_id: str,
    note: str | None,
    now: datetime,
) -> RequestOutcome:
    _require_pending(request)
    denied = request.model_copy(
        update={
            "status": RequestStatus.DENIED,
            "granted_by_parent_id": parent_user_id,
            "responded_at": now,
            "response_note": note,
        }
    )
    return RequestOutcome(request=denied)


def apply_revoke(
    override: AppAccessOverride, *, parent_user_id: str, now: datetime
) -> AppAccessOverride:
    if override.granted_by_parent_id != parent_user_id:
        raise NotFound(f"Override {override.id} not found or access denied")
    if override.status != OverrideStatus.ACTIVE:
        raise InvalidState(f"Override {override.id} is {override.status}, not active")
    if now >= override.expires_at:
        raise InvalidState(f"Override {override.id} has already expired")
    return override.model_copy(update={"status": OverrideStatus.REVOKED})


def apply_expiry(override: AppAccessOverride, *, now: datetime) -> AppAccessOverride | None:
    """Mark a stale active grant as expired. None leaves the row unchanged."""
    if override.status == OverrideStatus.ACTIVE and now >= override.expires_at:
        return override.model_copy(update={"status": OverrideStatus.EXPIRED})
    return None


def _require_pending(request: OverrideRequest) -> None:
    if request.status == RequestStatus.PENDING:
        return
    if request.status in (RequestStatus.GRANTED, RequestStatus.DENIED):
        raise InvalidState(f"Override request {request.id} was already {request.status}")
    raise InvalidState(f"Override request {request.id} has unknown status {request.status!r}")


def _now(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(UTC)
    return require_aware(now)


def _require_text(name: str, value: str | None) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


class OverrideManager:
    """Handles override requests from the child and decisions from the parent."""

    def __init__(self, store: PolicyStore):
        self._store = store

    def create_request(
        self,
        child_id: str,
        package_name: str,
        app_name: str,
        now: datetime | None = None,
    ) -> OverrideRequest:
        """Create a pending request.

        Raises DuplicateRequest if one is already pending for this app; the
        existing request keeps its place in the parent's queue.
        """
        request = OverrideRequest(
            id=uuid.uuid4().hex,
            child_id=_require_text("child_id", child_id),
            package_name=_require_text("package_name", package_name),
            app_name=_require_text("app_name", app_name),
            requested_at=_now(now),
        )
        created = self._store.create_request(request)
        logger.info("Created override request %s for %s (child %s)", created.id, package_name, child_id)
        return created

    def grant(
        self,
        request_id: str,
        parent_user_id: str,
        duration_minutes: int,
        note: str | None = None,
        now: datetime | None = None,
    ) -> tuple[OverrideRequest, AppAccessOverride]:
        """Grant a pending request and activate a new access override."""
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise ValidationError("duration_minutes must be a positive integer")
        parent_user_id = _require_text("parent_user_id", parent_user_id)
        now = _now(now)

        outcome = self._store.transact_request(
            request_id,
            partial(
                apply_grant,
                override_id=uuid.uuid4().hex,
                parent_user_id=parent_user_id,
                duration_minutes=duration_minutes,
                note=note,
                now=now,
            ),
        )
        created = outcome.created
        if created is None:
            raise InvalidState(f"Granting request {request_id} produced no override")
        for old in outcome.superseded:
            logger.info("Override %s superseded by new grant for %s", old.id, old.package_name)
        logger.info(
            "Granted request %s: %s unlocked for %d minutes (until %s)",
            request_id,
            outcome.request.package_name,
            duration_minutes,
            created.expires_at.isoformat(),
        )
        return outcome.request, created

    def deny(
        self,
        request_id: str,
        parent_user_id: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> OverrideRequest:
        parent_user_id = _require_text("parent_user_id", parent_user_id)
        outcome = self._store.transact_request(
            request_id,
            partial(apply_deny, parent_user_id=parent_user_id, note=note, now=_now(now)),
        )
        logger.info("Denied request %s for %s", request_id, outcome.request.package_name)
        return outcome.request

    def revoke(
        self,
        override_id: str,
        parent_user_id: str,
        now: datetime | None = None,
    ) -> AppAccessOverride:
        """Revoke an active grant; access is denied on the next decision."""
        parent_user_id = _require_text("parent_user_id", parent_user_id)
        revoked = self._store.transact_override(
            override_id,
            partial(apply_revoke, parent_user_id=parent_user_id, now=_now(now)),
        )
        logger.info("Revoked override %s for %s", override_id, revoked.package_name)
        return revoked

    def active_overrides(self, child_id: str, now: datetime) -> list[AppAccessOverride]:
        """Overrides currently in effect for a child, soonest expiry first."""
        overrides = self._store.list_overrides(child_id=child_id, status=OverrideStatus.ACTIVE)
        live = [o for o in overrides if o.is_in_effect(now)]
        if len(live) != len(overrides):
            logger.debug("Ignoring %d stale active overrides for child %s", len(overrides) - len(live), child_id)
        return sorted(live, key=lambda o: o.expires_at)

    def active_override(
        self, child_id: str, package_name: str, now: datetime
    ) -> AppAccessOverride | None:
        overrides = self._store.list_overrides(
            child_id=child_id, package_name=package_name, status=OverrideStatus.ACTIVE
        )
        return next((o for o in overrides if o.is_in_effect(now)), None)

    def is_currently_overridden(self, child_id: str, package_name: str, now: datetime) -> bool:
        return self.active_override(child_id, package_name, now) is not None

    def list_pending(self, child_id: str) -> list[OverrideRequest]:
        return self._store.list_requests(child_id, status=RequestStatus.PENDING)

    def sweep_expired(self, now: datetime | None = None, child_id: str | None = None) -> int:
        """Flip stale active grants to EXPIRED. Bookkeeping only.

        Returns the number of overrides updated.
        """
        now = _now(now)
        count = 0
        for override in self._store.list_overrides(child_id=child_id, status=OverrideStatus.ACTIVE):
            if now < override.expires_at:
                continue
            updated = self._store.transact_override(override.id, partial(apply_expiry, now=now))
            if updated.status == OverrideStatus.EXPIRED:
                count += 1
        if count:
            logger.info("Expired %d overrides", count)
        return count
