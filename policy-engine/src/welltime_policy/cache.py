"""Local cache of policy snapshots for offline decisions."""

import logging
from datetime import date, datetime
from pathlib import Path

from pydantic import BaseModel

from welltime_shared import AppAccessOverride, AppLimit, DailyLimitSettings, TimeRule
from welltime_shared.firestore import document_id

logger = logging.getLogger(__name__)


class PolicySnapshot(BaseModel):
    """Everything needed to decide access for one child on one local date."""

    child_id: str
    usage_date: date
    time_rules: list[TimeRule] = []
    daily_limit: DailyLimitSettings | None = None
    app_limits: list[AppLimit] = []
    usage_today: dict[str, int] = {}
    overrides: list[AppAccessOverride] = []
    loaded_at: datetime


class LocalCache:
    """Keeps the last loaded snapshot per child on disk."""

    def __init__(self, cache_dir: Path):
        self._cache_dir = cache_dir
        self._cache_dir.mkdir(parents=True, exist_ok=True)

    def _snapshot_path(self, child_id: str) -> Path:
        return self._cache_dir / f"snapshot_{document_id(child_id)}.json"

    def save_snapshot(self, snapshot: PolicySnapshot) -> None:
        self._snapshot_path(snapshot.child_id).write_text(snapshot.model_dump_json(indent=2))
        logger.debug(
            "Cached policy snapshot for child %s (%d rules, %d app limits)",
            snapshot.child_id,
            len(snapshot.time_rules),
            len(snapshot.app_limits),
        )

    def load_snapshot(self, child_id: str) -> PolicySnapshot | None:
        """Load the cached snapshot. Returns None if no readable cache exists."""
        path = self._snapshot_path(child_id)
        if not path.exists():
            return None
        try:
            return PolicySnapshot.model_validate_json(path.read_text())
        except Exception:
            logger.exception("Failed to load policy snapshot cache")
            return None
