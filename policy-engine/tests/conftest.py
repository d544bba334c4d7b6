from datetime import UTC, datetime

import pytest

from welltime_policy.store import InMemoryPolicyStore

CHILD = "child-1"
PARENT = "parent-1"


def at(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    """Timezone-aware local time used throughout the tests."""
    return datetime(year, month, day, hour, minute, second, tzinfo=UTC)


@pytest.fixture
def store() -> InMemoryPolicyStore:
    return InMemoryPolicyStore()
