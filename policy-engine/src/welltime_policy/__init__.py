from .aggregator import IngestResult, UsageAggregator, dedupe_samples
from .coordinator import AccessDecision, DecisionReason, PolicyCoordinator
from .errors import (
    DuplicateRequest,
    IngestionFailed,
    InvalidState,
    NotFound,
    PolicyError,
    ValidationError,
)
from .overrides import OverrideManager, minutes_until_end_of_day
from .rules import ConstraintType, evaluate
from .store import InMemoryPolicyStore, PolicyStore
from .sync import DeviceUsageSync, SyncSummary

__all__ = [
    "AccessDecision",
    "ConstraintType",
    "DecisionReason",
    "DeviceUsageSync",
    "DuplicateRequest",
    "IngestResult",
    "IngestionFailed",
    "InMemoryPolicyStore",
    "InvalidState",
    "NotFound",
    "OverrideManager",
    "PolicyCoordinator",
    "PolicyError",
    "PolicyStore",
    "SyncSummary",
    "UsageAggregator",
    "ValidationError",
    "dedupe_samples",
    "evaluate",
    "minutes_until_end_of_day",
]
