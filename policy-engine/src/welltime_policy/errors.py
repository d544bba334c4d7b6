"""Error types raised by the policy engine."""


class PolicyError(Exception):
    """Base class for all policy engine failures."""


class ValidationError(PolicyError):
    """Input was rejected before any state change. Safe to retry once corrected."""


class NotFound(PolicyError):
    """The request or override does not exist (or belongs to someone else)."""


class InvalidState(PolicyError):
    """The request or override is not in the state the operation requires."""


class DuplicateRequest(PolicyError):
    """A pending request already exists for this child and package."""


class IngestionFailed(PolicyError):
    """Usage could not be persisted. The whole window is safe to retry."""
