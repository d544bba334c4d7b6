"""Device usage sources.

The OS bridge that reads foreground time lives outside this package. It hands
samples over either directly (anything implementing ``UsageSource``) or as a
JSON export file read by ``JsonUsageSource``.
"""

import logging
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from welltime_shared import InstalledApp, UsageAccessStatus, UsageSample

logger = logging.getLogger(__name__)


class UsageSource(Protocol):
    def access_status(self) -> UsageAccessStatus:
        """Whether usage stats can be read. Not the same as "no usage"."""
        ...

    def fetch_usage_samples(self, start_ms: int, end_ms: int) -> list[UsageSample]: ...

    def fetch_installed_app_catalog(self) -> list[InstalledApp] | None:
        """Installed apps, or None when the device cannot list them."""
        ...


class UsageExport(BaseModel):
    """JSON file written by the device bridge."""

    access_status: UsageAccessStatus = UsageAccessStatus.GRANTED
    samples: list[UsageSample] = []
    apps: list[InstalledApp] | None = None


class JsonUsageSource:
    """Reads samples from a device export file."""

    def __init__(self, path: Path):
        self._path = path

    def _load(self) -> UsageExport | None:
        if not self._path.exists():
            return None
        return UsageExport.model_validate_json(self._path.read_text())

    def access_status(self) -> UsageAccessStatus:
        export = self._load()
        if export is None:
            logger.debug("Usage export %s not found", self._path)
            return UsageAccessStatus.UNAVAILABLE
        return export.access_status

    def fetch_usage_samples(self, start_ms: int, end_ms: int) -> list[UsageSample]:
        export = self._load()
        if export is None:
            return []
        return [
            sample
            for sample in export.samples
            if start_ms <= sample.window_start_ms and sample.window_end_ms <= end_ms
        ]

    def fetch_installed_app_catalog(self) -> list[InstalledApp] | None:
        export = self._load()
        return export.apps if export is not None else None
