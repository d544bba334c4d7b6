"""Configuration for the policy engine service."""

from datetime import datetime, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


class Config(BaseModel):
    """Local configuration for one child's device."""

    child_id: str
    device_id: str
    firebase_credentials_path: Path
    timezone: str = "UTC"
    sync_interval_seconds: int = Field(default=60, gt=0)
    sync_days: int = Field(default=1, ge=1)
    request_timeout_seconds: float = Field(default=5.0, gt=0)
    cache_dir: Path = Path.home() / ".welltime" / "cache"
    usage_export_path: Path | None = None

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)

    def now(self) -> datetime:
        """Current local wall-clock time for the child's device."""
        return datetime.now(self.tz)


def load_config(path: Path) -> Config:
    """Load configuration from a JSON file."""
    return Config.model_validate_json(path.read_text())
