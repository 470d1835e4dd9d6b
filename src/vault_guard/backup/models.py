"""Backup models for Vault Guard."""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class BackupRecord(BaseModel):
    """A single safety copy of a resource's prior content."""

    model_config = ConfigDict(frozen=True)

    resource_key: str = Field(..., description="Normalized resource key")
    timestamp: datetime = Field(..., description="Snapshot time, seconds resolution")
    path: Path = Field(..., description="Backup file location")

    @property
    def filename(self) -> str:
        return self.path.name

    def read_content(self) -> str:
        """Return the verbatim prior payload."""
        with self.path.open(encoding="utf-8", newline="") as handle:
            return handle.read()
