"""Result models for file and project pipeline runs."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from eltag.mutate.models import Change

ProcessMode = Literal["tag", "retag", "strip"]
PROCESS_MODES: tuple[str, ...] = ("tag", "retag", "strip")
FileStatus = Literal["tagged", "stripped", "unchanged", "failed", "skipped"]


class FileResult(BaseModel):
    """Outcome of one file run."""

    model_config = ConfigDict(extra="forbid")

    file_path: str
    mode: ProcessMode
    status: FileStatus
    elements_detected: int = 0
    changes: list[Change] = Field(default_factory=list)
    identifiers: list[str] = Field(default_factory=list)
    mappings: int = 0
    output_path: str | None = None
    error_code: str | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status not in ("failed",)

    @property
    def modified(self) -> bool:
        return bool(self.changes)


class FileError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    file_path: str
    code: str
    message: str


class ProjectStats(BaseModel):
    model_config = ConfigDict(extra="forbid")

    files_total: int = 0
    files_processed: int = 0
    files_modified: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    elements_detected: int = 0
    changes_total: int = 0
    mappings_written: int = 0
    duration_ms: int = 0


class ProjectResult(BaseModel):
    """Aggregated outcome of a project run."""

    model_config = ConfigDict(extra="forbid")

    root: str
    mode: ProcessMode
    files: list[FileResult] = Field(default_factory=list)
    stats: ProjectStats = Field(default_factory=ProjectStats)
    errors: list[FileError] = Field(default_factory=list)
    cancelled: bool = False
    store_saved: bool = False

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled
