"""Data models for the on-disk element mapping file."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MAPPING_FILE_VERSION = "1.0.0"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ElementMapping(BaseModel):
    """Durable record for one tagged element, keyed by identifier."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    file_path: str = Field(alias="filePath", min_length=1)
    element: str = Field(min_length=1)
    element_type: Literal["dom", "component", "fragment"] = Field(alias="elementType")
    line: int = Field(ge=0)
    column: int = Field(ge=0)
    start: int = Field(default=0, ge=0)
    end: int = Field(default=0, ge=0)
    hash: str = ""
    attributes: dict[str, str | None] = Field(default_factory=dict)
    content: str | None = None
    created: str = Field(default_factory=utc_now_iso)
    updated: str = Field(default_factory=utc_now_iso)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MappingStats(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    total_elements: int = Field(default=0, alias="totalElements")
    total_files: int = Field(default=0, alias="totalFiles")
    last_processed: str | None = Field(default=None, alias="lastProcessed")
    element_types: dict[str, int] = Field(
        default_factory=lambda: {"dom": 0, "component": 0, "fragment": 0},
        alias="elementTypes",
    )
    file_types: dict[str, int] = Field(default_factory=dict, alias="fileTypes")


class MappingFile(BaseModel):
    """Complete mapping document persisted next to the project."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    version: str = MAPPING_FILE_VERSION
    generated: str = Field(default_factory=utc_now_iso)
    config: dict[str, Any] = Field(default_factory=dict)
    files: dict[str, list[ElementMapping]] = Field(default_factory=dict)
    stats: MappingStats = Field(default_factory=MappingStats)

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generated": self.generated,
            "config": self.config,
            "files": {
                path: [mapping.to_json() for mapping in self.files[path]]
                for path in sorted(self.files)
            },
            "stats": self.stats.model_dump(mode="json", by_alias=True),
        }


class StoreResult(BaseModel):
    """Outcome of a store mutation."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    affected: int = 0
    message: str | None = None
    conflicts: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ValidationReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    valid_mappings: int = 0
    invalid_mappings: int = 0


class DateRange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: datetime | None = None
    end: datetime | None = None


SortField = Literal[
    "id", "file_path", "element", "element_type", "line", "column", "created", "updated"
]


class MappingQuery(BaseModel):
    """Filter for the in-memory mapping query engine.

    String patterns are plain values; pass a compiled `re.Pattern` to match by
    regular expression instead.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    file_path: str | re.Pattern[str] | None = None
    element_type: Literal["dom", "component", "fragment"] | None = None
    tag_name: str | re.Pattern[str] | None = None
    element_id: str | re.Pattern[str] | None = None
    attributes: dict[str, str | re.Pattern[str]] = Field(default_factory=dict)
    content: str | re.Pattern[str] | None = None
    date_range: DateRange | None = None
    sort_by: SortField | None = None
    descending: bool = False
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=0)
