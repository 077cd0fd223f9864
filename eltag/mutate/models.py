"""Data models for tree mutations and their change log."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict

from eltag.detect.models import DetectedElement
from eltag.ids.models import GeneratedID
from eltag.utils.errors import MutationFailure


class Change(BaseModel):
    """One attribute edit applied to the tree."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["add", "update", "remove"]
    attribute: str
    tag_name: str
    identifier: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    line: int
    column: int


@dataclass
class MutationResult:
    changes: list[Change] = field(default_factory=list)
    failures: list[MutationFailure] = field(default_factory=list)

    @property
    def modified(self) -> bool:
        return bool(self.changes)


@dataclass(frozen=True)
class InjectionContext:
    element: DetectedElement
    generated: GeneratedID
    should_inject: bool = True


@dataclass
class StripStats:
    """Totals accumulated by one stripper across calls."""

    trees_processed: int = 0
    trees_modified: int = 0
    attributes_removed: int = 0
    by_attribute: Counter[str] = field(default_factory=Counter)
