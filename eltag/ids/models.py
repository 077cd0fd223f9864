"""Data models for stable identifier generation."""

from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass, field

from eltag.detect.models import DetectedElement
from eltag.store.models import ElementMapping


@dataclass(frozen=True)
class IDComponents:
    """Parts an identifier was assembled from."""

    filename: str
    element: str
    hash: str
    position: str | None = None
    index: str | None = None


@dataclass(frozen=True)
class GeneratedID:
    identifier: str
    hash: str
    components: IDComponents
    reused: bool = False
    fallback: bool = False


@dataclass(frozen=True)
class GenerationContext:
    """Input for one identifier request.

    `existing_mappings` are the mappings already on file for `file_path`;
    `taken_ids` are identifiers that a freshly minted one must not collide with.
    """

    file_path: str
    element: DetectedElement
    existing_mappings: Sequence[ElementMapping] = ()
    index: int | None = None
    taken_ids: Collection[str] = field(default_factory=frozenset)
