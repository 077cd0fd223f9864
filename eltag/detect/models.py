"""Data models for element detection."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from eltag.tree.nodes import Position

ElementKind = Literal["dom", "component", "fragment"]
ELEMENT_KINDS: tuple[str, ...] = ("dom", "component", "fragment")


@dataclass(frozen=True)
class ElementAttribute:
    name: str
    value: str | None
    is_identifier: bool = False


@dataclass(frozen=True)
class DetectedElement:
    """One markup node found during a scan of a single file."""

    file_path: str
    kind: ElementKind
    tag_name: str
    attributes: tuple[ElementAttribute, ...]
    position: Position
    has_identifier: bool = False
    identifier_value: str | None = None
    node_path: tuple[int, ...] = ()
    text_content: str | None = None

    def attribute_map(self) -> dict[str, str | None]:
        """Non-identifier attributes by name, last occurrence wins."""

        return {attr.name: attr.value for attr in self.attributes if not attr.is_identifier}


@dataclass(frozen=True)
class InclusionPolicy:
    """Which element kinds are emitted by the detector."""

    dom: bool = True
    component: bool = False
    fragment: bool = False
    text: bool = False

    def includes(self, kind: str) -> bool:
        return bool(getattr(self, kind, False))


@dataclass
class DetectionResult:
    elements: list[DetectedElement] = field(default_factory=list)
    counts_by_kind: dict[str, int] = field(
        default_factory=lambda: {"dom": 0, "component": 0, "fragment": 0}
    )
    error: str | None = None

    @property
    def total(self) -> int:
        return len(self.elements)
