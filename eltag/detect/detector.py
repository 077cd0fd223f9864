"""Classify markup nodes of a parsed source tree and extract their attributes."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import replace

from eltag.detect.models import (
    ELEMENT_KINDS,
    DetectedElement,
    DetectionResult,
    ElementAttribute,
    ElementKind,
    InclusionPolicy,
)
from eltag.tree.nodes import (
    MarkupAttribute,
    MarkupElement,
    MarkupFragment,
    MarkupText,
    Node,
    attribute_value_text,
)
from eltag.tree.traversal import TraversalOptions, Visit, walk
from eltag.utils.errors import DetectionError

LOGGER = logging.getLogger("eltag.detect")

FRAGMENT_NAMES = frozenset({"Fragment", "React.Fragment"})
FRAGMENT_TAG = "Fragment"
DEFAULT_IDENTIFIER_ATTRIBUTE = "data-el-id"

_WHITESPACE_RE = re.compile(r"\s+")


def classify_tag(tag_name: str) -> ElementKind:
    if tag_name in FRAGMENT_NAMES:
        return "fragment"
    if tag_name[:1].islower():
        return "dom"
    return "component"


class ElementDetector:
    """Walk a tree and emit the elements allowed by the inclusion policy."""

    def __init__(
        self,
        policy: InclusionPolicy | None = None,
        *,
        attribute_name: str = DEFAULT_IDENTIFIER_ATTRIBUTE,
        traversal: TraversalOptions | None = None,
    ) -> None:
        self.policy = policy or InclusionPolicy()
        self.attribute_name = attribute_name
        self.traversal = traversal

    def detect(self, tree: Node, file_path: str) -> DetectionResult:
        """Detect elements; on internal failure return an empty result."""

        try:
            return self._detect(tree, file_path)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Element detection failed for %s: %s", file_path, exc)
            return DetectionResult(error=str(exc))

    def _detect(self, tree: Node, file_path: str) -> DetectionResult:
        result = DetectionResult()
        if self.policy.text:
            result.counts_by_kind["text"] = 0

        def _visit(visit: Visit) -> None:
            node = visit.node
            if isinstance(node, MarkupText):
                if self.policy.text and node.text.strip():
                    result.counts_by_kind["text"] += 1
                return
            if isinstance(node, MarkupElement):
                detected = self._from_element(node, visit.path, file_path)
            elif isinstance(node, MarkupFragment):
                detected = self._from_fragment(node, visit.path, file_path)
            else:
                return
            if not self.policy.includes(detected.kind):
                return
            result.elements.append(detected)
            result.counts_by_kind[detected.kind] += 1

        walk(tree, _visit, self.traversal)
        LOGGER.debug(
            "Detected %s elements in %s: %s",
            result.total,
            file_path,
            result.counts_by_kind,
        )
        return result

    def _from_element(
        self, node: MarkupElement, path: tuple[int, ...], file_path: str
    ) -> DetectedElement:
        if not node.name:
            raise DetectionError(f"element without tag name at {node.position.line}:{node.position.column}")
        attributes: list[ElementAttribute] = []
        identifier_value: str | None = None
        has_identifier = False
        for attribute in node.attributes:
            if not isinstance(attribute, MarkupAttribute):
                continue
            value = attribute_value_text(attribute)
            is_identifier = attribute.name == self.attribute_name
            if is_identifier:
                has_identifier = True
                identifier_value = value
            attributes.append(
                ElementAttribute(name=attribute.name, value=value, is_identifier=is_identifier)
            )
        return DetectedElement(
            file_path=file_path,
            kind=classify_tag(node.name),
            tag_name=node.name,
            attributes=tuple(attributes),
            position=node.position,
            has_identifier=has_identifier,
            identifier_value=identifier_value,
            node_path=path,
            text_content=_direct_text(node.children),
        )

    def _from_fragment(
        self, node: MarkupFragment, path: tuple[int, ...], file_path: str
    ) -> DetectedElement:
        return DetectedElement(
            file_path=file_path,
            kind="fragment",
            tag_name=FRAGMENT_TAG,
            attributes=(),
            position=node.position,
            node_path=path,
            text_content=_direct_text(node.children),
        )

    def should_tag(self, element: DetectedElement) -> bool:
        if element.has_identifier:
            return False
        return self.policy.includes(element.kind)

    def with_options(self, **overrides: bool) -> ElementDetector:
        return ElementDetector(
            replace(self.policy, **overrides),
            attribute_name=self.attribute_name,
            traversal=self.traversal,
        )


def filter_by_kind(elements: Iterable[DetectedElement], kind: str) -> list[DetectedElement]:
    return [element for element in elements if element.kind == kind]


def find_untagged(elements: Iterable[DetectedElement]) -> list[DetectedElement]:
    return [element for element in elements if not element.has_identifier]


def find_by_tag_name(elements: Iterable[DetectedElement], tag_name: str) -> list[DetectedElement]:
    return [element for element in elements if element.tag_name == tag_name]


def detection_statistics(result: DetectionResult) -> dict[str, int]:
    total = result.total
    untagged = len(find_untagged(result.elements))
    tagged = total - untagged
    stats = {
        "total": total,
        "tagged": tagged,
        "untagged": untagged,
        "tagged_percentage": round(tagged / total * 100) if total else 0,
    }
    for kind in ELEMENT_KINDS:
        stats[kind] = result.counts_by_kind.get(kind, 0)
    return stats


def _direct_text(children: list[Node]) -> str | None:
    pieces = [child.text for child in children if isinstance(child, MarkupText)]
    text = _WHITESPACE_RE.sub(" ", " ".join(pieces)).strip()
    return text or None
