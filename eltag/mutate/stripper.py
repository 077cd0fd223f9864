"""Remove identifier (and other tooling) attributes from a tree."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Collection
from typing import Union

from eltag.mutate.models import Change, MutationResult, StripStats
from eltag.tree.nodes import MarkupAttribute, MarkupElement, Node, attribute_value_text
from eltag.tree.traversal import iter_markup_elements
from eltag.utils.errors import MutationFailure

LOGGER = logging.getLogger("eltag.mutate")

DATA_ATTRIBUTE_PREFIX = "data-"
PRODUCTION_ATTRIBUTES: tuple[str, ...] = (
    "data-el-id",
    "data-testid",
    "data-test",
    "data-cy",
    "data-test-id",
    "data-automation",
    "data-qa",
    "data-debug",
)

AttributeTarget = Union[Collection[str], Callable[[str], bool], None]


class AttributeStripper:
    """Strip attributes selected by name, by name prefix, or by predicate."""

    def __init__(
        self,
        attributes: Collection[str] = ("data-el-id",),
        *,
        prefix: str | None = None,
        identifier_attribute: str = "data-el-id",
    ) -> None:
        self.attributes = frozenset(attributes)
        self.prefix = prefix
        self.identifier_attribute = identifier_attribute
        self.stats = StripStats()
        self._stats_lock = threading.Lock()

    def strip(self, tree: Node, target: AttributeTarget = None) -> MutationResult:
        matcher = self._matcher(target)
        result = MutationResult()
        for element in list(iter_markup_elements(tree)):
            self._strip_element(element, matcher, result)

        with self._stats_lock:
            self.stats.trees_processed += 1
            if result.modified:
                self.stats.trees_modified += 1
            self.stats.attributes_removed += len(result.changes)
            self.stats.by_attribute.update(change.attribute for change in result.changes)
        LOGGER.debug("Stripped %s attributes", len(result.changes))
        return result

    def strip_prefix(self, tree: Node, prefix: str) -> MutationResult:
        return self.strip(tree, lambda name: name.startswith(prefix))

    def strip_all_data_attributes(self, tree: Node) -> MutationResult:
        return self.strip_prefix(tree, DATA_ATTRIBUTE_PREFIX)

    def clean_for_production(self, tree: Node) -> MutationResult:
        return self.strip(tree, PRODUCTION_ATTRIBUTES)

    def preview(self, tree: Node, target: AttributeTarget = None) -> list[Change]:
        """Changes `strip` would make, without touching the tree."""

        matcher = self._matcher(target)
        return [
            self._change(element, attribute)
            for element in iter_markup_elements(tree)
            for attribute in element.attributes
            if isinstance(attribute, MarkupAttribute) and matcher(attribute.name)
        ]

    def count_strippable(self, tree: Node, target: AttributeTarget = None) -> int:
        return len(self.preview(tree, target))

    def reset_stats(self) -> None:
        with self._stats_lock:
            self.stats = StripStats()

    def _strip_element(
        self,
        element: MarkupElement,
        matcher: Callable[[str], bool],
        result: MutationResult,
    ) -> None:
        kept: list = []
        for attribute in element.attributes:
            if not isinstance(attribute, MarkupAttribute):
                kept.append(attribute)
                continue
            try:
                matched = matcher(attribute.name)
            except Exception as exc:  # noqa: BLE001
                result.failures.append(
                    MutationFailure(
                        reason=f"matcher_failed: {exc}",
                        tag_name=element.name,
                        position=element.position,
                    )
                )
                kept.append(attribute)
                continue
            if matched:
                result.changes.append(self._change(element, attribute))
            else:
                kept.append(attribute)
        if len(kept) != len(element.attributes):
            element.attributes = kept

    def _change(self, element: MarkupElement, attribute: MarkupAttribute) -> Change:
        old_value = attribute_value_text(attribute)
        return Change(
            type="remove",
            attribute=attribute.name,
            tag_name=element.name,
            identifier=old_value if attribute.name == self.identifier_attribute else None,
            old_value=old_value,
            line=element.position.line,
            column=element.position.column,
        )

    def _matcher(self, target: AttributeTarget) -> Callable[[str], bool]:
        if callable(target):
            return target
        if target is not None:
            names = frozenset(target)
            return lambda name: name in names
        names = self.attributes
        prefix = self.prefix
        if prefix:
            return lambda name: name in names or name.startswith(prefix)
        return lambda name: name in names
