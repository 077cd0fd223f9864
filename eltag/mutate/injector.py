"""Add or update the identifier attribute on detected elements."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable

from eltag.ids.generator import validate_id
from eltag.mutate.models import Change, InjectionContext, MutationResult
from eltag.tree.nodes import (
    MarkupAttribute,
    MarkupElement,
    MarkupFragment,
    Node,
    StringValue,
    attribute_value_text,
)
from eltag.tree.traversal import iter_markup_elements, resolve_path
from eltag.utils.errors import MutationFailure

LOGGER = logging.getLogger("eltag.mutate")


class IdentifierInjector:
    def __init__(self, attribute_name: str = "data-el-id", *, preserve_existing: bool = True) -> None:
        self.attribute_name = attribute_name
        self.preserve_existing = preserve_existing

    def inject(self, tree: Node, contexts: Iterable[InjectionContext]) -> MutationResult:
        """Apply identifiers in place and return the change log.

        Node paths are resolved before any edit because inserting an attribute
        shifts the child indices of its element.
        """

        result = MutationResult()
        targets = [
            (context, resolve_path(tree, context.element.node_path))
            for context in contexts
            if context.should_inject
        ]
        for context, node in targets:
            failure = self._inject_one(context, node, result)
            if failure is not None:
                LOGGER.warning(
                    "Skipped <%s> at %s:%s: %s",
                    failure.tag_name,
                    context.element.file_path,
                    context.element.position.line,
                    failure.reason,
                )
                result.failures.append(failure)
        return result

    def _inject_one(
        self, context: InjectionContext, node: Node | None, result: MutationResult
    ) -> MutationFailure | None:
        element = context.element
        identifier = context.generated.identifier

        if isinstance(node, MarkupFragment):
            return _failure("fragment_cannot_carry_attributes", context)
        if not isinstance(node, MarkupElement) or node.name != element.tag_name:
            return _failure("element_not_found", context)
        if not validate_id(identifier):
            return _failure("invalid_identifier", context)

        existing = self.find_attribute(node)
        if existing is not None:
            if self.preserve_existing:
                return None
            old_value = attribute_value_text(existing)
            if isinstance(existing.value, StringValue) and old_value == identifier:
                return None
            existing.value = StringValue(identifier)
            existing.equals = "="
            result.changes.append(
                Change(
                    type="update",
                    attribute=self.attribute_name,
                    tag_name=element.tag_name,
                    identifier=identifier,
                    old_value=old_value,
                    new_value=identifier,
                    line=element.position.line,
                    column=element.position.column,
                )
            )
            return None

        node.attributes.insert(
            0, MarkupAttribute(name=self.attribute_name, value=StringValue(identifier))
        )
        result.changes.append(
            Change(
                type="add",
                attribute=self.attribute_name,
                tag_name=element.tag_name,
                identifier=identifier,
                new_value=identifier,
                line=element.position.line,
                column=element.position.column,
            )
        )
        return None

    def find_attribute(self, element: MarkupElement) -> MarkupAttribute | None:
        for attribute in element.attributes:
            if isinstance(attribute, MarkupAttribute) and attribute.name == self.attribute_name:
                return attribute
        return None

    def has_identifier_attributes(self, tree: Node) -> bool:
        return any(self.find_attribute(element) is not None for element in iter_markup_elements(tree))


def injection_stats(result: MutationResult) -> dict[str, int]:
    counts = Counter(change.type for change in result.changes)
    return {
        "total_changes": len(result.changes),
        "added": counts["add"],
        "updated": counts["update"],
        "failed": len(result.failures),
    }


def _failure(reason: str, context: InjectionContext) -> MutationFailure:
    return MutationFailure(
        reason=reason,
        tag_name=context.element.tag_name,
        position=context.element.position,
        identifier=context.generated.identifier,
    )
