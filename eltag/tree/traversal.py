"""Depth-first, pre-order walk over source trees."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Collection, Iterator
from dataclasses import dataclass, field
from enum import Enum

from eltag.tree.nodes import MarkupElement, Node, node_children, node_type


class WalkSignal(Enum):
    CONTINUE = "continue"
    SKIP = "skip"
    STOP = "stop"


@dataclass(frozen=True)
class Visit:
    """What the visitor sees for one node."""

    node: Node
    parent: Node | None
    path: tuple[int, ...]
    depth: int


Visitor = Callable[[Visit], "WalkSignal | None"]


@dataclass(frozen=True)
class TraversalOptions:
    reverse: bool = False
    max_depth: int | None = None
    skip_types: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        *,
        reverse: bool = False,
        max_depth: int | None = None,
        skip_types: Collection[str] = (),
    ) -> TraversalOptions:
        return cls(reverse=reverse, max_depth=max_depth, skip_types=frozenset(skip_types))


def walk(
    tree: Node,
    visitor: Visitor,
    options: TraversalOptions | None = None,
    *,
    exit: Callable[[Visit], None] | None = None,
) -> bool:
    """Visit every node at most once; return False when the walk was stopped.

    Nodes without a recognised variant tag are skipped together with their
    subtree. The visited set is keyed by object identity, so a node reachable
    twice (shared or cyclic structure) is entered only the first time.
    """

    opts = options or TraversalOptions()
    visited: set[int] = set()
    stack: list[tuple[Visit, bool]] = [(Visit(tree, None, (), 0), False)]

    while stack:
        current, exiting = stack.pop()
        if exiting:
            if exit is not None:
                exit(current)
            continue

        node = current.node
        kind = node_type(node)
        if kind is None or kind in opts.skip_types:
            continue
        if opts.max_depth is not None and current.depth > opts.max_depth:
            continue
        if id(node) in visited:
            continue
        visited.add(id(node))

        signal = visitor(current)
        if signal is WalkSignal.STOP:
            return False

        stack.append((current, True))
        if signal is WalkSignal.SKIP:
            continue

        children = list(enumerate(node_children(node)))
        if not opts.reverse:
            children.reverse()
        for index, child in children:
            stack.append(
                (Visit(child, node, (*current.path, index), current.depth + 1), False)
            )

    return True


def iter_visits(tree: Node, options: TraversalOptions | None = None) -> Iterator[Visit]:
    collected: list[Visit] = []

    def _collect(visit: Visit) -> None:
        collected.append(visit)

    walk(tree, _collect, options)
    return iter(collected)


def find_nodes(tree: Node, predicate: Callable[[Node], bool]) -> list[Node]:
    return [visit.node for visit in iter_visits(tree) if predicate(visit.node)]


def find_first(tree: Node, predicate: Callable[[Node], bool]) -> Node | None:
    found: list[Node] = []

    def _visit(visit: Visit) -> WalkSignal | None:
        if predicate(visit.node):
            found.append(visit.node)
            return WalkSignal.STOP
        return None

    walk(tree, _visit)
    return found[0] if found else None


def find_by_type(tree: Node, type_name: str) -> list[Node]:
    return find_nodes(tree, lambda node: node_type(node) == type_name)


def iter_markup_elements(tree: Node) -> Iterator[MarkupElement]:
    for visit in iter_visits(tree):
        if isinstance(visit.node, MarkupElement):
            yield visit.node


def resolve_path(tree: Node, path: tuple[int, ...]) -> Node | None:
    """Follow child indices from `tree`; None when the path no longer exists."""

    current: Node = tree
    for index in path:
        children = node_children(current)
        if index < 0 or index >= len(children):
            return None
        current = children[index]
    return current


def traversal_stats(tree: Node) -> dict[str, object]:
    counts: Counter[str] = Counter()
    max_depth = 0
    elements = 0
    for visit in iter_visits(tree):
        kind = node_type(visit.node) or "unknown"
        counts[kind] += 1
        max_depth = max(max_depth, visit.depth)
        if isinstance(visit.node, MarkupElement):
            elements += 1
    return {
        "total_nodes": sum(counts.values()),
        "node_types": dict(sorted(counts.items())),
        "max_depth": max_depth,
        "markup_elements": elements,
    }
