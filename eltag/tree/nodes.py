"""Closed set of source tree node variants.

A parsed source file is a `Program` whose children alternate between plain
`CodeText` and markup nodes. Markup nodes keep the exact text they were parsed
from so that printing an untouched subtree reproduces the source byte for byte.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Union


@dataclass(frozen=True)
class Position:
    """Source location: 1-based line, 0-based column, character offsets."""

    line: int
    column: int
    start: int
    end: int


_UNKNOWN = Position(line=0, column=0, start=0, end=0)


@dataclass(eq=False)
class CodeText:
    type: ClassVar[str] = "CodeText"

    text: str


@dataclass(eq=False)
class MarkupText:
    type: ClassVar[str] = "MarkupText"

    text: str
    position: Position = _UNKNOWN


@dataclass(eq=False)
class ExpressionContainer:
    """`{ ... }` inside markup; children are scanned as code."""

    type: ClassVar[str] = "ExpressionContainer"

    children: list[Node] = field(default_factory=list)
    position: Position = _UNKNOWN


@dataclass(eq=False)
class StringValue:
    """Literal attribute value. `raw` holds the quoted source text until edited."""

    value: str
    quote: str = '"'
    raw: str | None = None


@dataclass(eq=False)
class MarkupAttribute:
    type: ClassVar[str] = "MarkupAttribute"

    name: str
    value: StringValue | ExpressionContainer | None = None
    leading: str = " "
    equals: str = "="
    position: Position = _UNKNOWN


@dataclass(eq=False)
class SpreadAttribute:
    type: ClassVar[str] = "SpreadAttribute"

    expression: ExpressionContainer
    leading: str = " "


@dataclass(eq=False)
class MarkupElement:
    type: ClassVar[str] = "MarkupElement"

    name: str
    attributes: list[MarkupAttribute | SpreadAttribute] = field(default_factory=list)
    children: list[Node] = field(default_factory=list)
    self_closing: bool = False
    position: Position = _UNKNOWN
    open_raw: str | None = None
    tail: str = ""
    closing_raw: str | None = None


@dataclass(eq=False)
class MarkupFragment:
    type: ClassVar[str] = "MarkupFragment"

    children: list[Node] = field(default_factory=list)
    position: Position = _UNKNOWN
    open_raw: str = "<>"
    closing_raw: str = "</>"


@dataclass(eq=False)
class Program:
    type: ClassVar[str] = "Program"

    children: list[Node] = field(default_factory=list)
    source: str = ""
    file_path: str | None = None


Node = Union[
    Program,
    CodeText,
    MarkupText,
    ExpressionContainer,
    MarkupAttribute,
    SpreadAttribute,
    MarkupElement,
    MarkupFragment,
]

NODE_TYPES: frozenset[str] = frozenset(
    {
        Program.type,
        CodeText.type,
        MarkupText.type,
        ExpressionContainer.type,
        MarkupAttribute.type,
        SpreadAttribute.type,
        MarkupElement.type,
        MarkupFragment.type,
    }
)


def node_children(node: Node) -> list[Node]:
    """Return the traversable children of `node` in source order."""

    match node:
        case Program(children=children):
            return list(children)
        case MarkupElement(attributes=attributes, children=children):
            return [*attributes, *children]
        case MarkupFragment(children=children):
            return list(children)
        case ExpressionContainer(children=children):
            return list(children)
        case MarkupAttribute(value=ExpressionContainer() as expression):
            return [expression]
        case SpreadAttribute(expression=expression):
            return [expression]
        case MarkupAttribute() | CodeText() | MarkupText():
            return []
    return []


def node_type(node: object) -> str | None:
    """Return the variant tag of `node`, or None for malformed values."""

    tag = getattr(node, "type", None)
    if isinstance(tag, str) and tag in NODE_TYPES:
        return tag
    return None


def attribute_value_text(attribute: MarkupAttribute) -> str | None:
    """Attribute value as seen by downstream tooling; expressions are opaque."""

    if attribute.value is None:
        return None
    if isinstance(attribute.value, StringValue):
        return attribute.value.value
    return "{expression}"
