"""Print a source tree back to text.

Untouched nodes print their recorded raw text, so `print_tree(parse_source(s))`
returns `s` unchanged. Edited attribute values are re-quoted.
"""

from __future__ import annotations

from eltag.tree.nodes import (
    CodeText,
    ExpressionContainer,
    MarkupAttribute,
    MarkupElement,
    MarkupFragment,
    MarkupText,
    Node,
    Program,
    SpreadAttribute,
    StringValue,
)
from eltag.utils.errors import SerializationError


def print_tree(tree: Node) -> str:
    parts: list[str] = []
    _emit(tree, parts)
    return "".join(parts)


def quote_value(value: str, preferred: str = '"') -> str:
    """Quote `value` for a markup attribute, switching quotes if needed."""

    if preferred not in value:
        return f"{preferred}{value}{preferred}"
    other = "'" if preferred == '"' else '"'
    if other not in value:
        return f"{other}{value}{other}"
    return '"' + value.replace('"', "&quot;") + '"'


def _emit(node: Node, parts: list[str]) -> None:
    match node:
        case Program(children=children):
            for child in children:
                _emit(child, parts)
        case CodeText(text=text) | MarkupText(text=text):
            parts.append(text)
        case ExpressionContainer(children=children):
            parts.append("{")
            for child in children:
                _emit(child, parts)
            parts.append("}")
        case MarkupAttribute():
            _emit_attribute(node, parts)
        case SpreadAttribute(expression=expression, leading=leading):
            parts.append(leading)
            _emit(expression, parts)
        case MarkupElement():
            _emit_element(node, parts)
        case MarkupFragment(children=children, open_raw=open_raw, closing_raw=closing_raw):
            parts.append(open_raw)
            for child in children:
                _emit(child, parts)
            parts.append(closing_raw)
        case _:
            raise SerializationError(f"cannot print node of type {type(node).__name__}")


def _emit_attribute(attribute: MarkupAttribute, parts: list[str]) -> None:
    parts.append(attribute.leading)
    parts.append(attribute.name)
    value = attribute.value
    if value is None:
        return
    parts.append(attribute.equals or "=")
    if isinstance(value, StringValue):
        parts.append(value.raw if value.raw is not None else quote_value(value.value, value.quote))
    else:
        _emit(value, parts)


def _emit_element(element: MarkupElement, parts: list[str]) -> None:
    parts.append(element.open_raw if element.open_raw is not None else f"<{element.name}")
    for attribute in element.attributes:
        _emit(attribute, parts)
    parts.append(element.tail)
    if element.self_closing:
        parts.append("/>")
        return
    parts.append(">")
    for child in element.children:
        _emit(child, parts)
    parts.append(
        element.closing_raw if element.closing_raw is not None else f"</{element.name}>"
    )
