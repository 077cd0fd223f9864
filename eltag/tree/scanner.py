"""Build the markup tree of a component source file with tree-sitter.

The JavaScript, TypeScript and TSX grammars produce the concrete syntax tree.
Only JSX nodes become markup nodes; the bytes between them are kept verbatim
as `CodeText` / `MarkupText`, so printing an untouched tree gives back the
original file.
"""

from __future__ import annotations

import bisect
import functools
from collections.abc import Iterator
from pathlib import PurePosixPath

import tree_sitter_javascript
import tree_sitter_typescript
from tree_sitter import Language, Parser
from tree_sitter import Node as SyntaxNode

from eltag.tree.nodes import (
    CodeText,
    ExpressionContainer,
    MarkupAttribute,
    MarkupElement,
    MarkupFragment,
    MarkupText,
    Node,
    Position,
    Program,
    SpreadAttribute,
    StringValue,
)
from eltag.utils.errors import SourceParseError

TYPESCRIPT_SUFFIXES = frozenset({".ts", ".mts", ".cts"})
JAVASCRIPT_SUFFIXES = frozenset({".js", ".jsx", ".mjs", ".cjs"})

_ELEMENT_TYPES = frozenset({"jsx_element", "jsx_self_closing_element"})


@functools.lru_cache(maxsize=None)
def _language(grammar: str) -> Language:
    if grammar == "typescript":
        return Language(tree_sitter_typescript.language_typescript())
    if grammar == "javascript":
        return Language(tree_sitter_javascript.language())
    return Language(tree_sitter_typescript.language_tsx())


def grammar_for(file_path: str | None) -> str:
    """Grammar name for `file_path`; TSX when the suffix is unknown."""

    suffix = PurePosixPath(file_path).suffix.lower() if file_path else ""
    if suffix in TYPESCRIPT_SUFFIXES:
        return "typescript"
    if suffix in JAVASCRIPT_SUFFIXES:
        return "javascript"
    return "tsx"


def parse_source(text: str, file_path: str | None = None) -> Program:
    """Parse `text` into a `Program`; raise `SourceParseError` on syntax errors."""

    data = text.encode("utf-8")
    syntax = Parser(_language(grammar_for(file_path))).parse(data)
    builder = _TreeBuilder(text, data)
    root = syntax.root_node
    if root.has_error:
        raise builder.syntax_error(root)
    children = builder.code(root, 0, len(data))
    return Program(children=children, source=text, file_path=file_path)


def _markup_roots(container: SyntaxNode) -> Iterator[SyntaxNode]:
    """Outermost JSX elements below `container`, in source order."""

    stack = list(reversed(container.children))
    while stack:
        current = stack.pop()
        if current.type in _ELEMENT_TYPES:
            yield current
        else:
            stack.extend(reversed(current.children))


def _flatten(name: str) -> str:
    return "".join(name.split())


class _TreeBuilder:
    def __init__(self, text: str, data: bytes) -> None:
        self.text = text
        self._line_starts = [0]
        newline = text.find("\n")
        while newline != -1:
            self._line_starts.append(newline + 1)
            newline = text.find("\n", newline + 1)
        self._char_at: list[int] | None = None
        if len(data) != len(text):
            self._char_at = []
            for index, char in enumerate(text):
                self._char_at.extend([index] * len(char.encode("utf-8")))
            self._char_at.append(len(text))

    # -- offsets ---------------------------------------------------------

    def _offset(self, byte: int) -> int:
        return byte if self._char_at is None else self._char_at[byte]

    def _slice(self, start: int, end: int) -> str:
        return self.text[self._offset(start) : self._offset(end)]

    def _position(self, start: int, end: int) -> Position:
        first = self._offset(start)
        line_index = bisect.bisect_right(self._line_starts, first) - 1
        return Position(
            line=line_index + 1,
            column=first - self._line_starts[line_index],
            start=first,
            end=self._offset(end),
        )

    def _error(self, node: SyntaxNode, message: str) -> SourceParseError:
        where = self._position(node.start_byte, node.end_byte)
        return SourceParseError(message, line=where.line, column=where.column)

    def syntax_error(self, root: SyntaxNode) -> SourceParseError:
        stack = [root]
        while stack:
            node = stack.pop()
            if node.is_missing:
                return self._error(node, f"missing {node.type!r}")
            if node.type == "ERROR":
                snippet = self._slice(node.start_byte, node.end_byte).strip().splitlines()
                found = snippet[0][:40] if snippet else ""
                return self._error(node, f"unexpected {found!r}" if found else "unexpected end of input")
            if node.has_error:
                stack.extend(reversed(node.children))
        return self._error(root, "syntax error")

    # -- code ------------------------------------------------------------

    def code(self, container: SyntaxNode, start: int, end: int) -> list[Node]:
        nodes: list[Node] = []
        cursor = start
        for found in _markup_roots(container):
            if found.start_byte < start or found.end_byte > end:
                continue
            if found.start_byte > cursor:
                nodes.append(CodeText(self._slice(cursor, found.start_byte)))
            nodes.append(self._markup(found))
            cursor = found.end_byte
        if end > cursor:
            nodes.append(CodeText(self._slice(cursor, end)))
        return nodes

    def _expression(self, node: SyntaxNode) -> ExpressionContainer:
        return ExpressionContainer(
            children=self.code(node, node.start_byte + 1, node.end_byte - 1),
            position=self._position(node.start_byte, node.end_byte),
        )

    # -- markup ----------------------------------------------------------

    def _markup(self, node: SyntaxNode) -> MarkupElement | MarkupFragment:
        if node.type == "jsx_self_closing_element":
            return self._element(node, node, None, [])

        open_tag = node.child_by_field_name("open_tag")
        close_tag = node.child_by_field_name("close_tag")
        if open_tag is None or close_tag is None:
            raise self._error(node, "incomplete markup element")
        children = self._children(node, open_tag.end_byte, close_tag.start_byte)

        if open_tag.child_by_field_name("name") is None:
            return MarkupFragment(
                children=children,
                position=self._position(node.start_byte, node.end_byte),
                open_raw=self._slice(open_tag.start_byte, open_tag.end_byte),
                closing_raw=self._slice(close_tag.start_byte, close_tag.end_byte),
            )
        return self._element(node, open_tag, close_tag, children)

    def _element(
        self,
        node: SyntaxNode,
        tag: SyntaxNode,
        close_tag: SyntaxNode | None,
        children: list[Node],
    ) -> MarkupElement:
        name_node = tag.child_by_field_name("name")
        if name_node is None:
            raise self._error(tag, "markup element without a tag name")
        name = _flatten(self._slice(name_node.start_byte, name_node.end_byte))

        if close_tag is not None:
            closing_node = close_tag.child_by_field_name("name")
            closing = (
                _flatten(self._slice(closing_node.start_byte, closing_node.end_byte))
                if closing_node is not None
                else ""
            )
            if closing != name:
                raise self._error(close_tag, f"expected </{name}> but found </{closing}>")

        head_end = name_node.end_byte
        type_arguments = tag.child_by_field_name("type_arguments")
        if type_arguments is not None:
            head_end = max(head_end, type_arguments.end_byte)

        attributes: list[MarkupAttribute | SpreadAttribute] = []
        cursor = head_end
        for attribute in tag.children_by_field_name("attribute"):
            leading = self._slice(cursor, attribute.start_byte)
            attributes.append(self._attribute(attribute, leading))
            cursor = attribute.end_byte

        self_closing = close_tag is None
        terminator = ("/>", "/") if self_closing else (">",)
        stop = tag.end_byte - (2 if self_closing else 1)
        for token in tag.children:
            if not token.is_named and token.type in terminator:
                stop = token.start_byte
                if self_closing:
                    break

        return MarkupElement(
            name=name,
            attributes=attributes,
            children=children,
            self_closing=self_closing,
            position=self._position(node.start_byte, node.end_byte),
            open_raw=self._slice(tag.start_byte, head_end),
            tail=self._slice(cursor, stop),
            closing_raw=(
                self._slice(close_tag.start_byte, close_tag.end_byte)
                if close_tag is not None
                else None
            ),
        )

    def _attribute(self, node: SyntaxNode, leading: str) -> MarkupAttribute | SpreadAttribute:
        if node.type == "jsx_expression":
            return SpreadAttribute(expression=self._expression(node), leading=leading)
        if node.type != "jsx_attribute" or not node.named_children:
            raise self._error(node, f"unsupported attribute syntax {node.type!r}")

        named = node.named_children
        name_node = named[0]
        name = _flatten(self._slice(name_node.start_byte, name_node.end_byte))
        position = self._position(node.start_byte, node.end_byte)
        if len(named) < 2:
            return MarkupAttribute(name=name, value=None, leading=leading, equals="", position=position)

        value_node = named[-1]
        equals = self._slice(name_node.end_byte, value_node.start_byte)
        raw = self._slice(value_node.start_byte, value_node.end_byte)
        value: StringValue | ExpressionContainer
        if value_node.type == "jsx_expression":
            value = self._expression(value_node)
        elif raw[:1] in ("'", '"') and len(raw) >= 2:
            value = StringValue(value=raw[1:-1], quote=raw[0], raw=raw)
        else:
            raise self._error(value_node, f"unsupported value for attribute {name}")
        return MarkupAttribute(name=name, value=value, leading=leading, equals=equals, position=position)

    def _children(self, node: SyntaxNode, start: int, end: int) -> list[Node]:
        """Markup children between the tags; everything else is one text run."""

        items: list[Node] = []
        cursor = start
        for child in node.children:
            if child.start_byte < start or child.end_byte > end:
                continue
            item: Node
            if child.type in _ELEMENT_TYPES:
                item = self._markup(child)
            elif child.type == "jsx_expression":
                item = self._expression(child)
            else:
                continue
            if child.start_byte > cursor:
                items.append(self._text(cursor, child.start_byte))
            items.append(item)
            cursor = child.end_byte
        if end > cursor:
            items.append(self._text(cursor, end))
        return items

    def _text(self, start: int, end: int) -> MarkupText:
        return MarkupText(self._slice(start, end), position=self._position(start, end))
