"""Parser/printer boundary used by the pipeline."""

from __future__ import annotations

from typing import Protocol

from eltag.tree.nodes import Program
from eltag.tree.printer import print_tree
from eltag.tree.scanner import parse_source


class SourceCodec(Protocol):
    def parse(self, text: str, file_path: str | None = None) -> Program: ...

    def render(self, tree: Program) -> str: ...


class MarkupSourceCodec:
    """Default codec: tree-sitter grammars in, raw-slice printer out."""

    def parse(self, text: str, file_path: str | None = None) -> Program:
        return parse_source(text, file_path)

    def render(self, tree: Program) -> str:
        return print_tree(tree)
