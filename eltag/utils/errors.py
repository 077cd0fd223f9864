"""Custom exceptions and failure records for core logic."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from eltag.pipeline.models import ProjectResult
    from eltag.tree.nodes import Position


class SourceParseError(Exception):
    """Raised when source text cannot be turned into a tree."""

    def __init__(self, message: str, *, line: int | None = None, column: int | None = None) -> None:
        location = f" (line {line}, column {column})" if line is not None else ""
        super().__init__(f"{message}{location}")
        self.line = line
        self.column = column


class DetectionError(Exception):
    """Raised inside the detector; never escapes `ElementDetector.detect`."""


class SerializationError(Exception):
    """Raised when a mutated tree cannot be printed back to text."""


class StoreError(Exception):
    """Raised when the mapping store cannot be written atomically."""


class PipelineAbortedError(Exception):
    """Raised by fail-fast project runs on the first failed file."""

    def __init__(self, message: str, *, result: ProjectResult | None = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass(frozen=True)
class GenerationFailure:
    """Why an identifier could not be built from hash + template."""

    reason: str
    detail: str | None = None


@dataclass(frozen=True)
class MutationFailure:
    """A single element that could not be mutated."""

    reason: str
    tag_name: str | None = None
    position: Position | None = None
    identifier: str | None = None
