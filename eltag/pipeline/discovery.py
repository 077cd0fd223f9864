"""Find source files under a project root using include/exclude globs.

Patterns follow gitignore wildmatch rules: `*` stays inside one path segment,
`**` spans directories, and a pattern without a slash matches at any depth.
"""

from __future__ import annotations

import functools
import os
from collections.abc import Sequence
from pathlib import Path

import pathspec


@functools.lru_cache(maxsize=64)
def _compile(patterns: tuple[str, ...]) -> pathspec.PathSpec:
    return pathspec.PathSpec.from_lines("gitwildmatch", patterns)


def glob_match(relative_path: str, pattern: str) -> bool:
    """Match a posix relative path; directories end with `/`."""

    return _compile((pattern,)).match_file(relative_path)


def is_included(relative_path: str, include: Sequence[str], exclude: Sequence[str]) -> bool:
    if _compile(tuple(exclude)).match_file(relative_path):
        return False
    return _compile(tuple(include)).match_file(relative_path)


def discover_files(root: Path, include: Sequence[str], exclude: Sequence[str]) -> list[Path]:
    """Return matching files under `root`, sorted by relative path."""

    excluded = _compile(tuple(exclude))
    found: list[Path] = []
    for directory, dirnames, filenames in os.walk(root):
        current = Path(directory)
        rel_dir = current.relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else f"{rel_dir}/"
        dirnames[:] = sorted(name for name in dirnames if not excluded.match_file(f"{prefix}{name}/"))
        for filename in filenames:
            if is_included(f"{prefix}{filename}", include, exclude):
                found.append(current / filename)
    return sorted(found, key=lambda path: path.relative_to(root).as_posix())
