"""Human-readable rendering of run results and mappings for CLI output."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from eltag.detect.models import DetectionResult
from eltag.pipeline.models import FileResult, ProjectResult
from eltag.store.models import ElementMapping, MappingStats


def render_file_result(result: FileResult) -> str:
    lines = [f"file: {result.file_path}", f"mode={result.mode} status={result.status}"]
    if result.error is not None:
        lines.append(f"error: {result.error_code}: {result.error}")
        return "\n".join(lines)

    lines.append(
        f"elements={result.elements_detected} changes={len(result.changes)} "
        f"mappings={result.mappings}"
    )
    counter: Counter[str] = Counter(change.type for change in result.changes)
    if counter:
        lines.append("changes: " + ", ".join(f"{kind}={counter[kind]}" for kind in sorted(counter)))
    for change in result.changes[:5]:
        value = change.new_value if change.type != "remove" else change.old_value
        lines.append(f"change: {change.type} <{change.tag_name}> {change.line}:{change.column} {value}")
    for warning in result.warnings[:5]:
        lines.append(f"warning: {warning}")
    if result.output_path is not None:
        lines.append(f"output: {result.output_path}")
    return "\n".join(lines)


def render_project_summary(result: ProjectResult) -> str:
    """Render one-screen project summary."""

    stats = result.stats
    lines = [
        "project_summary:",
        f"root={result.root} mode={result.mode}",
        f"files={stats.files_total} processed={stats.files_processed} "
        f"modified={stats.files_modified} failed={stats.files_failed} "
        f"skipped={stats.files_skipped}",
        f"elements={stats.elements_detected} changes={stats.changes_total} "
        f"mappings={stats.mappings_written}",
        f"store_saved={result.store_saved} cancelled={result.cancelled}",
    ]
    if result.errors:
        codes: Counter[str] = Counter(error.code for error in result.errors)
        top = sorted(codes.items(), key=lambda item: (-item[1], item[0]))[:5]
        lines.append("errors: " + ", ".join(f"{code}={count}" for code, count in top))
        for error in result.errors[:5]:
            lines.append(f"error: {error.file_path}: {error.message}")
    else:
        lines.append("errors: none")
    return "\n".join(lines)


def render_detection(file_path: str, detection: DetectionResult) -> str:
    counts = ", ".join(f"{kind}={count}" for kind, count in sorted(detection.counts_by_kind.items()))
    lines = [f"file: {file_path}", f"elements={detection.total} ({counts})"]
    for element in detection.elements:
        marker = element.identifier_value if element.has_identifier else "-"
        lines.append(
            f"{element.position.line}:{element.position.column} "
            f"{element.kind} <{element.tag_name}> {marker}"
        )
    return "\n".join(lines)


def render_mappings(mappings: Iterable[ElementMapping]) -> str:
    lines = [
        f"{mapping.id}\t{mapping.file_path}:{mapping.line}:{mapping.column}\t"
        f"{mapping.element_type}\t<{mapping.element}>"
        for mapping in mappings
    ]
    return "\n".join(lines) if lines else "no mappings"


def render_mapping(mapping: ElementMapping) -> str:
    lines = [
        f"id: {mapping.id}",
        f"file: {mapping.file_path}",
        f"element: <{mapping.element}> ({mapping.element_type})",
        f"position: {mapping.line}:{mapping.column} [{mapping.start}, {mapping.end})",
        f"hash: {mapping.hash}",
    ]
    if mapping.attributes:
        attrs = " ".join(
            name if value is None else f'{name}="{value}"'
            for name, value in sorted(mapping.attributes.items())
        )
        lines.append(f"attributes: {attrs}")
    if mapping.content:
        lines.append(f"content: {mapping.content}")
    lines.append(f"created: {mapping.created}")
    lines.append(f"updated: {mapping.updated}")
    return "\n".join(lines)


def render_stats(stats: MappingStats) -> str:
    element_types = ", ".join(f"{kind}={count}" for kind, count in stats.element_types.items())
    file_types = ", ".join(f"{ext}={count}" for ext, count in stats.file_types.items()) or "none"
    return "\n".join(
        [
            f"elements={stats.total_elements} files={stats.total_files}",
            f"element_types: {element_types}",
            f"file_types: {file_types}",
            f"last_processed: {stats.last_processed or 'never'}",
        ]
    )
