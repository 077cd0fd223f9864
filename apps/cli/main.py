"""Typer CLI entrypoint for eltag."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Annotated, Any

import typer

from apps.cli.format_human import (
    render_detection,
    render_file_result,
    render_mapping,
    render_mappings,
    render_project_summary,
    render_stats,
)
from apps.cli.io import write_config_atomic, write_fallback_report_atomic, write_report_atomic
from eltag.config.loader import load_config
from eltag.config.models import TaggerConfig
from eltag.pipeline.file_pipeline import FilePipeline
from eltag.pipeline.models import PROCESS_MODES, ProcessMode
from eltag.store.mapping_store import MappingStore
from eltag.store.models import MappingQuery
from eltag.utils.errors import PipelineAbortedError, SourceParseError

app = typer.Typer(help="Stable element identifier CLI", rich_markup_mode=None)

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", exists=True, dir_okay=False, file_okay=True, help="Config YAML."),
]
RootOption = Annotated[
    Path | None,
    typer.Option("--root", file_okay=False, help="Project root; mapping paths are relative to it."),
]
OutDirOption = Annotated[
    Path | None,
    typer.Option("--out-dir", file_okay=False, help="Write processed sources here instead of in place."),
]
DryRunOption = Annotated[
    bool, typer.Option("--dry-run", help="Report changes without writing sources or mappings.")
]
ReportJsonOption = Annotated[
    Path | None, typer.Option("--report-json", help="Write the run result as JSON.")
]
JsonOption = Annotated[bool, typer.Option("--json", help="Print JSON instead of text.")]


@app.callback()
def cli_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log pipeline events.")] = False,
) -> None:
    """Tag, strip and query stable identifiers on markup elements."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s %(message)s",
    )


@app.command("tag")
def tag_command(
    path: Annotated[Path, typer.Argument(exists=True, help="Source file or project directory.")],
    config: ConfigOption = None,
    root: RootOption = None,
    out_dir: OutDirOption = None,
    dry_run: DryRunOption = False,
    report_json: ReportJsonOption = None,
) -> None:
    """Add identifiers to untagged elements, keeping existing ones."""

    _run_mode("tag", path, config, root, out_dir, dry_run, False, report_json)


@app.command("retag")
def retag_command(
    path: Annotated[Path, typer.Argument(exists=True, help="Source file or project directory.")],
    config: ConfigOption = None,
    root: RootOption = None,
    out_dir: OutDirOption = None,
    dry_run: DryRunOption = False,
    report_json: ReportJsonOption = None,
) -> None:
    """Recompute identifiers, reusing mapped ones at unchanged positions."""

    _run_mode("retag", path, config, root, out_dir, dry_run, False, report_json)


@app.command("strip")
def strip_command(
    path: Annotated[Path, typer.Argument(exists=True, help="Source file or project directory.")],
    config: ConfigOption = None,
    root: RootOption = None,
    out_dir: OutDirOption = None,
    production: Annotated[
        bool,
        typer.Option("--production", help="Also strip test and debug data attributes."),
    ] = False,
    dry_run: DryRunOption = False,
    report_json: ReportJsonOption = None,
) -> None:
    """Remove identifier attributes and forget their mappings."""

    _run_mode("strip", path, config, root, out_dir, dry_run, production, report_json)


@app.command("scan")
def scan_command(
    path: Annotated[Path, typer.Argument(exists=True, dir_okay=False)],
    config: ConfigOption = None,
    root: RootOption = None,
    as_json: JsonOption = False,
) -> None:
    """Detect elements in one file without changing it."""

    try:
        pipeline = FilePipeline(root or Path.cwd(), _load_config_or_exit(config))
    except ValueError as exc:
        typer.echo(f"ERROR: {exc}")
        raise typer.Exit(code=1) from exc

    try:
        detection = pipeline.scan_file(path)
    except SourceParseError as exc:
        typer.echo(f"ERROR: parse failed: {exc}")
        raise typer.Exit(code=3) from exc
    finally:
        pipeline.close()

    relative = pipeline.relative_path(path)
    if as_json:
        payload = {
            "file_path": relative,
            "counts_by_kind": detection.counts_by_kind,
            "elements": [
                {
                    "tag_name": element.tag_name,
                    "kind": element.kind,
                    "line": element.position.line,
                    "column": element.position.column,
                    "identifier": element.identifier_value,
                }
                for element in detection.elements
            ],
        }
        typer.echo(json.dumps(payload, ensure_ascii=False))
    else:
        typer.echo(render_detection(relative, detection))


@app.command("query")
def query_command(
    root: Annotated[Path, typer.Option("--root", file_okay=False)] = Path("."),
    config: ConfigOption = None,
    file: Annotated[str | None, typer.Option("--file", help="File path (exact).")] = None,
    element_type: Annotated[str | None, typer.Option("--type", help="dom, component or fragment.")] = None,
    tag: Annotated[str | None, typer.Option("--tag", help="Tag name (exact).")] = None,
    element_id: Annotated[str | None, typer.Option("--id", help="Identifier substring.")] = None,
    attr: Annotated[
        list[str] | None, typer.Option("--attr", help="Attribute filter NAME=VALUE; repeatable.")
    ] = None,
    content: Annotated[str | None, typer.Option("--content", help="Text content substring.")] = None,
    regex: Annotated[bool, typer.Option("--regex", help="Treat text filters as regular expressions.")] = False,
    sort: Annotated[str | None, typer.Option("--sort")] = None,
    desc: Annotated[bool, typer.Option("--desc")] = False,
    offset: Annotated[int, typer.Option("--offset", min=0)] = 0,
    limit: Annotated[int | None, typer.Option("--limit", min=0)] = None,
    as_json: JsonOption = False,
) -> None:
    """Query stored mappings."""

    store = _build_store(root, config)

    def _pattern(value: str | None) -> Any:
        if value is None or not regex:
            return value
        return re.compile(value)

    attributes: dict[str, Any] = {}
    for item in attr or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            typer.echo(f"ERROR: --attr must look like NAME=VALUE, got {item!r}")
            raise typer.Exit(code=1)
        attributes[name] = _pattern(value)

    try:
        query = MappingQuery(
            file_path=_pattern(file),
            element_type=element_type,
            tag_name=_pattern(tag),
            element_id=_pattern(element_id),
            attributes=attributes,
            content=_pattern(content),
            sort_by=sort,
            descending=desc,
            offset=offset,
            limit=limit,
        )
    except (ValueError, re.error) as exc:
        typer.echo(f"ERROR: invalid query: {exc}")
        raise typer.Exit(code=1) from exc

    mappings = store.query(query)
    if as_json:
        typer.echo(json.dumps([mapping.to_json() for mapping in mappings], ensure_ascii=False))
    else:
        typer.echo(render_mappings(mappings))


@app.command("show")
def show_command(
    element_id: Annotated[str, typer.Argument()],
    root: Annotated[Path, typer.Option("--root", file_okay=False)] = Path("."),
    config: ConfigOption = None,
    as_json: JsonOption = False,
) -> None:
    """Show one mapping by identifier."""

    mapping = _build_store(root, config).get_by_id(element_id)
    if mapping is None:
        typer.echo(f"ERROR: unknown element id: {element_id}")
        raise typer.Exit(code=1)
    if as_json:
        typer.echo(json.dumps(mapping.to_json(), ensure_ascii=False))
    else:
        typer.echo(render_mapping(mapping))


@app.command("stats")
def stats_command(
    root: Annotated[Path, typer.Option("--root", file_okay=False)] = Path("."),
    config: ConfigOption = None,
    as_json: JsonOption = False,
) -> None:
    """Print aggregate mapping statistics."""

    stats = _build_store(root, config).stats()
    if as_json:
        typer.echo(json.dumps(stats.model_dump(mode="json", by_alias=True), ensure_ascii=False))
    else:
        typer.echo(render_stats(stats))


@app.command("forget")
def forget_command(
    file_path: Annotated[str, typer.Argument(help="File path as recorded in the mapping file.")],
    root: Annotated[Path, typer.Option("--root", file_okay=False)] = Path("."),
    config: ConfigOption = None,
) -> None:
    """Remove every mapping recorded for one file."""

    result = _build_store(root, config).remove_file(file_path)
    if not result.success:
        typer.echo(f"ERROR: {result.message}")
        raise typer.Exit(code=1)
    typer.echo(f"INFO: removed {result.affected} mappings for {file_path}")


@app.command("export")
def export_command(
    root: Annotated[Path, typer.Option("--root", file_okay=False)] = Path("."),
    config: ConfigOption = None,
    out: Annotated[Path | None, typer.Option("--out", dir_okay=False)] = None,
) -> None:
    """Export the mapping document."""

    text = _build_store(root, config).export_json()
    if out is None:
        typer.echo(text, nl=False)
        return
    write_report_atomic(out, json.loads(text))
    typer.echo(f"INFO: wrote mappings to {out}")


@app.command("import")
def import_command(
    source: Annotated[Path, typer.Argument(exists=True, dir_okay=False)],
    root: Annotated[Path, typer.Option("--root", file_okay=False)] = Path("."),
    config: ConfigOption = None,
    merge: Annotated[bool, typer.Option("--merge", help="Merge into existing mappings.")] = False,
) -> None:
    """Import a mapping document produced by `export`."""

    result = _build_store(root, config).import_json(source.read_text(encoding="utf-8"), merge=merge)
    if not result.success:
        typer.echo(f"ERROR: {result.message}")
        for error in result.errors:
            typer.echo(f"ERROR: {error}")
        raise typer.Exit(code=1)
    typer.echo(f"INFO: imported {result.affected} mappings")
    for conflict in result.conflicts:
        typer.echo(f"WARNING: skipped {conflict}: identifier belongs to another file")


@app.command("init-config")
def init_config_command(
    out: Annotated[Path, typer.Argument(dir_okay=False)],
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing file.")] = False,
) -> None:
    """Write the default configuration as YAML."""

    if out.exists() and not force:
        typer.echo(f"ERROR: {out} already exists (use --force).")
        raise typer.Exit(code=1)
    write_config_atomic(out, load_config())
    typer.echo(f"INFO: wrote config to {out}")


def _run_mode(
    mode: str,
    path: Path,
    config_path: Path | None,
    root: Path | None,
    out_dir: Path | None,
    dry_run: bool,
    production: bool,
    report_json: Path | None,
) -> None:
    if mode not in PROCESS_MODES:
        typer.echo(f"ERROR: unsupported mode: {mode}")
        raise typer.Exit(code=1)
    process_mode: ProcessMode = mode  # type: ignore[assignment]

    config = _load_config_or_exit(config_path)
    project_root = root or (path if path.is_dir() else Path.cwd())
    pipeline = FilePipeline(project_root, config)

    exit_code = 1
    payload: dict[str, Any] | None = None
    try:
        if path.is_dir():
            try:
                project = pipeline.process_project(
                    path, out_dir, process_mode, production=production, dry_run=dry_run
                )
                exit_code = 0 if project.success else 2
            except PipelineAbortedError as exc:
                if exc.result is None:
                    raise
                project = exc.result
                exit_code = 4
                typer.echo(f"ERROR: {exc}")
            typer.echo(render_project_summary(project))
            payload = project.model_dump(mode="json")
        else:
            output_path = out_dir / path.name if out_dir is not None else None
            result = pipeline.process_file(
                path, process_mode, output_path=output_path, production=production, dry_run=dry_run
            )
            typer.echo(render_file_result(result))
            payload = result.model_dump(mode="json")
            if result.success:
                exit_code = 0
            elif result.error_code == "parse_failed":
                exit_code = 3
            else:
                exit_code = 2
    except Exception as exc:  # noqa: BLE001
        exit_code = 1
        typer.echo(f"ERROR: {type(exc).__name__}: {exc}")
        if report_json is not None:
            _safe_write_fallback(report_json, type(exc).__name__, str(exc), mode)
        raise typer.Exit(code=exit_code) from exc
    finally:
        pipeline.close()

    if report_json is not None and payload is not None:
        write_report_atomic(report_json, payload)
    if exit_code == 0:
        typer.echo("INFO: success")
    raise typer.Exit(code=exit_code)


def _load_config_or_exit(config_path: Path | None) -> TaggerConfig:
    try:
        return load_config(config_path)
    except ValueError as exc:
        typer.echo(f"ERROR: {exc}")
        raise typer.Exit(code=1) from exc


def _build_store(root: Path, config_path: Path | None) -> MappingStore:
    config = _load_config_or_exit(config_path)
    return MappingStore(
        root / config.store.mapping_file,
        backup=config.store.backup,
        max_backups=config.store.max_backups,
        validate_on_load=config.store.validate_on_load,
        config_snapshot=config.config_snapshot(),
    )


def _safe_write_fallback(path: Path, error_type: str, error_message: str, stage: str) -> None:
    try:
        write_fallback_report_atomic(
            path, error_type=error_type, error_message=error_message, stage=stage
        )
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"ERROR: fallback report write failed: {exc}")


def main() -> None:
    """Console script entrypoint."""

    app()


if __name__ == "__main__":
    main()
