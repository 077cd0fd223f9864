"""Per-file and per-project tagging pipeline.

Each file moves through parse -> detect -> tag/strip -> record. Project runs
process files with bounded concurrency and persist every file bucket in one
store write at the end.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from eltag.cache.cache_layer import CacheLayer
from eltag.config.loader import load_config
from eltag.config.models import TaggerConfig
from eltag.detect.detector import ElementDetector
from eltag.detect.models import DetectedElement, DetectionResult, InclusionPolicy
from eltag.ids.generator import IdOptions, StableIdGenerator, validate_id
from eltag.ids.models import GenerationContext
from eltag.mutate.injector import IdentifierInjector
from eltag.mutate.models import InjectionContext, MutationResult
from eltag.mutate.stripper import AttributeStripper
from eltag.pipeline.discovery import discover_files
from eltag.pipeline.models import (
    PROCESS_MODES,
    FileError,
    FileResult,
    ProcessMode,
    ProjectResult,
    ProjectStats,
)
from eltag.store.mapping_store import MappingStore
from eltag.store.models import ElementMapping, utc_now_iso
from eltag.tree.codec import MarkupSourceCodec, SourceCodec
from eltag.tree.nodes import Position, Program
from eltag.tree.traversal import TraversalOptions
from eltag.utils.errors import PipelineAbortedError, SerializationError, SourceParseError
from eltag.utils.events import log_event

LOGGER = logging.getLogger("eltag.pipeline")


@dataclass
class _FileOutcome:
    result: FileResult
    relative_path: str
    bucket: list[ElementMapping] | None = None


@dataclass
class _Planned:
    element: DetectedElement
    identifier: str
    hash: str
    inject: bool
    reused: bool = False


@dataclass
class _Plan:
    contexts: list[InjectionContext] = field(default_factory=list)
    planned: list[_Planned] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class FilePipeline:
    """Drive detection, identifier generation, mutation and mapping updates."""

    def __init__(
        self,
        root: Path,
        config: TaggerConfig | None = None,
        *,
        store: MappingStore | None = None,
        cache: CacheLayer | None = None,
        codec: SourceCodec | None = None,
    ) -> None:
        self.root = root.resolve()
        self.config = config or TaggerConfig()
        cfg = self.config
        self.store = store or MappingStore(
            self.root / cfg.store.mapping_file,
            backup=cfg.store.backup,
            max_backups=cfg.store.max_backups,
            validate_on_load=cfg.store.validate_on_load,
            config_snapshot=cfg.config_snapshot(),
        )
        if cache is None and cfg.cache.enabled:
            cache = CacheLayer.from_config(cfg.cache)
        self.cache = cache
        self.codec: SourceCodec = codec or MarkupSourceCodec()
        self.detector = ElementDetector(
            InclusionPolicy(
                dom=cfg.tag_elements.dom_elements,
                component=cfg.tag_elements.custom_components,
                fragment=cfg.tag_elements.fragments,
                text=cfg.tag_elements.text_nodes,
            ),
            attribute_name=cfg.attribute_name,
            traversal=TraversalOptions.build(
                max_depth=cfg.traversal.max_depth,
                skip_types=cfg.traversal.skip_types,
            ),
        )
        self.generator = StableIdGenerator(IdOptions.from_config(cfg.id_generation))
        self.stripper = AttributeStripper(
            cfg.strip.attributes,
            prefix=cfg.strip.prefix,
            identifier_attribute=cfg.attribute_name,
        )
        self._runs_lock = threading.Lock()
        self._active_runs: set[threading.Event] = set()

    @classmethod
    def from_paths(cls, root: Path, config_path: Path | None = None) -> FilePipeline:
        return cls(root, load_config(config_path))

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()

    def cancel(self) -> None:
        """Stop the project batches in flight before their next file.

        Runs started afterwards are not affected.
        """

        with self._runs_lock:
            for cancelled in self._active_runs:
                cancelled.set()

    def relative_path(self, path: Path) -> str:
        resolved = path.resolve()
        try:
            return resolved.relative_to(self.root).as_posix()
        except ValueError:
            return resolved.as_posix()

    # -- public surface --------------------------------------------------

    def scan_file(self, path: Path) -> DetectionResult:
        """Parse and detect only; raises `SourceParseError` for broken files."""

        relative = self.relative_path(path)
        text = path.read_text(encoding="utf-8")
        digest = _digest(text)
        tree = self._parsed_tree(relative, text, digest)
        return self._detected(relative, tree, digest)

    def process_file(
        self,
        path: Path,
        mode: ProcessMode = "tag",
        *,
        output_path: Path | None = None,
        production: bool = False,
        dry_run: bool = False,
    ) -> FileResult:
        _check_mode(mode)
        outcome = self._run_file(path, mode, output_path, production, dry_run)
        if outcome.bucket is not None and not dry_run:
            saved = self.store.replace_files({outcome.relative_path: outcome.bucket})
            if not saved.success:
                return outcome.result.model_copy(
                    update={
                        "status": "failed",
                        "error_code": "store_failed",
                        "error": saved.message or "mapping store save failed",
                    }
                )
            if saved.conflicts:
                outcome.result.warnings.extend(
                    f"identifier {conflict} belongs to another file" for conflict in saved.conflicts
                )
        return outcome.result

    def process_project(
        self,
        root: Path | None = None,
        output_dir: Path | None = None,
        mode: ProcessMode = "tag",
        *,
        production: bool = False,
        dry_run: bool = False,
    ) -> ProjectResult:
        return asyncio.run(
            self.process_project_async(
                root, output_dir, mode, production=production, dry_run=dry_run
            )
        )

    async def process_project_async(
        self,
        root: Path | None = None,
        output_dir: Path | None = None,
        mode: ProcessMode = "tag",
        *,
        production: bool = False,
        dry_run: bool = False,
    ) -> ProjectResult:
        """Process every matching file under `root` (default: the pipeline root).

        A failing file is recorded and the batch continues unless fail-fast is
        configured, in which case `PipelineAbortedError` carries the partial
        result after the already-processed buckets are saved.
        """

        _check_mode(mode)
        cancelled = threading.Event()
        with self._runs_lock:
            self._active_runs.add(cancelled)
        try:
            return await self._run_project(
                root, output_dir, mode, cancelled, production=production, dry_run=dry_run
            )
        finally:
            with self._runs_lock:
                self._active_runs.discard(cancelled)

    async def _run_project(
        self,
        root: Path | None,
        output_dir: Path | None,
        mode: ProcessMode,
        cancelled: threading.Event,
        *,
        production: bool,
        dry_run: bool,
    ) -> ProjectResult:
        started = time.perf_counter()
        base = (root or self.root).resolve()
        processing = self.config.file_processing
        files = discover_files(base, processing.include, processing.exclude)
        workers = processing.max_workers if processing.parallel else 1
        semaphore = asyncio.Semaphore(workers)
        abort = threading.Event()

        async def _process(path: Path) -> _FileOutcome | None:
            async with semaphore:
                if cancelled.is_set() or abort.is_set():
                    return None
                target = output_dir / path.relative_to(base) if output_dir is not None else None
                outcome = await asyncio.to_thread(
                    self._run_file, path, mode, target, production, dry_run
                )
                if processing.fail_fast and not outcome.result.success:
                    abort.set()
                return outcome

        outcomes = await asyncio.gather(*(_process(path) for path in files))

        result = ProjectResult(root=base.as_posix(), mode=mode)
        buckets: dict[str, list[ElementMapping]] = {}
        for path, outcome in zip(files, outcomes):
            if outcome is None:
                result.files.append(
                    FileResult(file_path=self.relative_path(path), mode=mode, status="skipped")
                )
                continue
            result.files.append(outcome.result)
            if outcome.bucket is not None:
                buckets[outcome.relative_path] = outcome.bucket
            if not outcome.result.success:
                result.errors.append(
                    FileError(
                        file_path=outcome.relative_path,
                        code=outcome.result.error_code or "failed",
                        message=outcome.result.error or "processing failed",
                    )
                )

        result.cancelled = cancelled.is_set()
        if buckets and not dry_run:
            saved = await asyncio.to_thread(self.store.replace_files, buckets)
            result.store_saved = saved.success
            if not saved.success:
                result.errors.append(
                    FileError(
                        file_path=self.store.path.as_posix(),
                        code="store_failed",
                        message=saved.message or "mapping store save failed",
                    )
                )
            for conflict in saved.conflicts:
                result.errors.append(
                    FileError(
                        file_path=self.store.path.as_posix(),
                        code="id_conflict",
                        message=f"identifier {conflict} belongs to another file",
                    )
                )

        result.stats = _project_stats(result, started)
        log_event(
            LOGGER,
            logging.INFO,
            "project_processed",
            root=result.root,
            mode=mode,
            files_total=result.stats.files_total,
            files_failed=result.stats.files_failed,
            changes_total=result.stats.changes_total,
            cancelled=result.cancelled,
            duration_ms=result.stats.duration_ms,
        )
        if abort.is_set():
            raise PipelineAbortedError(
                f"Aborted after {result.stats.files_failed} failed file(s)", result=result
            )
        return result

    # -- per-file stages -------------------------------------------------

    def _run_file(
        self,
        path: Path,
        mode: ProcessMode,
        output_path: Path | None,
        production: bool,
        dry_run: bool,
    ) -> _FileOutcome:
        started = time.perf_counter()
        relative = self.relative_path(path)
        outcome = self._run_stages(path, relative, mode, output_path, production, dry_run)
        outcome.result.duration_ms = int((time.perf_counter() - started) * 1000)
        log_event(
            LOGGER,
            logging.WARNING if outcome.result.status == "failed" else logging.INFO,
            "file_processed",
            file_path=relative,
            mode=mode,
            status=outcome.result.status,
            elements=outcome.result.elements_detected,
            changes=len(outcome.result.changes),
            error_code=outcome.result.error_code,
            duration_ms=outcome.result.duration_ms,
        )
        return outcome

    def _run_stages(
        self,
        path: Path,
        relative: str,
        mode: ProcessMode,
        output_path: Path | None,
        production: bool,
        dry_run: bool,
    ) -> _FileOutcome:
        def _failed(code: str, message: str, **extra: object) -> _FileOutcome:
            result = FileResult(
                file_path=relative, mode=mode, status="failed", error_code=code, error=message
            )
            return _FileOutcome(result=result.model_copy(update=extra), relative_path=relative)

        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return _failed("read_failed", str(exc))

        digest = _digest(text)
        try:
            pristine = self._parsed_tree(relative, text, digest)
        except SourceParseError as exc:
            return _failed("parse_failed", str(exc))

        detection = self._detected(relative, pristine, digest)
        tree = copy.deepcopy(pristine)
        result = FileResult(
            file_path=relative,
            mode=mode,
            status="unchanged",
            elements_detected=detection.total,
        )
        if detection.error is not None:
            result.warnings.append(f"detection failed: {detection.error}")

        bucket: list[ElementMapping] | None
        if mode == "strip":
            mutation = (
                self.stripper.clean_for_production(tree) if production else self.stripper.strip(tree)
            )
            bucket = []
            planned: list[_Planned] = []
        else:
            existing = self._existing_mappings(relative)
            plan = self._plan(relative, detection, existing, retag=(mode == "retag"))
            result.warnings.extend(plan.warnings)
            injector = IdentifierInjector(
                self.config.attribute_name,
                preserve_existing=self.config.injection.preserve_existing and mode == "tag",
            )
            mutation = injector.inject(tree, plan.contexts)
            planned = plan.planned
            bucket = None

        result.changes = mutation.changes
        result.warnings.extend(
            f"{failure.reason}: <{failure.tag_name}> at line "
            f"{failure.position.line if failure.position else '?'}"
            for failure in mutation.failures
        )

        try:
            output = self.codec.render(tree)
        except SerializationError as exc:
            return _failed("serialize_failed", str(exc), elements_detected=detection.total)

        if mode != "strip":
            bucket = self._fold_mappings(
                relative, planned, mutation, output, existing, detection.elements
            )
            result.identifiers = [mapping.id for mapping in bucket]
        result.mappings = len(bucket or [])

        if mutation.modified:
            result.status = "stripped" if mode == "strip" else "tagged"

        destination = output_path or path
        if not dry_run and (mutation.modified or destination.resolve() != path.resolve()):
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.write_text(output, encoding="utf-8")
            except OSError as exc:
                return _failed("write_failed", str(exc), elements_detected=detection.total)
            result.output_path = destination.as_posix()
            if destination.resolve() == path.resolve() and self.cache is not None:
                self.cache.invalidate(relative, "tree")
                self.cache.invalidate(relative, "elements")

        if not dry_run and self.cache is not None:
            self.cache.put("mappings", relative, list(bucket or []))

        return _FileOutcome(result=result, relative_path=relative, bucket=None if dry_run else bucket)

    def _parsed_tree(self, relative: str, text: str, digest: str) -> Program:
        if self.cache is not None:
            cached = self.cache.get("tree", relative)
            if cached is not None and cached[0] == digest:
                return cached[1]
        tree = self.codec.parse(text, relative)
        if self.cache is not None:
            self.cache.put("tree", relative, (digest, tree))
        return tree

    def _detected(self, relative: str, tree: Program, digest: str) -> DetectionResult:
        if self.cache is not None:
            cached = self.cache.get("elements", relative)
            if cached is not None and cached[0] == digest:
                return cached[1]
        detection = self.detector.detect(tree, relative)
        if self.cache is not None and detection.error is None:
            self.cache.put("elements", relative, (digest, detection))
        return detection

    def _existing_mappings(self, relative: str) -> list[ElementMapping]:
        if self.cache is not None:
            cached = self.cache.get("mappings", relative)
            if cached is not None:
                return list(cached)
        mappings = self.store.get_by_file(relative)
        if self.cache is not None:
            self.cache.put("mappings", relative, list(mappings))
        return mappings

    def _plan(
        self,
        relative: str,
        detection: DetectionResult,
        existing: Sequence[ElementMapping],
        *,
        retag: bool,
    ) -> _Plan:
        plan = _Plan()
        own_ids = {mapping.id for mapping in existing}
        taken = self.store.all_ids() - own_ids
        assigned: set[str] = set()
        preserve = self.config.injection.preserve_existing and not retag

        for element in detection.elements:
            if preserve and element.has_identifier:
                value = element.identifier_value
                if not validate_id(value) or value in assigned or value in taken:
                    plan.warnings.append(
                        f"kept unusable identifier {value!r} on <{element.tag_name}> "
                        f"at line {element.position.line}"
                    )
                    continue
                prior = _find_by_id(existing, value)
                element_hash = prior.hash if prior is not None else self.generator.compute_hash(
                    GenerationContext(file_path=relative, element=element)
                )
                plan.planned.append(
                    _Planned(element=element, identifier=value, hash=element_hash, inject=False, reused=True)
                )
                assigned.add(value)
                continue

            generated = self.generator.generate(
                GenerationContext(
                    file_path=relative,
                    element=element,
                    existing_mappings=existing,
                    taken_ids=taken | assigned,
                )
            )
            if generated.identifier in assigned:
                generated = self.generator.generate(
                    GenerationContext(
                        file_path=relative,
                        element=element,
                        taken_ids=taken | assigned,
                    )
                )
            plan.contexts.append(InjectionContext(element=element, generated=generated))
            plan.planned.append(
                _Planned(
                    element=element,
                    identifier=generated.identifier,
                    hash=generated.hash,
                    inject=True,
                    reused=generated.reused,
                )
            )
            assigned.add(generated.identifier)

        # Reuse is keyed on position only; an element that moved gets a new id.
        fresh_tags = {item.element.tag_name for item in plan.planned if item.inject and not item.reused}
        for mapping in existing:
            if mapping.id not in assigned and mapping.element in fresh_tags:
                plan.warnings.append(
                    f"stored identifier {mapping.id!r} for <{mapping.element}> no longer matches "
                    f"a position (was line {mapping.line}); a new identifier was generated"
                )
        return plan

    def _fold_mappings(
        self,
        relative: str,
        planned: Sequence[_Planned],
        mutation: MutationResult,
        output: str,
        existing: Sequence[ElementMapping],
        detected: Sequence[DetectedElement],
    ) -> list[ElementMapping]:
        """Build the file bucket for elements that now carry an identifier.

        Positions are taken from the printed output so that the next run sees
        the same line/column the mapping records.
        """

        failed = {failure.identifier for failure in mutation.failures}
        carried = [item for item in planned if not (item.inject and item.identifier in failed)]
        positions = self._output_positions(
            relative, output, [item.element for item in carried], detected
        )
        now = utc_now_iso()

        bucket: list[ElementMapping] = []
        for item, position in zip(carried, positions):
            element = item.element
            prior = _find_by_id(existing, item.identifier) or _find_by_position(existing, element)
            candidate = ElementMapping(
                id=item.identifier,
                file_path=relative,
                element=element.tag_name,
                element_type=element.kind,
                line=position.line,
                column=position.column,
                start=position.start,
                end=position.end,
                hash=item.hash,
                attributes={
                    name: value
                    for name, value in element.attribute_map().items()
                    if name != self.config.attribute_name
                },
                content=element.text_content,
                created=prior.created if prior is not None else now,
                updated=prior.updated if prior is not None else now,
            )
            if prior is not None and candidate == prior:
                bucket.append(prior)
            elif prior is not None:
                bucket.append(candidate.model_copy(update={"updated": now}))
            else:
                bucket.append(candidate)
        return bucket

    def _output_positions(
        self,
        relative: str,
        output: str,
        carried: Sequence[DetectedElement],
        detected: Sequence[DetectedElement],
    ) -> list[Position]:
        """Positions of `carried` elements in the printed output.

        Injection never adds or removes elements, so the output's detection
        order matches the input's one to one.
        """

        original = [element.position for element in carried]
        try:
            reparsed = self.detector.detect(self.codec.parse(output, relative), relative)
        except SourceParseError as exc:
            LOGGER.warning("Could not re-read output of %s: %s", relative, exc)
            return original
        if len(reparsed.elements) != len(detected):
            LOGGER.warning("Element count changed while tagging %s; keeping input positions", relative)
            return original

        order = {id(element): index for index, element in enumerate(detected)}
        positions: list[Position] = []
        for element in carried:
            match = reparsed.elements[order[id(element)]]
            positions.append(match.position if match.tag_name == element.tag_name else element.position)
        return positions


def _find_by_id(mappings: Sequence[ElementMapping], element_id: str | None) -> ElementMapping | None:
    if element_id is None:
        return None
    for mapping in mappings:
        if mapping.id == element_id:
            return mapping
    return None


def _find_by_position(
    mappings: Sequence[ElementMapping], element: DetectedElement
) -> ElementMapping | None:
    for mapping in mappings:
        if (
            mapping.element == element.tag_name
            and mapping.line == element.position.line
            and mapping.column == element.position.column
        ):
            return mapping
    return None


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _check_mode(mode: str) -> None:
    if mode not in PROCESS_MODES:
        raise ValueError(f"Unsupported mode: {mode}")


def _project_stats(result: ProjectResult, started: float) -> ProjectStats:
    files = result.files
    return ProjectStats(
        files_total=len(files),
        files_processed=sum(1 for item in files if item.status != "skipped"),
        files_modified=sum(1 for item in files if item.modified),
        files_failed=sum(1 for item in files if item.status == "failed"),
        files_skipped=sum(1 for item in files if item.status == "skipped"),
        elements_detected=sum(item.elements_detected for item in files),
        changes_total=sum(len(item.changes) for item in files),
        mappings_written=sum(item.mappings for item in files),
        duration_ms=int((time.perf_counter() - started) * 1000),
    )
