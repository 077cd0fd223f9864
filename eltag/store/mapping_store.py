"""Durable JSON store for element mappings, bucketed by source file."""

from __future__ import annotations

import json
import logging
import shutil
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any

from pydantic import ValidationError

from eltag.store.models import (
    ElementMapping,
    MappingFile,
    MappingQuery,
    MappingStats,
    StoreResult,
    ValidationReport,
    utc_now_iso,
)
from eltag.store.query import run_query
from eltag.utils.errors import StoreError

LOGGER = logging.getLogger("eltag.store")

_BACKUP_SUFFIX = ".bak"
_IMMUTABLE_FIELDS = frozenset({"id", "file_path", "filePath"})
_FIELD_ALIASES = {
    name: info.alias or name for name, info in ElementMapping.model_fields.items()
}


@dataclass
class _Snapshot:
    data: MappingFile
    index: dict[str, str] = field(default_factory=dict)


_Operation = Callable[[MappingFile, "dict[str, str]"], StoreResult]


class MappingStore:
    """Persist element mappings in one JSON document.

    Mutations are serialized by a lock and written with a tmp-file replace.
    Readers see the last successfully saved snapshot. A failed write keeps
    the merged data pending until the next mutation or `flush()`.
    """

    def __init__(
        self,
        store_path: Path,
        *,
        backup: bool = True,
        max_backups: int = 5,
        validate_on_load: bool = True,
        config_snapshot: Mapping[str, Any] | None = None,
    ) -> None:
        self._store_path = store_path
        self._backup = backup
        self._max_backups = max_backups
        self._validate_on_load = validate_on_load
        self._config_snapshot = dict(config_snapshot) if config_snapshot is not None else None
        self._write_lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._snapshot: _Snapshot | None = None
        self._pending: MappingFile | None = None
        self.last_validation: ValidationReport | None = None

    @property
    def path(self) -> Path:
        return self._store_path

    @property
    def has_pending_changes(self) -> bool:
        return self._pending is not None

    # -- reads -----------------------------------------------------------

    def load(self) -> MappingFile:
        """Read the store from disk and return a copy of it."""

        with self._load_lock:
            self._snapshot = _index(self._read_file())
        return self._snapshot.data.model_copy(deep=True)

    def get_by_file(self, file_path: str) -> list[ElementMapping]:
        return list(self._current().data.files.get(file_path, []))

    def get_by_id(self, element_id: str) -> ElementMapping | None:
        snapshot = self._current()
        file_path = snapshot.index.get(element_id)
        if file_path is None:
            return None
        for mapping in snapshot.data.files.get(file_path, []):
            if mapping.id == element_id:
                return mapping
        return None

    def query(self, query: MappingQuery | None = None) -> list[ElementMapping]:
        return run_query(self._iter_all(), query or MappingQuery())

    def all_ids(self) -> set[str]:
        return set(self._current().index)

    def file_paths(self) -> list[str]:
        return sorted(self._current().data.files)

    def stats(self) -> MappingStats:
        return self._current().data.stats.model_copy(deep=True)

    def get_config(self) -> dict[str, Any]:
        return dict(self._current().data.config)

    def export_json(self) -> str:
        return _dump(self._current().data)

    # -- writes ----------------------------------------------------------

    def save(self, mappings: Iterable[ElementMapping]) -> StoreResult:
        """Merge mappings into their file buckets; last write wins per id."""

        incoming = list(mappings)

        def _merge(data: MappingFile, owners: dict[str, str]) -> StoreResult:
            conflicts: list[str] = []
            affected = 0
            for mapping in incoming:
                owner = owners.get(mapping.id)
                if owner is not None and owner != mapping.file_path:
                    conflicts.append(mapping.id)
                    continue
                bucket = data.files.setdefault(mapping.file_path, [])
                _upsert(bucket, mapping)
                owners[mapping.id] = mapping.file_path
                affected += 1
            return StoreResult(success=True, affected=affected, conflicts=conflicts)

        return self._mutate(_merge)

    def replace_files(self, buckets: Mapping[str, Iterable[ElementMapping]]) -> StoreResult:
        """Replace whole file buckets; an empty bucket removes the file."""

        incoming = {path: list(mappings) for path, mappings in buckets.items()}

        def _replace(data: MappingFile, owners: dict[str, str]) -> StoreResult:
            for path in incoming:
                for mapping in data.files.pop(path, []):
                    owners.pop(mapping.id, None)
            conflicts: list[str] = []
            affected = 0
            for path, mappings in incoming.items():
                bucket: list[ElementMapping] = []
                for mapping in mappings:
                    owner = owners.get(mapping.id)
                    if owner is not None and owner != path:
                        conflicts.append(mapping.id)
                        continue
                    _upsert(bucket, mapping.model_copy(update={"file_path": path}))
                    owners[mapping.id] = path
                    affected += 1
                if bucket:
                    data.files[path] = bucket
            return StoreResult(success=True, affected=affected, conflicts=conflicts)

        return self._mutate(_replace)

    def update(self, element_id: str, partial: Mapping[str, Any]) -> StoreResult:
        """Patch one mapping; `id` and the owning file cannot change."""

        forbidden = sorted(_IMMUTABLE_FIELDS.intersection(partial))
        if forbidden:
            return StoreResult(success=False, message=f"Cannot update fields: {', '.join(forbidden)}")

        def _patch(data: MappingFile, owners: dict[str, str]) -> StoreResult:
            file_path = owners.get(element_id)
            if file_path is None:
                return StoreResult(success=False, message=f"Unknown element id: {element_id}")
            bucket = data.files[file_path]
            for position, mapping in enumerate(bucket):
                if mapping.id != element_id:
                    continue
                merged = mapping.model_dump(by_alias=True)
                merged.update({_FIELD_ALIASES.get(key, key): value for key, value in partial.items()})
                if "updated" not in partial:
                    merged["updated"] = utc_now_iso()
                try:
                    bucket[position] = ElementMapping.model_validate(merged)
                except ValidationError as exc:
                    return StoreResult(success=False, message=f"Invalid update: {exc}")
                return StoreResult(success=True, affected=1)
            return StoreResult(success=False, message=f"Unknown element id: {element_id}")

        return self._mutate(_patch)

    def remove(self, element_id: str) -> StoreResult:
        def _remove(data: MappingFile, owners: dict[str, str]) -> StoreResult:
            file_path = owners.pop(element_id, None)
            if file_path is None:
                return StoreResult(success=False, message=f"Unknown element id: {element_id}")
            bucket = [mapping for mapping in data.files[file_path] if mapping.id != element_id]
            if bucket:
                data.files[file_path] = bucket
            else:
                del data.files[file_path]
            return StoreResult(success=True, affected=1)

        return self._mutate(_remove)

    def remove_file(self, file_path: str) -> StoreResult:
        def _remove_file(data: MappingFile, owners: dict[str, str]) -> StoreResult:
            removed = data.files.pop(file_path, [])
            for mapping in removed:
                owners.pop(mapping.id, None)
            return StoreResult(success=True, affected=len(removed))

        return self._mutate(_remove_file)

    def set_config(self, config: Mapping[str, Any]) -> StoreResult:
        self._config_snapshot = dict(config)

        def _set(data: MappingFile, owners: dict[str, str]) -> StoreResult:
            return StoreResult(success=True)

        return self._mutate(_set)

    def import_json(self, text: str, *, merge: bool = False) -> StoreResult:
        """Load a mapping document produced by `export_json`."""

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            return StoreResult(success=False, message=f"Invalid mapping JSON: {exc}")

        report = self.validate(raw)
        if not report.valid:
            return StoreResult(success=False, message="Invalid mapping document", errors=report.errors)
        imported = _parse_mapping_file(raw)

        def _import(data: MappingFile, owners: dict[str, str]) -> StoreResult:
            if not merge:
                data.files.clear()
                owners.clear()
                if imported.config and self._config_snapshot is None:
                    data.config = imported.config
            conflicts: list[str] = []
            affected = 0
            for path, mappings in imported.files.items():
                bucket = data.files.setdefault(path, [])
                for mapping in mappings:
                    owner = owners.get(mapping.id)
                    if owner is not None and owner != path:
                        conflicts.append(mapping.id)
                        continue
                    _upsert(bucket, mapping)
                    owners[mapping.id] = path
                    affected += 1
                if not bucket:
                    del data.files[path]
            return StoreResult(success=True, affected=affected, conflicts=conflicts)

        return self._mutate(_import)

    def flush(self) -> StoreResult:
        """Retry persisting data left pending by a failed save."""

        with self._write_lock:
            if self._pending is None:
                return StoreResult(success=True)
            return self._persist(self._pending, StoreResult(success=True))

    # -- validation ------------------------------------------------------

    def validate(self, raw: object) -> ValidationReport:
        errors: list[str] = []
        warnings: list[str] = []
        valid = invalid = 0

        if not isinstance(raw, dict):
            return ValidationReport(valid=False, errors=["Mapping file must contain an object"])
        if not raw.get("version"):
            errors.append("Missing version field")
        files = raw.get("files")
        if not isinstance(files, dict):
            errors.append("Missing or invalid files field")
            return ValidationReport(valid=False, errors=errors)

        seen: dict[str, str] = {}
        for file_path, bucket in files.items():
            if not isinstance(bucket, list):
                errors.append(f"Invalid mappings for file {file_path}")
                continue
            for position, item in enumerate(bucket):
                try:
                    mapping = ElementMapping.model_validate(item)
                except ValidationError as exc:
                    invalid += 1
                    warnings.append(f"{file_path}[{position}]: {_first_error(exc)}")
                    continue
                if mapping.file_path != file_path:
                    warnings.append(
                        f"{file_path}[{position}]: filePath {mapping.file_path!r} "
                        "does not match its bucket"
                    )
                owner = seen.get(mapping.id)
                if owner is not None:
                    invalid += 1
                    warnings.append(f"{file_path}[{position}]: duplicate id {mapping.id} (also in {owner})")
                    continue
                seen[mapping.id] = file_path
                valid += 1

        return ValidationReport(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            valid_mappings=valid,
            invalid_mappings=invalid,
        )

    # -- internals -------------------------------------------------------

    def _current(self) -> _Snapshot:
        snapshot = self._snapshot
        if snapshot is None:
            with self._load_lock:
                if self._snapshot is None:
                    self._snapshot = _index(self._read_file())
                snapshot = self._snapshot
        return snapshot

    def _iter_all(self) -> Iterable[ElementMapping]:
        data = self._current().data
        for file_path in sorted(data.files):
            yield from data.files[file_path]

    def _mutate(self, operation: _Operation) -> StoreResult:
        with self._write_lock:
            base = self._pending if self._pending is not None else self._current().data
            working = base.model_copy(deep=True)
            owners = _index(working).index
            result = operation(working, owners)
            if not result.success:
                return result
            for conflict in result.conflicts:
                LOGGER.warning("Element id %s is owned by another file; skipped", conflict)
            return self._persist(working, result)

    def _persist(self, data: MappingFile, result: StoreResult) -> StoreResult:
        data.generated = utc_now_iso()
        if self._config_snapshot is not None:
            data.config = dict(self._config_snapshot)
        data.stats = compute_stats(data)
        try:
            self._write(data)
        except StoreError as exc:
            self._pending = data
            LOGGER.error("Failed to save mapping store %s: %s", self._store_path, exc)
            return result.model_copy(update={"success": False, "message": str(exc)})
        self._pending = None
        self._snapshot = _index(data)
        return result

    def _read_file(self) -> MappingFile:
        if not self._store_path.exists():
            return MappingFile(config=dict(self._config_snapshot or {}))

        try:
            raw = json.loads(self._store_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            LOGGER.warning("Unreadable mapping store %s, starting empty: %s", self._store_path, exc)
            self.last_validation = ValidationReport(valid=False, errors=[str(exc)])
            return MappingFile(config=dict(self._config_snapshot or {}))

        report = self.validate(raw)
        self.last_validation = report
        if self._validate_on_load:
            for message in report.errors:
                LOGGER.warning("Mapping store %s: %s", self._store_path, message)
            for message in report.warnings:
                LOGGER.warning("Mapping store %s: %s", self._store_path, message)
        if not isinstance(raw, dict):
            return MappingFile(config=dict(self._config_snapshot or {}))
        return _parse_mapping_file(raw)

    def _write(self, data: MappingFile) -> None:
        try:
            self._store_path.parent.mkdir(parents=True, exist_ok=True)
            if self._backup and self._store_path.exists():
                self._write_backup()
            temp_path = self._store_path.with_suffix(f"{self._store_path.suffix}.tmp")
            temp_path.write_text(_dump(data), encoding="utf-8")
            temp_path.replace(self._store_path)
        except OSError as exc:
            raise StoreError(f"Cannot write mapping store {self._store_path}: {exc}") from exc

    def _write_backup(self) -> None:
        if self._max_backups <= 0:
            return
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._store_path.with_name(f"{self._store_path.name}.{stamp}{_BACKUP_SUFFIX}")
        shutil.copy2(self._store_path, backup_path)
        self._prune_backups()

    def _prune_backups(self) -> None:
        for stale in self.backups()[: -self._max_backups]:
            stale.unlink(missing_ok=True)
            LOGGER.debug("Pruned mapping backup %s", stale)

    def backups(self) -> list[Path]:
        """Existing backup files, oldest first."""

        pattern = f"{self._store_path.name}.*{_BACKUP_SUFFIX}"
        return sorted(self._store_path.parent.glob(pattern))


def compute_stats(data: MappingFile) -> MappingStats:
    element_types = {"dom": 0, "component": 0, "fragment": 0}
    file_types: dict[str, int] = {}
    total = 0
    for file_path, bucket in data.files.items():
        if not bucket:
            continue
        extension = PurePosixPath(file_path).suffix.lstrip(".") or "other"
        for mapping in bucket:
            element_types[mapping.element_type] = element_types.get(mapping.element_type, 0) + 1
            file_types[extension] = file_types.get(extension, 0) + 1
            total += 1
    return MappingStats(
        total_elements=total,
        total_files=sum(1 for bucket in data.files.values() if bucket),
        last_processed=utc_now_iso(),
        element_types=element_types,
        file_types=dict(sorted(file_types.items())),
    )


def _parse_mapping_file(raw: dict[str, Any]) -> MappingFile:
    files: dict[str, list[ElementMapping]] = {}
    seen: set[str] = set()
    raw_files = raw.get("files")
    if isinstance(raw_files, dict):
        for file_path, bucket in raw_files.items():
            if not isinstance(bucket, list):
                continue
            parsed: list[ElementMapping] = []
            for item in bucket:
                try:
                    mapping = ElementMapping.model_validate(item)
                except ValidationError:
                    continue
                if mapping.id in seen:
                    continue
                seen.add(mapping.id)
                parsed.append(mapping)
            if parsed:
                files[file_path] = parsed

    config = raw.get("config")
    data = MappingFile(
        version=str(raw.get("version") or MappingFile().version),
        config=config if isinstance(config, dict) else {},
        files=files,
    )
    if isinstance(raw.get("generated"), str):
        data.generated = raw["generated"]
    data.stats = compute_stats(data)
    return data


def _index(data: MappingFile) -> _Snapshot:
    index: dict[str, str] = {}
    for file_path, bucket in data.files.items():
        for mapping in bucket:
            index.setdefault(mapping.id, file_path)
    return _Snapshot(data=data, index=index)


def _upsert(bucket: list[ElementMapping], mapping: ElementMapping) -> None:
    for position, current in enumerate(bucket):
        if current.id == mapping.id:
            bucket[position] = mapping
            return
    bucket.append(mapping)


def _dump(data: MappingFile) -> str:
    return json.dumps(data.to_json(), ensure_ascii=False, indent=2) + "\n"


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
