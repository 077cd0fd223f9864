from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from eltag.store.mapping_store import MappingStore, compute_stats
from eltag.store.models import ElementMapping, MappingFile


def _mapping(identifier: str, file_path: str = "src/A.jsx", **overrides: object) -> ElementMapping:
    values: dict[str, object] = {
        "id": identifier,
        "file_path": file_path,
        "element": "div",
        "element_type": "dom",
        "line": 1,
        "column": 0,
        "hash": "abc",
    }
    values.update(overrides)
    return ElementMapping(**values)  # type: ignore[arg-type]


def test_missing_store_loads_empty(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / ".element-mapping.json")

    data = store.load()

    assert data.files == {}
    assert data.version == "1.0.0"
    assert store.get_by_id("nope") is None
    assert store.get_by_file("src/A.jsx") == []


def test_save_persists_camel_case_document(tmp_path: Path) -> None:
    path = tmp_path / ".element-mapping.json"
    store = MappingStore(path, config_snapshot={"attributeName": "data-el-id"})

    result = store.save([_mapping("A-div-1", element_type="component", element="Card")])

    assert result.success is True
    assert result.affected == 1
    raw = json.loads(path.read_text(encoding="utf-8"))
    entry = raw["files"]["src/A.jsx"][0]
    assert entry["filePath"] == "src/A.jsx"
    assert entry["elementType"] == "component"
    assert "file_path" not in entry
    assert raw["config"] == {"attributeName": "data-el-id"}
    assert raw["stats"]["totalElements"] == 1
    assert raw["stats"]["fileTypes"] == {"jsx": 1}

    reopened = MappingStore(path)
    assert reopened.get_by_id("A-div-1") == store.get_by_id("A-div-1")


def test_save_merges_without_touching_other_files(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "map.json", backup=False)
    store.save([_mapping("A-1"), _mapping("B-1", "src/B.jsx")])

    store.save([_mapping("A-1", line=5), _mapping("A-2")])

    assert [mapping.id for mapping in store.get_by_file("src/A.jsx")] == ["A-1", "A-2"]
    assert store.get_by_id("A-1").line == 5  # type: ignore[union-attr]
    assert [mapping.id for mapping in store.get_by_file("src/B.jsx")] == ["B-1"]
    assert store.all_ids() == {"A-1", "A-2", "B-1"}
    assert store.file_paths() == ["src/A.jsx", "src/B.jsx"]


def test_identifier_owned_by_another_file_is_a_conflict(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "map.json", backup=False)
    store.save([_mapping("shared", "src/A.jsx")])

    result = store.save([_mapping("shared", "src/B.jsx"), _mapping("B-1", "src/B.jsx")])

    assert result.success is True
    assert result.conflicts == ["shared"]
    assert result.affected == 1
    assert store.get_by_id("shared").file_path == "src/A.jsx"  # type: ignore[union-attr]


def test_replace_files_swaps_buckets_and_empty_bucket_removes(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "map.json", backup=False)
    store.save([_mapping("A-1"), _mapping("A-2"), _mapping("B-1", "src/B.jsx")])

    store.replace_files({"src/A.jsx": [_mapping("A-3")], "src/B.jsx": []})

    assert [mapping.id for mapping in store.get_by_file("src/A.jsx")] == ["A-3"]
    assert store.file_paths() == ["src/A.jsx"]
    assert store.get_by_id("A-1") is None


def test_update_and_remove(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "map.json", backup=False)
    store.save([_mapping("A-1"), _mapping("A-2")])

    patched = store.update("A-1", {"line": 9, "content": "hello"})
    camel = store.update("A-2", {"elementType": "fragment"})
    blocked = store.update("A-1", {"filePath": "elsewhere.jsx"})
    unknown = store.update("missing", {"line": 1})

    assert patched.success and camel.success
    assert store.get_by_id("A-1").line == 9  # type: ignore[union-attr]
    assert store.get_by_id("A-1").content == "hello"  # type: ignore[union-attr]
    assert store.get_by_id("A-2").element_type == "fragment"  # type: ignore[union-attr]
    assert blocked.success is False
    assert unknown.success is False

    assert store.remove("A-1").success is True
    assert store.remove("A-1").success is False
    assert store.remove_file("src/A.jsx").affected == 1
    assert store.file_paths() == []


def test_corrupt_store_starts_empty_and_is_rewritten(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    path = tmp_path / "map.json"
    path.write_text("{not json", encoding="utf-8")
    store = MappingStore(path, backup=False)

    with caplog.at_level(logging.WARNING, logger="eltag.store"):
        assert store.load().files == {}

    assert "Unreadable mapping store" in caplog.text
    assert store.last_validation is not None and store.last_validation.valid is False
    assert store.save([_mapping("A-1")]).success is True
    assert json.loads(path.read_text(encoding="utf-8"))["files"]["src/A.jsx"][0]["id"] == "A-1"


def test_invalid_entries_are_dropped_on_load(tmp_path: Path) -> None:
    path = tmp_path / "map.json"
    path.write_text(
        json.dumps(
            {
                "version": "1.0.0",
                "files": {
                    "src/A.jsx": [
                        _mapping("A-1").to_json(),
                        {"id": "", "filePath": "src/A.jsx"},
                        _mapping("A-1").to_json(),
                    ]
                },
                "futureField": True,
            }
        ),
        encoding="utf-8",
    )
    store = MappingStore(path)

    assert [mapping.id for mapping in store.get_by_file("src/A.jsx")] == ["A-1"]
    report = store.last_validation
    assert report is not None
    assert report.valid is True
    assert report.valid_mappings == 1
    assert report.invalid_mappings == 2


def test_validate_reports_structural_errors(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "map.json")

    assert store.validate([]).valid is False
    report = store.validate({"files": "nope"})
    assert report.valid is False
    assert "Missing version field" in report.errors


def test_backups_are_created_and_pruned(tmp_path: Path) -> None:
    path = tmp_path / "map.json"
    store = MappingStore(path, backup=True, max_backups=2)

    for index in range(5):
        store.save([_mapping(f"A-{index}")])

    backups = store.backups()
    assert len(backups) == 2
    assert all(backup.name.startswith("map.json.") and backup.name.endswith(".bak") for backup in backups)


def test_failed_save_stays_pending_until_flush(tmp_path: Path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("a file, not a directory", encoding="utf-8")
    store = MappingStore(blocker / "map.json", backup=False)

    result = store.save([_mapping("A-1")])

    assert result.success is False
    assert result.message is not None
    assert store.has_pending_changes is True
    assert store.get_by_id("A-1") is None

    blocker.unlink()
    flushed = store.flush()

    assert flushed.success is True
    assert store.has_pending_changes is False
    assert store.get_by_id("A-1") is not None
    assert (blocker / "map.json").exists()


def test_export_and_import_round_trip(tmp_path: Path) -> None:
    source = MappingStore(tmp_path / "a.json", backup=False)
    source.save([_mapping("A-1"), _mapping("B-1", "src/B.jsx")])
    exported = source.export_json()

    target = MappingStore(tmp_path / "b.json", backup=False)
    target.save([_mapping("C-1", "src/C.jsx")])

    replaced = target.import_json(exported)
    assert replaced.success is True
    assert target.all_ids() == {"A-1", "B-1"}

    merged = target.import_json(json.dumps({"version": "1.0.0", "files": {"src/C.jsx": [_mapping("C-1", "src/C.jsx").to_json()]}}), merge=True)
    assert merged.affected == 1
    assert target.all_ids() == {"A-1", "B-1", "C-1"}

    rejected = target.import_json('{"files": []}')
    assert rejected.success is False
    assert target.import_json("not json").success is False


def test_set_config_and_stats(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "map.json", backup=False)
    store.save(
        [
            _mapping("A-1"),
            _mapping("A-2", element_type="fragment", element="Fragment"),
            _mapping("T-1", "src/T.tsx"),
        ]
    )
    store.set_config({"attributeName": "data-qa"})

    stats = store.stats()
    assert store.get_config() == {"attributeName": "data-qa"}
    assert stats.total_elements == 3
    assert stats.total_files == 2
    assert stats.element_types == {"dom": 2, "component": 0, "fragment": 1}
    assert stats.file_types == {"jsx": 2, "tsx": 1}
    assert stats.last_processed is not None


def test_compute_stats_ignores_empty_buckets() -> None:
    data = MappingFile(files={"src/A.jsx": [], "src/B.jsx": [_mapping("B-1", "src/B.jsx")]})

    stats = compute_stats(data)

    assert stats.total_files == 1
    assert stats.total_elements == 1
