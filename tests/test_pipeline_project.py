from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from eltag.config.models import TaggerConfig
from eltag.pipeline.discovery import discover_files, glob_match, is_included
from eltag.pipeline.file_pipeline import FilePipeline
from eltag.utils.errors import PipelineAbortedError

VALID = "export const {name} = () => <section><p>{name}</p></section>;\n"
BROKEN = "export const Broken = () => <div><span></div>;\n"


def _config(**file_processing: object) -> TaggerConfig:
    return TaggerConfig.model_validate(
        {"cache": {"sweep_interval_seconds": None}, "file_processing": file_processing}
    )


def _write(root: Path, relative: str, text: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _project(root: Path) -> None:
    _write(root, "src/A.jsx", VALID.replace("{name}", "A"))
    _write(root, "src/nested/B.tsx", VALID.replace("{name}", "B"))
    _write(root, "node_modules/lib/Lib.jsx", VALID.replace("{name}", "Lib"))
    _write(root, "dist/Out.jsx", VALID.replace("{name}", "Out"))
    _write(root, "README.md", "# readme\n")


def test_glob_matching_rules() -> None:
    assert glob_match("App.jsx", "**/*.jsx") is True
    assert glob_match("src/deep/App.jsx", "**/*.jsx") is True
    assert glob_match("node_modules/", "**/node_modules/**") is True
    assert glob_match("src/App.css", "**/*.jsx") is False
    assert is_included("src/A.jsx", ["**/*.jsx"], ["**/node_modules/**"]) is True
    assert is_included("node_modules/x/A.jsx", ["**/*.jsx"], ["**/node_modules/**"]) is False


def test_single_star_stays_inside_one_directory() -> None:
    assert glob_match("src/Card.tsx", "src/*.tsx") is True
    assert glob_match("src/deep/nested/Card.tsx", "src/*.tsx") is False
    assert glob_match("src/deep/nested/Card.tsx", "src/**/*.tsx") is True
    assert is_included("src/deep/Card.tsx", ["src/*.tsx"], []) is False


def test_default_excludes_skip_tests_and_build_output(tmp_path: Path) -> None:
    _project(tmp_path)
    _write(tmp_path, "src/A.test.jsx", VALID.replace("{name}", "T"))
    _write(tmp_path, "src/nested/B.spec.tsx", VALID.replace("{name}", "S"))
    _write(tmp_path, ".next/server/Page.jsx", VALID.replace("{name}", "Page"))
    _write(tmp_path, "coverage/lcov/Report.jsx", VALID.replace("{name}", "Report"))
    config = _config()

    found = discover_files(tmp_path, config.file_processing.include, config.file_processing.exclude)

    assert [path.relative_to(tmp_path).as_posix() for path in found] == ["src/A.jsx", "src/nested/B.tsx"]


def test_discover_files_prunes_excluded_directories(tmp_path: Path) -> None:
    _project(tmp_path)
    config = _config()

    found = discover_files(tmp_path, config.file_processing.include, config.file_processing.exclude)

    assert [path.relative_to(tmp_path).as_posix() for path in found] == ["src/A.jsx", "src/nested/B.tsx"]


def test_project_run_tags_every_file_and_saves_once(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    _project(tmp_path)
    pipeline = FilePipeline(tmp_path, _config(max_workers=2))

    with caplog.at_level(logging.INFO, logger="eltag.pipeline"):
        result = pipeline.process_project()
    pipeline.close()

    assert result.success is True
    assert result.store_saved is True
    assert [item.file_path for item in result.files] == ["src/A.jsx", "src/nested/B.tsx"]
    assert result.stats.files_total == 2
    assert result.stats.files_modified == 2
    assert result.stats.changes_total == 4
    assert result.stats.mappings_written == 4

    stored = json.loads((tmp_path / ".element-mapping.json").read_text(encoding="utf-8"))
    assert sorted(stored["files"]) == ["src/A.jsx", "src/nested/B.tsx"]
    assert "data-el-id" not in (tmp_path / "node_modules/lib/Lib.jsx").read_text(encoding="utf-8")

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "eltag.pipeline"]
    assert [event["event"] for event in events].count("file_processed") == 2
    assert events[-1]["event"] == "project_processed"
    assert events[-1]["files_total"] == 2


def test_project_run_is_idempotent(tmp_path: Path) -> None:
    _project(tmp_path)
    pipeline = FilePipeline(tmp_path, _config())
    pipeline.process_project()
    snapshot = (tmp_path / "src/A.jsx").read_text(encoding="utf-8")

    second = pipeline.process_project()
    pipeline.close()

    assert second.stats.changes_total == 0
    assert (tmp_path / "src/A.jsx").read_text(encoding="utf-8") == snapshot


def test_project_output_dir_mirrors_relative_paths(tmp_path: Path) -> None:
    root = tmp_path / "proj"
    out = tmp_path / "out"
    _project(root)
    pipeline = FilePipeline(root, _config(parallel=False))

    result = pipeline.process_project(root, out)
    pipeline.close()

    assert result.success is True
    assert 'data-el-id="A-section-' in (out / "src/A.jsx").read_text(encoding="utf-8")
    assert (out / "src/nested/B.tsx").exists()
    assert "data-el-id" not in (root / "src/A.jsx").read_text(encoding="utf-8")


def test_failing_file_is_recorded_and_batch_continues(tmp_path: Path) -> None:
    _project(tmp_path)
    _write(tmp_path, "src/Broken.jsx", BROKEN)
    pipeline = FilePipeline(tmp_path, _config())

    result = pipeline.process_project()
    pipeline.close()

    assert result.success is False
    assert [(error.file_path, error.code) for error in result.errors] == [("src/Broken.jsx", "parse_failed")]
    assert result.stats.files_failed == 1
    assert result.stats.files_modified == 2
    assert pipeline.store.get_by_file("src/A.jsx")


def test_fail_fast_aborts_and_keeps_processed_buckets(tmp_path: Path) -> None:
    _write(tmp_path, "a.jsx", VALID.replace("{name}", "A"))
    _write(tmp_path, "b.jsx", BROKEN)
    _write(tmp_path, "c.jsx", VALID.replace("{name}", "C"))
    pipeline = FilePipeline(tmp_path, _config(fail_fast=True, parallel=False))

    with pytest.raises(PipelineAbortedError) as exc_info:
        pipeline.process_project()
    pipeline.close()

    partial = exc_info.value.result
    assert partial is not None
    assert [item.status for item in partial.files] == ["tagged", "failed", "skipped"]
    assert partial.store_saved is True
    assert pipeline.store.get_by_file("a.jsx")
    assert pipeline.store.get_by_file("c.jsx") == []
    assert "data-el-id" not in (tmp_path / "c.jsx").read_text(encoding="utf-8")


def test_cancel_stops_current_run_only(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _project(tmp_path)
    pipeline = FilePipeline(tmp_path, _config(parallel=False))
    run_file = pipeline._run_file

    def _run_then_cancel(*args: object):
        outcome = run_file(*args)
        pipeline.cancel()
        return outcome

    monkeypatch.setattr(pipeline, "_run_file", _run_then_cancel)
    first = pipeline.process_project()
    monkeypatch.setattr(pipeline, "_run_file", run_file)
    second = pipeline.process_project()
    pipeline.close()

    assert first.cancelled is True
    assert first.success is False
    assert [result.status for result in first.files] == ["tagged", "skipped"]
    assert first.stats.files_skipped == 1
    assert second.cancelled is False
    assert second.stats.files_skipped == 0
    assert [result.status for result in second.files] == ["unchanged", "tagged"]


def test_cancel_without_running_batch_does_not_block_later_runs(tmp_path: Path) -> None:
    _project(tmp_path)
    pipeline = FilePipeline(tmp_path, _config())
    pipeline.cancel()

    result = pipeline.process_project()
    pipeline.close()

    assert result.cancelled is False
    assert result.stats.files_skipped == 0
    assert result.store_saved is True


def test_project_strip_after_tag_restores_sources(tmp_path: Path) -> None:
    _project(tmp_path)
    original = (tmp_path / "src/nested/B.tsx").read_text(encoding="utf-8")
    pipeline = FilePipeline(tmp_path, _config())

    pipeline.process_project()
    stripped = pipeline.process_project(mode="strip")
    pipeline.close()

    assert stripped.stats.changes_total == 4
    assert (tmp_path / "src/nested/B.tsx").read_text(encoding="utf-8") == original
    assert pipeline.store.file_paths() == []


def test_dry_run_project_writes_nothing(tmp_path: Path) -> None:
    _project(tmp_path)
    pipeline = FilePipeline(tmp_path, _config())

    result = pipeline.process_project(dry_run=True)
    pipeline.close()

    assert result.stats.changes_total == 4
    assert result.store_saved is False
    assert not (tmp_path / ".element-mapping.json").exists()
