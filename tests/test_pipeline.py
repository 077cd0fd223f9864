from __future__ import annotations

import json
import re
from pathlib import Path

import pytest

from eltag.config.models import TaggerConfig
from eltag.pipeline.file_pipeline import FilePipeline

CARD = """import { Button } from "./Button";

export const Card = ({ title, save }) => (
  <div className="card">
    <h2>{title}</h2>
    <Button onClick={save}>Save</Button>
    <p>Body text</p>
  </div>
);
"""


def _config(**overrides: object) -> TaggerConfig:
    payload: dict[str, object] = {"cache": {"sweep_interval_seconds": None}}
    payload.update(overrides)
    return TaggerConfig.model_validate(payload)


def _write(root: Path, relative: str, text: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def pipeline(tmp_path: Path):
    instance = FilePipeline(tmp_path, _config())
    yield instance
    instance.close()


def test_tag_injects_identifiers_and_records_mappings(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)

    result = pipeline.process_file(path)

    assert result.status == "tagged"
    assert result.success is True
    assert result.file_path == "src/Card.jsx"
    assert result.elements_detected == 3
    assert [change.tag_name for change in result.changes] == ["div", "h2", "p"]
    assert all(re.fullmatch(r"Card-(div|h2|p)-[0-9a-f]{8}", identifier) for identifier in result.identifiers)

    tagged = path.read_text(encoding="utf-8")
    for identifier in result.identifiers:
        assert f'data-el-id="{identifier}"' in tagged
    assert "<Button onClick={save}>" in tagged

    mappings = pipeline.store.get_by_file("src/Card.jsx")
    assert [mapping.id for mapping in mappings] == result.identifiers
    div = mappings[0]
    assert div.element == "div"
    assert div.attributes == {"className": "card"}
    assert (div.line, div.column) == (4, 2)
    assert mappings[2].content == "Body text"

    stored = json.loads((tmp_path / ".element-mapping.json").read_text(encoding="utf-8"))
    assert stored["config"]["attributeName"] == "data-el-id"
    assert stored["stats"]["totalElements"] == 3


def test_tagging_twice_is_byte_identical(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)
    pipeline.process_file(path)
    first_text = path.read_text(encoding="utf-8")
    first_mappings = pipeline.store.get_by_file("src/Card.jsx")

    second = pipeline.process_file(path)

    assert second.status == "unchanged"
    assert second.changes == []
    assert path.read_text(encoding="utf-8") == first_text
    assert pipeline.store.get_by_file("src/Card.jsx") == first_mappings


def test_fresh_pipeline_reuses_identifiers_from_store(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)
    first = pipeline.process_file(path)

    fresh = FilePipeline(tmp_path, _config())
    try:
        again = fresh.process_file(path)
    finally:
        fresh.close()

    assert again.changes == []
    assert again.identifiers == first.identifiers


def test_strip_restores_original_and_retagging_reproduces_ids(
    tmp_path: Path, pipeline: FilePipeline
) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)
    tagged = pipeline.process_file(path)

    stripped = pipeline.process_file(path, "strip")

    assert stripped.status == "stripped"
    assert len(stripped.changes) == 3
    assert path.read_text(encoding="utf-8") == CARD
    assert pipeline.store.get_by_file("src/Card.jsx") == []

    again = pipeline.process_file(path)
    assert again.identifiers == tagged.identifiers


def test_retag_keeps_ids_at_unchanged_positions(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)
    tagged = pipeline.process_file(path)
    text = path.read_text(encoding="utf-8")

    retagged = pipeline.process_file(path, "retag")

    assert retagged.changes == []
    assert retagged.identifiers == tagged.identifiers
    assert path.read_text(encoding="utf-8") == text


def test_retag_replaces_foreign_identifier(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Box.jsx", 'export const Box = () => <div data-el-id="hand-made">x</div>;\n')

    tagged = pipeline.process_file(path)
    assert tagged.changes == []
    assert tagged.identifiers == ["hand-made"]

    pipeline.store.remove_file("src/Box.jsx")
    if pipeline.cache is not None:
        pipeline.cache.clear()
    retagged = pipeline.process_file(path, "retag")

    assert [change.type for change in retagged.changes] == ["update"]
    assert retagged.changes[0].old_value == "hand-made"
    assert retagged.identifiers[0].startswith("Box-div-")


def test_duplicate_preserved_identifiers_are_reported(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(
        tmp_path,
        "src/Dup.jsx",
        'export const Dup = () => (\n  <ul>\n    <li data-el-id="same">a</li>\n    <li data-el-id="same">b</li>\n  </ul>\n);\n',
    )

    result = pipeline.process_file(path)

    assert result.identifiers.count("same") == 1
    assert any("kept unusable identifier 'same'" in warning for warning in result.warnings)
    assert [change.tag_name for change in result.changes] == ["ul"]


def test_dry_run_changes_nothing(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)

    result = pipeline.process_file(path, dry_run=True)

    assert len(result.changes) == 3
    assert result.output_path is None
    assert path.read_text(encoding="utf-8") == CARD
    assert pipeline.store.get_by_file("src/Card.jsx") == []
    assert not (tmp_path / ".element-mapping.json").exists()


def test_output_path_leaves_source_untouched(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)
    out = tmp_path / "out" / "Card.jsx"

    result = pipeline.process_file(path, output_path=out)

    assert result.output_path == out.as_posix()
    assert path.read_text(encoding="utf-8") == CARD
    assert 'data-el-id="Card-div-' in out.read_text(encoding="utf-8")


def test_moved_elements_get_new_identifiers_with_warning(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)
    out = tmp_path / "out" / "Card.jsx"
    first = pipeline.process_file(path, output_path=out)
    same = pipeline.process_file(path, output_path=out)
    assert same.identifiers == first.identifiers
    assert same.warnings == []

    path.write_text("\n" + CARD, encoding="utf-8")
    moved = pipeline.process_file(path, output_path=out)

    assert set(moved.identifiers).isdisjoint(first.identifiers)
    assert len([warning for warning in moved.warnings if "no longer matches a position" in warning]) == 3
    assert [mapping.line for mapping in pipeline.store.get_by_file("src/Card.jsx")] == [5, 6, 8]


def test_parse_failure_is_reported_without_touching_store(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Broken.jsx", "export const B = () => <div><span></div>;\n")

    result = pipeline.process_file(path)

    assert result.status == "failed"
    assert result.success is False
    assert result.error_code == "parse_failed"
    assert "(line 1, column" in (result.error or "")
    assert pipeline.store.get_by_file("src/Broken.jsx") == []


def test_missing_file_is_read_failure(tmp_path: Path, pipeline: FilePipeline) -> None:
    result = pipeline.process_file(tmp_path / "src" / "Nope.jsx")

    assert result.error_code == "read_failed"


def test_plain_typescript_file_has_no_elements(tmp_path: Path, pipeline: FilePipeline) -> None:
    source = "export const cast = <Foo>bar;\n"
    path = _write(tmp_path, "src/util.ts", source)

    result = pipeline.process_file(path)

    assert result.status == "unchanged"
    assert result.elements_detected == 0
    assert path.read_text(encoding="utf-8") == source


def test_component_policy_and_custom_attribute(tmp_path: Path) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)
    config = _config(
        attribute_name="data-qa",
        tag_elements={"dom_elements": False, "custom_components": True},
        id_generation={"hash_length": 4, "prefix": "qa"},
    )
    pipeline = FilePipeline(tmp_path, config)
    try:
        result = pipeline.process_file(path)
    finally:
        pipeline.close()

    assert [change.tag_name for change in result.changes] == ["Button"]
    assert re.fullmatch(r"qa-Card-Button-[0-9a-f]{4}", result.identifiers[0])
    assert f'<Button data-qa="{result.identifiers[0]}" onClick={{save}}>' in path.read_text(encoding="utf-8")


def test_production_strip_removes_test_attributes(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(
        tmp_path,
        "src/T.jsx",
        'export const T = () => <div data-el-id="T-div-1" data-testid="t" id="keep" />;\n',
    )

    result = pipeline.process_file(path, "strip", production=True)

    assert {change.attribute for change in result.changes} == {"data-el-id", "data-testid"}
    assert path.read_text(encoding="utf-8") == 'export const T = () => <div id="keep" />;\n'


def test_scan_file_does_not_modify(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)

    detection = pipeline.scan_file(path)

    assert [element.tag_name for element in detection.elements] == ["div", "h2", "p"]
    assert path.read_text(encoding="utf-8") == CARD


def test_unknown_mode_is_rejected(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)

    with pytest.raises(ValueError, match="Unsupported mode"):
        pipeline.process_file(path, "bogus")  # type: ignore[arg-type]


def test_pipeline_without_cache(tmp_path: Path) -> None:
    path = _write(tmp_path, "src/Card.jsx", CARD)
    pipeline = FilePipeline(tmp_path, _config(cache={"enabled": False}))

    first = pipeline.process_file(path)
    second = pipeline.process_file(path)

    assert pipeline.cache is None
    assert second.changes == []
    assert second.identifiers == first.identifiers


def test_tsx_with_generic_function_type_is_tagged(tmp_path: Path, pipeline: FilePipeline) -> None:
    path = _write(
        tmp_path,
        "src/List.tsx",
        "type ListProps = { render: <T>(item: T) => string };\n"
        "export const List = () => <div>hi</div>;\n",
    )

    result = pipeline.process_file(path)

    assert result.status == "tagged"
    assert [change.tag_name for change in result.changes] == ["div"]
    assert "type ListProps = { render: <T>(item: T) => string };" in path.read_text(encoding="utf-8")
