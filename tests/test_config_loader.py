from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from eltag.config.loader import DEFAULT_CONFIG_PATH, load_config
from eltag.config.models import TaggerConfig


def test_default_config_matches_model_defaults() -> None:
    config = load_config()

    assert DEFAULT_CONFIG_PATH.exists()
    assert config == TaggerConfig()
    assert config.attribute_name == "data-el-id"
    assert config.file_processing.include == ["**/*.js", "**/*.jsx", "**/*.ts", "**/*.tsx"]
    assert {".next/**", "coverage/**", "**/*.test.*", "**/*.spec.*"} <= set(config.file_processing.exclude)
    assert config.cache.max_bytes == 100 * 1024 * 1024


def test_partial_config_fills_defaults(tmp_path: Path) -> None:
    path = tmp_path / "eltag.yaml"
    path.write_text(
        "attribute_name: data-qa\nid_generation:\n  hash_length: 6\ntag_elements:\n  fragments: true\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.attribute_name == "data-qa"
    assert config.id_generation.hash_length == 6
    assert config.id_generation.id_format == "{filename}-{element}-{hash}"
    assert config.tag_elements.fragments is True
    assert config.tag_elements.dom_elements is True


def test_empty_config_file_is_all_defaults(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    assert load_config(path) == TaggerConfig()


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("a: [1, 2\n", "Invalid YAML"),
        ("- just\n- a list\n", "must contain a mapping"),
        ("unknown_key: 1\n", "Invalid config schema"),
        ("id_generation:\n  hash_length: 0\n", "Invalid config schema"),
        ("attribute_name: 'has space'\n", "Invalid config schema"),
    ],
)
def test_invalid_config_raises_value_error(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError, match=message):
        load_config(path)


def test_missing_config_file_raises_value_error(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Config file not found"):
        load_config(tmp_path / "missing.yaml")


def test_config_snapshot_uses_camel_case_keys() -> None:
    snapshot = TaggerConfig().config_snapshot()

    assert set(snapshot) == {"attributeName", "tagElements", "idGeneration"}
    assert snapshot["idGeneration"]["hash_length"] == 8


def test_model_rejects_blank_separator() -> None:
    with pytest.raises(ValidationError):
        TaggerConfig.model_validate({"id_generation": {"separator": ""}})
