"""Configuration models for tagging, storage, caching and file processing."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TagElementsConfig(BaseModel):
    """Which markup kinds receive identifiers."""

    model_config = ConfigDict(extra="forbid")

    dom_elements: bool = True
    custom_components: bool = False
    fragments: bool = False
    text_nodes: bool = False


class IdGenerationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id_format: str = "{filename}-{element}-{hash}"
    hash_length: int = Field(default=8, ge=1, le=32)
    include_position: bool = True
    include_line_numbers: bool = False
    prefix: str = ""
    suffix: str = ""
    separator: str = Field(default="-", min_length=1)


class InjectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    preserve_existing: bool = True


class StripConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attributes: list[str] = Field(default_factory=lambda: ["data-el-id"])
    prefix: str | None = None


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mapping_file: str = ".element-mapping.json"
    backup: bool = True
    max_backups: int = Field(default=5, ge=0)
    validate_on_load: bool = True


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_bytes: int = Field(default=100 * 1024 * 1024, ge=1)
    max_entries: int = Field(default=1000, ge=1)
    default_ttl_seconds: float | None = Field(default=1800.0, gt=0)
    sweep_interval_seconds: float | None = Field(default=300.0, gt=0)


class FileProcessingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    include: list[str] = Field(
        default_factory=lambda: ["**/*.js", "**/*.jsx", "**/*.ts", "**/*.tsx"]
    )
    exclude: list[str] = Field(
        default_factory=lambda: [
            "**/node_modules/**",
            "**/dist/**",
            "**/build/**",
            ".next/**",
            "coverage/**",
            "**/*.test.*",
            "**/*.spec.*",
        ]
    )
    max_workers: int = Field(default=4, ge=1)
    parallel: bool = True
    fail_fast: bool = False


class TraversalConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_depth: int | None = Field(default=None, ge=0)
    skip_types: list[str] = Field(default_factory=list)


class TaggerConfig(BaseModel):
    """Complete tagging configuration loaded from YAML."""

    model_config = ConfigDict(extra="forbid")

    attribute_name: str = "data-el-id"
    tag_elements: TagElementsConfig = Field(default_factory=TagElementsConfig)
    id_generation: IdGenerationConfig = Field(default_factory=IdGenerationConfig)
    injection: InjectionConfig = Field(default_factory=InjectionConfig)
    strip: StripConfig = Field(default_factory=StripConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    file_processing: FileProcessingConfig = Field(default_factory=FileProcessingConfig)
    traversal: TraversalConfig = Field(default_factory=TraversalConfig)

    @field_validator("attribute_name")
    @classmethod
    def _attribute_name_not_blank(cls, value: str) -> str:
        if not value.strip() or any(ch.isspace() for ch in value):
            raise ValueError("attribute_name must be a non-empty name without whitespace")
        return value

    def config_snapshot(self) -> dict[str, Any]:
        """Generation-relevant options recorded in the mapping file."""

        return {
            "attributeName": self.attribute_name,
            "tagElements": self.tag_elements.model_dump(mode="json"),
            "idGeneration": self.id_generation.model_dump(mode="json"),
        }
