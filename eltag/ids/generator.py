"""Deterministic, reusable identifiers for detected markup elements."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import PurePath

from eltag.config.models import IdGenerationConfig
from eltag.ids.models import GeneratedID, GenerationContext, IDComponents
from eltag.store.models import ElementMapping
from eltag.utils.errors import GenerationFailure
from eltag.utils.result import Err, Ok, Result

LOGGER = logging.getLogger("eltag.ids")

_PLACEHOLDER_RE = re.compile(r"\{[^}]+\}")
_PASCAL_RE = re.compile(r"[-_\s]+(.)?")
_UNSAFE_ID_RE = re.compile(r"[<>:\"/\\|?*\s]")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class IdOptions:
    id_format: str = "{filename}-{element}-{hash}"
    hash_length: int = 8
    include_position: bool = True
    include_line_numbers: bool = False
    prefix: str = ""
    suffix: str = ""
    separator: str = "-"

    @classmethod
    def from_config(cls, config: IdGenerationConfig) -> IdOptions:
        return cls(**config.model_dump())


def validate_id(identifier: str | None) -> bool:
    """Reject empty identifiers and ones with filesystem/URL-unsafe characters."""

    if not identifier or not identifier.strip():
        return False
    return _UNSAFE_ID_RE.search(identifier) is None


def to_pascal_case(text: str) -> str:
    converted = _PASCAL_RE.sub(lambda match: (match.group(1) or "").upper(), text)
    return converted[:1].upper() + converted[1:]


def normalize_element_name(tag_name: str) -> str:
    normalized = tag_name.replace(".", "").replace(":", "")
    if not normalized:
        return normalized
    if normalized[0] == normalized[0].lower():
        return normalized.lower()
    return to_pascal_case(normalized)


def file_stem(file_path: str) -> str:
    return PurePath(file_path).stem


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits: list[str] = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


class StableIdGenerator:
    """Generate identifiers, reusing one already on file for the same position."""

    def __init__(self, options: IdOptions | None = None) -> None:
        self.options = options or IdOptions()
        self._hash_cache: dict[str, str] = {}
        self._hash_hits = 0
        self._hash_misses = 0
        self._hash_lock = threading.Lock()

    def generate(self, context: GenerationContext) -> GeneratedID:
        """Return an identifier; never raises, degrades to a fallback id."""

        outcome = self.try_generate(context)
        if isinstance(outcome, Ok):
            return outcome.value

        LOGGER.warning(
            "ID generation failed for <%s> in %s (%s): %s",
            context.element.tag_name,
            context.file_path,
            outcome.error.reason,
            outcome.error.detail,
        )
        return self._fallback(context)

    def try_generate(self, context: GenerationContext) -> Result[GeneratedID, GenerationFailure]:
        reused = self._find_existing(context)
        if reused is not None:
            LOGGER.debug("Reusing existing ID %s", reused.identifier)
            return Ok(reused)

        try:
            components = self._components(context)
            identifier = self.format_id(components)
        except Exception as exc:  # noqa: BLE001
            return Err(GenerationFailure(reason="format_failed", detail=str(exc)))

        if not validate_id(identifier):
            return Err(GenerationFailure(reason="invalid_identifier", detail=repr(identifier)))

        if identifier in context.taken_ids:
            identifier, components = self._deduplicate(identifier, components, context.taken_ids)

        LOGGER.debug("Generated new ID %s for <%s>", identifier, context.element.tag_name)
        return Ok(GeneratedID(identifier=identifier, hash=components.hash, components=components))

    def generate_batch(self, contexts: Iterable[GenerationContext]) -> list[GeneratedID]:
        return [self.generate(context) for context in contexts]

    def compute_hash(self, context: GenerationContext) -> str:
        hash_input = self.hash_input(context)
        with self._hash_lock:
            cached = self._hash_cache.get(hash_input)
            if cached is not None:
                self._hash_hits += 1
                return cached
            self._hash_misses += 1
        digest = hashlib.md5(hash_input.encode("utf-8")).hexdigest()[: self.options.hash_length]
        with self._hash_lock:
            self._hash_cache[hash_input] = digest
        return digest

    def hash_input(self, context: GenerationContext) -> str:
        element = context.element
        parts = [context.file_path, element.tag_name, element.kind]
        if self.options.include_position:
            parts.extend([str(element.position.line), str(element.position.column)])
        if self.options.include_line_numbers:
            parts.append(str(element.position.line))
        pairs = sorted(
            {
                f"{attr.name}={attr.value or ''}"
                for attr in element.attributes
                if not attr.is_identifier
            }
        )
        if pairs:
            parts.append(",".join(pairs))
        return "|".join(parts)

    def format_id(self, components: IDComponents) -> str:
        opts = self.options
        identifier = opts.id_format
        identifier = identifier.replace("{filename}", components.filename)
        identifier = identifier.replace("{element}", components.element)
        identifier = identifier.replace("{hash}", components.hash)
        if components.position is not None:
            identifier = identifier.replace("{position}", components.position)
        if components.index is not None:
            identifier = identifier.replace("{index}", components.index)
        identifier = _PLACEHOLDER_RE.sub("", identifier)

        sep = opts.separator
        if opts.prefix:
            identifier = f"{opts.prefix}{sep}{identifier}"
        if opts.suffix:
            identifier = f"{identifier}{sep}{opts.suffix}"

        escaped = re.escape(sep)
        identifier = re.sub(f"(?:{escaped})+", sep, identifier)
        return re.sub(f"^(?:{escaped})+|(?:{escaped})+$", "", identifier)

    def clear_cache(self) -> None:
        with self._hash_lock:
            self._hash_cache.clear()
            self._hash_hits = 0
            self._hash_misses = 0

    def cache_stats(self) -> dict[str, int]:
        with self._hash_lock:
            return {
                "hash_cache_size": len(self._hash_cache),
                "hits": self._hash_hits,
                "misses": self._hash_misses,
            }

    def with_options(self, **overrides: object) -> StableIdGenerator:
        return StableIdGenerator(replace(self.options, **overrides))

    def _components(self, context: GenerationContext) -> IDComponents:
        position = context.element.position
        return IDComponents(
            filename=to_pascal_case(file_stem(context.file_path)),
            element=normalize_element_name(context.element.tag_name),
            hash=self.compute_hash(context),
            position=f"{position.line}-{position.column}" if self.options.include_position else None,
            index=str(context.index) if context.index is not None else None,
        )

    def _find_existing(self, context: GenerationContext) -> GeneratedID | None:
        element = context.element
        for mapping in context.existing_mappings:
            if (
                mapping.element == element.tag_name
                and mapping.line == element.position.line
                and mapping.column == element.position.column
                and validate_id(mapping.id)
            ):
                return GeneratedID(
                    identifier=mapping.id,
                    hash=mapping.hash,
                    components=self._split_components(mapping),
                    reused=True,
                )
        return None

    def _split_components(self, mapping: ElementMapping) -> IDComponents:
        parts = mapping.id.split(self.options.separator)
        return IDComponents(
            filename=parts[0] if parts and parts[0] else "unknown",
            element=parts[1] if len(parts) > 1 else "unknown",
            hash=mapping.hash or (parts[2] if len(parts) > 2 else "unknown"),
        )

    def _deduplicate(
        self, identifier: str, components: IDComponents, taken: Iterable[str]
    ) -> tuple[str, IDComponents]:
        taken_ids = set(taken)
        counter = 2
        while f"{identifier}{self.options.separator}{counter}" in taken_ids:
            counter += 1
        return (
            f"{identifier}{self.options.separator}{counter}",
            replace(components, index=str(counter)),
        )

    def _fallback(self, context: GenerationContext) -> GeneratedID:
        stem = _UNSAFE_ID_RE.sub("_", file_stem(context.file_path)) or "unknown"
        tag = _UNSAFE_ID_RE.sub("_", context.element.tag_name) or "element"
        stamp = to_base36(int(time.time() * 1000))
        identifier = f"{stem}-{tag}-{stamp}"
        return GeneratedID(
            identifier=identifier,
            hash="fallback",
            components=IDComponents(filename=stem, element=tag, hash="fallback"),
            fallback=True,
        )
