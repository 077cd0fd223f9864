"""Small in-memory query engine over element mappings."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, timezone

from eltag.store.models import DateRange, ElementMapping, MappingQuery


def run_query(mappings: Iterable[ElementMapping], query: MappingQuery) -> list[ElementMapping]:
    """Filter, sort and paginate `mappings`.

    Plain strings match `file_path` and `tag_name` exactly and `element_id` /
    `content` as substrings. A mapping without the filtered attribute or
    content never matches.
    """

    matched = [mapping for mapping in mappings if matches(mapping, query)]
    if query.sort_by is not None:
        field_name = query.sort_by
        matched.sort(key=lambda mapping: getattr(mapping, field_name), reverse=query.descending)
    end = None if query.limit is None else query.offset + query.limit
    return matched[query.offset : end]


def matches(mapping: ElementMapping, query: MappingQuery) -> bool:
    if query.file_path is not None and not _match_exact(mapping.file_path, query.file_path):
        return False
    if query.element_type is not None and mapping.element_type != query.element_type:
        return False
    if query.tag_name is not None and not _match_exact(mapping.element, query.tag_name):
        return False
    if query.element_id is not None and not _match_contains(mapping.id, query.element_id):
        return False
    for name, expected in query.attributes.items():
        if name not in mapping.attributes:
            return False
        actual = mapping.attributes[name]
        if isinstance(expected, re.Pattern):
            if actual is None or expected.search(actual) is None:
                return False
        elif actual != expected:
            return False
    if query.content is not None:
        if mapping.content is None or not _match_contains(mapping.content, query.content):
            return False
    if query.date_range is not None and not _in_range(mapping.created, query.date_range):
        return False
    return True


def parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return _aware(parsed)


def _match_exact(value: str, expected: str | re.Pattern[str]) -> bool:
    if isinstance(expected, re.Pattern):
        return expected.search(value) is not None
    return value == expected


def _match_contains(value: str, expected: str | re.Pattern[str]) -> bool:
    if isinstance(expected, re.Pattern):
        return expected.search(value) is not None
    return expected in value


def _in_range(created: str, date_range: DateRange) -> bool:
    timestamp = parse_timestamp(created)
    if timestamp is None:
        return False
    if date_range.start is not None and timestamp < _aware(date_range.start):
        return False
    if date_range.end is not None and timestamp > _aware(date_range.end):
        return False
    return True


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
