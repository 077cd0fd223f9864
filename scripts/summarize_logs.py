#!/usr/bin/env python3
"""Summarize eltag JSON line logs for ops/CI usage."""

from __future__ import annotations

import argparse
import json
import math
from collections import Counter
from pathlib import Path
from typing import Any


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Summarize eltag structured logs.")
    parser.add_argument("files", nargs="+", help="One or more JSONL log files.")
    parser.add_argument("--json", action="store_true", help="Output JSON.")
    return parser.parse_args()


def _percentile(values: list[int], p: float) -> int | None:
    if not values:
        return None
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, math.ceil((p / 100) * len(ordered)) - 1))
    return ordered[index]


def _json_payload(line: str) -> dict[str, Any] | None:
    """Decode a log line, tolerating a `logging` prefix before the JSON object."""

    raw = line.strip()
    if not raw:
        return None
    start = raw.find("{")
    if start < 0:
        raise ValueError("no JSON object on line")
    payload = json.loads(raw[start:])
    if not isinstance(payload, dict):
        raise ValueError("log line is not a JSON object")
    return payload


def summarize_log_files(paths: list[Path]) -> dict[str, Any]:
    event_counts: Counter[str] = Counter()
    file_status_counts: Counter[str] = Counter()
    error_code_counts: Counter[str] = Counter()
    file_ms_values: list[int] = []
    project_ms_values: list[int] = []
    changes_total = 0
    parse_errors = 0
    lines_total = 0

    for path in paths:
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError:
            parse_errors += 1
            continue

        for line in lines:
            lines_total += 1
            try:
                payload = _json_payload(line)
            except ValueError:
                parse_errors += 1
                continue
            if payload is None:
                continue

            event = payload.get("event")
            if not isinstance(event, str):
                parse_errors += 1
                continue
            event_counts[event] += 1

            error_code = payload.get("error_code")
            if isinstance(error_code, str):
                error_code_counts[error_code] += 1

            duration = payload.get("duration_ms")
            if event == "file_processed":
                status = payload.get("status")
                if isinstance(status, str):
                    file_status_counts[status] += 1
                changes = payload.get("changes")
                if isinstance(changes, int):
                    changes_total += changes
                if isinstance(duration, int | float):
                    file_ms_values.append(int(duration))
            elif event == "project_processed" and isinstance(duration, int | float):
                project_ms_values.append(int(duration))

    return {
        "files": [str(path) for path in paths],
        "lines_total": lines_total,
        "parse_errors": parse_errors,
        "event_counts": dict(sorted(event_counts.items())),
        "file_status_counts": dict(sorted(file_status_counts.items())),
        "error_code_counts": dict(sorted(error_code_counts.items())),
        "changes_total": changes_total,
        "file_ms_p50": _percentile(file_ms_values, 50),
        "file_ms_p95": _percentile(file_ms_values, 95),
        "project_ms_p50": _percentile(project_ms_values, 50),
        "project_ms_p95": _percentile(project_ms_values, 95),
    }


def main() -> None:
    args = _parse_args()
    paths = [Path(item).expanduser() for item in args.files]
    summary = summarize_log_files(paths)

    if args.json:
        print(json.dumps(summary, ensure_ascii=False, indent=2, sort_keys=True))
        return

    print("eltag Log Summary")
    for key in (
        "lines_total",
        "parse_errors",
        "event_counts",
        "file_status_counts",
        "error_code_counts",
        "changes_total",
        "file_ms_p50",
        "file_ms_p95",
        "project_ms_p50",
        "project_ms_p95",
    ):
        print(f"{key}={summary[key]}")


if __name__ == "__main__":
    main()
