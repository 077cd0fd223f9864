"""CLI I/O helpers for atomic report and config writing."""

from __future__ import annotations

import importlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from eltag.config.models import TaggerConfig

yaml = importlib.import_module("yaml")


def write_report_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write a run report JSON atomically."""

    path.parent.mkdir(parents=True, exist_ok=True)
    _atomic_write_json(path, payload)


def write_fallback_report_atomic(
    path: Path,
    *,
    error_type: str,
    error_message: str,
    stage: str,
) -> None:
    """Write a report that only carries the error block."""

    write_report_atomic(
        path,
        {
            "files": [],
            "errors": [],
            "error": {
                "error_type": error_type,
                "error_message": error_message,
                "stage": stage,
            },
        },
    )


def write_config_atomic(path: Path, config: TaggerConfig) -> None:
    """Write a config YAML atomically."""

    path.parent.mkdir(parents=True, exist_ok=True)

    fd, raw_tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f"{path.name}.",
        suffix=".tmp",
    )
    os.close(fd)
    tmp_path = Path(raw_tmp_path)

    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(config.model_dump(mode="json"), handle, allow_unicode=True, sort_keys=False)
        tmp_path.replace(path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
        raise


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        delete=False,
        prefix=f"{path.name}.",
        suffix=".tmp",
    ) as tmp:
        tmp_path = Path(tmp.name)
        json.dump(payload, tmp, ensure_ascii=False, sort_keys=True, separators=(",", ":"))

    tmp_path.replace(path)
