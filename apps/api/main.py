"""FastAPI wrapper exposing mappings and the tagging pipeline."""

from __future__ import annotations

import asyncio
import importlib.metadata
import json
import logging
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError

from eltag.config.loader import load_config
from eltag.pipeline.file_pipeline import FilePipeline
from eltag.pipeline.models import PROCESS_MODES, ProcessMode
from eltag.store.models import MappingQuery
from eltag.utils.errors import PipelineAbortedError
from eltag.utils.events import dump_json

app = FastAPI(title="eltag API", version="0.1.0")
logger = logging.getLogger("eltag.api")

_REQUEST_ID_HEADER = "X-Eltag-Request-Id"
_DEFAULT_MAX_CONCURRENCY = 2


class ProcessRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str
    mode: ProcessMode = "tag"
    dry_run: bool = False
    production: bool = False


class ApiRequestError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        error_code: str,
        message: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.detail = detail or {}


@dataclass
class _Runtime:
    root: Path
    config_path: Path | None
    pipeline: FilePipeline


@dataclass
class _ConcurrencyLimiter:
    max_concurrency: int
    semaphore: threading.BoundedSemaphore


_runtime_lock = threading.Lock()
_runtime_cache: _Runtime | None = None
_limiter_lock = threading.Lock()
_limiter_cache: _ConcurrencyLimiter | None = None


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Ensure every response has a request id header."""

    request_id = uuid.uuid4().hex
    request.state.request_id = request_id
    try:
        response = await call_next(request)
    except Exception:  # noqa: BLE001
        _log_event(
            logging.ERROR,
            "error",
            request_id,
            error_code="INTERNAL_ERROR",
            status_code=500,
            failure_stage="middleware",
        )
        response = _error_response(
            status_code=500,
            error_code="INTERNAL_ERROR",
            message="internal server error",
            request_id=request_id,
            detail={"path": request.url.path},
        )
    response.headers.setdefault(_REQUEST_ID_HEADER, request_id)
    return response


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness endpoint."""

    return {"status": "ok"}


@app.get("/v1/meta")
async def meta_v1(request: Request) -> JSONResponse:
    request_id = _request_id_from_request(request)
    try:
        runtime = _get_runtime()
    except ApiRequestError as exc:
        return _api_error(exc, request_id)

    config = runtime.pipeline.config
    payload = {
        "version": app.version,
        "package_version": _package_version(),
        "modes": list(PROCESS_MODES),
        "root": runtime.root.as_posix(),
        "attribute_name": config.attribute_name,
        "mapping_file": config.store.mapping_file,
        "id_format": config.id_generation.id_format,
    }
    return JSONResponse(status_code=200, headers={_REQUEST_ID_HEADER: request_id}, content=payload)


@app.get("/v1/mappings")
async def list_mappings_v1(
    request: Request,
    file_path: str | None = None,
    element_type: str | None = None,
    tag_name: str | None = None,
    element_id: str | None = None,
    content: str | None = None,
    regex: bool = False,
    sort_by: str | None = None,
    descending: bool = False,
    offset: int = 0,
    limit: int | None = None,
) -> JSONResponse:
    """Query mappings; repeated `attr=NAME=VALUE` parameters filter attributes."""

    request_id = _request_id_from_request(request)
    try:
        runtime = _get_runtime()
        query = _build_query(
            file_path=file_path,
            element_type=element_type,
            tag_name=tag_name,
            element_id=element_id,
            content=content,
            attributes=request.query_params.getlist("attr"),
            regex=regex,
            sort_by=sort_by,
            descending=descending,
            offset=offset,
            limit=limit,
        )
    except ApiRequestError as exc:
        return _api_error(exc, request_id)

    mappings = runtime.pipeline.store.query(query)
    return JSONResponse(
        status_code=200,
        headers={_REQUEST_ID_HEADER: request_id},
        content={"count": len(mappings), "mappings": [mapping.to_json() for mapping in mappings]},
    )


@app.get("/v1/mappings/{element_id}")
async def get_mapping_v1(request: Request, element_id: str) -> JSONResponse:
    request_id = _request_id_from_request(request)
    try:
        runtime = _get_runtime()
    except ApiRequestError as exc:
        return _api_error(exc, request_id)

    mapping = runtime.pipeline.store.get_by_id(element_id)
    if mapping is None:
        return _error_response(
            status_code=404,
            error_code="NOT_FOUND",
            message="unknown element id",
            request_id=request_id,
            detail={"element_id": element_id},
        )
    return JSONResponse(status_code=200, headers={_REQUEST_ID_HEADER: request_id}, content=mapping.to_json())


@app.get("/v1/files/mappings")
async def file_mappings_v1(request: Request, path: str) -> JSONResponse:
    request_id = _request_id_from_request(request)
    try:
        runtime = _get_runtime()
    except ApiRequestError as exc:
        return _api_error(exc, request_id)

    mappings = runtime.pipeline.store.get_by_file(path)
    return JSONResponse(
        status_code=200,
        headers={_REQUEST_ID_HEADER: request_id},
        content={"file_path": path, "mappings": [mapping.to_json() for mapping in mappings]},
    )


@app.get("/v1/stats")
async def stats_v1(request: Request) -> JSONResponse:
    request_id = _request_id_from_request(request)
    try:
        runtime = _get_runtime()
    except ApiRequestError as exc:
        return _api_error(exc, request_id)

    stats = runtime.pipeline.store.stats()
    return JSONResponse(
        status_code=200,
        headers={_REQUEST_ID_HEADER: request_id},
        content=stats.model_dump(mode="json", by_alias=True),
    )


@app.post("/v1/process", response_model=None)
async def process_v1(request: Request) -> JSONResponse:
    """Run the pipeline on a file or directory under the configured root."""

    request_id = _request_id_from_request(request)
    started = time.perf_counter()
    limiter = _get_concurrency_limiter()
    if not limiter.semaphore.acquire(blocking=False):
        return _error_response(
            status_code=429,
            error_code="BUSY",
            message="too many concurrent process requests",
            request_id=request_id,
            detail={"max_concurrency": limiter.max_concurrency},
        )

    try:
        try:
            runtime = _get_runtime()
            body = await _read_process_request(request)
            target = _resolve_target(runtime.root, body.path)
        except ApiRequestError as exc:
            return _api_error(exc, request_id)

        _log_event(logging.INFO, "process_started", request_id, path=body.path, mode=body.mode)
        pipeline = runtime.pipeline
        if target.is_dir():
            try:
                result = await pipeline.process_project_async(
                    target, None, body.mode, production=body.production, dry_run=body.dry_run
                )
            except PipelineAbortedError as exc:
                payload = exc.result.model_dump(mode="json") if exc.result is not None else {}
                _log_event(
                    logging.WARNING,
                    "process_aborted",
                    request_id,
                    path=body.path,
                    duration_ms=_elapsed_ms(started),
                )
                return _error_response(
                    status_code=409,
                    error_code="ABORTED",
                    message=str(exc),
                    request_id=request_id,
                    detail={"result": payload},
                )
            payload = {"kind": "project", "success": result.success, **result.model_dump(mode="json")}
        else:
            file_result = await asyncio.to_thread(
                pipeline.process_file,
                target,
                body.mode,
                production=body.production,
                dry_run=body.dry_run,
            )
            payload = {
                "kind": "file",
                "success": file_result.success,
                **file_result.model_dump(mode="json"),
            }

        _log_event(
            logging.INFO,
            "process_completed",
            request_id,
            path=body.path,
            mode=body.mode,
            success=payload["success"],
            duration_ms=_elapsed_ms(started),
        )
        return JSONResponse(status_code=200, headers={_REQUEST_ID_HEADER: request_id}, content=payload)
    finally:
        limiter.semaphore.release()


async def _read_process_request(request: Request) -> ProcessRequest:
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ApiRequestError(
            status_code=400,
            error_code="INVALID_REQUEST",
            message="request body must be JSON",
        ) from exc
    try:
        return ProcessRequest.model_validate(raw)
    except ValidationError as exc:
        raise ApiRequestError(
            status_code=400,
            error_code="INVALID_REQUEST",
            message="invalid process request",
            detail={"errors": json.loads(exc.json(include_url=False))},
        ) from exc


def _resolve_target(root: Path, raw_path: str) -> Path:
    target = (root / raw_path).resolve()
    if target != root and root not in target.parents:
        raise ApiRequestError(
            status_code=400,
            error_code="INVALID_PATH",
            message="path must stay inside the project root",
            detail={"path": raw_path},
        )
    if not target.exists():
        raise ApiRequestError(
            status_code=404,
            error_code="NOT_FOUND",
            message="path does not exist",
            detail={"path": raw_path},
        )
    return target


def _build_query(
    *,
    file_path: str | None,
    element_type: str | None,
    tag_name: str | None,
    element_id: str | None,
    content: str | None,
    attributes: list[str],
    regex: bool,
    sort_by: str | None,
    descending: bool,
    offset: int,
    limit: int | None,
) -> MappingQuery:
    def _pattern(value: str | None) -> Any:
        if value is None or not regex:
            return value
        return re.compile(value)

    try:
        attribute_filters: dict[str, Any] = {}
        for item in attributes:
            name, sep, value = item.partition("=")
            if not sep or not name:
                raise ValueError(f"attr must look like NAME=VALUE, got {item!r}")
            attribute_filters[name] = _pattern(value)
        return MappingQuery(
            file_path=_pattern(file_path),
            element_type=element_type,
            tag_name=_pattern(tag_name),
            element_id=_pattern(element_id),
            content=_pattern(content),
            attributes=attribute_filters,
            sort_by=sort_by,
            descending=descending,
            offset=offset,
            limit=limit,
        )
    except (ValueError, re.error) as exc:
        raise ApiRequestError(
            status_code=400,
            error_code="INVALID_QUERY",
            message="invalid mapping query",
            detail={"reason": str(exc)},
        ) from exc


def _get_runtime() -> _Runtime:
    global _runtime_cache

    root = Path(os.getenv("ELTAG_ROOT", ".")).resolve()
    raw_config = os.getenv("ELTAG_CONFIG", "").strip()
    config_path = Path(raw_config) if raw_config else None

    with _runtime_lock:
        if (
            _runtime_cache is not None
            and _runtime_cache.root == root
            and _runtime_cache.config_path == config_path
        ):
            return _runtime_cache

        try:
            config = load_config(config_path)
        except ValueError as exc:
            raise ApiRequestError(
                status_code=500,
                error_code="CONFIG_ERROR",
                message="config could not be loaded",
                detail={"reason": str(exc)},
            ) from exc

        if _runtime_cache is not None:
            _runtime_cache.pipeline.close()
        _runtime_cache = _Runtime(
            root=root,
            config_path=config_path,
            pipeline=FilePipeline(root, config),
        )
        return _runtime_cache


def _max_concurrency() -> int:
    raw = os.getenv("ELTAG_MAX_CONCURRENCY", str(_DEFAULT_MAX_CONCURRENCY))
    try:
        value = int(raw)
    except ValueError:
        return _DEFAULT_MAX_CONCURRENCY
    return value if value > 0 else _DEFAULT_MAX_CONCURRENCY


def _get_concurrency_limiter() -> _ConcurrencyLimiter:
    global _limiter_cache

    max_concurrency = _max_concurrency()
    with _limiter_lock:
        if _limiter_cache is None or _limiter_cache.max_concurrency != max_concurrency:
            _limiter_cache = _ConcurrencyLimiter(
                max_concurrency=max_concurrency,
                semaphore=threading.BoundedSemaphore(value=max_concurrency),
            )
        return _limiter_cache


def _request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    generated = uuid.uuid4().hex
    request.state.request_id = generated
    return generated


def _package_version() -> str:
    try:
        return importlib.metadata.version("eltag")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _api_error(exc: ApiRequestError, request_id: str) -> JSONResponse:
    _log_event(
        logging.WARNING,
        "error",
        request_id,
        error_code=exc.error_code,
        status_code=exc.status_code,
    )
    return _error_response(
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        request_id=request_id,
        detail=exc.detail,
    )


def _error_response(
    *,
    status_code: int,
    error_code: str,
    message: str,
    request_id: str,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    payload_detail = dict(detail or {})
    payload_detail["request_id"] = request_id

    return JSONResponse(
        status_code=status_code,
        headers={_REQUEST_ID_HEADER: request_id},
        content={
            "error_code": error_code,
            "message": message,
            "detail": payload_detail,
        },
    )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _log_event(level: int, event: str, request_id: str, **fields: Any) -> None:
    payload = {
        "event": event,
        "request_id": request_id,
        **fields,
    }
    logger.log(level, dump_json(payload))
