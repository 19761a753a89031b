from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from common.utils import now_utc_iso
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tracker import errors
from tracker.extraction import (
    DEFAULT_EXTRACTION_TIMEOUT_SECONDS,
    DEFAULT_GEMINI_MODEL,
    ExtractionClient,
    GeminiExtractionClient,
)
from tracker.fetcher import DEFAULT_FETCH_TIMEOUT_SECONDS, DEFAULT_PAGE_TEXT_LIMIT, PageFetcher
from tracker.importer import ApplicationImporter, TextFetcher
from tracker.models import (
    Application,
    ApplicationCreate,
    ApplicationDetail,
    ApplicationStatus,
    ApplicationUpdate,
    DataResponse,
    ImportApplicationRequest,
    MetricsSnapshot,
    PingResult,
)
from tracker.repository import ApplicationRepository

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "job-tracker", "tracker.sqlite3")
LOGGER = logging.getLogger("tracker.main")


UNMATCHED_ROUTE = "<unmatched>"


def route_template(request: Request) -> str:
    """Path template of the matched route, so ids never become metric keys."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


@dataclass
class RouteStats:
    count: int = 0
    by_class: Counter[str] = field(default_factory=Counter)
    latency_ms_total: float = 0.0

    def as_dict(self) -> dict[str, float | int]:
        stats: dict[str, float | int] = {
            "count": self.count,
            "latency_ms_avg": self.latency_ms_total / self.count if self.count else 0.0,
        }
        for status_class in ("2xx", "4xx", "5xx"):
            stats[status_class] = self.by_class[status_class]
        return stats


class MetricsStore:
    """Request counters per method and route template."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests = 0
        self._errors = 0
        self._routes: dict[str, RouteStats] = defaultdict(RouteStats)

    def observe(self, *, method: str, route: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            self._requests += 1
            if status_code >= 400:
                self._errors += 1
            stats = self._routes[f"{method} {route}"]
            stats.count += 1
            stats.by_class[f"{status_code // 100}xx"] += 1
            stats.latency_ms_total += duration_ms

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals={"requests": self._requests, "errors": self._errors},
                endpoints={key: stats.as_dict() for key, stats in self._routes.items()},
            )


def _env_number(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def describe_validation_error(exc: RequestValidationError) -> str:
    details = exc.errors()
    if not details:
        return "Invalid request"
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


def error_response(status_code: int, message: str, headers: dict[str, str] | None = None):
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


def create_app(
    *,
    database_path: str | None = None,
    extraction_client: ExtractionClient | None = None,
    page_fetcher: TextFetcher | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("TRACKER_DB_PATH", DEFAULT_DB_PATH)
    resolved_client = extraction_client or GeminiExtractionClient(
        api_key=os.getenv("GEMINI_API_KEY"),
        model=os.getenv("GEMINI_MODEL", "").strip() or DEFAULT_GEMINI_MODEL,
        timeout_seconds=_env_number(
            "TRACKER_EXTRACTION_TIMEOUT_SECONDS", DEFAULT_EXTRACTION_TIMEOUT_SECONDS
        ),
    )
    resolved_fetcher = page_fetcher or PageFetcher(
        timeout_seconds=_env_number("TRACKER_FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS),
        max_chars=int(_env_number("TRACKER_PAGE_TEXT_LIMIT", DEFAULT_PAGE_TEXT_LIMIT)),
    )

    repository = ApplicationRepository(database_path=resolved_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.repository = repository
        app.state.extraction_client = resolved_client
        app.state.importer = ApplicationImporter(repository, resolved_fetcher, resolved_client)
        app.state.metrics = MetricsStore()
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Job Application Tracker", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(400, describe_validation_error(exc))

    @app.exception_handler(errors.ValidationError)
    async def validation_handler(request: Request, exc: errors.ValidationError):
        return error_response(400, str(exc))

    @app.exception_handler(errors.NotFoundError)
    async def not_found_handler(request: Request, exc: errors.NotFoundError):
        return error_response(404, str(exc) or "Application not found")

    @app.exception_handler(errors.ImportFailed)
    async def import_failed_handler(request: Request, exc: errors.ImportFailed):
        return error_response(500, "import failed")

    def record_request(
        request: Request, request_id: str, status_code: int, started: float, **extra: Any
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        # The router writes the matched route into the shared scope.
        route = route_template(request)
        request.app.state.metrics.observe(
            method=request.method,
            route=route,
            status_code=status_code,
            duration_ms=duration_ms,
        )
        event = {
            "event": "request_complete",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "route": route,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 3),
            **extra,
        }
        if status_code >= 500:
            LOGGER.error(json.dumps(event))
        else:
            LOGGER.info(json.dumps(event))

    @app.middleware("http")
    async def request_tracking_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            LOGGER.exception("Unhandled error for %s %s", request.method, request.url.path)
            record_request(request, request_id, 500, started, error=type(exc).__name__)
            return error_response(500, "Internal Server Error", {"x-request-id": request_id})

        response.headers["x-request-id"] = request_id
        record_request(request, request_id, response.status_code, started)
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "tracker"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.get("/applications", response_model=DataResponse[list[Application]])
    async def list_applications(
        request: Request,
        status: ApplicationStatus | None = None,
        limit: int | None = Query(default=None, ge=0),
        offset: int | None = Query(default=None, ge=0),
    ) -> dict[str, Any]:
        applications = await run_in_threadpool(
            request.app.state.repository.list_applications,
            status=status,
            limit=limit,
            offset=offset,
        )
        return {"data": applications}

    @app.post(
        "/applications",
        status_code=201,
        response_model=DataResponse[Application],
    )
    async def create_application(payload: ApplicationCreate, request: Request) -> dict[str, Any]:
        application = await run_in_threadpool(
            request.app.state.repository.create_application,
            payload,
        )
        return {"data": application}

    @app.post(
        "/applications/import",
        status_code=201,
        response_model=DataResponse[Application],
    )
    async def import_application(
        payload: ImportApplicationRequest,
        request: Request,
    ) -> dict[str, Any]:
        application = await run_in_threadpool(
            request.app.state.importer.import_from_link,
            payload.url,
            payload.status,
        )
        return {"data": application}

    @app.get("/applications/{application_id}", response_model=DataResponse[Application])
    async def get_application(application_id: int, request: Request) -> dict[str, Any]:
        application = await run_in_threadpool(
            request.app.state.repository.get_application,
            application_id,
        )
        if application is None:
            raise errors.NotFoundError("Application not found")
        return {"data": application}

    @app.get(
        "/applications/{application_id}/detail",
        response_model=DataResponse[ApplicationDetail],
    )
    async def get_application_detail(application_id: int, request: Request) -> dict[str, Any]:
        detail = await run_in_threadpool(
            request.app.state.repository.get_application_detail,
            application_id,
        )
        if detail is None:
            raise errors.NotFoundError("Application not found")
        return {"data": detail}

    @app.put("/applications/{application_id}", response_model=DataResponse[Application])
    async def update_application(
        application_id: int,
        payload: ApplicationUpdate,
        request: Request,
    ) -> dict[str, Any]:
        application = await run_in_threadpool(
            request.app.state.repository.update_application,
            application_id,
            payload,
        )
        if application is None:
            raise errors.NotFoundError("Application not found")
        return {"data": application}

    @app.delete("/applications/{application_id}", status_code=204)
    async def delete_application(application_id: int, request: Request) -> Response:
        deleted = await run_in_threadpool(
            request.app.state.repository.delete_application,
            application_id,
        )
        if not deleted:
            raise errors.NotFoundError("Application not found")
        return Response(status_code=204)

    @app.get("/extraction/ping", response_model=DataResponse[PingResult])
    async def extraction_ping(request: Request) -> dict[str, Any]:
        try:
            text = await run_in_threadpool(request.app.state.extraction_client.generate, "ping")
        except errors.ServiceError as exc:
            LOGGER.warning(json.dumps({"event": "extraction_ping_failed", "error": str(exc)}))
            raise HTTPException(
                status_code=500,
                detail="Extraction service request failed",
            ) from exc
        return {"data": {"text": text}}

    return app


app = create_app()
