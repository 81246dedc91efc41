from __future__ import annotations

import hmac
import logging
import uuid

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from compliance_monitor.errors import ApiError, JobLockBusy
from compliance_monitor.llm_provider import get_provider_info
from compliance_monitor.models import REVIEW_APPROVED, REVIEW_PENDING, REVIEW_REJECTED, RUN_FAILED
from compliance_monitor.publisher import reconciliation_report
from compliance_monitor.runtime import MonitorRuntime, build_runtime_from_env
from compliance_monitor.schemas import TriggerRunRequest, error_envelope, success_envelope

logger = logging.getLogger(__name__)

_REVIEW_STATUSES = {REVIEW_PENDING, REVIEW_APPROVED, REVIEW_REJECTED}


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, object] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
            details=details,
        ),
    )


def create_app(runtime: MonitorRuntime | None = None) -> FastAPI:
    runtime = runtime or build_runtime_from_env()
    store = runtime.store
    app = FastAPI(title="Compliance Monitor API", version="0.1.0")
    app.state.runtime = runtime

    def _require_cron_secret(provided: str | None) -> None:
        expected = runtime.settings.cron_secret
        if not expected:
            raise ApiError(
                code="TRIGGER_NOT_CONFIGURED",
                message="MONITOR_CRON_SECRET is not configured",
                error_class="configuration",
                retryable=False,
                http_status=503,
            )
        if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            raise ApiError(
                code="AUTH_UNAUTHORIZED",
                message="invalid cron secret",
                error_class="security_sensitive",
                retryable=False,
                http_status=401,
            )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = request.state.trace_id
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(JobLockBusy)
    async def handle_job_lock_busy(request: Request, exc: JobLockBusy):
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class="conflict",
            retryable=True,
            status_code=409,
            details={"current_job": exc.current_job, "locked_since": exc.locked_since},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {"status": "ok", "store_backend": store.backend},
            _trace_id_from_request(request),
        )

    @app.get("/api/v1/reviews")
    def list_reviews(
        request: Request,
        status: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        if status is not None and status not in _REVIEW_STATUSES:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message=f"status must be one of {sorted(_REVIEW_STATUSES)}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        items = store.reviews.list(status=status, limit=limit)
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    # Registered before /reviews/{review_id} so the literal path wins.
    @app.get("/api/v1/reviews/reconciliation")
    def list_reconciliation(request: Request):
        items = reconciliation_report(reviews=store.reviews, catalog=store.catalog)
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.get("/api/v1/reviews/{review_id}")
    def get_review(review_id: str, request: Request):
        entry = store.reviews.get(review_id=review_id)
        if entry is None:
            raise ApiError(
                code="REVIEW_NOT_FOUND",
                message="review entry not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return success_envelope(entry, _trace_id_from_request(request))

    @app.get("/api/v1/change-records")
    def list_change_records(
        request: Request,
        jurisdiction_id: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        items = store.change_records.list(
            jurisdiction_id=jurisdiction_id.upper() if jurisdiction_id else None,
            limit=limit,
        )
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.get("/api/v1/templates/{template_id}/versions")
    def list_template_versions(template_id: str, request: Request):
        if store.catalog.get_template(template_id) is None:
            raise ApiError(
                code="TEMPLATE_NOT_FOUND",
                message="template not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        items = [v.as_dict() for v in store.catalog.list_versions(template_id)]
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.get("/api/v1/runs")
    def list_runs(request: Request, limit: int = Query(default=50, ge=1, le=500)):
        items = store.run_summaries.list(limit=limit)
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.get("/api/v1/runs/dangling")
    def list_dangling_runs(request: Request):
        items = store.run_summaries.list_dangling()
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.get("/api/v1/runs/status")
    def run_status(request: Request):
        data = {
            "lock": runtime.job_lock.status(),
            "sources": {s.name: s.enabled for s in runtime.sources},
            "classifier": get_provider_info(),
        }
        return success_envelope(data, _trace_id_from_request(request))

    @app.get("/api/v1/runs/{run_id}")
    def get_run(run_id: str, request: Request):
        rows = store.run_summaries.list_for_run(run_id=run_id)
        if not rows:
            raise ApiError(
                code="RUN_NOT_FOUND",
                message="run not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return success_envelope({"run_id": run_id, "rows": rows}, _trace_id_from_request(request))

    @app.post("/api/v1/runs")
    def trigger_run(
        request: Request,
        payload: TriggerRunRequest | None = None,
        x_cron_secret: str | None = Header(default=None, alias="X-Cron-Secret"),
    ):
        _require_cron_secret(x_cron_secret)
        body = payload or TriggerRunRequest()
        summary = runtime.run_now(jurisdiction_ids=body.jurisdiction_ids or None, trigger="api")
        if summary["status"] == RUN_FAILED:
            logger.error("manual run failed run_id=%s: %s", summary["run_id"], summary.get("error_message"))
        return success_envelope(summary, _trace_id_from_request(request))

    return app


app = create_app()
