"""FastAPI application for contract/invoice reconciliation.

Production-ready API with:
- Invoice analysis against contract terms
- Contract/vendor extraction
- Per-client rate limiting and AI usage tracking
- Structured error responses with machine-readable kinds
- Health and readiness checks for Kubernetes
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import json
import logging
import math
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.analysis.outcome import RequestContext
from services.analysis.service import AnalysisService
from services.api import metrics
from services.extraction.factory import create_extraction_provider
from services.governance.rate_limit import RateLimiter, client_identity
from services.governance.usage import UsageLedger
from services.intake.normalizer import RequestNormalizer
from services.intake.pdf import Pdf2ImageRasterizer
from services.reconciliation.engine import ReconciliationEngine
from services.shared.config import Settings, get_settings
from services.shared.errors import AnalysisError, InternalError, RateLimitExceeded, SchemaValidation
from services.shared.log_utils import configure_logging

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


def build_analysis_service(settings: Settings) -> AnalysisService:
    """Wire the analysis pipeline from configuration."""
    rasterizer = Pdf2ImageRasterizer(dpi=settings.pdf_render_dpi)
    return AnalysisService(
        settings=settings,
        provider=create_extraction_provider(settings),
        rate_limiter=RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_ms),
        ledger=UsageLedger.from_settings(settings),
        engine=ReconciliationEngine.from_settings(settings),
        normalizer=RequestNormalizer.from_settings(settings, rasterizer),
    )


def create_app(
    settings: Settings | None = None, analysis_service: AnalysisService | None = None
) -> FastAPI:
    """Create the application with its own service graph.

    Args:
        settings: Configuration (read from the environment when omitted)
        analysis_service: Pre-built pipeline (tests inject fakes here)

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Contract Reconciliation Service",
        description="Invoice and contract analysis with AI extraction and reconciliation",
        version=settings.service_version,
    )
    app.state.settings = settings
    app.state.analysis_service = analysis_service or build_analysis_service(settings)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Collect request metrics and propagate the request id.

        Tracks:
        - Request count by method, endpoint, and status
        - Request duration by method and endpoint
        """
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

        # Skip metrics for /metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        metrics.http_requests_total.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code,
        ).inc()
        metrics.http_request_duration_seconds.labels(
            method=request.method,
            endpoint=request.url.path,
        ).observe(duration)

        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response

    @app.exception_handler(AnalysisError)
    async def analysis_error_handler(request: Request, exc: AnalysisError) -> JSONResponse:
        return _error_response(exc, settings)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.url.path}")
        error = InternalError("Internal server error")
        error.__cause__ = exc
        return _error_response(error, settings)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health_check() -> HealthResponse:
        """Health check endpoint for liveness probe."""
        return HealthResponse(
            status="healthy", version=settings.service_version, service=settings.service_name
        )

    @app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
    def readiness_check(request: Request) -> ReadinessResponse:
        """Readiness check endpoint for Kubernetes readiness probe.

        Ready when analysis is switched on and the extraction provider is usable.
        """
        service: AnalysisService = request.app.state.analysis_service
        ready = settings.ai_features_enabled and service.provider.is_available()
        return ReadinessResponse(ready=ready)

    @app.get("/metrics", tags=["Monitoring"])
    def get_metrics() -> Response:
        """Prometheus metrics endpoint."""
        metrics_data, content_type = metrics.get_metrics()
        return Response(content=metrics_data, media_type=content_type)

    @app.post("/analyze/invoice", tags=["Analysis"])
    async def analyze_invoice(request: Request) -> JSONResponse:
        """Analyze an invoice image against contract terms.

        ## Request Body

        - `imageUrl` (https, http://localhost or data URL) **or** `imageData` + `imageType`
        - `fileName`: optional; a `.pdf` name marks inline data as PDF
        - `contractTerms`: optional baseline; without it only arithmetic is checked
        - `vendorInfo`: optional vendor record for a name consistency check

        ## Errors

        - 400 invalid request or unreadable document
        - 422 extracted invoice is structurally unusable
        - 429 rate limit exceeded (see `Retry-After`)
        - 502 extraction provider failed or timed out
        - 503 AI features disabled
        """
        service: AnalysisService = request.app.state.analysis_service
        result = await service.analyze_invoice(
            await _read_json(request), _context(request), request.is_disconnected
        )
        return JSONResponse(result.model_dump(mode="json", by_alias=True))

    @app.post("/analyze/contract-vendor", tags=["Analysis"])
    async def analyze_contract_vendor(request: Request) -> JSONResponse:
        """Extract vendor details and reconciliation terms from a contract document."""
        service: AnalysisService = request.app.state.analysis_service
        result = await service.analyze_contract(
            await _read_json(request), _context(request), request.is_disconnected
        )
        return JSONResponse(result.model_dump(mode="json", by_alias=True))

    @app.get("/analyze/invoice", tags=["Health"])
    def invoice_analysis_status(request: Request) -> dict[str, Any]:
        return _analysis_status("invoice-analysis", request.app.state.analysis_service)

    @app.get("/analyze/contract-vendor", tags=["Health"])
    def contract_analysis_status(request: Request) -> dict[str, Any]:
        return _analysis_status("contract-vendor-analysis", request.app.state.analysis_service)

    @app.get("/analyze/usage", tags=["Monitoring"])
    def usage_summary(request: Request) -> JSONResponse:
        """AI usage for today, the trailing 7 days and the current month."""
        service: AnalysisService = request.app.state.analysis_service
        summary = service.ledger.usage_summary()
        return JSONResponse(summary.model_dump(mode="json", by_alias=True))

    return app


async def _read_json(request: Request) -> Any:
    body = await request.body()
    if not body:
        raise SchemaValidation("Request body is required")
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SchemaValidation("Request body must be valid JSON", details=str(e)) from e


def _context(request: Request) -> RequestContext:
    return RequestContext(
        endpoint=request.url.path,
        client_id=client_identity(request.headers),
        request_id=request.state.request_id,
    )


def _analysis_status(name: str, service: AnalysisService) -> dict[str, Any]:
    mock_mode = service.provider.provider_name == "mock"
    return {
        "service": name,
        "status": "healthy",
        "mockMode": mock_mode,
        "configured": mock_mode or service.provider.is_available(),
        "version": service.settings.service_version,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _error_response(error: AnalysisError, settings: Settings) -> JSONResponse:
    body = error.to_dict()
    headers: dict[str, str] = {}
    if isinstance(error, InternalError) and settings.is_development and error.__cause__:
        body["message"] = str(error.__cause__)
    if isinstance(error, RateLimitExceeded):
        headers["Retry-After"] = str(max(1, math.ceil(error.retry_after)))
    metrics.error_responses_total.labels(kind=error.kind, status=error.status_code).inc()
    return JSONResponse(status_code=error.status_code, content=body, headers=headers)


app = create_app()
