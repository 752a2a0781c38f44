"""FastAPI application for receipt analysis.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Image intake from inline base64 content or URIs
- Synchronous analysis through the decision pipeline
- Structured success, rejection, error and timeout responses
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import base64
import binascii
import logging
import time

import httpx
from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from services.api import metrics
from services.governor.call_governor import get_call_governor
from services.ocr.factory import create_text_extractor
from services.orchestrator.models import (
    AnalysisFailure,
    AnalysisRejection,
    AnalysisRequest,
    AnalysisResponse,
    AnalysisSuccess,
    ImageInput,
)
from services.orchestrator.pipeline import Orchestrator
from services.reasoning.factory import create_reasoning_provider
from services.reference.cache import ReferenceDataCache
from services.reference.object_store import ObjectStorageReferenceStore
from services.reference.store import BackingStore, InMemoryReferenceStore
from services.shared.config import get_settings
from services.shared.logging_config import configure_logging

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings)

app = FastAPI(
    title="Receipt Posting Engine",
    description="Turns photographed financial documents into proposed accounting entries",
    version=settings.service_version,
)

reference_store: BackingStore
if settings.reference_store == "object_storage":
    reference_store = ObjectStorageReferenceStore(settings)
else:
    reference_store = InMemoryReferenceStore()

reference_cache = ReferenceDataCache.from_settings(settings, reference_store)
reasoning_provider = create_reasoning_provider(settings)
orchestrator = Orchestrator(
    settings,
    reference_cache,
    get_call_governor(settings),
    reasoning_provider,
    create_text_extractor(settings, reasoning_provider),
)

# Failure categories caused by this service rather than a dependency
INTERNAL_CATEGORIES = frozenset({"internal", "canceled"})


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps per-tenant paths from multiplying label values
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    checks: dict[str, bool] = Field(default_factory=dict)


class ImagePayload(BaseModel):
    """One image, given inline or by URI."""

    image_id: str = ""
    content_base64: str | None = None
    uri: str | None = None
    mime_type: str = "image/jpeg"

    @model_validator(mode="after")
    def _one_source(self) -> "ImagePayload":
        if bool(self.content_base64) == bool(self.uri):
            raise ValueError("Provide exactly one of content_base64 or uri")
        return self


class AnalyzeRequestBody(BaseModel):
    """Analysis request body."""

    tenant_id: str = Field(min_length=1, description="Business whose reference data applies")
    images: list[ImagePayload] = Field(min_length=1, description="Document images in order")
    request_id: str | None = Field(default=None, description="Caller-supplied correlation id")


class InvalidateResponse(BaseModel):
    tenant_id: str
    invalidated: bool


def _decode_inline(payload: ImagePayload) -> bytes:
    try:
        return base64.b64decode(payload.content_base64 or "", validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Image '{payload.image_id}' is not valid base64: {e}",
        ) from e


def _fetch_uri(payload: ImagePayload) -> tuple[bytes, str]:
    try:
        with httpx.Client(
            timeout=settings.image_fetch_timeout_seconds, follow_redirects=True
        ) as client:
            response = client.get(payload.uri or "")
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Could not fetch image '{payload.image_id or payload.uri}': {e}",
        ) from e
    content_type = response.headers.get("content-type", "").split(";")[0].strip()
    return response.content, content_type or payload.mime_type


def _load_images(body: AnalyzeRequestBody) -> list[ImageInput]:
    images: list[ImageInput] = []
    for index, payload in enumerate(body.images):
        mime_type = payload.mime_type
        if payload.uri:
            content, mime_type = _fetch_uri(payload)
            source = "uri"
        else:
            content = _decode_inline(payload)
            source = "inline"

        if not content:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=f"Image {index} is empty"
            )
        if len(content) > settings.max_image_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Image {index} exceeds {settings.max_image_bytes} bytes",
            )
        if not mime_type.startswith("image/"):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid content type for image {index}: {mime_type}",
            )

        metrics.images_received_total.labels(source=source).inc()
        metrics.image_size_bytes.observe(len(content))
        images.append(
            ImageInput(
                image_id=payload.image_id or str(index), content=content, mime_type=mime_type
            )
        )
    return images


def status_code_for(result: AnalysisResponse) -> int:
    """HTTP status for a pipeline outcome."""
    if isinstance(result, AnalysisSuccess):
        return status.HTTP_200_OK
    if isinstance(result, AnalysisRejection):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(result, AnalysisFailure):
        if result.category in INTERNAL_CATEGORIES:
            return status.HTTP_500_INTERNAL_SERVER_ERROR
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_408_REQUEST_TIMEOUT


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness checks.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness checks.

    Returns:
        Readiness status with the result of each dependency check
    """
    checks = {"reasoning_service": reasoning_provider.is_available()}
    if isinstance(reference_store, ObjectStorageReferenceStore):
        checks["reference_store"] = reference_store.health_check()
    return ReadinessResponse(ready=all(checks.values()), checks=checks)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post("/api/v1/documents/analyze", tags=["Documents"])
def analyze_documents(body: AnalyzeRequestBody) -> JSONResponse:
    """Analyze document images and propose an accounting entry.

    ## Usage Example

    ```bash
    curl -X POST "http://localhost:8000/api/v1/documents/analyze" \\
      -H "Content-Type: application/json" \\
      -d '{"tenant_id": "shop-1", "images": [{"uri": "https://example.com/r.jpg"}]}'
    ```

    ## Responses

    - **200**: `status: success` with the proposed entry and its validation
    - **422**: `status: rejected` (missing reference data or unreadable images)
    - **408**: processing deadline exceeded
    - **502**: reasoning service or reference store failure
    - **500**: unexpected internal error
    - **400/413**: invalid or oversized images

    Args:
        body: Tenant id and the images of one submission

    Returns:
        JSON body of the pipeline outcome
    """
    images = _load_images(body)
    request = AnalysisRequest(tenant_id=body.tenant_id, images=images)
    if body.request_id:
        request = request.model_copy(update={"request_id": body.request_id})

    result = orchestrator.analyze(request)
    return JSONResponse(status_code=status_code_for(result), content=result.model_dump(mode="json"))


@app.post(
    "/api/v1/reference-data/{tenant_id}/invalidate",
    response_model=InvalidateResponse,
    tags=["Reference Data"],
)
def invalidate_reference_data(tenant_id: str) -> InvalidateResponse:
    """Drop the cached reference data of one tenant so the next request reloads it."""
    reference_cache.invalidate(tenant_id)
    logger.info(f"Reference data invalidated for tenant {tenant_id}")
    return InvalidateResponse(tenant_id=tenant_id, invalidated=True)
