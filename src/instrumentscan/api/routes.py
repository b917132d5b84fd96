"""API route definitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, Query, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from instrumentscan.api.middleware import verify_api_key
from instrumentscan.api.schemas import (
    ClearScansResponse,
    ErrorResponse,
    HealthResponse,
    Instrument,
    InstrumentsResponse,
    LabelsResponse,
    Prediction,
    ScanRecordOut,
    ScanResponse,
    ScansResponse,
    ScanSummaryResponse,
    TrendPoint,
    TrendResponse,
)
from instrumentscan.storage.scan_store import export_csv

if TYPE_CHECKING:
    from instrumentscan.config import Settings
    from instrumentscan.ml.image_classifier import InstrumentClassifier
    from instrumentscan.ml.inference import InferencePool
    from instrumentscan.storage.scan_store import ScanRecord, ScanStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_INSTRUMENT_CATALOG: list[dict[str, str]] = [
    {"name": "Guitar", "description": "A string instrument played by strumming or plucking."},
    {"name": "Piano", "description": "A keyboard instrument producing sound via hammers."},
    {"name": "Violin", "description": "A high-pitched bowed string instrument."},
    {"name": "Cello", "description": "A bowed string instrument with deep tones."},
    {"name": "Drums", "description": "Percussion instruments played with sticks or hands."},
    {"name": "Trumpet", "description": "A brass instrument with a bright sound."},
    {"name": "Flute", "description": "A woodwind instrument played by blowing air."},
    {"name": "Saxophone", "description": "A woodwind instrument popular in jazz music."},
    {"name": "Harp", "description": "A large string instrument played by plucking."},
    {"name": "Clarinet", "description": "A single-reed woodwind instrument."},
]

# Starlette renamed the 413 constant; the literal works across versions.
_HTTP_413_CONTENT_TOO_LARGE = 413

# kind -> (status, message shown to the user)
_ERROR_RESPONSES: dict[str, tuple[int, str]] = {
    "image_decode_failure": (status.HTTP_400_BAD_REQUEST, "Could not read that image"),
    "model_load_failure": (status.HTTP_503_SERVICE_UNAVAILABLE, "Model unavailable"),
    "not_initialized": (status.HTTP_503_SERVICE_UNAVAILABLE, "Model unavailable"),
    "inference_failure": (status.HTTP_500_INTERNAL_SERVER_ERROR, "Recognition failed, try again"),
}


async def instrument_scan_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Translate a tagged pipeline error into an HTTP response."""
    kind = getattr(exc, "kind", "error")
    status_code, message = _ERROR_RESPONSES.get(kind, (status.HTTP_500_INTERNAL_SERVER_ERROR, "Unexpected error"))
    logger.warning("%s %s failed (%s): %s", request.method, request.url.path, kind, exc)
    return JSONResponse(status_code=status_code, content={"detail": f"{message}: {exc}", "kind": kind})


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_classifier(request: Request) -> InstrumentClassifier:
    classifier: InstrumentClassifier = request.app.state.classifier
    return classifier


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_scan_store(request: Request) -> ScanStore:
    store: ScanStore = request.app.state.scan_store
    return store


def _record_out(record: ScanRecord) -> ScanRecordOut:
    return ScanRecordOut(
        id=record.id,
        instrument_name=record.instrument_name,
        prediction=record.prediction,
        confidence_percent=record.confidence,
        scanned_at=record.scanned_at,
    )


@router.post(
    "/scan",
    response_model=ScanResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        _HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Recognize the instrument in an image",
)
async def scan(
    request: Request,
    file: UploadFile,
    instrument: Annotated[str | None, Form(description="Instrument category being scanned")] = None,
    top_k: Annotated[int | None, Query(ge=1, le=100)] = None,
) -> ScanResponse | JSONResponse:
    """Classify an uploaded photo and record the scan in the history."""
    settings = _get_settings(request)
    too_large = JSONResponse(
        status_code=_HTTP_413_CONTENT_TOO_LARGE,
        content={"detail": f"File exceeds {settings.max_file_size} bytes"},
    )
    if file.size is not None and file.size > settings.max_file_size:
        return too_large
    # Read at most one byte past the limit so an undeclared size is still bounded.
    image_bytes = await file.read(settings.max_file_size + 1)
    if len(image_bytes) > settings.max_file_size:
        return too_large

    classifier = _get_classifier(request)
    pool = _get_inference_pool(request)
    alternatives: list[Prediction] | None = None
    try:
        if top_k is not None:
            ranked = await pool.run(classifier.top_k, image_bytes, top_k)
            best = ranked[0]
            alternatives = [Prediction(label=r.label, confidence_percent=r.confidence, index=r.index) for r in ranked]
        else:
            best = await pool.run(classifier.predict, image_bytes)
    except TimeoutError:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Too many concurrent requests, try again"},
        )

    record = await run_in_threadpool(
        _get_scan_store(request).add,
        instrument_name=instrument or best.label,
        prediction=best.label,
        confidence=best.confidence,
    )
    logger.info("Scan %d: %s at %.2f%%", record.id, best.label, best.confidence)

    return ScanResponse(
        label=best.label,
        confidence_percent=best.confidence,
        index=best.index,
        alternatives=alternatives,
        scan_id=record.id,
    )


# History routes stay synchronous: SQLite calls must not run on the event loop.


@router.get("/scans", response_model=ScansResponse, summary="List scan history")
def list_scans(
    request: Request,
    start: datetime | None = None,
    end: datetime | None = None,
    q: Annotated[str | None, Query(description="Case-insensitive search on the prediction")] = None,
    oldest_first: bool = False,
) -> ScansResponse:
    """Return recorded scans in the date range, newest first by default."""
    records = _get_scan_store(request).list_scans(start, end, q, oldest_first=oldest_first)
    return ScansResponse(scans=[_record_out(r) for r in records])


@router.get("/scans/summary", response_model=ScanSummaryResponse, summary="Scan counts and average confidence")
def scan_summary(
    request: Request,
    start: datetime | None = None,
    end: datetime | None = None,
    q: Annotated[str | None, Query(description="Case-insensitive search on the prediction")] = None,
) -> ScanSummaryResponse:
    summary = _get_scan_store(request).summarize(start, end, q)
    return ScanSummaryResponse(
        total=summary.total,
        counts=summary.counts,
        average_confidence=summary.average_confidence,
    )


@router.get("/scans/trend", response_model=TrendResponse, summary="Confidence over time")
def scan_trend(
    request: Request,
    start: datetime | None = None,
    end: datetime | None = None,
    q: Annotated[str | None, Query(description="Case-insensitive search on the prediction")] = None,
) -> TrendResponse:
    """Return the confidence of each matching scan, oldest first."""
    records = _get_scan_store(request).list_scans(start, end, q, oldest_first=True)
    return TrendResponse(
        points=[
            TrendPoint(scanned_at=r.scanned_at, prediction=r.prediction, confidence_percent=r.confidence)
            for r in records
        ]
    )


@router.get("/scans/export.csv", summary="Export scan history as CSV")
def export_scans(
    request: Request,
    start: datetime | None = None,
    end: datetime | None = None,
    q: Annotated[str | None, Query(description="Case-insensitive search on the prediction")] = None,
) -> Response:
    records = _get_scan_store(request).list_scans(start, end, q)
    return Response(
        content=export_csv(records),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="scan_analytics.csv"'},
    )


@router.delete("/scans", response_model=ClearScansResponse, summary="Delete all scan history")
def clear_scans(request: Request) -> ClearScansResponse:
    return ClearScansResponse(deleted=_get_scan_store(request).clear())


@router.get("/instruments", response_model=InstrumentsResponse, summary="List supported instruments")
async def list_instruments() -> InstrumentsResponse:
    return InstrumentsResponse(instruments=[Instrument(**entry) for entry in _INSTRUMENT_CATALOG])


@router.get("/labels", response_model=LabelsResponse, summary="List model labels")
async def list_labels(request: Request) -> LabelsResponse:
    """Return the labels in model output order."""
    return LabelsResponse(labels=list(_get_classifier(request).labels))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    classifier = _get_classifier(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok" if classifier.ready else "degraded",
        loader_state=str(classifier.loader.state),
        labels=len(classifier.labels),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


