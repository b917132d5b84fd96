"""Pydantic request/response schemas for the InstrumentScan API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class Prediction(BaseModel):
    """A single ranked prediction."""

    label: str
    confidence_percent: float = Field(ge=0.0, le=100.0)
    index: int = Field(ge=0)


class ScanResponse(BaseModel):
    """Response for the scan endpoint."""

    label: str
    confidence_percent: float = Field(ge=0.0, le=100.0, description="Winning class confidence (0-100)")
    index: int = Field(ge=0)
    alternatives: list[Prediction] | None = Field(default=None, description="Top-k ranking when requested")
    scan_id: int | None = Field(default=None, description="History record id")


class ScanRecordOut(BaseModel):
    """A stored scan."""

    id: int
    instrument_name: str
    prediction: str
    confidence_percent: float
    scanned_at: datetime


class ScansResponse(BaseModel):
    scans: list[ScanRecordOut]


class ScanSummaryResponse(BaseModel):
    """Per-label scan counts and mean confidence for a date range."""

    total: int
    counts: dict[str, int]
    average_confidence: float = Field(ge=0.0, le=100.0, description="Mean confidence percent, 0 when empty")


class TrendPoint(BaseModel):
    scanned_at: datetime
    prediction: str
    confidence_percent: float


class TrendResponse(BaseModel):
    """Scan confidences, oldest first."""

    points: list[TrendPoint]


class ClearScansResponse(BaseModel):
    deleted: int


class Instrument(BaseModel):
    name: str
    description: str


class InstrumentsResponse(BaseModel):
    instruments: list[Instrument]


class LabelsResponse(BaseModel):
    labels: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    loader_state: str = Field(description="Model loader state: 'unloaded', 'loading', 'ready', or 'failed'")
    labels: int
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    kind: str | None = None
