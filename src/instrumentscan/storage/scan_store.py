"""Scan history: a small SQLite table of completed predictions.

Timestamps are stored as UTC text with a fixed width so that range filters
can compare them as strings. Naive datetimes are taken to be local time.
"""

from __future__ import annotations

import csv
import io
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

CSV_HEADER = ("Instrument", "Prediction", "Confidence (%)", "Date")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scan_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instrument_name TEXT NOT NULL,
    prediction TEXT NOT NULL,
    confidence REAL NOT NULL,
    scanned_at TEXT NOT NULL
)
"""


def _to_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


def _stamp(value: datetime) -> str:
    return _to_utc(value).replace(tzinfo=None).isoformat(timespec="microseconds")


def _like_pattern(query: str) -> str:
    escaped = query.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass(frozen=True)
class ScanRecord:
    """One completed scan. ``scanned_at`` is timezone-aware UTC."""

    id: int
    instrument_name: str
    prediction: str
    confidence: float
    scanned_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ScanRecord:
        return cls(
            id=row["id"],
            instrument_name=row["instrument_name"],
            prediction=row["prediction"],
            confidence=row["confidence"],
            scanned_at=datetime.fromisoformat(row["scanned_at"]).replace(tzinfo=timezone.utc),
        )


@dataclass(frozen=True)
class ScanSummary:
    """Aggregate figures over a filtered set of scans."""

    total: int
    counts: dict[str, int]
    average_confidence: float


class ScanStore:
    """Thread-safe access to the scan_records table.

    Every query method takes the same filters: an inclusive ``start``/``end``
    range and ``query``, a case-insensitive substring of the prediction.
    """

    def __init__(self, path: str = ":memory:") -> None:
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.execute(_SCHEMA)
        logger.info("Scan history at %s", path)

    def add(
        self,
        instrument_name: str,
        prediction: str,
        confidence: float,
        scanned_at: datetime | None = None,
    ) -> ScanRecord:
        scanned_at = _to_utc(scanned_at or datetime.now(timezone.utc))
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "INSERT INTO scan_records (instrument_name, prediction, confidence, scanned_at) VALUES (?, ?, ?, ?)",
                (instrument_name, prediction, confidence, _stamp(scanned_at)),
            )
        return ScanRecord(
            id=int(cursor.lastrowid or 0),
            instrument_name=instrument_name,
            prediction=prediction,
            confidence=confidence,
            scanned_at=scanned_at,
        )

    def list_scans(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        query: str | None = None,
        oldest_first: bool = False,
    ) -> list[ScanRecord]:
        """Return matching scans, newest first unless ``oldest_first``."""
        where, params = _filters(start, end, query)
        direction = "ASC" if oldest_first else "DESC"
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM scan_records{where} ORDER BY scanned_at {direction}, id {direction}",  # noqa: S608
                params,
            ).fetchall()
        return [ScanRecord.from_row(row) for row in rows]

    def counts_by_prediction(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        query: str | None = None,
    ) -> dict[str, int]:
        where, params = _filters(start, end, query)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT prediction, COUNT(*) FROM scan_records{where} GROUP BY prediction",  # noqa: S608
                params,
            ).fetchall()
        return {prediction: count for prediction, count in rows}

    def summarize(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        query: str | None = None,
    ) -> ScanSummary:
        """Total, per-prediction counts and mean confidence (0.0 when empty)."""
        where, params = _filters(start, end, query)
        with self._lock:
            total, average = self._conn.execute(
                f"SELECT COUNT(*), AVG(confidence) FROM scan_records{where}",  # noqa: S608
                params,
            ).fetchone()
        return ScanSummary(
            total=total,
            counts=self.counts_by_prediction(start, end, query),
            average_confidence=float(average) if average is not None else 0.0,
        )

    def clear(self) -> int:
        with self._lock, self._conn:
            deleted = self._conn.execute("DELETE FROM scan_records").rowcount
        logger.info("Deleted %d scan records", deleted)
        return deleted

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _filters(start: datetime | None, end: datetime | None, query: str | None) -> tuple[str, list[str]]:
    clauses: list[str] = []
    params: list[str] = []
    if start is not None:
        clauses.append("scanned_at >= ?")
        params.append(_stamp(start))
    if end is not None:
        clauses.append("scanned_at <= ?")
        params.append(_stamp(end))
    if query:
        clauses.append("LOWER(prediction) LIKE ? ESCAPE '\\'")
        params.append(_like_pattern(query))
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def export_csv(records: Iterable[ScanRecord]) -> str:
    """Render scans as CSV with a header row; dates are shown in local time."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in records:
        writer.writerow(
            [
                record.instrument_name,
                record.prediction,
                f"{record.confidence:.2f}",
                record.scanned_at.astimezone().strftime("%Y-%m-%d %H:%M"),
            ]
        )
    return buffer.getvalue()
