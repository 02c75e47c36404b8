"""
Export Endpoints

Serves the monthly Sound Capsule CSV as a download.
"""

from __future__ import annotations

import logging
from typing import Iterator

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse

from soundcapsule.api.routes.analytics import resolve_month
from soundcapsule.services.analytics_exporter import (
    CSV_MIME_TYPE,
    AnalyticsExporter,
    ExportResult,
    report_filename,
)
from soundcapsule.services.analytics_repository import get_analytics_repository

router = APIRouter()
logger = logging.getLogger(__name__)


class ResponseSink:
    """Export sink that keeps the report in memory for the HTTP response."""

    def __init__(self) -> None:
        self.content: str | None = None

    def save(self, content: str, filename: str, mime_type: str) -> str | None:
        self.content = content
        return f"response://{filename}"

    def chunks(self) -> Iterator[str]:
        yield self.content or ""


@router.get("/capsule")
async def export_sound_capsule(
    user_id: int = Query(..., description="User whose analytics to export"),
    month: str | None = Query(None, description="YYYY-MM, defaults to the current month"),
) -> StreamingResponse:
    """
    Download a month's Sound Capsule report as CSV.

    Returns 404 when the month has no stored summary.
    """
    month = resolve_month(month)
    exporter = AnalyticsExporter(get_analytics_repository())
    sink = ResponseSink()

    result: ExportResult | None = exporter.export_to_csv(user_id, month, sink)
    if result is None:
        raise HTTPException(
            status_code=404, detail=f"No analytics data for user {user_id} in {month}"
        )

    return StreamingResponse(
        sink.chunks(),
        media_type=CSV_MIME_TYPE,
        headers={"Content-Disposition": f"attachment; filename={report_filename(month)}"},
    )
