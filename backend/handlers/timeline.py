"""
Timeline Handler - API endpoints for the daily activity timeline

Provides the manual refresh trigger, read access to the last committed
day snapshot and the per-window ingestion history.
"""

from datetime import datetime
from typing import List, Optional

from agents.ingestion_agent import get_ingestion_agent
from core.db import get_db
from core.logger import get_logger
from core.timeutils import parse_ymd
from models.base import BaseModel, TimedOperationResponse
from models.entities import DayTimeline, IngestionRunResult, UtcDatetime, WindowLock

# CRITICAL: Use relative import to avoid circular imports
from . import api_handler

logger = get_logger(__name__)


# ============ Request Models ============


class RefreshTimelineRequest(BaseModel):
    """Request a manual re-run of the pipeline for one user"""

    user_id: str


class GetDayTimelineRequest(BaseModel):
    """Request the committed timeline for one user-day"""

    user_id: str
    ymd: str


class ListTimelineDaysRequest(BaseModel):
    user_id: str
    limit: int = 30


class GetIngestionHistoryRequest(BaseModel):
    """Request the committed windows whose start lies in [start, end)"""

    user_id: str
    start: UtcDatetime
    end: UtcDatetime


# ============ Response Models ============


class RefreshTimelineResponse(TimedOperationResponse):
    """Response after a manual refresh"""

    result: Optional[IngestionRunResult] = None


class DayTimelineResponse(TimedOperationResponse):
    """Response with the committed day snapshot"""

    timeline: Optional[DayTimeline] = None


class ListTimelineDaysResponse(TimedOperationResponse):
    days: List[str] = []


class IngestionHistoryResponse(TimedOperationResponse):
    windows: List[WindowLock] = []


# ============ API Handlers ============


@api_handler(
    body=RefreshTimelineRequest,
    method="POST",
    path="/timeline/refresh",
    tags=["timeline"],
)
async def refresh_timeline(body: RefreshTimelineRequest) -> RefreshTimelineResponse:
    """
    Manually refresh a user's timeline

    Drops the user's cached places and processes pending windows; when
    nothing is pending, the last processed window is rebuilt. A refresh
    while a run is active is refused rather than queued.
    """
    agent = get_ingestion_agent()
    if agent is None:
        return RefreshTimelineResponse(
            success=False,
            message="Ingestion agent is not running",
            error="agent_unavailable",
            timestamp=datetime.now().isoformat(),
        )

    try:
        result = await agent.refresh(body.user_id)

        if result.status == "skipped":
            return RefreshTimelineResponse(
                success=False,
                message="A timeline run is already in progress",
                error=result.reason or "",
                result=result,
                timestamp=datetime.now().isoformat(),
            )

        if result.status == "failed":
            return RefreshTimelineResponse(
                success=False,
                message=f"Timeline refresh failed: {result.error}",
                error=result.reason or "",
                result=result,
                timestamp=datetime.now().isoformat(),
            )

        return RefreshTimelineResponse(
            success=True,
            message=f"Processed {result.windows_processed} window(s)",
            result=result,
            timestamp=datetime.now().isoformat(),
        )

    except Exception as e:
        logger.error(f"Failed to refresh timeline for {body.user_id}: {e}", exc_info=True)
        return RefreshTimelineResponse(
            success=False,
            message=f"Failed to refresh timeline: {str(e)}",
            error=type(e).__name__,
            timestamp=datetime.now().isoformat(),
        )


@api_handler(
    body=GetDayTimelineRequest,
    method="POST",
    path="/timeline/day",
    tags=["timeline"],
)
async def get_day_timeline(body: GetDayTimelineRequest) -> DayTimelineResponse:
    """
    Get the last committed timeline for a user-day

    Only committed snapshots are served; an in-flight run is never visible.
    """
    try:
        parse_ymd(body.ymd)
        timeline = await get_db().snapshots.get(body.user_id, body.ymd)

        if timeline is None:
            return DayTimelineResponse(
                success=False,
                message=f"No timeline for {body.user_id} on {body.ymd}",
                timestamp=datetime.now().isoformat(),
            )

        return DayTimelineResponse(
            success=True,
            message=f"{len(timeline.timeline_events)} timeline events",
            timeline=timeline,
            timestamp=datetime.now().isoformat(),
        )

    except Exception as e:
        logger.error(
            f"Failed to get timeline for {body.user_id}/{body.ymd}: {e}", exc_info=True
        )
        return DayTimelineResponse(
            success=False,
            message=f"Failed to get timeline: {str(e)}",
            error=type(e).__name__,
            timestamp=datetime.now().isoformat(),
        )


@api_handler(
    body=ListTimelineDaysRequest,
    method="POST",
    path="/timeline/days",
    tags=["timeline"],
)
async def list_timeline_days(body: ListTimelineDaysRequest) -> ListTimelineDaysResponse:
    """List days with a committed timeline, newest first"""
    try:
        days = await get_db().snapshots.list_days(body.user_id, body.limit)
        return ListTimelineDaysResponse(
            success=True,
            message=f"Found {len(days)} days",
            days=days,
            timestamp=datetime.now().isoformat(),
        )
    except Exception as e:
        logger.error(f"Failed to list timeline days for {body.user_id}: {e}", exc_info=True)
        return ListTimelineDaysResponse(
            success=False,
            message=f"Failed to list timeline days: {str(e)}",
            error=type(e).__name__,
            timestamp=datetime.now().isoformat(),
        )


@api_handler(
    body=GetIngestionHistoryRequest,
    method="POST",
    path="/timeline/history",
    tags=["timeline"],
)
async def get_ingestion_history(body: GetIngestionHistoryRequest) -> IngestionHistoryResponse:
    """
    Get the committed ingestion windows of a user with their run stats

    Windows are returned oldest first.
    """
    if body.end <= body.start:
        return IngestionHistoryResponse(
            success=False,
            message="History range end must be after its start",
            error="invalid_range",
            timestamp=datetime.now().isoformat(),
        )

    try:
        windows = await get_db().window_locks.get_in_range(body.user_id, body.start, body.end)
        return IngestionHistoryResponse(
            success=True,
            message=f"Found {len(windows)} committed window(s)",
            windows=windows,
            timestamp=datetime.now().isoformat(),
        )
    except Exception as e:
        logger.error(f"Failed to get ingestion history for {body.user_id}: {e}", exc_info=True)
        return IngestionHistoryResponse(
            success=False,
            message=f"Failed to get ingestion history: {str(e)}",
            error=type(e).__name__,
            timestamp=datetime.now().isoformat(),
        )
