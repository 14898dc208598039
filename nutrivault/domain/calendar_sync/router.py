"""
Google Calendar sync routes
Connection status, settings, manual sync and conflict handling
"""

import logging
from contextlib import contextmanager
from typing import Optional

from arq import create_pool
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from .exceptions import CalendarAccessError, CalendarAuthError, CalendarSyncError
from .schemas import (
    BackgroundSyncResponse,
    CalendarResponse,
    CalendarSettingsUpdate,
    CalendarStatusResponse,
    ConflictDetailsResponse,
    ResolveConflictRequest,
    RetryResultResponse,
    SyncIssuesResponse,
    SyncRequest,
    SyncResultResponse,
    SyncStatsResponse,
)
from .service import CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/google-calendar", tags=["google-calendar"])


def get_calendar_sync_service(db: Session = Depends(get_db)) -> CalendarSyncService:
    """Dependency injection for CalendarSyncService"""
    return CalendarSyncService(db)


@contextmanager
def provider_errors():
    """Translate account-level provider failures into HTTP errors"""
    try:
        yield
    except CalendarAuthError as e:
        logger.warning(f"⚠️ Google Calendar auth failed: {e.message}")
        raise HTTPException(
            status_code=401, detail="Google Calendar authorization expired, reconnect required"
        )
    except CalendarAccessError as e:
        raise HTTPException(status_code=400, detail=f"Calendar not accessible: {e.message}")
    except CalendarSyncError as e:
        logger.error(f"❌ Google Calendar request failed: {e.message}")
        raise HTTPException(status_code=502, detail="Google Calendar request failed, try again later")


@router.get("/status", response_model=CalendarStatusResponse)
async def get_google_calendar_status(
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Get Google Calendar connection status"""
    return service.get_status(current_user)


@router.get("/calendars", response_model=list[CalendarResponse])
async def list_calendars(
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Calendars the connected account can read"""
    with provider_errors():
        return await service.list_calendars(current_user)


@router.put("/settings", response_model=CalendarStatusResponse)
async def update_settings(
    data: CalendarSettingsUpdate,
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Change the target calendar (access is validated first) or auto-sync flag"""
    with provider_errors():
        await service.update_settings(current_user, data)
    return service.get_status(current_user)


@router.post("/disconnect")
async def disconnect_google_calendar(
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Disconnect Google Calendar integration"""
    return await service.disconnect(current_user)


# ============================================================================
# SYNC
# ============================================================================


@router.post("/sync", response_model=SyncResultResponse)
async def sync_now(
    data: Optional[SyncRequest] = None,
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Manual "sync now"; returns the full reconciliation result"""
    logger.info(f"🔄 Manual calendar sync requested by user {current_user.id}")
    with provider_errors():
        result = await service.sync_now(current_user, since_days=data.since_days if data else None)
    return result.to_dict()


@router.post("/sync/background", response_model=BackgroundSyncResponse)
async def sync_in_background(
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Queue a manual sync on the worker"""
    from ...worker import get_redis_settings

    service.require_integration(current_user)
    pool = None
    try:
        pool = await create_pool(get_redis_settings())
        job = await pool.enqueue_job("sync_account_task", current_user.id)
    except Exception as e:
        logger.error(f"❌ Failed to queue calendar sync: {e}")
        raise HTTPException(status_code=503, detail="Background jobs unavailable")
    finally:
        # Ensure pool is always closed
        if pool is not None:
            try:
                await pool.close()
            except Exception as e:
                logger.debug(f"Pool close failed (non-critical): {e}")

    if job is None:
        raise HTTPException(status_code=409, detail="Calendar sync already queued")

    logger.info(f"📋 Calendar sync job queued: {job.job_id}")
    return BackgroundSyncResponse(jobId=job.job_id, message="Calendar sync queued")


@router.get("/sync/issues", response_model=SyncIssuesResponse)
async def get_sync_issues(
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Visits in conflict or error"""
    return service.get_sync_issues(current_user)


@router.get("/sync/stats", response_model=SyncStatsResponse)
async def get_sync_stats(
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    return service.get_sync_stats(current_user)


@router.post("/sync/retry", response_model=RetryResultResponse)
async def retry_failed_syncs(
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Reset error counters and push failed visits again"""
    with provider_errors():
        return await service.retry_failed_syncs(current_user)


# ============================================================================
# CONFLICTS
# ============================================================================


@router.get("/visits/{visit_id}/conflict", response_model=ConflictDetailsResponse)
async def get_conflict_details(
    visit_id: int,
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Local and remote versions of a visit side by side"""
    with provider_errors():
        return await service.get_conflict_details(current_user, visit_id)


@router.post("/visits/{visit_id}/resolve")
async def resolve_conflict(
    visit_id: int,
    data: ResolveConflictRequest,
    current_user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Resolve a conflict with keep_local, keep_remote or merge"""
    with provider_errors():
        visit = await service.resolve_conflict(
            current_user, visit_id, data.resolution, merged_data=data.merged_data
        )
    return {
        "message": "Conflict resolved",
        "visit_id": visit.id,
        "sync_status": visit.sync_status,
        "resolution": data.resolution,
    }
