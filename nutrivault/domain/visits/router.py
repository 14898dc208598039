"""Visit router - FastAPI endpoints for visit operations"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from ...shared.events import VisitEventBus
from ...shared.time_utils import to_naive_utc
from ..calendar_sync.handlers import build_calendar_sync_handler
from ..calendar_sync.router import get_calendar_sync_service
from ..calendar_sync.service import CalendarSyncService
from .schemas import VisitCreate, VisitResponse, VisitUpdate
from .service import VisitService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/visits", tags=["Visits"])


def get_visit_event_bus(db: Session = Depends(get_db)) -> VisitEventBus:
    """Event bus for this request, wired to the calendar sync handler"""
    bus = VisitEventBus()
    bus.subscribe(build_calendar_sync_handler(db))
    return bus


def get_visit_service(
    db: Session = Depends(get_db), event_bus: VisitEventBus = Depends(get_visit_event_bus)
) -> VisitService:
    """Dependency injection for VisitService"""
    return VisitService(db, event_bus)


@router.get("", response_model=list[VisitResponse])
async def get_visits(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    status: Optional[str] = Query(None),
    all_dietitians: bool = Query(False),
    current_user: User = Depends(get_current_user),
    service: VisitService = Depends(get_visit_service),
    calendar_sync: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """
    List visits. An agenda query (date range) first gives the calendar a
    chance to sync; inside the cooldown window that is a no-op.
    """
    if start or end:
        await calendar_sync.auto_sync_agenda(current_user.id)

    return service.list_visits(
        current_user,
        start=to_naive_utc(start) if start else None,
        end=to_naive_utc(end) if end else None,
        status=status,
        all_dietitians=all_dietitians,
    )


@router.get("/{visit_id}", response_model=VisitResponse)
async def get_visit(
    visit_id: int,
    current_user: User = Depends(get_current_user),
    service: VisitService = Depends(get_visit_service),
):
    return service.get_visit(visit_id, current_user)


@router.post("", response_model=VisitResponse, status_code=201)
async def create_visit(
    data: VisitCreate,
    current_user: User = Depends(get_current_user),
    service: VisitService = Depends(get_visit_service),
):
    """Create a visit; it is pushed to Google Calendar when the account is connected"""
    return await service.create_visit(data, current_user)


@router.patch("/{visit_id}", response_model=VisitResponse)
async def update_visit(
    visit_id: int,
    data: VisitUpdate,
    current_user: User = Depends(get_current_user),
    service: VisitService = Depends(get_visit_service),
):
    return await service.update_visit(visit_id, data, current_user)


@router.delete("/{visit_id}")
async def delete_visit(
    visit_id: int,
    current_user: User = Depends(get_current_user),
    service: VisitService = Depends(get_visit_service),
):
    return await service.delete_visit(visit_id, current_user)
