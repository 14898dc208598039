"""VisitChanged subscriber that mirrors local writes to Google Calendar"""

import logging

from sqlalchemy.orm import Session

from ...shared.events import VISIT_DELETED, VisitChanged, VisitEventHandler
from .service import CalendarSyncService

logger = logging.getLogger(__name__)


def build_calendar_sync_handler(db: Session, **service_kwargs) -> VisitEventHandler:
    """
    Created / updated visits go through the single-record sync path.
    Deleted visits have their remote event removed.
    """

    async def handle_visit_changed(event: VisitChanged) -> None:
        service = CalendarSyncService(db, **service_kwargs)

        if event.kind == VISIT_DELETED:
            event_id = event.previous.google_event_id
            if event_id:
                await service.delete_remote_event(event.dietitian_id, event_id)
            return

        result = await service.sync_visit(event.visit_id)
        if result is not None:
            logger.info(f"📤 Visit {event.visit_id} {event.kind}, calendar sync: {result.summary()}")

    return handle_visit_changed
