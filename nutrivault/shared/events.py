"""
Visit domain events.

The visit repository records a VisitChanged for every ordinary write
(create, user edit, delete). The service layer dispatches them after commit
to whoever subscribed - in production the calendar sync handler.
Sync-originated writes never produce events.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

VISIT_CREATED = "created"
VISIT_UPDATED = "updated"
VISIT_DELETED = "deleted"


@dataclass(frozen=True)
class VisitSnapshot:
    """Immutable copy of the calendar-relevant state of a visit"""

    id: int
    dietitian_id: int
    patient_id: int
    visit_date: datetime
    duration_minutes: Optional[int]
    visit_type: Optional[str]
    status: str
    google_event_id: Optional[str]
    sync_status: str

    @classmethod
    def of(cls, visit) -> "VisitSnapshot":
        return cls(**{f.name: getattr(visit, f.name) for f in fields(cls)})


@dataclass(frozen=True)
class VisitChanged:
    kind: str  # created | updated | deleted
    previous: Optional[VisitSnapshot]
    current: Optional[VisitSnapshot]
    changed_fields: tuple = ()

    @property
    def visit_id(self) -> int:
        snapshot = self.current or self.previous
        return snapshot.id

    @property
    def dietitian_id(self) -> int:
        snapshot = self.current or self.previous
        return snapshot.dietitian_id


VisitEventHandler = Callable[[VisitChanged], Awaitable[None]]


class VisitEventBus:
    """In-process publish/subscribe for VisitChanged events"""

    def __init__(self):
        self._handlers: List[VisitEventHandler] = []

    def subscribe(self, handler: VisitEventHandler) -> None:
        self._handlers.append(handler)

    async def publish(self, event: VisitChanged) -> None:
        """Deliver an event to every handler; one failing handler does not stop the others"""
        for handler in self._handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    f"❌ Visit event handler {getattr(handler, '__qualname__', handler)} failed "
                    f"for visit {event.visit_id} ({event.kind}): {e}"
                )

    async def publish_all(self, events: List[VisitChanged]) -> None:
        for event in events:
            await self.publish(event)
