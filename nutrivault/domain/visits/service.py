"""Visit service - Business logic for visit operations"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import Patient, User
from ...models_visit import Visit
from ...shared.events import VisitEventBus
from ...shared.time_utils import utcnow
from .repository import VisitRepository
from .schemas import VisitCreate, VisitUpdate

logger = logging.getLogger(__name__)


class VisitService:
    """
    Service layer for visit business logic.

    Every write commits first, then publishes the VisitChanged events the
    repository recorded to the event bus.
    """

    def __init__(
        self,
        db: Session,
        event_bus: Optional[VisitEventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = VisitRepository(db, clock=clock)
        self.event_bus = event_bus or VisitEventBus()

    async def _publish_events(self) -> None:
        await self.event_bus.publish_all(self.repo.drain_events())

    def _check_patient(self, patient_id: int, user: User) -> None:
        patient = self.db.query(Patient).filter(Patient.id == patient_id).first()
        if not patient or (patient.dietitian_id not in (None, user.id) and not user.is_admin):
            raise HTTPException(status_code=404, detail="Patient not found")

    def list_visits(
        self,
        user: User,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = None,
        all_dietitians: bool = False,
    ) -> List[Visit]:
        """Visits of the user; admins may ask for every dietitian's visits"""
        dietitian_id = None if all_dietitians and user.is_admin else user.id
        return self.repo.list_visits(dietitian_id, start=start, end=end, status=status)

    def get_visit(self, visit_id: int, user: User) -> Visit:
        visit = self.repo.get_visit(visit_id, dietitian_id=user.id)
        if not visit:
            raise HTTPException(status_code=404, detail="Visit not found")
        return visit

    async def create_visit(self, data: VisitCreate, user: User) -> Visit:
        logger.info(f"📥 Creating visit for user_id: {user.id}")
        self._check_patient(data.patient_id, user)

        visit = self.repo.create_visit(dietitian_id=user.id, **data.model_dump())
        await self._publish_events()
        self.db.refresh(visit)
        return visit

    async def update_visit(self, visit_id: int, data: VisitUpdate, user: User) -> Visit:
        visit = self.get_visit(visit_id, user)

        updates = data.model_dump(exclude_unset=True)
        # Explicit nulls are only meaningful for optional fields
        for key in ("patient_id", "visit_date", "status"):
            if key in updates and updates[key] is None:
                del updates[key]
        if "patient_id" in updates:
            self._check_patient(updates["patient_id"], user)

        visit = self.repo.apply_user_edit(visit, **updates)
        await self._publish_events()
        self.db.refresh(visit)
        return visit

    async def delete_visit(self, visit_id: int, user: User) -> dict:
        visit = self.get_visit(visit_id, user)
        self.repo.delete_visit(visit)
        await self._publish_events()
        logger.info(f"🗑️ Visit {visit_id} deleted by user {user.id}")
        return {"message": "Visit deleted"}
