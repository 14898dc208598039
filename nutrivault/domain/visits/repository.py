"""Visit repository - Database operations for visits and their calendar sync state"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ...models_visit import (
    CALENDAR_RELEVANT_FIELDS,
    SYNC_SOURCE_LOCAL,
    SYNC_SOURCE_PROVIDER,
    SYNC_STATUS_CONFLICT,
    SYNC_STATUS_ERROR,
    SYNC_STATUS_PENDING_TO_GOOGLE,
    SYNC_STATUS_SYNCED,
    VISIT_STATUS_CANCELLED,
    Visit,
)
from ...shared.events import (
    VISIT_CREATED,
    VISIT_DELETED,
    VISIT_UPDATED,
    VisitChanged,
    VisitSnapshot,
)
from ...shared.time_utils import utcnow

# Fields an ordinary (user) write may touch
USER_EDITABLE_FIELDS = frozenset(
    {"patient_id", "visit_date", "duration_minutes", "visit_type", "status", "notes"}
)

# Fields a sync write may touch (never local_modified_at)
SYNC_WRITABLE_FIELDS = frozenset(
    {
        "visit_date",
        "duration_minutes",
        "visit_type",
        "status",
        "google_event_id",
        "google_event_etag",
        "google_event_deleted",
        "sync_status",
        "last_sync_at",
        "last_sync_source",
        "remote_modified_at",
        "sync_error_message",
        "sync_error_count",
        "conflict_snapshot",
    }
)


@dataclass(frozen=True)
class SyncWrite:
    """
    A change produced by the calendar sync engine.

    Only accepted by VisitRepository.apply_sync_result, which never stamps
    local_modified_at and never emits VisitChanged events.
    """

    changes: dict = field(default_factory=dict)

    def __post_init__(self):
        forbidden = set(self.changes) - SYNC_WRITABLE_FIELDS
        if forbidden:
            raise ValueError(f"Sync writes cannot modify: {', '.join(sorted(forbidden))}")

    @classmethod
    def pushed(
        cls,
        event_id: str,
        etag: Optional[str],
        remote_modified_at: Optional[datetime],
        now: datetime,
        source: str = SYNC_SOURCE_LOCAL,
    ) -> "SyncWrite":
        """Local state was written to the calendar"""
        return cls(
            {
                "google_event_id": event_id,
                "google_event_etag": etag,
                "google_event_deleted": False,
                "remote_modified_at": remote_modified_at,
                "sync_status": SYNC_STATUS_SYNCED,
                "last_sync_at": now,
                "last_sync_source": source,
                "sync_error_count": 0,
                "sync_error_message": None,
                "conflict_snapshot": None,
            }
        )

    @classmethod
    def pulled(
        cls,
        fields: dict,
        etag: Optional[str],
        remote_modified_at: Optional[datetime],
        now: datetime,
        source: str = SYNC_SOURCE_PROVIDER,
    ) -> "SyncWrite":
        """Remote event fields were copied into the visit"""
        changes = {
            key: value
            for key, value in fields.items()
            if key in ("visit_date", "duration_minutes", "visit_type", "status")
        }
        changes.update(
            {
                "google_event_etag": etag,
                "remote_modified_at": remote_modified_at,
                "sync_status": SYNC_STATUS_SYNCED,
                "last_sync_at": now,
                "last_sync_source": source,
                "sync_error_count": 0,
                "sync_error_message": None,
                "conflict_snapshot": None,
            }
        )
        return cls(changes)

    @classmethod
    def conflicted(cls, snapshot: dict, remote_modified_at: Optional[datetime]) -> "SyncWrite":
        return cls(
            {
                "sync_status": SYNC_STATUS_CONFLICT,
                "conflict_snapshot": snapshot,
                "remote_modified_at": remote_modified_at,
                "sync_error_message": "Modified in both NutriVault and Google Calendar since last sync",
            }
        )

    @classmethod
    def failed(cls, message: str, error_count: int) -> "SyncWrite":
        return cls(
            {
                "sync_status": SYNC_STATUS_ERROR,
                "sync_error_message": message[:2000],
                "sync_error_count": error_count,
            }
        )

    @classmethod
    def tombstoned(cls, now: datetime, cancel_visit: bool) -> "SyncWrite":
        """The remote event is gone; keep the visit, drop the link"""
        changes = {
            "google_event_id": None,
            "google_event_etag": None,
            "google_event_deleted": True,
            "sync_status": SYNC_STATUS_SYNCED,
            "last_sync_at": now,
            "last_sync_source": SYNC_SOURCE_PROVIDER,
            "sync_error_message": "Event deleted from Google Calendar",
        }
        if cancel_visit:
            changes["status"] = VISIT_STATUS_CANCELLED
        return cls(changes)

    @classmethod
    def queued_for_retry(cls) -> "SyncWrite":
        """Operator-initiated retry: clears the suspension counter"""
        return cls(
            {
                "sync_status": SYNC_STATUS_PENDING_TO_GOOGLE,
                "sync_error_count": 0,
                "sync_error_message": None,
            }
        )


class VisitRepository:
    """
    Repository for visit database operations.

    Two distinct write modes:
    - apply_user_edit: ordinary writes; stamps local_modified_at when a
      calendar-relevant field changes and records a VisitChanged event
    - apply_sync_result: writes originating from calendar sync; takes a
      SyncWrite and leaves local_modified_at and the event queue alone
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self._pending_events: List[VisitChanged] = []

    # Queries

    def get_visit(self, visit_id: int, dietitian_id: Optional[int] = None) -> Optional[Visit]:
        query = self.db.query(Visit).options(joinedload(Visit.patient)).filter(Visit.id == visit_id)
        if dietitian_id is not None:
            query = query.filter(Visit.dietitian_id == dietitian_id)
        return query.first()

    def list_visits(
        self,
        dietitian_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> List[Visit]:
        """Range query; dietitian_id None means every account (admin view)"""
        query = self.db.query(Visit).options(joinedload(Visit.patient))
        if dietitian_id is not None:
            query = query.filter(Visit.dietitian_id == dietitian_id)
        if start:
            query = query.filter(Visit.visit_date >= start)
        if end:
            query = query.filter(Visit.visit_date <= end)
        if status:
            query = query.filter(Visit.status == status)
        return query.order_by(Visit.visit_date).all()

    def linked_visits(self, dietitian_id: int, since: datetime) -> List[Visit]:
        """Visits believed to have a live Google event, within the sync window"""
        query = self.db.query(Visit).filter(
            Visit.dietitian_id == dietitian_id,
            Visit.google_event_id.isnot(None),
            Visit.google_event_deleted.is_(False),
            Visit.visit_date >= since,
        )
        return query.order_by(Visit.visit_date).all()

    def push_candidates(self, dietitian_id: int, since: datetime) -> List[Visit]:
        """Visits waiting to be written to Google (including failed ones)"""
        query = (
            self.db.query(Visit)
            .options(joinedload(Visit.patient))
            .filter(
                Visit.dietitian_id == dietitian_id,
                Visit.sync_status.in_([SYNC_STATUS_PENDING_TO_GOOGLE, SYNC_STATUS_ERROR]),
                Visit.google_event_deleted.is_(False),
                Visit.visit_date >= since,
            )
        )
        return query.order_by(Visit.visit_date).all()

    def sync_issues(self, dietitian_id: int) -> List[Visit]:
        return (
            self.db.query(Visit)
            .options(joinedload(Visit.patient))
            .filter(
                Visit.dietitian_id == dietitian_id,
                Visit.sync_status.in_([SYNC_STATUS_CONFLICT, SYNC_STATUS_ERROR]),
            )
            .order_by(Visit.visit_date.desc())
            .all()
        )

    def failed_visits(self, dietitian_id: int) -> List[Visit]:
        return (
            self.db.query(Visit)
            .options(joinedload(Visit.patient))
            .filter(Visit.dietitian_id == dietitian_id, Visit.sync_status == SYNC_STATUS_ERROR)
            .all()
        )

    def status_counts(self, dietitian_id: int) -> dict:
        rows = (
            self.db.query(Visit.sync_status, func.count(Visit.id))
            .filter(Visit.dietitian_id == dietitian_id)
            .group_by(Visit.sync_status)
            .all()
        )
        return {sync_status: count for sync_status, count in rows}

    def count_visits(self, dietitian_id: int, linked_only: bool = False) -> int:
        query = self.db.query(func.count(Visit.id)).filter(Visit.dietitian_id == dietitian_id)
        if linked_only:
            query = query.filter(Visit.google_event_id.isnot(None))
        return query.scalar() or 0

    def count_suspended(self, dietitian_id: int, max_error_count: int) -> int:
        """Failed visits no longer retried automatically"""
        return (
            self.db.query(func.count(Visit.id))
            .filter(
                Visit.dietitian_id == dietitian_id,
                Visit.sync_status == SYNC_STATUS_ERROR,
                Visit.sync_error_count >= max_error_count,
            )
            .scalar()
            or 0
        )

    def latest_sync_at(self, dietitian_id: int) -> Optional[datetime]:
        return (
            self.db.query(func.max(Visit.last_sync_at))
            .filter(Visit.dietitian_id == dietitian_id)
            .scalar()
        )

    # Ordinary writes

    def create_visit(self, **data) -> Visit:
        unknown = set(data) - USER_EDITABLE_FIELDS - {"dietitian_id"}
        if unknown:
            raise ValueError(f"Unknown visit fields: {', '.join(sorted(unknown))}")

        visit = Visit(
            **data,
            sync_status=SYNC_STATUS_PENDING_TO_GOOGLE,
            sync_error_count=0,
            google_event_deleted=False,
            local_modified_at=self.clock(),
        )
        self.db.add(visit)
        self.db.commit()
        self.db.refresh(visit)

        self._pending_events.append(
            VisitChanged(
                kind=VISIT_CREATED,
                previous=None,
                current=VisitSnapshot.of(visit),
                changed_fields=tuple(sorted(set(data) & set(CALENDAR_RELEVANT_FIELDS))),
            )
        )
        return visit

    def apply_user_edit(self, visit: Visit, **changes) -> Visit:
        """Apply a user edit; only USER_EDITABLE_FIELDS are accepted"""
        unknown = set(changes) - USER_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Not user-editable: {', '.join(sorted(unknown))}")

        previous = VisitSnapshot.of(visit)
        changed = [key for key, value in changes.items() if getattr(visit, key) != value]
        if not changed:
            return visit

        for key in changed:
            setattr(visit, key, changes[key])

        relevant = tuple(key for key in changed if key in CALENDAR_RELEVANT_FIELDS)
        if relevant:
            visit.local_modified_at = self.clock()
            if visit.sync_status != SYNC_STATUS_CONFLICT:
                visit.sync_status = SYNC_STATUS_PENDING_TO_GOOGLE
            # Editing a visit whose event was deleted re-links it on the next push
            if visit.google_event_deleted:
                visit.google_event_deleted = False

        self.db.commit()
        self.db.refresh(visit)

        if relevant:
            self._pending_events.append(
                VisitChanged(
                    kind=VISIT_UPDATED,
                    previous=previous,
                    current=VisitSnapshot.of(visit),
                    changed_fields=relevant,
                )
            )
        return visit

    def delete_visit(self, visit: Visit) -> None:
        previous = VisitSnapshot.of(visit)
        self.db.delete(visit)
        self.db.commit()
        self._pending_events.append(VisitChanged(kind=VISIT_DELETED, previous=previous, current=None))

    # Sync writes

    def apply_sync_result(self, visit: Visit, write: SyncWrite) -> Visit:
        for key, value in write.changes.items():
            setattr(visit, key, value)
        self.db.commit()
        self.db.refresh(visit)
        return visit

    def drain_events(self) -> List[VisitChanged]:
        events, self._pending_events = self._pending_events, []
        return events
