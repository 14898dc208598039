"""Calendar sync service - account-level operations around the orchestrator"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ...config import AGENDA_SYNC_LOOKBACK_DAYS, MAX_SYNC_ERROR_COUNT, SYNC_LOOKBACK_DAYS
from ...models import User
from ...models_google_calendar import GoogleCalendarIntegration
from ...models_visit import (
    CALENDAR_RELEVANT_FIELDS,
    SYNC_SOURCE_MANUAL,
    SYNC_STATUS_CONFLICT,
    Visit,
)
from ...services.google_calendar_service import open_calendar_client, revoke_token
from ...shared.time_utils import utcnow
from ..visits.repository import SyncWrite, VisitRepository
from .event_mapper import DEFAULT_DURATION_MINUTES, visit_differs_from_event
from .orchestrator import CalendarSyncOrchestrator, conflict_snapshot
from .schemas import CalendarSettingsUpdate, MergedVisitData, SyncResult
from .trigger_gate import SyncTriggerGate, get_trigger_gate

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., Awaitable[object]]

# Fields an operator may pick when merging a conflict
MERGEABLE_FIELDS = set(MergedVisitData.model_fields)


def _default_duration(integration: GoogleCalendarIntegration) -> int:
    return integration.default_appointment_duration or DEFAULT_DURATION_MINUTES


def _visit_issue(visit: Visit) -> dict:
    return {
        "id": visit.id,
        "patient_id": visit.patient_id,
        "patient_name": visit.patient.full_name if visit.patient else None,
        "visit_date": visit.visit_date,
        "visit_type": visit.visit_type,
        "status": visit.status,
        "sync_status": visit.sync_status,
        "sync_error_message": visit.sync_error_message,
        "sync_error_count": visit.sync_error_count,
        "google_event_id": visit.google_event_id,
        "last_sync_at": visit.last_sync_at,
        "local_modified_at": visit.local_modified_at,
        "remote_modified_at": visit.remote_modified_at,
        "conflict_snapshot": visit.conflict_snapshot,
    }


class CalendarSyncService:
    """Service layer for Google Calendar synchronization"""

    def __init__(
        self,
        db: Session,
        provider_factory: ProviderFactory = open_calendar_client,
        gate: Optional[SyncTriggerGate] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = VisitRepository(db, clock=clock)
        self.provider_factory = provider_factory
        self.gate = gate or get_trigger_gate()
        self.clock = clock

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def get_integration(self, user_id: int) -> Optional[GoogleCalendarIntegration]:
        return (
            self.db.query(GoogleCalendarIntegration)
            .filter(GoogleCalendarIntegration.user_id == user_id)
            .first()
        )

    def require_integration(self, user: User) -> GoogleCalendarIntegration:
        integration = self.get_integration(user.id)
        if not integration:
            raise HTTPException(status_code=400, detail="Google Calendar not connected")
        return integration

    async def _orchestrator(
        self, integration: GoogleCalendarIntegration, calendar_id: Optional[str] = None
    ) -> CalendarSyncOrchestrator:
        provider = await self.provider_factory(integration, self.db, calendar_id=calendar_id)
        return CalendarSyncOrchestrator(
            self.repo,
            provider,
            clock=self.clock,
            default_duration_minutes=_default_duration(integration),
        )

    def get_status(self, user: User) -> dict:
        integration = self.get_integration(user.id)
        if not integration:
            return {"connected": False}
        return {
            "connected": True,
            "google_user_email": integration.google_user_email,
            "calendar_id": integration.calendar_id,
            "auto_sync_enabled": bool(integration.auto_sync_enabled),
            "default_appointment_duration": integration.default_appointment_duration,
        }

    # ------------------------------------------------------------------
    # Sync runs
    # ------------------------------------------------------------------

    def _since(self, lookback_days: int) -> datetime:
        return self.clock() - timedelta(days=lookback_days)

    async def sync_now(self, user: User, since_days: Optional[int] = None) -> SyncResult:
        """Manual "sync now": bypasses the cooldown but stamps it"""
        integration = self.require_integration(user)
        self.gate.stamp(user.id)
        orchestrator = await self._orchestrator(integration)
        lookback = SYNC_LOOKBACK_DAYS if since_days is None else since_days
        return await orchestrator.run(user.id, self._since(lookback))

    async def auto_sync(self, user_id: int, lookback_days: int = SYNC_LOOKBACK_DAYS) -> Optional[SyncResult]:
        """
        Opportunistic sync (agenda view, periodic tick).

        Returns None without any provider call when the account is not
        connected, has auto-sync disabled, or is inside its cooldown window.
        """
        integration = self.get_integration(user_id)
        if not integration or not integration.auto_sync_enabled:
            return None

        async def run() -> SyncResult:
            orchestrator = await self._orchestrator(integration)
            return await orchestrator.run(user_id, self._since(lookback_days))

        result = await self.gate.run_if_allowed(user_id, run)
        if result is not None:
            logger.info(f"🔄 Auto-sync for user {user_id}: {result.summary()}")
        return result

    async def auto_sync_agenda(self, user_id: int) -> Optional[SyncResult]:
        return await self.auto_sync(user_id, lookback_days=AGENDA_SYNC_LOOKBACK_DAYS)

    async def sync_visit(self, visit_id: int) -> Optional[SyncResult]:
        """Single-record sync after a local write"""
        visit = self.repo.get_visit(visit_id)
        if not visit:
            return None
        integration = self.get_integration(visit.dietitian_id)
        if not integration or not integration.auto_sync_enabled:
            return None
        orchestrator = await self._orchestrator(integration)
        return await orchestrator.sync_visit(visit)

    async def delete_remote_event(self, dietitian_id: int, event_id: str) -> bool:
        """Remove the calendar event of a locally deleted visit"""
        integration = self.get_integration(dietitian_id)
        if not integration or not integration.auto_sync_enabled:
            return False
        orchestrator = await self._orchestrator(integration)
        return await orchestrator.remove_event(event_id)

    # ------------------------------------------------------------------
    # Issues, stats, retries
    # ------------------------------------------------------------------

    def get_sync_issues(self, user: User) -> dict:
        visits = self.repo.sync_issues(user.id)
        conflicts = sum(1 for v in visits if v.sync_status == SYNC_STATUS_CONFLICT)
        return {
            "total": len(visits),
            "conflicts": conflicts,
            "errors": len(visits) - conflicts,
            "visits": [_visit_issue(v) for v in visits],
        }

    def get_sync_stats(self, user: User) -> dict:
        return {
            "totalVisits": self.repo.count_visits(user.id),
            "totalWithGoogle": self.repo.count_visits(user.id, linked_only=True),
            "lastSyncAt": self.repo.latest_sync_at(user.id),
            "byStatus": self.repo.status_counts(user.id),
            "suspended": self.repo.count_suspended(user.id, MAX_SYNC_ERROR_COUNT),
        }

    async def retry_failed_syncs(self, user: User) -> dict:
        """Operator retry: clears error counters (including suspended visits) and pushes again"""
        integration = self.require_integration(user)
        failed = self.repo.failed_visits(user.id)
        if not failed:
            return {"total": 0, "successful": 0, "failed": 0}

        orchestrator = await self._orchestrator(integration)
        result = SyncResult()
        successful = 0
        for visit in failed:
            self.repo.apply_sync_result(visit, SyncWrite.queued_for_retry())
            if await orchestrator.push(visit, result, source=SYNC_SOURCE_MANUAL):
                successful += 1

        logger.info(f"🔁 Retried {len(failed)} failed syncs for user {user.id}: {successful} successful")
        return {"total": len(failed), "successful": successful, "failed": len(failed) - successful}

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def _get_user_visit(self, user: User, visit_id: int) -> Visit:
        visit = self.repo.get_visit(visit_id, dietitian_id=user.id)
        if not visit:
            raise HTTPException(status_code=404, detail="Visit not found")
        return visit

    async def get_conflict_details(self, user: User, visit_id: int) -> dict:
        visit = self._get_user_visit(user, visit_id)
        integration = self.require_integration(user)

        local = {field: getattr(visit, field) for field in CALENDAR_RELEVANT_FIELDS}
        local["visit_date"] = visit.visit_date.isoformat()
        local["local_modified_at"] = visit.local_modified_at.isoformat() if visit.local_modified_at else None
        local["last_sync_at"] = visit.last_sync_at.isoformat() if visit.last_sync_at else None

        details = {
            "visit_id": visit.id,
            "sync_status": visit.sync_status,
            "local": local,
            "remote": None,
            "remote_deleted": False,
            "differs": False,
        }
        if not visit.google_event_id:
            details["remote_deleted"] = bool(visit.google_event_deleted)
            return details

        orchestrator = await self._orchestrator(integration)
        event = await orchestrator.fetch_event(visit.google_event_id)
        if event is None or event.get("status") == "cancelled":
            details["remote_deleted"] = True
            return details

        details["remote"] = conflict_snapshot(event)
        details["differs"] = visit_differs_from_event(visit, event, _default_duration(integration))
        return details

    async def resolve_conflict(
        self, user: User, visit_id: int, resolution: str, merged_data: Optional[dict] = None
    ) -> Visit:
        """
        Settle a conflicted visit:
        - keep_local: push the local version over the remote event
        - keep_remote: pull the remote event (tombstone if it is gone)
        - merge: apply operator-chosen fields, then push
        """
        visit = self._get_user_visit(user, visit_id)
        if visit.sync_status != SYNC_STATUS_CONFLICT:
            raise HTTPException(status_code=409, detail="Visit is not in conflict")
        integration = self.require_integration(user)
        orchestrator = await self._orchestrator(integration)
        result = SyncResult()

        if resolution == "keep_local":
            await orchestrator.push(visit, result, source=SYNC_SOURCE_MANUAL)
        elif resolution == "keep_remote":
            event = await orchestrator.fetch_event(visit.google_event_id) if visit.google_event_id else None
            if event is None or event.get("status") == "cancelled":
                orchestrator.tombstone(visit, result)
            else:
                orchestrator.apply_remote(visit, event, result, source=SYNC_SOURCE_MANUAL)
        elif resolution == "merge":
            changes = self._merge_changes(merged_data)
            self.repo.apply_user_edit(visit, **changes)
            await orchestrator.push(visit, result, source=SYNC_SOURCE_MANUAL)
        else:
            raise HTTPException(status_code=400, detail=f"Unknown resolution: {resolution}")

        logger.info(f"✅ Conflict on visit {visit.id} resolved with {resolution}")
        self.db.refresh(visit)
        return visit

    @staticmethod
    def _merge_changes(merged_data: Optional[dict]) -> dict:
        if not merged_data:
            raise HTTPException(status_code=400, detail="merged_data is required for merge resolution")
        unknown = set(merged_data) - MERGEABLE_FIELDS
        if unknown:
            raise HTTPException(
                status_code=400, detail=f"Cannot merge fields: {', '.join(sorted(unknown))}"
            )
        try:
            merged = MergedVisitData.model_validate(merged_data)
        except ValidationError as e:
            fields = ", ".join(sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]}))
            logger.warning(f"⚠️ Rejected merged_data: {e}")
            raise HTTPException(status_code=400, detail=f"Invalid merged_data fields: {fields}")
        return merged.model_dump(exclude_unset=True)

    # ------------------------------------------------------------------
    # Calendars & settings
    # ------------------------------------------------------------------

    async def list_calendars(self, user: User) -> list:
        integration = self.require_integration(user)
        provider = await self.provider_factory(integration, self.db)
        return await provider.list_calendars()

    async def update_settings(self, user: User, data: CalendarSettingsUpdate) -> GoogleCalendarIntegration:
        integration = self.require_integration(user)

        if data.calendar_id is not None and data.calendar_id != integration.calendar_id:
            # Raises CalendarAccessError when the calendar cannot be used
            provider = await self.provider_factory(integration, self.db, calendar_id=data.calendar_id)
            await provider.get_calendar(data.calendar_id)
            integration.google_calendar_id = data.calendar_id
            logger.info(f"📅 User {user.id} switched to calendar {data.calendar_id}")
        if data.auto_sync_enabled is not None:
            integration.auto_sync_enabled = data.auto_sync_enabled
        if data.default_appointment_duration is not None:
            integration.default_appointment_duration = data.default_appointment_duration

        self.db.commit()
        self.db.refresh(integration)
        return integration

    async def disconnect(self, user: User) -> dict:
        integration = self.require_integration(user)
        await revoke_token(integration)
        self.db.delete(integration)
        self.db.commit()
        logger.info(f"✅ Google Calendar disconnected for user {user.id}")
        return {"message": "Google Calendar disconnected successfully"}

