"""
Calendar sync orchestrator

Reconciles one account's visits with its Google Calendar in three phases,
always in this order:

A. Deleted remote events - linked visits whose event disappeared are tombstoned
B. Remote -> local      - remote-only changes are pulled, double changes become conflicts
C. Local -> remote      - pending / failed visits are inserted or updated

Per-visit failures are recorded in the result and never abort the run.
When the event listing itself fails, phase B is skipped and phase C checks
each linked visit against its own event before writing it.
CalendarAuthError and CalendarAccessError abort the run and propagate.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from ...config import DELETED_EVENT_POLICY, MAX_SYNC_ERROR_COUNT
from ...models_visit import (
    SYNC_SOURCE_LOCAL,
    SYNC_SOURCE_PROVIDER,
    SYNC_STATUS_CONFLICT,
    SYNC_STATUS_SYNCED,
    Visit,
)
from ...shared.time_utils import parse_rfc3339, utcnow
from ..visits.repository import SyncWrite, VisitRepository
from .conflict_detector import detect_conflict, local_changed, remote_changed
from .event_mapper import DEFAULT_DURATION_MINUTES, from_provider_event, to_provider_event
from .exceptions import ACCOUNT_LEVEL_ERRORS, CalendarSyncError, EventNotFoundError
from .schemas import (
    ITEM_CONFLICT,
    ITEM_DELETED,
    ITEM_ERROR,
    ITEM_SKIPPED,
    ITEM_SYNCED,
    SKIP_CONFLICT,
    SKIP_MAX_ERRORS,
    SKIP_NOT_LINKED,
    SKIP_TOMBSTONED,
    SKIP_UP_TO_DATE,
    SyncItem,
    SyncResult,
)

logger = logging.getLogger(__name__)

DELETED_POLICY_CANCEL = "cancel"
DELETED_POLICY_FLAG = "flag"


def _is_live(event: Optional[dict]) -> bool:
    return event is not None and event.get("status") != "cancelled"


def conflict_snapshot(event: dict) -> dict:
    """JSON-safe copy of the remote side of a conflict"""
    remote = from_provider_event(event)
    snapshot = {
        "event_id": event.get("id"),
        "etag": event.get("etag"),
        "summary": event.get("summary"),
        "updated": event.get("updated"),
        "visit_date": remote["visit_date"].isoformat() if remote["visit_date"] else None,
        "duration_minutes": remote["duration_minutes"],
    }
    for key in ("status", "visit_type"):
        if key in remote:
            snapshot[key] = remote[key]
    return snapshot


class CalendarSyncOrchestrator:
    """
    Runs reconciliation for one account against one calendar.

    `provider` is anything exposing the GoogleCalendarClient coroutine API
    (list_events, get_event, insert_event, update_event, delete_event).
    """

    def __init__(
        self,
        repo: VisitRepository,
        provider,
        clock: Callable[[], datetime] = utcnow,
        max_error_count: int = MAX_SYNC_ERROR_COUNT,
        deleted_event_policy: str = DELETED_EVENT_POLICY,
        default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
    ):
        self.repo = repo
        self.provider = provider
        self.clock = clock
        self.max_error_count = max_error_count
        self.cancel_on_remote_delete = deleted_event_policy == DELETED_POLICY_CANCEL
        self.default_duration_minutes = default_duration_minutes

    # ------------------------------------------------------------------
    # Full account run
    # ------------------------------------------------------------------

    async def run(self, dietitian_id: int, since: datetime) -> SyncResult:
        result = SyncResult()
        logger.info(f"🔄 Calendar sync started for dietitian {dietitian_id} (since {since.isoformat()})")

        try:
            listing = await self._remove_deleted_events(dietitian_id, since, result)
        except ACCOUNT_LEVEL_ERRORS:
            raise
        except CalendarSyncError as e:
            listing = None
            result.warnings.append(f"Remote changes not checked: {e}")
            logger.warning(
                f"⚠️ Could not list Google Calendar events for dietitian {dietitian_id}, "
                f"skipping remote changes: {e}"
            )

        if listing is not None:
            await self._pull_remote_changes(dietitian_id, since, listing, result)
        # Visits already settled by phases A and B are not pushed in the same run
        settled = {item.visit_id for item in result.items}
        await self._push_local_changes(dietitian_id, since, result, settled, verify_linked=listing is None)

        logger.info(f"✅ Calendar sync finished for dietitian {dietitian_id}: {result.summary()}")
        return result

    async def _remove_deleted_events(
        self, dietitian_id: int, since: datetime, result: SyncResult
    ) -> Dict[str, dict]:
        """Phase A. Returns the live remote events by id for phase B."""
        linked = self.repo.linked_visits(dietitian_id, since)
        if not linked:
            return {}

        events = await self.provider.list_events(since, single_events=True)
        listing = {event["id"]: event for event in events if _is_live(event)}

        for visit in linked:
            if visit.google_event_id in listing or visit.sync_status == SYNC_STATUS_CONFLICT:
                continue
            if self._suspended(visit):
                continue
            try:
                # Not listed: confirm before tombstoning, the event may have moved out of the window
                event = await self.fetch_event(visit.google_event_id)
                if _is_live(event):
                    listing[event["id"]] = event
                    continue
                self.tombstone(visit, result)
            except ACCOUNT_LEVEL_ERRORS:
                raise
            except Exception as e:
                self._record_failure(visit, e, result)

        return listing

    async def _pull_remote_changes(
        self, dietitian_id: int, since: datetime, listing: Dict[str, dict], result: SyncResult
    ) -> None:
        """Phase B. Reuses the phase A listing, makes no provider calls."""
        if not listing:
            return

        for visit in self.repo.linked_visits(dietitian_id, since):
            event = listing.get(visit.google_event_id)
            if event is None or visit.sync_status == SYNC_STATUS_CONFLICT:
                continue
            if self._suspended(visit):
                self._record_suspended(visit, result)
                continue
            try:
                if detect_conflict(visit, event):
                    self._mark_conflict(visit, event, result)
                elif remote_changed(visit, event) and not local_changed(visit):
                    self.apply_remote(visit, event, result)
            except Exception as e:
                self._record_failure(visit, e, result)

    async def _push_local_changes(
        self,
        dietitian_id: int,
        since: datetime,
        result: SyncResult,
        settled: Set[int],
        verify_linked: bool = False,
    ) -> None:
        """Phase C. With verify_linked, linked visits go through sync_visit instead of a blind push."""
        for visit in self.repo.push_candidates(dietitian_id, since):
            if visit.id in settled:
                continue
            if self._suspended(visit):
                self._record_suspended(visit, result)
                continue
            if verify_linked and visit.google_event_id:
                result.merge(await self.sync_visit(visit))
                continue
            await self.push(visit, result)

    def _suspended(self, visit: Visit) -> bool:
        return (visit.sync_error_count or 0) >= self.max_error_count

    def _record_suspended(self, visit: Visit, result: SyncResult) -> None:
        result.record(
            SyncItem(
                visit_id=visit.id,
                status=ITEM_SKIPPED,
                reason=SKIP_MAX_ERRORS,
                message=visit.sync_error_message,
            )
        )

    # ------------------------------------------------------------------
    # Single-record paths
    # ------------------------------------------------------------------

    def _skip_reason(self, visit: Visit) -> Optional[str]:
        if visit.sync_status == SYNC_STATUS_CONFLICT:
            return SKIP_CONFLICT
        if visit.google_event_deleted:
            return SKIP_TOMBSTONED
        if self._suspended(visit):
            return SKIP_MAX_ERRORS
        return None

    async def sync_visit(self, visit: Visit) -> SyncResult:
        """Sync one visit right after a local write"""
        result = SyncResult()
        reason = self._skip_reason(visit)
        if reason:
            result.record(SyncItem(visit_id=visit.id, status=ITEM_SKIPPED, reason=reason))
            return result

        if visit.google_event_id:
            try:
                event = await self.fetch_event(visit.google_event_id)
            except ACCOUNT_LEVEL_ERRORS:
                raise
            except Exception as e:
                self._record_failure(visit, e, result)
                return result

            if _is_live(event):
                if detect_conflict(visit, event):
                    self._mark_conflict(visit, event, result)
                    return result
                if remote_changed(visit, event) and not local_changed(visit):
                    self.apply_remote(visit, event, result)
                    return result
                if not local_changed(visit) and visit.sync_status == SYNC_STATUS_SYNCED:
                    result.record(SyncItem(visit_id=visit.id, status=ITEM_SKIPPED, reason=SKIP_UP_TO_DATE))
                    return result

        await self.push(visit, result)
        return result

    async def pull_visit(self, visit: Visit) -> SyncResult:
        """Refresh one visit from its remote event (e.g. on a push notification)"""
        result = SyncResult()
        reason = self._skip_reason(visit)
        if not reason and not visit.google_event_id:
            reason = SKIP_NOT_LINKED
        if reason:
            result.record(SyncItem(visit_id=visit.id, status=ITEM_SKIPPED, reason=reason))
            return result

        try:
            event = await self.fetch_event(visit.google_event_id)
            if not _is_live(event):
                self.tombstone(visit, result)
            elif detect_conflict(visit, event):
                self._mark_conflict(visit, event, result)
            elif remote_changed(visit, event):
                self.apply_remote(visit, event, result)
            else:
                result.record(SyncItem(visit_id=visit.id, status=ITEM_SKIPPED, reason=SKIP_UP_TO_DATE))
        except ACCOUNT_LEVEL_ERRORS:
            raise
        except Exception as e:
            self._record_failure(visit, e, result)
        return result

    # ------------------------------------------------------------------
    # Building blocks (also used for manual conflict resolution)
    # ------------------------------------------------------------------

    async def fetch_event(self, event_id: str) -> Optional[dict]:
        try:
            return await self.provider.get_event(event_id)
        except EventNotFoundError:
            return None

    async def push(self, visit: Visit, result: SyncResult, source: str = SYNC_SOURCE_LOCAL) -> bool:
        """Write the visit to Google: update when linked, insert otherwise or when the event is gone"""
        body = to_provider_event(visit, default_duration=self.default_duration_minutes)
        try:
            if visit.google_event_id:
                try:
                    event = await self.provider.update_event(visit.google_event_id, body)
                    action = "update"
                except EventNotFoundError:
                    logger.warning(
                        f"⚠️ Event {visit.google_event_id} for visit {visit.id} not found, recreating it"
                    )
                    event = await self.provider.insert_event(body)
                    action = "insert"
            else:
                event = await self.provider.insert_event(body)
                action = "insert"
        except ACCOUNT_LEVEL_ERRORS:
            raise
        except Exception as e:
            self._record_failure(visit, e, result)
            return False

        self.repo.apply_sync_result(
            visit,
            SyncWrite.pushed(
                event_id=event["id"],
                etag=event.get("etag"),
                remote_modified_at=parse_rfc3339(event.get("updated")),
                now=self.clock(),
                source=source,
            ),
        )
        result.record(SyncItem(visit_id=visit.id, status=ITEM_SYNCED, action=action))
        return True

    def apply_remote(self, visit: Visit, event: dict, result: SyncResult, source: str = SYNC_SOURCE_PROVIDER) -> None:
        """Copy the remote event's fields into the visit"""
        remote = from_provider_event(event)
        fields = {
            key: remote[key]
            for key in ("visit_date", "duration_minutes", "status", "visit_type")
            if remote.get(key) is not None
        }
        self.repo.apply_sync_result(
            visit,
            SyncWrite.pulled(
                fields,
                etag=event.get("etag"),
                remote_modified_at=remote["remote_modified_at"],
                now=self.clock(),
                source=source,
            ),
        )
        logger.info(f"📥 Visit {visit.id} updated from Google Calendar event {event.get('id')}")
        result.record(SyncItem(visit_id=visit.id, status=ITEM_SYNCED, action="pull"))

    def tombstone(self, visit: Visit, result: SyncResult) -> None:
        event_id = visit.google_event_id
        self.repo.apply_sync_result(
            visit, SyncWrite.tombstoned(now=self.clock(), cancel_visit=self.cancel_on_remote_delete)
        )
        logger.info(f"🗑️ Event {event_id} deleted from Google Calendar, visit {visit.id} tombstoned")
        result.record(SyncItem(visit_id=visit.id, status=ITEM_DELETED, action="tombstone"))

    def _mark_conflict(self, visit: Visit, event: dict, result: SyncResult) -> None:
        self.repo.apply_sync_result(
            visit,
            SyncWrite.conflicted(conflict_snapshot(event), parse_rfc3339(event.get("updated"))),
        )
        logger.warning(
            f"⚠️ Conflict on visit {visit.id}: modified locally and in Google Calendar since "
            f"{visit.last_sync_at.isoformat()}"
        )
        result.record(SyncItem(visit_id=visit.id, status=ITEM_CONFLICT, message=visit.sync_error_message))

    def _record_failure(self, visit: Visit, error: Exception, result: SyncResult) -> None:
        error_count = (visit.sync_error_count or 0) + 1
        message = str(error) or error.__class__.__name__
        self.repo.apply_sync_result(visit, SyncWrite.failed(message, error_count))
        logger.error(f"❌ Sync failed for visit {visit.id} ({error_count}/{self.max_error_count}): {message}")
        result.record(SyncItem(visit_id=visit.id, status=ITEM_ERROR, message=message))

    async def remove_event(self, event_id: str) -> bool:
        """Delete a remote event after its visit was deleted locally; already gone is fine"""
        try:
            await self.provider.delete_event(event_id)
            return True
        except EventNotFoundError:
            logger.info(f"ℹ️ Event {event_id} already deleted from Google Calendar")
            return False
