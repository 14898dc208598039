"""Calendar sync schemas - reconciliation results and API models"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from ...models_visit import VISIT_STATUSES
from ...shared.time_utils import to_naive_utc

# SyncItem.status values
ITEM_SYNCED = "synced"
ITEM_SKIPPED = "skipped"
ITEM_ERROR = "error"
ITEM_CONFLICT = "conflict"
ITEM_DELETED = "deleted"

# SyncItem.reason values for skipped items
SKIP_MAX_ERRORS = "max_errors"
SKIP_CONFLICT = "conflict"
SKIP_TOMBSTONED = "tombstoned"
SKIP_UP_TO_DATE = "up_to_date"
SKIP_NOT_LINKED = "not_linked"


@dataclass
class SyncItem:
    visit_id: int
    status: str
    action: Optional[str] = None  # insert | update | pull | tombstone
    reason: Optional[str] = None
    message: Optional[str] = None


@dataclass
class SyncResult:
    """Outcome of one reconciliation pass (or of a single-record sync)"""

    synced: int = 0
    skipped: int = 0
    errors: int = 0
    conflicts: int = 0
    deleted: int = 0
    items: List[SyncItem] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def record(self, item: SyncItem) -> SyncItem:
        self.items.append(item)
        if item.status == ITEM_SYNCED:
            self.synced += 1
        elif item.status == ITEM_SKIPPED:
            self.skipped += 1
        elif item.status == ITEM_ERROR:
            self.errors += 1
        elif item.status == ITEM_CONFLICT:
            self.conflicts += 1
        elif item.status == ITEM_DELETED:
            self.deleted += 1
        return item

    def merge(self, other: "SyncResult") -> None:
        for item in other.items:
            self.record(item)
        self.warnings.extend(other.warnings)

    def to_dict(self) -> dict:
        return asdict(self)

    def summary(self) -> str:
        return (
            f"synced={self.synced} skipped={self.skipped} errors={self.errors} "
            f"conflicts={self.conflicts} deleted={self.deleted}"
        )


# ============================================================================
# API MODELS
# ============================================================================


class SyncRequest(BaseModel):
    since_days: Optional[int] = None

    @field_validator("since_days")
    @classmethod
    def validate_since_days(cls, v):
        if v is not None and not 0 <= v <= 365:
            raise ValueError("since_days must be between 0 and 365")
        return v


class SyncItemResponse(BaseModel):
    visit_id: int
    status: str
    action: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class SyncResultResponse(BaseModel):
    synced: int
    skipped: int
    errors: int
    conflicts: int
    deleted: int
    items: List[SyncItemResponse]
    warnings: List[str] = []


class BackgroundSyncResponse(BaseModel):
    jobId: str
    message: str


class ResolveConflictRequest(BaseModel):
    resolution: Literal["keep_local", "keep_remote", "merge"]
    merged_data: Optional[dict] = None


class MergedVisitData(BaseModel):
    """Calendar fields an operator picks when merging a conflict; unset fields are left alone"""

    model_config = ConfigDict(extra="forbid")

    visit_date: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    visit_type: Optional[str] = None
    status: Optional[str] = None

    @field_validator("visit_date")
    @classmethod
    def normalize_visit_date(cls, v):
        if v is None:
            raise ValueError("visit_date cannot be null")
        return to_naive_utc(v)

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v):
        if v is not None and v <= 0:
            raise ValueError("duration_minutes must be positive")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in VISIT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(VISIT_STATUSES)}")
        return v


class CalendarSettingsUpdate(BaseModel):
    calendar_id: Optional[str] = None
    auto_sync_enabled: Optional[bool] = None
    default_appointment_duration: Optional[int] = None

    @field_validator("default_appointment_duration")
    @classmethod
    def validate_duration(cls, v):
        if v is not None and v <= 0:
            raise ValueError("default_appointment_duration must be positive")
        return v


class CalendarStatusResponse(BaseModel):
    connected: bool
    google_user_email: Optional[str] = None
    calendar_id: Optional[str] = None
    auto_sync_enabled: bool = False
    default_appointment_duration: Optional[int] = None


class CalendarResponse(BaseModel):
    id: str
    summary: Optional[str] = None
    primary: bool = False
    accessRole: Optional[str] = None
    backgroundColor: Optional[str] = None
    foregroundColor: Optional[str] = None


class SyncIssueVisit(BaseModel):
    id: int
    patient_id: int
    patient_name: Optional[str] = None
    visit_date: datetime
    visit_type: Optional[str] = None
    status: str
    sync_status: str
    sync_error_message: Optional[str] = None
    sync_error_count: int
    google_event_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    local_modified_at: Optional[datetime] = None
    remote_modified_at: Optional[datetime] = None
    conflict_snapshot: Optional[dict] = None


class SyncIssuesResponse(BaseModel):
    total: int
    conflicts: int
    errors: int
    visits: List[SyncIssueVisit]


class SyncStatsResponse(BaseModel):
    totalVisits: int
    totalWithGoogle: int
    lastSyncAt: Optional[datetime] = None
    byStatus: dict
    suspended: int = 0


class RetryResultResponse(BaseModel):
    total: int
    successful: int
    failed: int


class ConflictDetailsResponse(BaseModel):
    visit_id: int
    sync_status: str
    local: dict
    remote: Optional[dict] = None
    remote_deleted: bool = False
    differs: bool = False
