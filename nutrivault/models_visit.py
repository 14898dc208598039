"""
Visit Models with Google Calendar sync state
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Sync status values
SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_PENDING_TO_GOOGLE = "pending_to_google"
SYNC_STATUS_PENDING_FROM_GOOGLE = "pending_from_google"
SYNC_STATUS_CONFLICT = "conflict"
SYNC_STATUS_ERROR = "error"

SYNC_STATUSES = (
    SYNC_STATUS_SYNCED,
    SYNC_STATUS_PENDING_TO_GOOGLE,
    SYNC_STATUS_PENDING_FROM_GOOGLE,
    SYNC_STATUS_CONFLICT,
    SYNC_STATUS_ERROR,
)

# Where the last successful sync came from
SYNC_SOURCE_LOCAL = "local"
SYNC_SOURCE_PROVIDER = "provider"
SYNC_SOURCE_MANUAL = "manual"

# Visit status values
VISIT_STATUS_SCHEDULED = "SCHEDULED"
VISIT_STATUS_COMPLETED = "COMPLETED"
VISIT_STATUS_CANCELLED = "CANCELLED"
VISIT_STATUS_NO_SHOW = "NO_SHOW"

VISIT_STATUSES = (
    VISIT_STATUS_SCHEDULED,
    VISIT_STATUS_COMPLETED,
    VISIT_STATUS_CANCELLED,
    VISIT_STATUS_NO_SHOW,
)

# Fields whose change must be reflected in Google Calendar
CALENDAR_RELEVANT_FIELDS = ("visit_date", "duration_minutes", "visit_type", "status", "patient_id")


class Visit(Base):
    """Consultation appointment, mirrored to the dietitian's Google Calendar"""

    __tablename__ = "visits"

    id = Column(Integer, primary_key=True, index=True)

    # Relationships
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    dietitian_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Visit details
    visit_date = Column(DateTime, nullable=False, index=True)  # UTC
    duration_minutes = Column(Integer, nullable=True)  # 60 when unset
    visit_type = Column(String(100), nullable=True)
    # Status workflow: SCHEDULED → COMPLETED | CANCELLED | NO_SHOW
    status = Column(String(50), default=VISIT_STATUS_SCHEDULED, nullable=False, index=True)
    notes = Column(Text, nullable=True)

    # Google Calendar link
    google_event_id = Column(String(1024), nullable=True, index=True)
    google_event_etag = Column(String(255), nullable=True)
    # Tombstone: the remote event was deleted, the visit itself is kept
    google_event_deleted = Column(Boolean, default=False, nullable=False)

    # Sync state machine
    sync_status = Column(
        String(30), default=SYNC_STATUS_PENDING_TO_GOOGLE, nullable=False, index=True
    )
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_source = Column(String(20), nullable=True)
    # Stamped only by user edits of calendar-relevant fields, never by sync writes
    local_modified_at = Column(DateTime, nullable=True)
    remote_modified_at = Column(DateTime, nullable=True)
    sync_error_message = Column(Text, nullable=True)
    sync_error_count = Column(Integer, default=0, nullable=False)
    # Remote side captured when a conflict was detected
    conflict_snapshot = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    patient = relationship("Patient", back_populates="visits")
    dietitian = relationship("User")
