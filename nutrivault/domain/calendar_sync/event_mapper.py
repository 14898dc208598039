"""
Visit <-> Google Calendar event mapping

Pure functions working on the Google Calendar v3 event JSON. The visit
back-reference and its structured status live in
extendedProperties.private, never in the free-text summary or description.
"""

from datetime import timedelta
from typing import Optional

from ...config import GOOGLE_CALENDAR_TIMEZONE
from ...models_visit import VISIT_STATUSES
from ...shared.time_utils import parse_rfc3339, to_rfc3339

DEFAULT_DURATION_MINUTES = 60

# extendedProperties.private keys (Google only stores string values)
PROP_VISIT_ID = "nutrivault_visit_id"
PROP_PATIENT_ID = "nutrivault_patient_id"
PROP_DIETITIAN_ID = "nutrivault_dietitian_id"
PROP_VISIT_STATUS = "nutrivault_visit_status"
PROP_VISIT_TYPE = "nutrivault_visit_type"


def _patient_name(visit) -> str:
    patient = getattr(visit, "patient", None)
    if patient is not None:
        return patient.full_name
    return "Patient"


def to_provider_event(
    visit,
    patient_name: Optional[str] = None,
    time_zone: str = GOOGLE_CALENDAR_TIMEZONE,
    default_duration: int = DEFAULT_DURATION_MINUTES,
) -> dict:
    """Build the Google Calendar event body for a visit; `default_duration` applies when the visit has none"""
    name = patient_name or _patient_name(visit)
    start = visit.visit_date
    end = start + timedelta(minutes=visit.duration_minutes or default_duration)
    visit_type = visit.visit_type or "Consultation"

    summary = f"Consultation - {name}"
    description = f"Rendez-vous avec {name}\nType: {visit_type}\nStatut: {visit.status}"
    private = {
        PROP_VISIT_ID: str(visit.id),
        PROP_PATIENT_ID: str(visit.patient_id),
        PROP_DIETITIAN_ID: str(visit.dietitian_id),
        PROP_VISIT_STATUS: visit.status,
    }
    if visit.visit_type:
        private[PROP_VISIT_TYPE] = visit.visit_type

    return {
        "summary": summary,
        "description": description,
        "start": {"dateTime": to_rfc3339(start), "timeZone": time_zone},
        "end": {"dateTime": to_rfc3339(end), "timeZone": time_zone},
        "reminders": {"useDefault": True},
        "extendedProperties": {"private": private},
    }


def _event_time(boundary: Optional[dict]):
    if not boundary:
        return None
    return parse_rfc3339(boundary.get("dateTime") or boundary.get("date"))


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def from_provider_event(event: dict) -> dict:
    """
    Extract visit fields from a Google Calendar event.

    Returns a dict with visit_date, duration_minutes, remote_modified_at,
    visit_id, and status / visit_type only when the structured payload
    carries them. Status is never guessed from the summary.
    """
    start = _event_time(event.get("start"))
    end = _event_time(event.get("end"))
    private = (event.get("extendedProperties") or {}).get("private") or {}

    fields = {
        "visit_date": start,
        "duration_minutes": None,
        "remote_modified_at": parse_rfc3339(event.get("updated")),
        "visit_id": _int_or_none(private.get(PROP_VISIT_ID)),
    }

    if start and end:
        minutes = round((end - start).total_seconds() / 60)
        fields["duration_minutes"] = max(1, minutes)

    status = private.get(PROP_VISIT_STATUS)
    if status in VISIT_STATUSES:
        fields["status"] = status
    if private.get(PROP_VISIT_TYPE):
        fields["visit_type"] = private[PROP_VISIT_TYPE]

    return fields


def visit_differs_from_event(visit, event: dict, default_duration: int = DEFAULT_DURATION_MINUTES) -> bool:
    """True when pulling the event would change the visit's calendar fields"""
    remote = from_provider_event(event)
    if remote["visit_date"] is not None and remote["visit_date"] != visit.visit_date:
        return True
    local_duration = visit.duration_minutes or default_duration
    if remote["duration_minutes"] is not None and remote["duration_minutes"] != local_duration:
        return True
    for key in ("status", "visit_type"):
        if key in remote and remote[key] != getattr(visit, key):
            return True
    return False
