"""Conflict detection between a visit and its Google Calendar event"""

from ...shared.time_utils import parse_rfc3339


def local_changed(visit) -> bool:
    """The visit was edited by a user since the last successful sync"""
    if visit.last_sync_at is None:
        return True
    return visit.local_modified_at is not None and visit.local_modified_at > visit.last_sync_at


def remote_changed(visit, event: dict) -> bool:
    """
    The event was modified in Google since the last successful sync.

    A matching etag means the event is still the version we last agreed on
    (typically the one we just wrote), whatever its `updated` timestamp says.
    """
    if visit.last_sync_at is None:
        return True
    etag = event.get("etag")
    if etag and visit.google_event_etag and etag == visit.google_event_etag:
        return False
    updated = parse_rfc3339(event.get("updated"))
    return updated is not None and updated > visit.last_sync_at


def detect_conflict(visit, event: dict) -> bool:
    """Both sides changed since the last sync; never true for a never-synced visit"""
    if visit.last_sync_at is None:
        return False
    return local_changed(visit) and remote_changed(visit, event)
