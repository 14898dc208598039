from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from nutrivault.domain.calendar_sync.conflict_detector import detect_conflict, local_changed, remote_changed
from nutrivault.shared.time_utils import to_rfc3339

LAST_SYNC = datetime(2026, 3, 2, 9, 0)
BEFORE = LAST_SYNC - timedelta(minutes=5)
AFTER = LAST_SYNC + timedelta(minutes=5)


def make_visit(local_modified_at, last_sync_at=LAST_SYNC, etag='"1"'):
    return SimpleNamespace(
        local_modified_at=local_modified_at, last_sync_at=last_sync_at, google_event_etag=etag
    )


def make_event(updated, etag='"2"'):
    return {"id": "evt1", "etag": etag, "updated": to_rfc3339(updated)}


@pytest.mark.parametrize(
    "local_at, remote_at, expected",
    [
        (BEFORE, BEFORE, False),
        (AFTER, BEFORE, False),
        (BEFORE, AFTER, False),
        (AFTER, AFTER, True),
    ],
)
def test_conflict_needs_both_sides_changed(local_at, remote_at, expected):
    assert detect_conflict(make_visit(local_at), make_event(remote_at)) is expected


def test_never_synced_visit_is_never_in_conflict():
    visit = make_visit(AFTER, last_sync_at=None)

    assert local_changed(visit)
    assert remote_changed(visit, make_event(AFTER))
    assert detect_conflict(visit, make_event(AFTER)) is False


def test_equal_timestamps_are_not_changes():
    visit = make_visit(LAST_SYNC)

    assert not local_changed(visit)
    assert not remote_changed(visit, make_event(LAST_SYNC))


def test_matching_etag_means_unchanged():
    visit = make_visit(AFTER, etag='"7"')

    assert not remote_changed(visit, make_event(AFTER, etag='"7"'))
    assert not detect_conflict(visit, make_event(AFTER, etag='"7"'))


def test_missing_updated_is_not_a_remote_change():
    visit = make_visit(BEFORE)

    assert not remote_changed(visit, {"id": "evt1", "etag": '"9"'})


def test_missing_local_timestamp_is_not_a_local_change():
    assert not local_changed(make_visit(None))
