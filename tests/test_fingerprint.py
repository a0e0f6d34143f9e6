"""
Tests for content fingerprints
"""

from datetime import datetime, timedelta, timezone

from mailbox_sync.models.sync_models import ItemKind, LocalRecord, RemoteItem
from mailbox_sync.sync.fingerprint import (
    content_fingerprint,
    fingerprint_of,
    local_date,
    normalize_title,
    within_tolerance,
)
from conftest import T0


class TestFingerprint:
    """Digest over normalized title, dates, priority, status and zone"""

    def test_title_whitespace_and_case_ignored(self):
        assert normalize_title("  Quarterly   Report\n") == "quarterly report"
        assert content_fingerprint("Quarterly Report", T0, None, "normal", "unread") == \
            content_fingerprint("  quarterly   report ", T0, None, "normal", "unread")

    def test_time_of_day_does_not_matter(self):
        morning = content_fingerprint("Standup", T0.replace(hour=8), None, "normal", "busy")
        evening = content_fingerprint("Standup", T0.replace(hour=18), None, "normal", "busy")
        assert morning == evening

    def test_date_is_taken_in_item_zone(self):
        late_utc = datetime(2024, 3, 4, 23, 30, tzinfo=timezone.utc)
        assert local_date(late_utc, "Europe/Berlin").isoformat() == "2024-03-05"
        assert local_date(late_utc, "UTC").isoformat() == "2024-03-04"

    def test_status_change_alters_digest(self):
        unread = content_fingerprint("Invoice", T0, None, "normal", "unread")
        read = content_fingerprint("Invoice", T0, None, "normal", "read")
        assert unread != read

    def test_unknown_zone_falls_back_to_utc(self):
        assert content_fingerprint("Invoice", T0, None, "normal", "read", "Mars/Olympus") == \
            content_fingerprint("Invoice", T0, None, "normal", "read", "UTC")

    def test_remote_and_local_agree(self):
        remote = RemoteItem("r-1", ItemKind.TASK, title="Call supplier", start=T0,
                            due=T0 + timedelta(days=1), status="in_progress")
        local = LocalRecord("rec-1", "user-1", "mbx-1", ItemKind.TASK, title="Call supplier",
                            start=T0, due=T0 + timedelta(days=1), status="in_progress")
        assert fingerprint_of(remote) == fingerprint_of(local)
        assert len(fingerprint_of(remote)) == 64


class TestTolerance:

    def test_within(self):
        assert within_tolerance(T0, T0 + timedelta(minutes=30), timedelta(hours=1))

    def test_outside(self):
        assert not within_tolerance(T0, T0 + timedelta(hours=2), timedelta(hours=1))

    def test_missing_values_match_only_each_other(self):
        assert within_tolerance(None, None, timedelta(hours=1))
        assert not within_tolerance(T0, None, timedelta(hours=1))
