from __future__ import annotations

import datetime as dt

import pytest

from helpdesk_sync.integrations.freshservice.window import plan
from helpdesk_sync.models.enums import SyncKind

NOW = dt.datetime(2026, 10, 16, 12, 0, tzinfo=dt.timezone.utc)


def test_full_window_covers_configured_days() -> None:
    window = plan(SyncKind.full, now=NOW, days_to_sync=30)

    assert window.since == NOW - dt.timedelta(days=30)
    assert window.until is None
    assert window.include == "requester,stats"


def test_incremental_without_completed_run_equals_full() -> None:
    full = plan(SyncKind.full, now=NOW, days_to_sync=30)
    incremental = plan(SyncKind.incremental, now=NOW, days_to_sync=30, last_completed_at=None)

    assert incremental.since == full.since
    assert incremental.until == full.until
    assert incremental.fell_back_to_full is True


def test_incremental_rewinds_by_buffer() -> None:
    last = dt.datetime(2026, 10, 16, 11, 0)
    window = plan(
        "incremental",
        now=NOW,
        last_completed_at=last,
        incremental_buffer=dt.timedelta(minutes=5),
    )

    assert window.since == dt.datetime(2026, 10, 16, 10, 55, tzinfo=dt.timezone.utc)
    assert window.fell_back_to_full is False


def test_scoped_range_spans_whole_days() -> None:
    window = plan(SyncKind.scoped_range, now=NOW, start=dt.date(2026, 10, 5), end=dt.date(2026, 10, 11))

    assert window.since == dt.datetime(2026, 10, 5, tzinfo=dt.timezone.utc)
    assert window.until == dt.datetime(2026, 10, 11, 23, 59, 59, 999999, tzinfo=dt.timezone.utc)
    assert window.contains(dt.datetime(2026, 10, 11, 23, 0, tzinfo=dt.timezone.utc))
    assert window.contains(dt.datetime(2026, 10, 5, 0, 0))
    assert not window.contains(dt.datetime(2026, 10, 12, 0, 0, tzinfo=dt.timezone.utc))
    assert not window.contains(None)


def test_unbounded_window_contains_everything() -> None:
    window = plan(SyncKind.full, now=NOW)

    assert window.contains(None)
    assert window.contains(dt.datetime(2000, 1, 1, tzinfo=dt.timezone.utc))


def test_scoped_range_requires_both_dates() -> None:
    with pytest.raises(ValueError, match="scoped_range_requires_start_and_end"):
        plan(SyncKind.scoped_range, now=NOW, start=dt.date(2026, 10, 5))


def test_scoped_range_rejects_inverted_range() -> None:
    with pytest.raises(ValueError, match="scoped_range_start_after_end"):
        plan(SyncKind.scoped_range, now=NOW, start=dt.date(2026, 10, 11), end=dt.date(2026, 10, 5))
