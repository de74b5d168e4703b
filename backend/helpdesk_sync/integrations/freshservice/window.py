"""Decide which slice of Freshservice history a sync run fetches."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

from helpdesk_sync.integrations.freshservice.client import TICKET_INCLUDE
from helpdesk_sync.models.enums import SyncKind

DEFAULT_DAYS_TO_SYNC = 30
DEFAULT_INCREMENTAL_BUFFER = dt.timedelta(minutes=5)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _start_of_day(value: dt.date | dt.datetime) -> dt.datetime:
    if isinstance(value, dt.datetime):
        value = _as_utc(value).date()
    return dt.datetime.combine(value, dt.time.min, tzinfo=dt.timezone.utc)


def _end_of_day(value: dt.date | dt.datetime) -> dt.datetime:
    if isinstance(value, dt.datetime):
        value = _as_utc(value).date()
    return dt.datetime.combine(value, dt.time.max, tzinfo=dt.timezone.utc)


@dataclass(frozen=True)
class SyncWindow:
    kind: SyncKind
    since: dt.datetime
    until: dt.datetime | None = None
    include: str = TICKET_INCLUDE
    # True when an incremental run had no completed predecessor to anchor on.
    fell_back_to_full: bool = False

    def contains(self, updated_at: dt.datetime | None) -> bool:
        if self.until is None:
            return True
        if updated_at is None:
            return False
        moment = _as_utc(updated_at)
        return self.since <= moment <= self.until


def plan(
    kind: SyncKind | str,
    *,
    now: dt.datetime | None = None,
    days_to_sync: int = DEFAULT_DAYS_TO_SYNC,
    incremental_buffer: dt.timedelta = DEFAULT_INCREMENTAL_BUFFER,
    last_completed_at: dt.datetime | None = None,
    start: dt.date | dt.datetime | None = None,
    end: dt.date | dt.datetime | None = None,
) -> SyncWindow:
    kind = SyncKind(kind)
    current = _as_utc(now or dt.datetime.now(dt.timezone.utc))
    full_since = current - dt.timedelta(days=max(1, days_to_sync))

    if kind == SyncKind.full:
        return SyncWindow(kind=kind, since=full_since)

    if kind == SyncKind.incremental:
        if last_completed_at is None:
            return SyncWindow(kind=kind, since=full_since, fell_back_to_full=True)
        return SyncWindow(kind=kind, since=_as_utc(last_completed_at) - incremental_buffer)

    if start is None or end is None:
        raise ValueError("scoped_range_requires_start_and_end")
    since = _start_of_day(start)
    until = _end_of_day(end)
    if since > until:
        raise ValueError("scoped_range_start_after_end")
    return SyncWindow(kind=kind, since=since, until=until)
