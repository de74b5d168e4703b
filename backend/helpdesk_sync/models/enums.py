"""Shared enum values used by the database models and schemas."""

from __future__ import annotations

import enum


class TicketStatus(str, enum.Enum):
    open = "Open"
    pending = "Pending"
    resolved = "Resolved"
    closed = "Closed"
    waiting_on_customer = "Waiting on Customer"
    waiting_on_third_party = "Waiting on Third Party"


class TicketPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class SyncKind(str, enum.Enum):
    full = "full"
    incremental = "incremental"
    scoped_range = "scoped_range"


class SyncRunStatus(str, enum.Enum):
    started = "started"
    completed = "completed"
    failed = "failed"


class TicketActivityKind(str, enum.Enum):
    reassigned = "reassigned"
    status_changed = "status_changed"


DONE_STATUSES = frozenset({TicketStatus.resolved, TicketStatus.closed})
