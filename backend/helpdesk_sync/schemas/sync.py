"""Pydantic schemas for sync triggers, run summaries and status."""

from __future__ import annotations

import datetime as dt
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from helpdesk_sync.models.enums import SyncKind, SyncRunStatus


class SyncTriggerRequest(BaseModel):
    kind: SyncKind = SyncKind.incremental
    force_enrichment: bool = False
    concurrency: int | None = Field(default=None, ge=1, le=20)


class ScopedRangeRequest(BaseModel):
    start: dt.date
    end: dt.date
    force_enrichment: bool = False
    concurrency: int | None = Field(default=None, ge=1, le=20)

    @model_validator(mode="after")
    def check_order(self) -> ScopedRangeRequest:
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self


class BackfillRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)
    days_to_sync: int = Field(default=30, ge=1, le=365)
    process_all: bool = False
    concurrency: int = Field(default=5, ge=1, le=20)


class SyncRunSummary(BaseModel):
    status: Literal["completed", "failed", "skipped"]
    run_id: int | None = None
    kind: SyncKind
    since: dt.datetime | None = None
    until: dt.datetime | None = None
    technicians_synced: int = 0
    tickets_synced: int = 0
    requesters_synced: int = 0
    csat_synced: int = 0
    activities_enriched: int = 0
    transitions_logged: int = 0
    failure_count: int = 0
    records_processed: int = 0
    duration_seconds: float = 0.0
    message: str = ""
    errors: list[str] = Field(default_factory=list)


class BackfillSummary(BaseModel):
    status: Literal["completed", "skipped"] = "completed"
    tickets_processed: int = 0
    updated: int = 0
    without_assignment: int = 0
    failure_count: int = 0
    batches_processed: int = 0
    message: str = ""


class SyncStatusOut(BaseModel):
    is_running: bool
    last_sync_time: dt.datetime | None = None
    progress: dict[str, Any] = Field(default_factory=dict)


class ForceStopOut(BaseModel):
    stopped: bool
    message: str


class ConnectionStatusOut(BaseModel):
    configured: bool
    connected: bool
    rate_limit: dict[str, int | None] | None = None


class SyncRunOut(BaseModel):
    id: int
    kind: SyncKind
    status: SyncRunStatus
    started_at: dt.datetime
    completed_at: dt.datetime | None = None
    window_since: dt.datetime | None = None
    window_until: dt.datetime | None = None
    technicians_synced: int = 0
    tickets_synced: int = 0
    requesters_synced: int = 0
    csat_synced: int = 0
    activities_enriched: int = 0
    failure_count: int = 0
    records_processed: int = 0
    error_message: str | None = None

    class Config:
        from_attributes = True


class SyncStatsOut(BaseModel):
    total_runs: int = 0
    completed_runs: int = 0
    failed_runs: int = 0
    running_runs: int = 0
    success_rate: float = 0.0
    average_duration_seconds: float | None = None
    last_completed_at: dt.datetime | None = None
    last_failed_at: dt.datetime | None = None
    total_tickets_synced: int = 0
    total_failures: int = 0
