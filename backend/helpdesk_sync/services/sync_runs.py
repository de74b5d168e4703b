"""Service helpers for the append-only sync run history."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

from sqlalchemy.orm import Session

from helpdesk_sync.core.exceptions import NotFoundError, SyncRunAlreadyFinalized
from helpdesk_sync.models.enums import SyncKind, SyncRunStatus
from helpdesk_sync.models.sync_run import SyncRun
from helpdesk_sync.schemas.sync import SyncStatsOut

ERROR_MESSAGE_MAX_LENGTH = 2000


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class RunCounts:
    technicians_synced: int = 0
    tickets_synced: int = 0
    requesters_synced: int = 0
    csat_synced: int = 0
    activities_enriched: int = 0
    failure_count: int = 0

    @property
    def records_processed(self) -> int:
        return self.technicians_synced + self.tickets_synced + self.requesters_synced


def create_run(
    db: Session,
    *,
    kind: SyncKind,
    window_since: dt.datetime | None = None,
    window_until: dt.datetime | None = None,
) -> SyncRun:
    record = SyncRun(
        kind=kind,
        status=SyncRunStatus.started,
        started_at=utcnow(),
        window_since=window_since,
        window_until=window_until,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def _finalize(db: Session, run_id: int, status: SyncRunStatus, counts: RunCounts, error: str | None) -> SyncRun:
    record = db.get(SyncRun, run_id)
    if record is None:
        raise NotFoundError("sync_run_not_found", details={"run_id": run_id})
    if record.status != SyncRunStatus.started:
        raise SyncRunAlreadyFinalized(run_id, record.status.value)
    record.status = status
    record.completed_at = utcnow()
    record.technicians_synced = counts.technicians_synced
    record.tickets_synced = counts.tickets_synced
    record.requesters_synced = counts.requesters_synced
    record.csat_synced = counts.csat_synced
    record.activities_enriched = counts.activities_enriched
    record.failure_count = counts.failure_count
    record.records_processed = counts.records_processed
    record.error_message = error[:ERROR_MESSAGE_MAX_LENGTH] if error else None
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def complete_run(db: Session, run_id: int, counts: RunCounts) -> SyncRun:
    return _finalize(db, run_id, SyncRunStatus.completed, counts, None)


def fail_run(db: Session, run_id: int, counts: RunCounts, *, error: str) -> SyncRun:
    return _finalize(db, run_id, SyncRunStatus.failed, counts, error)


def latest_successful(db: Session, *, kinds: tuple[SyncKind, ...] | None = None) -> SyncRun | None:
    query = db.query(SyncRun).filter(SyncRun.status == SyncRunStatus.completed, SyncRun.completed_at.is_not(None))
    if kinds is not None:
        query = query.filter(SyncRun.kind.in_(list(kinds)))
    return query.order_by(SyncRun.completed_at.desc(), SyncRun.id.desc()).first()


def latest(db: Session) -> SyncRun | None:
    return db.query(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).first()


def recent(db: Session, *, limit: int = 20, kind: SyncKind | None = None) -> list[SyncRun]:
    query = db.query(SyncRun)
    if kind is not None:
        query = query.filter(SyncRun.kind == kind)
    return query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()


def _as_utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=dt.timezone.utc)


def stats(db: Session) -> SyncStatsOut:
    rows = db.query(SyncRun).all()
    completed = [row for row in rows if row.status == SyncRunStatus.completed]
    failed = [row for row in rows if row.status == SyncRunStatus.failed]
    durations = [
        (_as_utc(row.completed_at) - _as_utc(row.started_at)).total_seconds()
        for row in completed
        if row.completed_at is not None and row.started_at is not None
    ]
    finished = len(completed) + len(failed)
    return SyncStatsOut(
        total_runs=len(rows),
        completed_runs=len(completed),
        failed_runs=len(failed),
        running_runs=len(rows) - finished,
        success_rate=round(len(completed) / finished, 4) if finished else 0.0,
        average_duration_seconds=round(sum(durations) / len(durations), 2) if durations else None,
        last_completed_at=max((_as_utc(row.completed_at) for row in completed if row.completed_at), default=None),
        last_failed_at=max((_as_utc(row.completed_at) for row in failed if row.completed_at), default=None),
        total_tickets_synced=sum(int(row.tickets_synced or 0) for row in rows),
        total_failures=sum(int(row.failure_count or 0) for row in rows),
    )
