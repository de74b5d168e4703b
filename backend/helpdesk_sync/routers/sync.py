"""Freshservice sync endpoints: trigger, status, history and maintenance."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from helpdesk_sync.core.exceptions import BadRequestError
from helpdesk_sync.db.session import get_db
from helpdesk_sync.integrations.freshservice.service import SyncOrchestrator
from helpdesk_sync.models.enums import SyncKind
from helpdesk_sync.schemas.sync import (
    BackfillRequest,
    BackfillSummary,
    ConnectionStatusOut,
    ForceStopOut,
    ScopedRangeRequest,
    SyncRunOut,
    SyncRunSummary,
    SyncStatsOut,
    SyncStatusOut,
    SyncTriggerRequest,
)
from helpdesk_sync.services import sync_runs

router = APIRouter()


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.sync_orchestrator


@router.post("/trigger", response_model=SyncRunSummary)
async def trigger_sync(
    payload: SyncTriggerRequest = Body(default=SyncTriggerRequest()),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncRunSummary:
    if payload.kind == SyncKind.scoped_range:
        raise BadRequestError("scoped_range_requires_dates", details={"hint": "use POST /api/sync/week"})
    return await orchestrator.trigger_sync(
        payload.kind,
        force_enrichment=payload.force_enrichment,
        concurrency=payload.concurrency,
    )


@router.post("/week", response_model=SyncRunSummary)
async def sync_range(
    payload: ScopedRangeRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncRunSummary:
    try:
        return await orchestrator.trigger_sync(
            SyncKind.scoped_range,
            start=payload.start,
            end=payload.end,
            force_enrichment=payload.force_enrichment,
            concurrency=payload.concurrency,
        )
    except ValueError as exc:
        raise BadRequestError(str(exc))


@router.get("/status", response_model=SyncStatusOut)
def sync_status(
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncStatusOut:
    status = orchestrator.get_sync_status()
    if status["last_sync_time"] is None:
        # Fresh process: fall back to the run history.
        last_run = sync_runs.latest_successful(db)
        status["last_sync_time"] = last_run.completed_at if last_run else None
    return SyncStatusOut(**status)


@router.get("/logs", response_model=list[SyncRunOut])
def sync_logs(
    limit: int = Query(default=20, ge=1, le=200),
    kind: SyncKind | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[SyncRunOut]:
    return sync_runs.recent(db, limit=limit, kind=kind)


@router.get("/stats", response_model=SyncStatsOut)
def sync_stats(db: Session = Depends(get_db)) -> SyncStatsOut:
    return sync_runs.stats(db)


@router.post("/backfill-pickup-times", response_model=BackfillSummary)
async def backfill_pickup_times(
    payload: BackfillRequest = Body(default=BackfillRequest()),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> BackfillSummary:
    return await orchestrator.backfill_pickup_times(
        limit=payload.limit,
        days_to_sync=payload.days_to_sync,
        process_all=payload.process_all,
        concurrency=payload.concurrency,
    )


@router.post("/force-stop", response_model=ForceStopOut)
def force_stop(orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> ForceStopOut:
    stopped = orchestrator.force_stop()
    message = "Sync stop requested" if stopped else "No sync was running"
    return ForceStopOut(stopped=stopped, message=message)


@router.get("/connection", response_model=ConnectionStatusOut)
async def connection_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> ConnectionStatusOut:
    return await orchestrator.test_connection()
