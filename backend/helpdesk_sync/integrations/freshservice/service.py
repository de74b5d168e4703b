"""Business logic for Freshservice -> DB synchronization runs.

One orchestrator instance lives for the lifetime of the process. It allows a
single run at a time; a second request while a run is active is answered with
a ``skipped`` summary instead of queueing.

Run steps:
  1. technicians (agents), filtered to the configured workspace
  2. tickets: window -> fetch -> post-filter -> normalize -> identity map ->
     resolve -> select -> enrich -> upsert
  3. requesters: fetch uncached ones, then always relink tickets
  4. satisfaction survey answers (best-effort)
  5. finalize the SyncRun row and publish one completion event
"""

from __future__ import annotations

import asyncio
import datetime as dt
import inspect
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from helpdesk_sync.core.config import settings
from helpdesk_sync.core.exceptions import ConfigurationError, ExternalAPIError, SyncCancelled
from helpdesk_sync.db.session import SessionLocal
from helpdesk_sync.integrations.freshservice.cancellation import CancelToken, check
from helpdesk_sync.integrations.freshservice.client import FreshserviceClient
from helpdesk_sync.integrations.freshservice.csat import sync_recent_csat
from helpdesk_sync.integrations.freshservice.enrichment import enrich, select_for_enrichment
from helpdesk_sync.integrations.freshservice.mapper import (
    NormalizedTicket,
    build_identity_map,
    filter_agents_by_workspace,
    map_agent,
    map_requester,
    map_ticket,
    resolve_assignments,
)
from helpdesk_sync.integrations.freshservice.pacing import PacingPolicy, backfill_policy, scoped_range_policy
from helpdesk_sync.integrations.freshservice.progress import ProgressTracker
from helpdesk_sync.integrations.freshservice.upsert import (
    active_technicians,
    deactivate_outside_workspace,
    enrich_ticket,
    existing_tickets,
    link_tickets_to_requesters,
    uncached_requester_ids,
    upsert_requester,
    upsert_technicians,
    upsert_tickets,
)
from helpdesk_sync.integrations.freshservice.window import SyncWindow, plan
from helpdesk_sync.models.enums import SyncKind
from helpdesk_sync.models.ticket import Ticket
from helpdesk_sync.schemas.sync import BackfillSummary, ConnectionStatusOut, SyncRunSummary
from helpdesk_sync.services import sync_runs
from helpdesk_sync.services.sync_runs import RunCounts

logger = logging.getLogger(__name__)

# Only the first few per-item errors are kept on the summary; the count is exact.
MAX_SUMMARY_ERRORS = 20
REQUESTER_PROGRESS_EVERY = 50
# Scoped range runs post-filter their tickets, so they never advance the incremental anchor.
ANCHOR_KINDS = (SyncKind.full, SyncKind.incremental)

Notifier = Callable[[SyncRunSummary], Any]
ClientFactory = Callable[..., FreshserviceClient]


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def log_completion(summary: SyncRunSummary) -> None:
    logger.info(
        "Sync run %s %s: technicians=%s tickets=%s requesters=%s csat=%s enriched=%s failures=%s (%.1fs)",
        summary.run_id,
        summary.status,
        summary.technicians_synced,
        summary.tickets_synced,
        summary.requesters_synced,
        summary.csat_synced,
        summary.activities_enriched,
        summary.failure_count,
        summary.duration_seconds,
    )


@dataclass
class SyncRunContext:
    run_id: int
    kind: SyncKind
    window: SyncWindow
    pacing: PacingPolicy
    cancel_token: CancelToken
    force_enrichment: bool = False
    counts: RunCounts = field(default_factory=RunCounts)
    transitions: int = 0
    errors: list[str] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    def record_failures(self, errors: list[str]) -> None:
        self.counts.failure_count += len(errors)
        room = MAX_SUMMARY_ERRORS - len(self.errors)
        if room > 0:
            self.errors.extend(errors[:room])

    def summary(self, status: str, message: str = "") -> SyncRunSummary:
        return SyncRunSummary(
            status=status,
            run_id=self.run_id,
            kind=self.kind,
            since=self.window.since,
            until=self.window.until,
            technicians_synced=self.counts.technicians_synced,
            tickets_synced=self.counts.tickets_synced,
            requesters_synced=self.counts.requesters_synced,
            csat_synced=self.counts.csat_synced,
            activities_enriched=self.counts.activities_enriched,
            transitions_logged=self.transitions,
            failure_count=self.counts.failure_count,
            records_processed=self.counts.records_processed,
            duration_seconds=round(time.monotonic() - self.started, 2),
            message=message,
            errors=list(self.errors),
        )


class SyncOrchestrator:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        client_factory: ClientFactory | None = None,
        notifier: Notifier | None = None,
        pacing: PacingPolicy | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        workspace_id: int | None = None,
        days_to_sync: int | None = None,
        incremental_buffer_minutes: int | None = None,
        csat_lookback_days: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client_factory = client_factory or FreshserviceClient.from_settings
        self._notifier = notifier or log_completion
        self._pacing = pacing or settings.pacing_policy()
        self._sleep = sleep
        self.workspace_id = workspace_id if workspace_id is not None else settings.FRESHSERVICE_WORKSPACE_ID
        self.days_to_sync = days_to_sync or settings.SYNC_DAYS_TO_SYNC
        self.incremental_buffer = dt.timedelta(
            minutes=settings.SYNC_INCREMENTAL_BUFFER_MINUTES
            if incremental_buffer_minutes is None
            else incremental_buffer_minutes
        )
        self.csat_lookback_days = csat_lookback_days or settings.SYNC_CSAT_LOOKBACK_DAYS

        self._lock = threading.Lock()
        self._running = False
        self._cancel_token: CancelToken | None = None
        self._last_sync_time: dt.datetime | None = None
        self._progress = ProgressTracker()
        self._pending_notifications: set[asyncio.Task] = set()

    # ----- run state -----

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def _begin(self) -> CancelToken | None:
        with self._lock:
            if self._running:
                return None
            self._running = True
            self._cancel_token = CancelToken()
            return self._cancel_token

    def _finish(self, token: CancelToken) -> None:
        with self._lock:
            # force_stop may already have released the slot to a newer run.
            if self._cancel_token is token:
                self._running = False
                self._cancel_token = None

    def get_sync_status(self) -> dict[str, Any]:
        with self._lock:
            running = self._running
            last_sync_time = self._last_sync_time
        return {
            "is_running": running,
            "last_sync_time": last_sync_time,
            "progress": self._progress.snapshot().as_dict(),
        }

    def force_stop(self) -> bool:
        with self._lock:
            was_running = self._running
            token = self._cancel_token
            self._running = False
            self._cancel_token = None
        if token is not None:
            token.cancel()
        self._progress.update(phase="stopping" if was_running else "idle", message="Force stop requested")
        if was_running:
            logger.warning("Sync force-stopped; the active run will abort at its next request")
        return was_running

    def _notify(self, summary: SyncRunSummary) -> None:
        try:
            outcome = self._notifier(summary)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._pending_notifications.add(task)
                task.add_done_callback(self._pending_notifications.discard)
        except Exception:  # noqa: BLE001
            logger.exception("Sync completion notifier failed")

    def _skipped(self, kind: SyncKind) -> SyncRunSummary:
        logger.info("Sync already in progress; skipping %s request", kind.value)
        return SyncRunSummary(status="skipped", kind=kind, message="Sync already in progress")

    def _policy_for(self, kind: SyncKind, concurrency: int | None) -> PacingPolicy:
        if kind == SyncKind.scoped_range:
            return scoped_range_policy(self._pacing, concurrency)
        return self._pacing.with_concurrency(concurrency)

    def _client(self, pacing: PacingPolicy, token: CancelToken) -> FreshserviceClient:
        return self._client_factory(pacing=pacing, sleep=self._sleep, cancel_token=token)

    # ----- sync run -----

    async def trigger_sync(
        self,
        kind: SyncKind | str = SyncKind.incremental,
        *,
        start: dt.date | dt.datetime | None = None,
        end: dt.date | dt.datetime | None = None,
        force_enrichment: bool = False,
        concurrency: int | None = None,
    ) -> SyncRunSummary:
        kind = SyncKind(kind)
        if kind == SyncKind.scoped_range:
            # Validate before taking the run slot.
            plan(kind, start=start, end=end)

        token = self._begin()
        if token is None:
            return self._skipped(kind)
        try:
            return await self._run(
                kind,
                token,
                start=start,
                end=end,
                force_enrichment=force_enrichment,
                concurrency=concurrency,
            )
        finally:
            self._finish(token)

    async def _run(
        self,
        kind: SyncKind,
        token: CancelToken,
        *,
        start: dt.date | dt.datetime | None,
        end: dt.date | dt.datetime | None,
        force_enrichment: bool,
        concurrency: int | None,
    ) -> SyncRunSummary:
        db = self._session_factory()
        try:
            last_completed_at = None
            if kind == SyncKind.incremental:
                last_run = sync_runs.latest_successful(db, kinds=ANCHOR_KINDS)
                last_completed_at = last_run.completed_at if last_run else None
            window = plan(
                kind,
                days_to_sync=self.days_to_sync,
                incremental_buffer=self.incremental_buffer,
                last_completed_at=last_completed_at,
                start=start,
                end=end,
            )
            if window.fell_back_to_full:
                logger.info("No completed sync on record; incremental sync uses the full %s-day window", self.days_to_sync)

            run = sync_runs.create_run(db, kind=kind, window_since=window.since, window_until=window.until)
            ctx = SyncRunContext(
                run_id=run.id,
                kind=kind,
                window=window,
                pacing=self._policy_for(kind, concurrency),
                cancel_token=token,
                force_enrichment=force_enrichment,
            )
            logger.info("Starting %s sync run %s (since=%s until=%s)", kind.value, run.id, window.since, window.until)

            try:
                async with self._client(ctx.pacing, token) as client:
                    await self._sync_technicians(db, client, ctx)
                    tickets = await self._sync_tickets(db, client, ctx)
                    await self._sync_requesters(db, client, ctx, tickets)
                    await self._sync_csat(db, client, ctx)
            except (Exception, asyncio.CancelledError) as exc:
                db.rollback()
                self._record_failure(db, ctx, exc)
                raise

            return self._record_completion(db, ctx)
        finally:
            db.close()

    def _record_failure(self, db: Session, ctx: SyncRunContext, exc: BaseException) -> None:
        if isinstance(exc, SyncCancelled):
            message = "Sync cancelled by force stop"
            logger.warning("Sync run %s cancelled", ctx.run_id)
        elif isinstance(exc, asyncio.CancelledError):
            message = "Sync cancelled"
            logger.warning("Sync run %s task was cancelled", ctx.run_id)
        else:
            message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
            logger.exception("Sync run %s failed", ctx.run_id)
        try:
            sync_runs.fail_run(db, ctx.run_id, ctx.counts, error=message)
        except Exception:  # noqa: BLE001
            db.rollback()
            logger.exception("Could not record failure of sync run %s", ctx.run_id)
        self._progress.update(phase="failed", message=message)
        self._notify(ctx.summary("failed", message))

    def _record_completion(self, db: Session, ctx: SyncRunContext) -> SyncRunSummary:
        self._progress.start_step(5, "finalizing", "Finalizing sync run")
        run = sync_runs.complete_run(db, ctx.run_id, ctx.counts)
        with self._lock:
            self._last_sync_time = run.completed_at or _utcnow()
        message = f"Synced {ctx.counts.tickets_synced} tickets with {ctx.counts.failure_count} failures"
        self._progress.update(phase="completed", message=message)
        summary = ctx.summary("completed", message)
        self._notify(summary)
        return summary

    async def _sync_technicians(self, db: Session, client: FreshserviceClient, ctx: SyncRunContext) -> None:
        self._progress.start_step(1, "technicians", "Syncing technicians")
        agents = await client.fetch_agents()
        agents = filter_agents_by_workspace(agents, self.workspace_id)
        technicians = [map_agent(agent, self.workspace_id) for agent in agents]
        batch = upsert_technicians(db, technicians)
        if self.workspace_id is not None:
            deactivate_outside_workspace(db, [tech.external_id for tech in technicians])
        ctx.counts.technicians_synced = batch.synced
        ctx.record_failures(batch.errors)
        logger.info("Synced %s technicians (%s failed)", batch.synced, batch.failed)

    async def _sync_tickets(self, db: Session, client: FreshserviceClient, ctx: SyncRunContext) -> list[NormalizedTicket]:
        self._progress.start_step(2, "tickets", "Fetching tickets")

        def on_page(page: int, count: int) -> None:
            self._progress.update(message=f"Fetching tickets: {count} so far (page {page})", current=count)

        raw_tickets = await client.fetch_tickets(
            updated_since=ctx.window.since,
            include=ctx.window.include,
            on_progress=on_page,
        )
        if ctx.window.until is not None:
            fetched = len(raw_tickets)
            raw_tickets = [ticket for ticket in raw_tickets if ctx.window.contains(ticket.updated_at)]
            logger.info("Kept %s of %s tickets updated inside the requested range", len(raw_tickets), fetched)

        normalized = [map_ticket(ticket) for ticket in raw_tickets]
        # The identity map is complete before any ticket is resolved against it.
        identity_map = build_identity_map(active_technicians(db))
        tickets = resolve_assignments(normalized, identity_map)

        existing = existing_tickets(db, [ticket.external_id for ticket in tickets])
        selected = select_for_enrichment(tickets, existing, force=ctx.force_enrichment)
        self._progress.update(
            phase="activities",
            message=f"Analyzing activities for {len(selected)} tickets",
            current=0,
            total=len(selected),
        )

        def on_enriched(done: int, total: int) -> None:
            self._progress.update(message=f"Analyzing activities ({done}/{total})", current=done, total=total)

        enrichment = await enrich(
            client,
            selected,
            pacing=ctx.pacing,
            sleep=self._sleep,
            cancel_token=ctx.cancel_token,
            on_progress=on_enriched,
        )
        ctx.counts.activities_enriched = enrichment.enriched
        ctx.record_failures([f"activities {ticket_id}: {error}" for ticket_id, error in enrichment.failures.items()])

        check(ctx.cancel_token)
        self._progress.update(phase="tickets", message=f"Saving {len(tickets)} tickets", current=0, total=len(tickets))
        batch = upsert_tickets(
            db,
            tickets,
            enrichments=enrichment.analyses,
            force_enrichment=ctx.force_enrichment,
        )
        ctx.counts.tickets_synced = batch.synced
        ctx.transitions = batch.transitions
        ctx.record_failures(batch.errors)
        self._progress.update(current=len(tickets))
        return tickets

    async def _sync_requesters(
        self,
        db: Session,
        client: FreshserviceClient,
        ctx: SyncRunContext,
        tickets: list[NormalizedTicket],
    ) -> None:
        requester_ids = [ticket.requester_external_id for ticket in tickets if ticket.requester_external_id is not None]
        missing = uncached_requester_ids(db, requester_ids)
        self._progress.start_step(3, "requesters", f"Fetching {len(missing)} requesters", total=len(missing))
        logger.info("Fetching %s uncached requesters", len(missing))

        synced = 0
        for index, requester_id in enumerate(missing):
            check(ctx.cancel_token)
            if index:
                await self._sleep(ctx.pacing.requester_delay)
            try:
                requester = await client.fetch_requester(requester_id)
                if requester is None:
                    continue
                upsert_requester(db, map_requester(requester))
            except SyncCancelled:
                raise
            except ExternalAPIError as exc:
                logger.warning("Failed to fetch requester %s, skipping: %s", requester_id, exc.message)
                ctx.record_failures([f"requester {requester_id}: {exc.message}"])
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to upsert requester %s", requester_id)
                ctx.record_failures([f"requester {requester_id}: {exc}"])
                continue
            synced += 1
            if synced % REQUESTER_PROGRESS_EVERY == 0:
                logger.info("Fetched %s/%s requesters", synced, len(missing))
            self._progress.update(current=index + 1)

        # Linking runs even when nothing new was fetched.
        link_tickets_to_requesters(db)
        ctx.counts.requesters_synced = synced

    async def _sync_csat(self, db: Session, client: FreshserviceClient, ctx: SyncRunContext) -> None:
        self._progress.start_step(4, "csat", "Syncing CSAT responses")

        def on_csat(done: int, total: int, found: int) -> None:
            self._progress.update(
                message=f"Syncing CSAT responses ({done}/{total}, found {found})",
                current=done,
                total=total,
            )

        try:
            result = await sync_recent_csat(
                client,
                db,
                lookback_days=self.csat_lookback_days,
                pacing=ctx.pacing,
                sleep=self._sleep,
                cancel_token=ctx.cancel_token,
                on_progress=on_csat,
            )
        except SyncCancelled:
            raise
        except Exception:  # noqa: BLE001
            db.rollback()
            logger.exception("CSAT sync failed (non-fatal)")
            return
        ctx.counts.csat_synced = result.found
        ctx.record_failures(result.errors)

    # ----- maintenance -----

    async def backfill_pickup_times(
        self,
        *,
        limit: int = 100,
        days_to_sync: int = 30,
        process_all: bool = False,
        concurrency: int | None = 5,
    ) -> BackfillSummary:
        """Fill ``first_assigned_at`` for assigned tickets that never got it from enrichment."""
        token = self._begin()
        if token is None:
            return BackfillSummary(status="skipped", message="Sync already in progress")

        pacing = backfill_policy(self._pacing, concurrency)
        cutoff = _utcnow() - dt.timedelta(days=max(1, days_to_sync))
        summary = BackfillSummary()
        logger.info(
            "Starting pickup time backfill (limit=%s, days=%s, all=%s, concurrency=%s)",
            limit,
            days_to_sync,
            process_all,
            pacing.enrich_concurrency,
        )
        self._progress.start_step(2, "backfill", "Backfilling pickup times")
        db = self._session_factory()
        try:
            async with self._client(pacing, token) as client:
                last_id = 0
                while True:
                    rows = (
                        db.query(Ticket.id, Ticket.external_id)
                        .filter(
                            Ticket.assigned_tech_id.is_not(None),
                            Ticket.first_assigned_at.is_(None),
                            Ticket.created_at >= cutoff,
                            Ticket.id > last_id,
                        )
                        .order_by(Ticket.id.asc())
                        .limit(limit)
                        .all()
                    )
                    if not rows:
                        logger.info("No more tickets to backfill")
                        break
                    # Keyset paging: tickets without an assignment event would otherwise be re-selected forever.
                    last_id = int(rows[-1].id)
                    summary.batches_processed += 1
                    self._backfill_batch_started(summary, len(rows))

                    result = await enrich(client, rows, pacing=pacing, sleep=self._sleep, cancel_token=token)
                    for row in rows:
                        analysis = result.analyses.get(int(row.external_id))
                        if row.external_id in result.failures:
                            summary.failure_count += 1
                            continue
                        if analysis is None or (
                            analysis.first_assigned_at is None and analysis.first_public_reply_at is None
                        ):
                            summary.without_assignment += 1
                            continue
                        try:
                            enrich_ticket(db, int(row.id), analysis)
                        except Exception:  # noqa: BLE001
                            summary.failure_count += 1
                            logger.exception("Failed to store pickup time for ticket %s", row.external_id)
                            continue
                        summary.updated += 1
                    summary.tickets_processed += len(rows)
                    self._progress.update(current=summary.tickets_processed)

                    if not process_all or len(rows) < limit:
                        break
        finally:
            db.close()
            self._finish(token)

        summary.message = (
            f"Backfilled {summary.updated} tickets across {summary.batches_processed} batches, "
            f"{summary.failure_count} failures"
        )
        self._progress.update(phase="completed", message=summary.message)
        logger.info(summary.message)
        return summary

    def _backfill_batch_started(self, summary: BackfillSummary, size: int) -> None:
        logger.info("Processing backfill batch %s: %s tickets", summary.batches_processed, size)
        self._progress.update(message=f"Backfill batch {summary.batches_processed}: {size} tickets")

    async def test_connection(self) -> ConnectionStatusOut:
        try:
            client = self._client(self._pacing, CancelToken())
        except ConfigurationError as exc:
            logger.warning("Freshservice connection test skipped: %s", exc.message)
            return ConnectionStatusOut(configured=False, connected=False)
        async with client:
            connected = await client.test_connection()
            rate_limit = await client.rate_limit_info() if connected else None
        return ConnectionStatusOut(configured=True, connected=connected, rate_limit=rate_limit)
