"""Idempotent merge-upserts for synced tickets, technicians and requesters.

Every single-record upsert is its own transaction: lock the row by external
id, compare, write, append transition logs, commit. The batch helpers catch
per-record failures, roll back, and keep going.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk_sync.integrations.freshservice.enrichment import ActivityAnalysis
from helpdesk_sync.integrations.freshservice.mapper import (
    TECHNICIAN_SYNC_FIELDS,
    TICKET_SYNC_FIELDS,
    NormalizedCsat,
    NormalizedRequester,
    NormalizedTechnician,
    NormalizedTicket,
)
from helpdesk_sync.models.enums import TicketActivityKind
from helpdesk_sync.models.requester import Requester
from helpdesk_sync.models.technician import Technician
from helpdesk_sync.models.ticket import Ticket, TicketActivityLog

logger = logging.getLogger(__name__)

# Large IN (...) lists are split to stay under driver parameter limits.
LOOKUP_CHUNK_SIZE = 500

REQUESTER_SYNC_FIELDS = (
    "name",
    "email",
    "phone",
    "mobile",
    "department",
    "job_title",
    "time_zone",
    "language",
    "is_active",
)

RecordT = TypeVar("RecordT")


def _same_value(left: Any, right: Any) -> bool:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if isinstance(left, dt.datetime) and isinstance(right, dt.datetime):
        if left.tzinfo is None:
            left = left.replace(tzinfo=dt.timezone.utc)
        if right.tzinfo is None:
            right = right.replace(tzinfo=dt.timezone.utc)
    return left == right


def _assign(record: Any, name: str, value: Any) -> bool:
    if _same_value(getattr(record, name), value):
        return False
    setattr(record, name, value)
    return True


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


@dataclass(frozen=True)
class UpsertOutcome(Generic[RecordT]):
    record: RecordT
    was_created: bool
    transitions: tuple[TicketActivityKind, ...] = ()
    was_updated: bool = False


@dataclass
class BatchResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    transitions: int = 0
    external_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def synced(self) -> int:
        return self.created + self.updated + self.unchanged

    def record(self, outcome: UpsertOutcome, external_id: int) -> None:
        if outcome.was_created:
            self.created += 1
        elif outcome.was_updated:
            self.updated += 1
        else:
            self.unchanged += 1
        self.transitions += len(outcome.transitions)
        self.external_ids.append(external_id)

    def fail(self, kind: str, external_id: int, exc: Exception) -> None:
        self.failed += 1
        self.errors.append(f"{kind} {external_id}: {exc}")


def _lock_by_external_id(db: Session, model: type, external_id: int) -> Any | None:
    stmt = select(model).where(model.external_id == external_id).with_for_update()
    return db.execute(stmt).scalar_one_or_none()


# ----- tickets -----


def apply_enrichment(ticket: Ticket, analysis: ActivityAnalysis, *, force: bool = False) -> bool:
    changed = _assign(ticket, "is_self_picked", analysis.is_self_picked)
    changed |= _assign(ticket, "assigned_by", None if analysis.is_self_picked else analysis.assigned_by)
    if analysis.first_assigned_at is not None and (ticket.first_assigned_at is None or force):
        changed |= _assign(ticket, "first_assigned_at", analysis.first_assigned_at)
    if analysis.first_public_reply_at is not None and (ticket.first_public_reply_at is None or force):
        changed |= _assign(ticket, "first_public_reply_at", analysis.first_public_reply_at)
    return changed


def _transition_logs(
    ticket: Ticket,
    *,
    previous_tech_id: int | None,
    previous_status: Any,
) -> list[TicketActivityLog]:
    logs: list[TicketActivityLog] = []
    if previous_tech_id != ticket.assigned_tech_id:
        logs.append(
            TicketActivityLog(
                ticket_id=ticket.id,
                kind=TicketActivityKind.reassigned,
                from_value=_as_text(previous_tech_id),
                to_value=_as_text(ticket.assigned_tech_id),
                details={"responder_external_id": ticket.responder_external_id},
            )
        )
    if previous_status != ticket.status:
        logs.append(
            TicketActivityLog(
                ticket_id=ticket.id,
                kind=TicketActivityKind.status_changed,
                from_value=_as_text(previous_status),
                to_value=_as_text(ticket.status),
            )
        )
    return logs


def upsert_ticket(
    db: Session,
    ticket: NormalizedTicket,
    *,
    enrichment: ActivityAnalysis | None = None,
    force_enrichment: bool = False,
) -> UpsertOutcome[Ticket]:
    try:
        record = _lock_by_external_id(db, Ticket, ticket.external_id)
        if record is None:
            record = Ticket(external_id=ticket.external_id)
            for name in TICKET_SYNC_FIELDS:
                setattr(record, name, getattr(ticket, name))
            if enrichment is not None:
                apply_enrichment(record, enrichment, force=True)
            db.add(record)
            db.commit()
            return UpsertOutcome(record=record, was_created=True)

        previous_tech_id = record.assigned_tech_id
        previous_status = record.status
        changed = False
        for name in TICKET_SYNC_FIELDS:
            changed |= _assign(record, name, getattr(ticket, name))
        if enrichment is not None:
            changed |= apply_enrichment(record, enrichment, force=force_enrichment)
        if not changed:
            # Nothing to write; release the row lock.
            db.rollback()
            return UpsertOutcome(record=record, was_created=False)

        logs = _transition_logs(record, previous_tech_id=previous_tech_id, previous_status=previous_status)
        kinds = tuple(log.kind for log in logs)
        db.add_all(logs)
        db.commit()
        return UpsertOutcome(
            record=record,
            was_created=False,
            transitions=kinds,
            was_updated=True,
        )
    except Exception:
        db.rollback()
        raise


def upsert_tickets(
    db: Session,
    tickets: Sequence[NormalizedTicket],
    *,
    enrichments: Mapping[int, ActivityAnalysis] | None = None,
    force_enrichment: bool = False,
) -> BatchResult:
    result = BatchResult()
    analyses = enrichments or {}
    for ticket in tickets:
        try:
            outcome = upsert_ticket(
                db,
                ticket,
                enrichment=analyses.get(ticket.external_id),
                force_enrichment=force_enrichment,
            )
        except Exception as exc:  # noqa: BLE001
            result.fail("ticket", ticket.external_id, exc)
            logger.exception("Failed to upsert ticket %s", ticket.external_id)
            continue
        result.record(outcome, ticket.external_id)
    logger.info(
        "Tickets upserted: %s created, %s updated, %s unchanged, %s failed, %s transitions",
        result.created,
        result.updated,
        result.unchanged,
        result.failed,
        result.transitions,
    )
    return result


def existing_tickets(db: Session, external_ids: Iterable[int]) -> dict[int, Ticket]:
    ids = sorted(set(external_ids))
    rows: dict[int, Ticket] = {}
    for start in range(0, len(ids), LOOKUP_CHUNK_SIZE):
        chunk = ids[start : start + LOOKUP_CHUNK_SIZE]
        for row in db.query(Ticket).filter(Ticket.external_id.in_(chunk)).all():
            rows[int(row.external_id)] = row
    return rows


def apply_csat(db: Session, ticket_id: int, csat: NormalizedCsat) -> bool:
    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        return False
    try:
        changed = _assign(ticket, "csat_response_id", csat.response_id)
        changed |= _assign(ticket, "csat_score", csat.score)
        changed |= _assign(ticket, "csat_total_score", csat.total_score)
        changed |= _assign(ticket, "csat_rating_text", csat.rating_text)
        changed |= _assign(ticket, "csat_feedback", csat.feedback)
        changed |= _assign(ticket, "csat_submitted_at", csat.submitted_at)
        db.commit()
        return changed
    except Exception:
        db.rollback()
        raise


# ----- technicians -----


def upsert_technician(db: Session, technician: NormalizedTechnician) -> UpsertOutcome[Technician]:
    try:
        record = _lock_by_external_id(db, Technician, technician.external_id)
        if record is None:
            # timezone/location/show_on_map are only seeded here; afterwards they belong to the dashboard owner.
            record = Technician(
                external_id=technician.external_id,
                timezone=technician.timezone,
                location=None,
                show_on_map=True,
            )
            for name in TECHNICIAN_SYNC_FIELDS:
                setattr(record, name, getattr(technician, name))
            db.add(record)
            db.commit()
            return UpsertOutcome(record=record, was_created=True)

        changed = False
        for name in TECHNICIAN_SYNC_FIELDS:
            changed |= _assign(record, name, getattr(technician, name))
        if not changed:
            db.rollback()
            return UpsertOutcome(record=record, was_created=False)
        db.commit()
        return UpsertOutcome(record=record, was_created=False, was_updated=True)
    except Exception:
        db.rollback()
        raise


def upsert_technicians(db: Session, technicians: Sequence[NormalizedTechnician]) -> BatchResult:
    result = BatchResult()
    for technician in technicians:
        try:
            outcome = upsert_technician(db, technician)
        except Exception as exc:  # noqa: BLE001
            result.fail("technician", technician.external_id, exc)
            logger.exception("Failed to upsert technician %s", technician.external_id)
            continue
        result.record(outcome, technician.external_id)
    return result


def deactivate_outside_workspace(db: Session, keep_external_ids: Iterable[int]) -> int:
    """Mark active technicians that no longer appear in the workspace agent list as inactive."""
    keep = set(keep_external_ids)
    rows = db.query(Technician).filter(Technician.is_active.is_(True)).all()
    stale = [row for row in rows if int(row.external_id) not in keep]
    if not stale:
        return 0
    for row in stale:
        row.is_active = False
    db.commit()
    logger.info("Deactivated %s technicians outside the workspace", len(stale))
    return len(stale)


def active_technicians(db: Session) -> list[Technician]:
    return db.query(Technician).filter(Technician.is_active.is_(True)).all()


# ----- requesters -----


def upsert_requester(db: Session, requester: NormalizedRequester) -> UpsertOutcome[Requester]:
    try:
        record = _lock_by_external_id(db, Requester, requester.external_id)
        if record is None:
            record = Requester(external_id=requester.external_id)
            for name in REQUESTER_SYNC_FIELDS:
                setattr(record, name, getattr(requester, name))
            db.add(record)
            db.commit()
            return UpsertOutcome(record=record, was_created=True)

        changed = False
        for name in REQUESTER_SYNC_FIELDS:
            changed |= _assign(record, name, getattr(requester, name))
        if not changed:
            db.rollback()
            return UpsertOutcome(record=record, was_created=False)
        db.commit()
        return UpsertOutcome(record=record, was_created=False, was_updated=True)
    except Exception:
        db.rollback()
        raise


def uncached_requester_ids(db: Session, external_ids: Iterable[int]) -> list[int]:
    ids = sorted(set(external_ids))
    known: set[int] = set()
    for start in range(0, len(ids), LOOKUP_CHUNK_SIZE):
        chunk = ids[start : start + LOOKUP_CHUNK_SIZE]
        rows = db.query(Requester.external_id).filter(Requester.external_id.in_(chunk)).all()
        known.update(int(row[0]) for row in rows)
    return [value for value in ids if value not in known]


def link_tickets_to_requesters(db: Session) -> int:
    """Point every ticket at its cached requester row; returns how many links changed."""
    rows = (
        db.query(Ticket, Requester)
        .join(Requester, Requester.external_id == Ticket.requester_external_id)
        .filter((Ticket.requester_id.is_(None)) | (Ticket.requester_id != Requester.id))
        .all()
    )
    for ticket, requester in rows:
        ticket.requester_id = requester.id
    if rows:
        db.commit()
    logger.info("Linked %s tickets to requesters", len(rows))
    return len(rows)


def enrich_ticket(db: Session, ticket_id: int, analysis: ActivityAnalysis, *, force: bool = False) -> bool:
    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        return False
    try:
        changed = apply_enrichment(ticket, analysis, force=force)
        db.commit()
        return changed
    except Exception:
        db.rollback()
        raise
