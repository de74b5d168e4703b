"""Mapping utilities from Freshservice payloads to normalized ticket/agent/requester data."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

from helpdesk_sync.integrations.freshservice.schemas import (
    ExternalAgent,
    ExternalCsatResponse,
    ExternalRequester,
    ExternalTicket,
)
from helpdesk_sync.models.enums import TicketPriority, TicketStatus
from helpdesk_sync.models.technician import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

STATUS_MAP = {
    2: TicketStatus.open,
    3: TicketStatus.pending,
    4: TicketStatus.resolved,
    5: TicketStatus.closed,
    6: TicketStatus.waiting_on_customer,
    7: TicketStatus.waiting_on_third_party,
}

PRIORITY_MAP = {
    1: TicketPriority.low,
    2: TicketPriority.medium,
    3: TicketPriority.high,
    4: TicketPriority.urgent,
}

FEEDBACK_QUESTION_HINTS = ("feedback", "thoughts", "comment")
DEFAULT_CSAT_TOTAL_SCORE = 4
# custom field holding the security/team classification (e.g. BST, GIS)
TICKET_CATEGORY_FIELD = "security"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _clean(value: str | None) -> str | None:
    text = (value or "").strip()
    return text or None


def map_status(code: int | None) -> TicketStatus:
    if code in STATUS_MAP:
        return STATUS_MAP[code]
    if code is not None:
        logger.warning("Unknown Freshservice status code %s; defaulting to Open", code)
    return TicketStatus.open


def map_priority(code: int | None) -> TicketPriority:
    if code in PRIORITY_MAP:
        return PRIORITY_MAP[code]
    if code is not None:
        logger.warning("Unknown Freshservice priority code %s; defaulting to medium", code)
    return TicketPriority.medium


@dataclass(frozen=True)
class NormalizedTicket:
    external_id: int
    subject: str
    description_text: str | None
    status: TicketStatus
    priority: TicketPriority
    responder_external_id: int | None
    requester_external_id: int | None
    requester_name: str | None
    requester_email: str | None
    source: int | None
    category: str | None
    sub_category: str | None
    ticket_category: str | None
    department: str | None
    is_escalated: bool
    resolution_time_seconds: int | None
    created_at: dt.datetime
    updated_at: dt.datetime
    assigned_at: dt.datetime | None = None
    resolved_at: dt.datetime | None = None
    closed_at: dt.datetime | None = None
    due_by: dt.datetime | None = None
    fr_due_by: dt.datetime | None = None
    # Filled by resolve_assignments once the identity map is built.
    assigned_tech_id: int | None = None


# Columns upsert_ticket copies from a NormalizedTicket on every write.
TICKET_SYNC_FIELDS = (
    "subject",
    "description_text",
    "status",
    "priority",
    "responder_external_id",
    "assigned_tech_id",
    "requester_external_id",
    "requester_name",
    "requester_email",
    "source",
    "category",
    "sub_category",
    "ticket_category",
    "department",
    "is_escalated",
    "resolution_time_seconds",
    "created_at",
    "updated_at",
    "assigned_at",
    "resolved_at",
    "closed_at",
    "due_by",
    "fr_due_by",
)


def map_ticket(ticket: ExternalTicket) -> NormalizedTicket:
    now = _utcnow()
    stats = ticket.stats
    requester = ticket.requester
    ticket_category = ticket.custom_fields.get(TICKET_CATEGORY_FIELD)
    return NormalizedTicket(
        external_id=ticket.id,
        subject=(_clean(ticket.subject) or "No Subject")[:512],
        description_text=ticket.description_text or None,
        status=map_status(ticket.status),
        priority=map_priority(ticket.priority),
        responder_external_id=ticket.responder_id,
        requester_external_id=ticket.requester_id,
        requester_name=_clean(requester.name) if requester else None,
        requester_email=_clean(requester.email) if requester else None,
        source=ticket.source,
        category=_clean(ticket.category),
        sub_category=_clean(ticket.sub_category),
        ticket_category=_clean(str(ticket_category)) if ticket_category is not None else None,
        department=_clean(ticket.department.name) if ticket.department else None,
        is_escalated=bool(ticket.is_escalated),
        resolution_time_seconds=stats.resolution_time_in_secs if stats else None,
        created_at=_as_utc(ticket.created_at) or now,
        updated_at=_as_utc(ticket.updated_at) or now,
        assigned_at=_as_utc(ticket.assigned_at),
        resolved_at=_as_utc(ticket.resolved_at or (stats.resolved_at if stats else None)),
        closed_at=_as_utc(ticket.closed_at or (stats.closed_at if stats else None)),
        due_by=_as_utc(ticket.due_by),
        fr_due_by=_as_utc(ticket.fr_due_by),
    )


def resolve_assignments(tickets: Iterable[NormalizedTicket], identity_map: Mapping[int, int]) -> list[NormalizedTicket]:
    """Translate responder external ids to technician ids; unknown responders stay unassigned."""
    resolved: list[NormalizedTicket] = []
    unknown = 0
    for ticket in tickets:
        tech_id = None
        if ticket.responder_external_id is not None:
            tech_id = identity_map.get(ticket.responder_external_id)
            if tech_id is None:
                unknown += 1
        resolved.append(replace(ticket, assigned_tech_id=tech_id))
    if unknown:
        logger.info("%s tickets reference agents outside the identity map; left unassigned", unknown)
    return resolved


def build_identity_map(technicians: Iterable) -> dict[int, int]:
    return {int(tech.external_id): int(tech.id) for tech in technicians}


@dataclass(frozen=True)
class NormalizedTechnician:
    external_id: int
    name: str
    email: str | None
    is_active: bool
    workspace_id: int | None
    # Creation-only; never copied onto an existing row.
    timezone: str = DEFAULT_TIMEZONE


TECHNICIAN_SYNC_FIELDS = ("name", "email", "is_active", "workspace_id")


def filter_agents_by_workspace(agents: Iterable[ExternalAgent], workspace_id: int | None) -> list[ExternalAgent]:
    rows = list(agents)
    if workspace_id is None:
        return rows
    filtered = [agent for agent in rows if workspace_id in agent.workspace_ids]
    logger.info("Filtered %s agents from %s by workspace %s", len(filtered), len(rows), workspace_id)
    return filtered


def map_agent(agent: ExternalAgent, workspace_id: int | None = None) -> NormalizedTechnician:
    name = " ".join(part.strip() for part in (agent.first_name or "", agent.last_name or "") if part.strip())
    agent_workspace = workspace_id
    if agent_workspace is None and agent.workspace_ids:
        agent_workspace = agent.workspace_ids[0]
    return NormalizedTechnician(
        external_id=agent.id,
        name=name or "Unknown",
        email=_clean(agent.email),
        is_active=True if agent.active is None else agent.active,
        workspace_id=agent_workspace,
        timezone=_clean(agent.time_zone) or DEFAULT_TIMEZONE,
    )


@dataclass(frozen=True)
class NormalizedRequester:
    external_id: int
    name: str
    email: str | None
    phone: str | None
    mobile: str | None
    department: str | None
    job_title: str | None
    time_zone: str | None
    language: str | None
    is_active: bool


def map_requester(requester: ExternalRequester) -> NormalizedRequester:
    name = " ".join(part for part in (_clean(requester.first_name), _clean(requester.last_name)) if part)
    departments = [item.strip() for item in requester.department_names or [] if item and item.strip()]
    return NormalizedRequester(
        external_id=requester.id,
        name=name or "Unknown",
        email=_clean(requester.primary_email),
        phone=_clean(requester.work_phone_number),
        mobile=_clean(requester.mobile_phone_number),
        department=", ".join(departments) or None,
        job_title=_clean(requester.job_title),
        time_zone=_clean(requester.time_zone),
        language=_clean(requester.language),
        is_active=True if requester.active is None else requester.active,
    )


@dataclass(frozen=True)
class NormalizedCsat:
    response_id: int | None
    score: int | None
    total_score: int
    rating_text: str | None
    feedback: str | None
    submitted_at: dt.datetime | None


def _first_answer(question_response) -> str | None:  # noqa: ANN001
    for answer in question_response.answers:
        text = _clean(answer.answer_text)
        if text:
            return text
    return None


def extract_csat_feedback(response: ExternalCsatResponse) -> str | None:
    questions = response.questionnaire_responses
    for item in questions:
        text = ((item.question.question_text if item.question else None) or "").lower()
        if any(hint in text for hint in FEEDBACK_QUESTION_HINTS):
            feedback = _first_answer(item)
            if feedback:
                return feedback
            break
    # The first question is the rating itself; only fall back when a later one exists.
    if len(questions) > 1:
        return _first_answer(questions[-1])
    return None


def map_csat_response(response: ExternalCsatResponse) -> NormalizedCsat:
    score = response.score
    return NormalizedCsat(
        response_id=response.id,
        score=score.acquired_score if score else None,
        total_score=(score.total_score if score and score.total_score else DEFAULT_CSAT_TOTAL_SCORE),
        rating_text=_clean(response.overall_rating_text),
        feedback=extract_csat_feedback(response),
        submitted_at=_as_utc(response.created_at),
    )
