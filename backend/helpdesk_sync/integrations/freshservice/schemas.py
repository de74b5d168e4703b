"""Response schemas for the Freshservice v2 endpoints the sync engine reads.

Only the fields the engine uses are declared; everything else in a payload is
ignored. Each list endpoint wraps its items in a named envelope key.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _External(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ExternalRequesterRef(_External):
    name: str | None = None
    email: str | None = None


class ExternalDepartmentRef(_External):
    name: str | None = None


class ExternalTicketStats(_External):
    resolution_time_in_secs: int | None = None
    resolved_at: dt.datetime | None = None
    closed_at: dt.datetime | None = None


class ExternalTicket(_External):
    id: int
    subject: str | None = None
    description_text: str | None = None
    status: int | None = None
    priority: int | None = None
    responder_id: int | None = None
    requester_id: int | None = None
    requester: ExternalRequesterRef | None = None
    department: ExternalDepartmentRef | None = None
    source: int | None = None
    category: str | None = None
    sub_category: str | None = None
    is_escalated: bool | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    stats: ExternalTicketStats | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None
    assigned_at: dt.datetime | None = None
    resolved_at: dt.datetime | None = None
    closed_at: dt.datetime | None = None
    due_by: dt.datetime | None = None
    fr_due_by: dt.datetime | None = None


class ExternalAgent(_External):
    id: int
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    active: bool | None = None
    time_zone: str | None = None
    workspace_ids: list[int] = Field(default_factory=list)


class ExternalActor(_External):
    id: int | None = None
    name: str | None = None


class ExternalActivity(_External):
    created_at: dt.datetime | None = None
    content: str | None = None
    actor: ExternalActor | None = None
    incoming: bool | None = None
    private: bool | None = None
    # body/note are sometimes structured objects; only plain strings count as a reply body.
    body_text: Any = None
    body: Any = None
    note: Any = None


class ExternalRequester(_External):
    id: int
    first_name: str | None = None
    last_name: str | None = None
    primary_email: str | None = None
    work_phone_number: str | None = None
    mobile_phone_number: str | None = None
    department_names: list[str] | None = None
    job_title: str | None = None
    time_zone: str | None = None
    language: str | None = None
    active: bool | None = None


class ExternalCsatQuestion(_External):
    question_text: str | None = None


class ExternalCsatAnswer(_External):
    answer_text: str | None = None


class ExternalCsatQuestionResponse(_External):
    question: ExternalCsatQuestion | None = None
    answers: list[ExternalCsatAnswer] = Field(default_factory=list)


class ExternalCsatScore(_External):
    acquired_score: int | None = None
    total_score: int | None = None


class ExternalCsatResponse(_External):
    id: int | None = None
    overall_rating: int | None = None
    overall_rating_text: str | None = None
    score: ExternalCsatScore | None = None
    questionnaire_responses: list[ExternalCsatQuestionResponse] = Field(default_factory=list)
    created_at: dt.datetime | None = None


# Envelope keys per list resource.
ENVELOPE_KEYS = {
    "tickets": "tickets",
    "agents": "agents",
    "requesters": "requesters",
    "activities": "activities",
}

ITEM_SCHEMAS: dict[str, type[BaseModel]] = {
    "tickets": ExternalTicket,
    "agents": ExternalAgent,
    "requesters": ExternalRequester,
    "activities": ExternalActivity,
}


def envelope_key(resource: str) -> str | None:
    """Map '/tickets', '/tickets/12/activities', ... to the payload key holding its items."""
    tail = resource.rstrip("/").rsplit("/", 1)[-1]
    return ENVELOPE_KEYS.get(tail)


def item_schema(resource: str) -> type[BaseModel] | None:
    key = envelope_key(resource)
    return ITEM_SCHEMAS.get(key) if key else None
