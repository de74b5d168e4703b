"""Per-ticket activity enrichment: who picked a ticket up, when, and the first public reply.

The activity timeline is the only place Freshservice records who assigned a
ticket. Fetching it costs one request per ticket, so only tickets that still
miss enrichment-owned data are selected, and requests are issued in small
staggered chunks.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from helpdesk_sync.core.exceptions import SyncCancelled
from helpdesk_sync.integrations.freshservice.cancellation import CancelToken, check
from helpdesk_sync.integrations.freshservice.mapper import NormalizedTicket
from helpdesk_sync.integrations.freshservice.pacing import PacingPolicy
from helpdesk_sync.integrations.freshservice.schemas import ExternalActivity

logger = logging.getLogger(__name__)

ASSIGNMENT_RE = re.compile(r"set Agent as (.+)")

_FAR_FUTURE = dt.datetime.max.replace(tzinfo=dt.timezone.utc)


@dataclass(frozen=True)
class AssignmentEvent:
    timestamp: dt.datetime | None
    assigned_by: str | None
    assigned_to: str


@dataclass(frozen=True)
class ActivityAnalysis:
    is_self_picked: bool = False
    assigned_by: str | None = None
    first_assigned_at: dt.datetime | None = None
    first_public_reply_at: dt.datetime | None = None
    assignment_history: tuple[AssignmentEvent, ...] = ()


def _sort_key(activity: ExternalActivity) -> tuple[bool, dt.datetime]:
    ts = activity.created_at
    if ts is None:
        return True, _FAR_FUTURE
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return False, ts


def _has_body(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_public_reply(activity: ExternalActivity) -> bool:
    if activity.incoming is True or activity.private is True:
        return False
    if activity.created_at is None:
        return False
    return _has_body(activity.body_text) or _has_body(activity.body) or _has_body(activity.note)


def _same_agent(left: str | None, right: str | None) -> bool:
    return bool(left and right) and left.strip().casefold() == right.strip().casefold()


def analyze_activities(activities: Sequence[ExternalActivity]) -> ActivityAnalysis:
    """Derive assignment facts from a ticket timeline.

    Events are ordered by timestamp; events sharing a timestamp keep the order
    the API returned them in. Only the first assignment decides whether the
    ticket was self-picked; later reassignments are kept as history.
    """
    if not activities:
        return ActivityAnalysis()

    history: list[AssignmentEvent] = []
    first_public_reply_at: dt.datetime | None = None

    for activity in sorted(activities, key=_sort_key):
        if first_public_reply_at is None and _is_public_reply(activity):
            first_public_reply_at = activity.created_at

        match = ASSIGNMENT_RE.search(activity.content or "")
        if not match:
            continue
        assigned_to = match.group(1).strip()
        if not assigned_to:
            continue
        actor = activity.actor.name if activity.actor else None
        history.append(AssignmentEvent(timestamp=activity.created_at, assigned_by=actor, assigned_to=assigned_to))

    if not history:
        return ActivityAnalysis(first_public_reply_at=first_public_reply_at)

    first = history[0]
    is_self_picked = _same_agent(first.assigned_by, first.assigned_to)
    logger.debug(
        "First assignment: actor=%s assigned=%s self_picked=%s",
        first.assigned_by,
        first.assigned_to,
        is_self_picked,
    )
    return ActivityAnalysis(
        is_self_picked=is_self_picked,
        assigned_by=None if is_self_picked else first.assigned_by,
        first_assigned_at=first.timestamp,
        first_public_reply_at=first_public_reply_at,
        assignment_history=tuple(history),
    )


def needs_enrichment(ticket: NormalizedTicket, existing: Any | None, *, force: bool = False) -> bool:
    if ticket.assigned_tech_id is None:
        return False
    if force or existing is None:
        return True
    if existing.first_assigned_at is None:
        return True
    return existing.assigned_by is None and not existing.is_self_picked


def select_for_enrichment(
    tickets: Iterable[NormalizedTicket],
    existing: Mapping[int, Any],
    *,
    force: bool = False,
) -> list[NormalizedTicket]:
    return [ticket for ticket in tickets if needs_enrichment(ticket, existing.get(ticket.external_id), force=force)]


@dataclass
class EnrichmentResult:
    analyses: dict[int, ActivityAnalysis] = field(default_factory=dict)
    failures: dict[int, str] = field(default_factory=dict)
    processed: int = 0

    @property
    def enriched(self) -> int:
        return len(self.analyses)


async def enrich(
    client: Any,
    tickets: Sequence[Any],
    *,
    pacing: PacingPolicy,
    sleep: Callable[[float], Any] = asyncio.sleep,
    cancel_token: CancelToken | None = None,
    on_progress: Callable[[int, int], None] | None = None,
) -> EnrichmentResult:
    """Fetch and analyze timelines in chunks of ``pacing.enrich_concurrency``.

    ``tickets`` may be normalized payloads or stored rows; only ``external_id`` is read.

    A failing ticket is recorded in ``failures`` and the batch carries on.
    Tickets whose timeline comes back empty are left out of ``analyses``.
    """
    result = EnrichmentResult()
    total = len(tickets)
    if not total:
        return result

    size = pacing.enrich_concurrency
    logger.info("Analyzing activities for %s tickets (%s parallel requests)", total, size)

    async def analyze_one(index: int, ticket: Any) -> list[ExternalActivity]:
        if index:
            await sleep(index * pacing.enrich_stagger)
        check(cancel_token)
        return await client.fetch_ticket_activities(ticket.external_id)

    last_reported = 0
    for start in range(0, total, size):
        check(cancel_token)
        chunk = tickets[start : start + size]
        outcomes = await asyncio.gather(
            *(analyze_one(index, ticket) for index, ticket in enumerate(chunk)),
            return_exceptions=True,
        )
        for ticket, outcome in zip(chunk, outcomes):
            if isinstance(outcome, SyncCancelled):
                raise outcome
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failures[ticket.external_id] = str(outcome)
                logger.warning("Failed to analyze activities for ticket %s: %s", ticket.external_id, outcome)
                continue
            if outcome:
                result.analyses[ticket.external_id] = analyze_activities(outcome)
        result.processed += len(chunk)

        if on_progress is not None and (
            result.processed - last_reported >= pacing.progress_every_items or result.processed == total
        ):
            last_reported = result.processed
            on_progress(result.processed, total)

        if start + size < total:
            await sleep(pacing.enrich_chunk_pause)

    logger.info(
        "Activity analysis finished: %s enriched, %s failed, %s without activity",
        result.enriched,
        len(result.failures),
        result.processed - result.enriched - len(result.failures),
    )
    return result
