"""Best-effort sync of satisfaction survey answers for recently finished tickets."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from helpdesk_sync.core.exceptions import ExternalAPIError
from helpdesk_sync.integrations.freshservice.cancellation import CancelToken, check
from helpdesk_sync.integrations.freshservice.mapper import map_csat_response
from helpdesk_sync.integrations.freshservice.pacing import PacingPolicy
from helpdesk_sync.integrations.freshservice.upsert import apply_csat
from helpdesk_sync.models.enums import DONE_STATUSES
from helpdesk_sync.models.ticket import Ticket

logger = logging.getLogger(__name__)


@dataclass
class CsatSyncResult:
    checked: int = 0
    found: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)


def csat_candidates(db: Session, *, since: dt.datetime) -> list[tuple[int, int]]:
    """(ticket id, external id) of closed/resolved tickets since ``since`` that have no survey answer yet."""
    rows = (
        db.query(Ticket.id, Ticket.external_id)
        .filter(
            Ticket.status.in_(list(DONE_STATUSES)),
            Ticket.csat_response_id.is_(None),
            or_(Ticket.closed_at >= since, Ticket.resolved_at >= since, Ticket.updated_at >= since),
        )
        .order_by(Ticket.id.asc())
        .all()
    )
    return [(int(row[0]), int(row[1])) for row in rows]


async def sync_recent_csat(
    client: Any,
    db: Session,
    *,
    lookback_days: int,
    pacing: PacingPolicy,
    sleep: Callable[[float], Any] = asyncio.sleep,
    cancel_token: CancelToken | None = None,
    on_progress: Callable[[int, int, int], None] | None = None,
) -> CsatSyncResult:
    since = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=max(1, lookback_days))
    candidates = csat_candidates(db, since=since)
    result = CsatSyncResult()
    logger.info("Found %s closed tickets without CSAT from last %s days", len(candidates), lookback_days)

    for index, (ticket_id, external_id) in enumerate(candidates):
        check(cancel_token)
        if index:
            await sleep(pacing.csat_delay)
        result.checked += 1
        try:
            response = await client.fetch_csat_response(external_id)
            if response is not None:
                result.found += 1
                if apply_csat(db, ticket_id, map_csat_response(response)):
                    result.updated += 1
        except ExternalAPIError as exc:
            result.errors.append(f"csat {external_id}: {exc.message}")
            logger.warning("Failed to sync CSAT for ticket %s: %s", external_id, exc.message)
        except Exception as exc:  # noqa: BLE001
            result.errors.append(f"csat {external_id}: {exc}")
            logger.warning("Failed to store CSAT for ticket %s: %s", external_id, exc)
        if on_progress is not None:
            on_progress(index + 1, len(candidates), result.found)

    logger.info("CSAT sync complete: %s responses found out of %s tickets", result.found, result.checked)
    return result
