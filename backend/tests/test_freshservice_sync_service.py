from __future__ import annotations

import asyncio
import datetime as dt

import pytest

from helpdesk_sync.core.exceptions import ConfigurationError, ExternalAPIError, SyncCancelled
from helpdesk_sync.integrations.freshservice import upsert as upsert_module
from helpdesk_sync.integrations.freshservice.pacing import PacingPolicy
from helpdesk_sync.integrations.freshservice.schemas import (
    ExternalActivity,
    ExternalAgent,
    ExternalCsatResponse,
    ExternalRequester,
    ExternalTicket,
)
from helpdesk_sync.integrations.freshservice.service import SyncOrchestrator
from helpdesk_sync.models.enums import SyncKind, SyncRunStatus
from helpdesk_sync.models.requester import Requester
from helpdesk_sync.models.sync_run import SyncRun
from helpdesk_sync.models.ticket import Ticket


def _iso(value: dt.datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _recent(hours: int = 2) -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0) - dt.timedelta(hours=hours)


def _ticket(external_id: int, **overrides) -> ExternalTicket:
    payload = {
        "id": external_id,
        "subject": f"Ticket {external_id}",
        "status": 2,
        "priority": 2,
        "created_at": _iso(_recent(5)),
        "updated_at": _iso(_recent(1)),
    }
    payload.update(overrides)
    return ExternalTicket.model_validate(payload)


def _agent(external_id: int = 501, first_name: str = "Jane") -> ExternalAgent:
    return ExternalAgent.model_validate({"id": external_id, "first_name": first_name, "last_name": "Doe"})


class _FakeClient:
    def __init__(
        self,
        *,
        agents: list[ExternalAgent] | None = None,
        tickets: list[ExternalTicket] | None = None,
        activities: dict[int, list[ExternalActivity]] | None = None,
        requesters: dict[int, ExternalRequester] | None = None,
        csat: dict[int, ExternalCsatResponse] | None = None,
    ) -> None:
        self.agents = agents or []
        self.tickets = tickets or []
        self.activities = activities or {}
        self.requesters = requesters or {}
        self.csat = csat or {}
        self.calls: dict[str, list] = {"tickets": [], "activities": [], "requesters": [], "csat": []}
        self.agents_error: Exception | None = None
        self.csat_errors: dict[int, Exception] = {}
        self.hold_tickets: asyncio.Event | None = None
        self.in_tickets: asyncio.Event | None = None

    async def __aenter__(self) -> _FakeClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        return None

    async def fetch_agents(self, *, workspace_id: int | None = None) -> list[ExternalAgent]:
        if self.agents_error is not None:
            raise self.agents_error
        return list(self.agents)

    async def fetch_tickets(self, *, updated_since=None, include=None, on_progress=None):  # noqa: ANN001
        self.calls["tickets"].append({"updated_since": updated_since, "include": include})
        if self.in_tickets is not None:
            self.in_tickets.set()
        if self.hold_tickets is not None:
            await self.hold_tickets.wait()
        return list(self.tickets)

    async def fetch_ticket_activities(self, ticket_id: int) -> list[ExternalActivity]:
        self.calls["activities"].append(ticket_id)
        return self.activities.get(ticket_id, [])

    async def fetch_requester(self, requester_id: int) -> ExternalRequester | None:
        self.calls["requesters"].append(requester_id)
        return self.requesters.get(requester_id)

    async def fetch_csat_response(self, ticket_id: int) -> ExternalCsatResponse | None:
        self.calls["csat"].append(ticket_id)
        if ticket_id in self.csat_errors:
            raise self.csat_errors[ticket_id]
        return self.csat.get(ticket_id)


async def _no_sleep(_delay: float) -> None:
    return None


def _orchestrator(session_factory, client: _FakeClient, events: list | None = None) -> SyncOrchestrator:  # noqa: ANN001
    return SyncOrchestrator(
        session_factory=session_factory,
        client_factory=lambda **_kwargs: client,
        notifier=(events.append if events is not None else None),
        pacing=PacingPolicy(),
        sleep=_no_sleep,
        workspace_id=None,
        days_to_sync=30,
        incremental_buffer_minutes=5,
        csat_lookback_days=30,
    )


def test_partial_failures_are_counted_and_run_completes(session_factory, monkeypatch) -> None:  # noqa: ANN001
    client = _FakeClient(agents=[_agent()], tickets=[_ticket(i) for i in range(1, 11)])
    events: list = []
    orchestrator = _orchestrator(session_factory, client, events)
    original = upsert_module.upsert_ticket

    def flaky_upsert(db, ticket, **kwargs):  # noqa: ANN001
        if ticket.external_id in {3, 7}:
            raise RuntimeError("constraint violated")
        return original(db, ticket, **kwargs)

    monkeypatch.setattr(upsert_module, "upsert_ticket", flaky_upsert)

    summary = asyncio.run(orchestrator.trigger_sync("full"))

    assert summary.status == "completed"
    assert summary.tickets_synced == 8
    assert summary.failure_count == 2
    assert summary.technicians_synced == 1
    assert summary.records_processed == 9
    assert len(summary.errors) == 2
    assert [event.status for event in events] == ["completed"]

    db = session_factory()
    try:
        assert db.query(Ticket).count() == 8
        run = db.query(SyncRun).one()
        assert run.status == SyncRunStatus.completed
        assert run.failure_count == 2
        assert run.tickets_synced == 8
    finally:
        db.close()
    assert orchestrator.is_running is False


def test_assignment_enrichment_runs_once_and_is_stored(session_factory) -> None:  # noqa: ANN001
    assigned_at = _recent(3)
    client = _FakeClient(
        agents=[_agent(501, "Jane")],
        tickets=[_ticket(1, responder_id=501), _ticket(2, responder_id=999)],
        activities={
            1: [
                ExternalActivity.model_validate(
                    {"created_at": _iso(assigned_at), "content": "set Agent as Jane Doe", "actor": {"name": "Jane Doe"}}
                )
            ]
        },
    )
    orchestrator = _orchestrator(session_factory, client)

    first = asyncio.run(orchestrator.trigger_sync("full"))
    second = asyncio.run(orchestrator.trigger_sync("incremental"))

    assert first.activities_enriched == 1
    assert second.activities_enriched == 0
    assert client.calls["activities"] == [1]

    db = session_factory()
    try:
        picked = db.query(Ticket).filter(Ticket.external_id == 1).one()
        assert picked.assigned_tech_id is not None
        assert picked.is_self_picked is True
        assert picked.assigned_by is None
        assert picked.first_assigned_at.replace(tzinfo=dt.timezone.utc) == assigned_at
        orphan = db.query(Ticket).filter(Ticket.external_id == 2).one()
        assert orphan.assigned_tech_id is None
        assert orphan.responder_external_id == 999
    finally:
        db.close()


def test_incremental_anchors_on_last_completed_run(session_factory) -> None:  # noqa: ANN001
    client = _FakeClient(agents=[_agent()])
    orchestrator = _orchestrator(session_factory, client)

    first = asyncio.run(orchestrator.trigger_sync("incremental"))
    second = asyncio.run(orchestrator.trigger_sync("incremental"))

    now = dt.datetime.now(dt.timezone.utc)
    assert now - first.since > dt.timedelta(days=29)
    assert now - second.since < dt.timedelta(minutes=10)
    assert client.calls["tickets"][1]["updated_since"] == second.since
    assert client.calls["tickets"][1]["include"] == "requester,stats"


def test_scoped_range_run_does_not_move_the_incremental_anchor(session_factory) -> None:  # noqa: ANN001
    client = _FakeClient(agents=[_agent()])
    orchestrator = _orchestrator(session_factory, client)
    today = dt.datetime.now(dt.timezone.utc).date()

    asyncio.run(orchestrator.trigger_sync("incremental"))
    asyncio.run(orchestrator.trigger_sync("scoped_range", start=today - dt.timedelta(days=60), end=today))
    third = asyncio.run(orchestrator.trigger_sync("incremental"))

    db = session_factory()
    try:
        anchor_run = db.query(SyncRun).filter(SyncRun.kind == SyncKind.incremental).order_by(SyncRun.id.asc()).first()
        anchor = anchor_run.completed_at.replace(tzinfo=dt.timezone.utc)
        assert db.query(SyncRun).filter(SyncRun.status == SyncRunStatus.completed).count() == 3
    finally:
        db.close()
    assert third.since == anchor - dt.timedelta(minutes=5)
    assert client.calls["tickets"][2]["updated_since"] == third.since


def test_requesters_are_fetched_once_and_linked(session_factory) -> None:  # noqa: ANN001
    requester = ExternalRequester.model_validate({"id": 900, "first_name": "Sam", "last_name": "Lee"})
    client = _FakeClient(
        agents=[_agent()],
        tickets=[_ticket(1, requester_id=900), _ticket(2, requester_id=900), _ticket(3, requester_id=901)],
        requesters={900: requester},
    )
    orchestrator = _orchestrator(session_factory, client)

    first = asyncio.run(orchestrator.trigger_sync("full"))
    asyncio.run(orchestrator.trigger_sync("full"))

    assert first.requesters_synced == 1
    # 901 is unknown upstream, so it is asked for again on the next run
    assert client.calls["requesters"] == [900, 901, 901]
    db = session_factory()
    try:
        cached = db.query(Requester).one()
        linked = db.query(Ticket).filter(Ticket.requester_id == cached.id).count()
        assert linked == 2
    finally:
        db.close()


def test_csat_is_synced_for_recently_closed_tickets(session_factory) -> None:  # noqa: ANN001
    closed_at = _iso(_recent(2))
    csat = ExternalCsatResponse.model_validate(
        {
            "id": 77,
            "overall_rating_text": "Satisfied",
            "score": {"acquired_score": 3, "total_score": 4},
            "created_at": closed_at,
        }
    )
    client = _FakeClient(
        agents=[_agent()],
        tickets=[_ticket(1, status=5, closed_at=closed_at), _ticket(2, status=2)],
        csat={1: csat},
    )
    orchestrator = _orchestrator(session_factory, client)

    summary = asyncio.run(orchestrator.trigger_sync("full"))

    assert summary.csat_synced == 1
    assert client.calls["csat"] == [1]
    db = session_factory()
    try:
        stored = db.query(Ticket).filter(Ticket.external_id == 1).one()
        assert stored.csat_response_id == 77
        assert stored.csat_score == 3
    finally:
        db.close()


def test_csat_fetch_errors_count_as_failures_without_failing_the_run(session_factory) -> None:  # noqa: ANN001
    closed_at = _iso(_recent(2))
    client = _FakeClient(
        agents=[_agent()],
        tickets=[_ticket(1, status=5, closed_at=closed_at), _ticket(2, status=4, resolved_at=closed_at)],
    )
    client.csat_errors[1] = ExternalAPIError("/tickets/1/csat_response", "boom", upstream_status=500)
    orchestrator = _orchestrator(session_factory, client)

    summary = asyncio.run(orchestrator.trigger_sync("full"))

    assert summary.status == "completed"
    assert summary.csat_synced == 0
    assert summary.failure_count == 1
    assert summary.errors == ["csat 1: Freshservice API error on /tickets/1/csat_response: boom"]
    assert client.calls["csat"] == [1, 2]
    db = session_factory()
    try:
        assert db.query(SyncRun).one().failure_count == 1
    finally:
        db.close()


def test_phase_failure_marks_run_failed_and_reraises(session_factory) -> None:  # noqa: ANN001
    client = _FakeClient()
    client.agents_error = ExternalAPIError("/agents", "boom", upstream_status=500)
    events: list = []
    orchestrator = _orchestrator(session_factory, client, events)

    with pytest.raises(ExternalAPIError):
        asyncio.run(orchestrator.trigger_sync("full"))

    assert orchestrator.is_running is False
    assert [event.status for event in events] == ["failed"]
    db = session_factory()
    try:
        run = db.query(SyncRun).one()
        assert run.status == SyncRunStatus.failed
        assert "boom" in run.error_message
        assert run.completed_at is not None
    finally:
        db.close()


def test_second_trigger_while_running_is_skipped(session_factory) -> None:  # noqa: ANN001
    client = _FakeClient(agents=[_agent()], tickets=[_ticket(1)])
    orchestrator = _orchestrator(session_factory, client)

    async def scenario():
        client.hold_tickets = asyncio.Event()
        client.in_tickets = asyncio.Event()
        first = asyncio.create_task(orchestrator.trigger_sync("full"))
        await client.in_tickets.wait()
        assert orchestrator.get_sync_status()["is_running"] is True
        skipped = await orchestrator.trigger_sync("incremental")
        client.hold_tickets.set()
        return await first, skipped

    completed, skipped = asyncio.run(scenario())

    assert completed.status == "completed"
    assert skipped.status == "skipped"
    assert skipped.run_id is None
    db = session_factory()
    try:
        assert db.query(SyncRun).count() == 1
    finally:
        db.close()


def test_force_stop_cancels_the_running_sync(session_factory) -> None:  # noqa: ANN001
    client = _FakeClient(agents=[_agent()], tickets=[_ticket(1)])
    orchestrator = _orchestrator(session_factory, client)

    async def scenario():
        client.hold_tickets = asyncio.Event()
        client.in_tickets = asyncio.Event()
        run = asyncio.create_task(orchestrator.trigger_sync("full"))
        await client.in_tickets.wait()
        stopped = orchestrator.force_stop()
        status = orchestrator.get_sync_status()
        client.hold_tickets.set()
        with pytest.raises(SyncCancelled):
            await run
        return stopped, status

    stopped, status = asyncio.run(scenario())

    assert stopped is True
    assert status["is_running"] is False
    assert orchestrator.force_stop() is False
    db = session_factory()
    try:
        run = db.query(SyncRun).one()
        assert run.status == SyncRunStatus.failed
        assert run.error_message == "Sync cancelled by force stop"
        assert db.query(Ticket).count() == 0
    finally:
        db.close()


def test_cancelled_task_marks_run_failed(session_factory) -> None:  # noqa: ANN001
    client = _FakeClient(agents=[_agent()], tickets=[_ticket(1)])
    events: list = []
    orchestrator = _orchestrator(session_factory, client, events)

    async def scenario():
        client.hold_tickets = asyncio.Event()
        client.in_tickets = asyncio.Event()
        run = asyncio.create_task(orchestrator.trigger_sync("full"))
        await client.in_tickets.wait()
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run

    asyncio.run(scenario())

    assert orchestrator.is_running is False
    assert [event.status for event in events] == ["failed"]
    db = session_factory()
    try:
        run = db.query(SyncRun).one()
        assert run.status == SyncRunStatus.failed
        assert run.error_message == "Sync cancelled"
        assert run.completed_at is not None
    finally:
        db.close()


def test_scoped_range_validates_before_taking_the_slot(session_factory) -> None:  # noqa: ANN001
    orchestrator = _orchestrator(session_factory, _FakeClient())

    with pytest.raises(ValueError):
        asyncio.run(
            orchestrator.trigger_sync("scoped_range", start=dt.date(2026, 10, 11), end=dt.date(2026, 10, 5))
        )

    assert orchestrator.is_running is False


def test_scoped_range_keeps_only_tickets_updated_inside_the_range(session_factory) -> None:  # noqa: ANN001
    client = _FakeClient(
        agents=[_agent()],
        tickets=[
            _ticket(1, updated_at="2026-10-06T10:00:00Z"),
            _ticket(2, updated_at="2026-10-13T10:00:00Z"),
        ],
    )
    orchestrator = _orchestrator(session_factory, client)

    summary = asyncio.run(
        orchestrator.trigger_sync("scoped_range", start=dt.date(2026, 10, 5), end=dt.date(2026, 10, 11))
    )

    assert summary.tickets_synced == 1
    assert summary.until == dt.datetime(2026, 10, 11, 23, 59, 59, 999999, tzinfo=dt.timezone.utc)
    assert client.calls["tickets"][0]["updated_since"] == dt.datetime(2026, 10, 5, tzinfo=dt.timezone.utc)


def test_backfill_pages_through_assigned_tickets(session_factory) -> None:  # noqa: ANN001
    assigned_at = _recent(3)
    client = _FakeClient(
        agents=[_agent()],
        tickets=[_ticket(1, responder_id=501), _ticket(2, responder_id=501)],
    )
    orchestrator = _orchestrator(session_factory, client)
    asyncio.run(orchestrator.trigger_sync("full"))
    client.activities = {
        1: [
            ExternalActivity.model_validate(
                {"created_at": _iso(assigned_at), "content": "set Agent as Jane Doe", "actor": {"name": "Lead"}}
            )
        ]
    }

    result = asyncio.run(orchestrator.backfill_pickup_times(limit=1, days_to_sync=30, process_all=True, concurrency=2))

    assert result.status == "completed"
    assert result.batches_processed == 2
    assert result.tickets_processed == 2
    assert result.updated == 1
    assert result.without_assignment == 1
    assert result.failure_count == 0
    db = session_factory()
    try:
        stored = db.query(Ticket).filter(Ticket.external_id == 1).one()
        assert stored.first_assigned_at.replace(tzinfo=dt.timezone.utc) == assigned_at
        assert stored.assigned_by == "Lead"
    finally:
        db.close()


def test_connection_reports_unconfigured_credentials(session_factory) -> None:  # noqa: ANN001
    def failing_factory(**_kwargs):  # noqa: ANN001
        raise ConfigurationError("Freshservice domain and API key are required")

    orchestrator = SyncOrchestrator(session_factory=session_factory, client_factory=failing_factory)

    status = asyncio.run(orchestrator.test_connection())

    assert status.configured is False
    assert status.connected is False
