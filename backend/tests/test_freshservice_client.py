from __future__ import annotations

import asyncio
import datetime as dt

import httpx
import pytest

from helpdesk_sync.core.exceptions import ConfigurationError, ExternalAPIError, RateLimitExceeded, SyncCancelled
from helpdesk_sync.integrations.freshservice.cancellation import CancelToken
from helpdesk_sync.integrations.freshservice.client import FreshserviceClient
from helpdesk_sync.integrations.freshservice.pacing import PacingPolicy


def _client(handler, sleeps: list[float], **pacing) -> FreshserviceClient:  # noqa: ANN001
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return FreshserviceClient(
        "acme",
        "secret",
        pacing=PacingPolicy(**pacing),
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )


def _run(client: FreshserviceClient, coro_fn):  # noqa: ANN001
    async def scenario():
        async with client:
            return await coro_fn(client)

    return asyncio.run(scenario())


def test_429_twice_then_success_retries_with_growing_delays() -> None:
    requests: list[httpx.Request] = []
    responses = [
        httpx.Response(429),
        httpx.Response(429),
        httpx.Response(200, json={"agents": [{"id": 501, "first_name": "Jane", "last_name": "Doe"}]}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses[len(requests) - 1]

    sleeps: list[float] = []
    agents = _run(_client(handler, sleeps), lambda client: client.fetch_agents())

    assert len(requests) == 3
    assert sleeps == [5.0, 10.0]
    assert [agent.id for agent in agents] == [501]


def test_429_exhaustion_raises_rate_limit_exceeded() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(429)

    sleeps: list[float] = []
    with pytest.raises(RateLimitExceeded) as excinfo:
        _run(_client(handler, sleeps), lambda client: client.fetch_agents())

    assert calls == 3
    assert sleeps == [5.0, 10.0]
    assert excinfo.value.attempts == 3
    assert excinfo.value.upstream_status == 429


def test_retry_after_header_stretches_the_delay() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "30"}),
        httpx.Response(200, json={"agents": []}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    sleeps: list[float] = []
    _run(_client(handler, sleeps), lambda client: client.fetch_agents())

    assert sleeps == [30.0]


def test_pagination_stops_on_short_page_and_waits_between_pages() -> None:
    pages = {
        1: [{"id": 1}, {"id": 2}],
        2: [{"id": 3}, {"id": 4}],
        3: [{"id": 5}],
    }
    seen_params: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        seen_params.append(params)
        return httpx.Response(200, json={"tickets": pages[int(params["page"])]})

    sleeps: list[float] = []
    since = dt.datetime(2026, 10, 1, 8, 30, tzinfo=dt.timezone.utc)
    tickets = _run(
        _client(handler, sleeps, page_size=2),
        lambda client: client.fetch_tickets(updated_since=since),
    )

    assert [ticket.id for ticket in tickets] == [1, 2, 3, 4, 5]
    assert [params["page"] for params in seen_params] == ["1", "2", "3"]
    assert all(params["per_page"] == "2" for params in seen_params)
    assert seen_params[0]["updated_since"] == "2026-10-01T08:30:00Z"
    assert seen_params[0]["include"] == "requester,stats"
    assert sleeps == [1.0, 1.0]


def test_empty_first_page_ends_pagination() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"tickets": []})

    sleeps: list[float] = []
    tickets = _run(_client(handler, sleeps), lambda client: client.fetch_tickets())

    assert tickets == []
    assert calls == 1
    assert sleeps == []


def test_invalid_items_are_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"tickets": [{"id": 1}, {"subject": "no id"}]})

    tickets = _run(_client(handler, []), lambda client: client.fetch_tickets())

    assert [ticket.id for ticket in tickets] == [1]


def test_server_error_is_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500, json={"description": "Internal failure"})

    sleeps: list[float] = []
    with pytest.raises(ExternalAPIError) as excinfo:
        _run(_client(handler, sleeps), lambda client: client.fetch_ticket_activities(42))

    assert calls == 1
    assert sleeps == []
    assert excinfo.value.upstream_status == 500
    assert excinfo.value.is_server_error
    assert "Internal failure" in excinfo.value.message


def test_transport_error_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalAPIError) as excinfo:
        _run(_client(handler, []), lambda client: client.fetch_requester(7))

    assert excinfo.value.upstream_status is None


def test_requests_use_domain_base_url_and_basic_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"activities": []})

    _run(_client(handler, []), lambda client: client.fetch_ticket_activities(42))

    assert seen[0].url.host == "acme.freshservice.com"
    assert seen[0].url.path == "/api/v2/tickets/42/activities"
    assert seen[0].headers["authorization"].startswith("Basic ")


def test_csat_404_means_no_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"description": "not found"})

    assert _run(_client(handler, []), lambda client: client.fetch_csat_response(42)) is None


def test_csat_response_is_parsed() -> None:
    payload = {
        "csat_response": {
            "id": 9,
            "overall_rating_text": "Extremely satisfied",
            "score": {"acquired_score": 4, "total_score": 4},
            "questionnaire_responses": [],
            "created_at": "2026-10-02T09:00:00Z",
        }
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    response = _run(_client(handler, []), lambda client: client.fetch_csat_response(42))

    assert response is not None
    assert response.id == 9
    assert response.score.acquired_score == 4


def test_missing_credentials_fail_fast() -> None:
    with pytest.raises(ConfigurationError):
        FreshserviceClient("", "secret")
    with pytest.raises(ConfigurationError):
        FreshserviceClient("acme", "  ")


def test_cancelled_token_stops_before_the_next_request() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"agents": []})

    token = CancelToken()
    token.cancel()
    client = FreshserviceClient("acme", "secret", transport=httpx.MockTransport(handler), cancel_token=token)

    with pytest.raises(SyncCancelled):
        _run(client, lambda c: c.fetch_agents())
    assert calls == 0


def test_connection_check_reports_failure_instead_of_raising() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"description": "Invalid credentials"})

    assert _run(_client(handler, []), lambda client: client.test_connection()) is False


def test_rate_limit_info_reads_headers() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"agents": []},
            headers={"x-ratelimit-total": "5000", "x-ratelimit-remaining": "4990"},
        )

    info = _run(_client(handler, []), lambda client: client.rate_limit_info())

    assert info == {"limit": 5000, "remaining": 4990, "used_current_request": None}
