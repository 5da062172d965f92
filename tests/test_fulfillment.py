"""
tests/test_fulfillment.py — Fulfillment Client Tests
=====================================================

Requests are answered in-process by ``httpx.MockTransport``; the sleep
hook records the backoff schedule instead of waiting.
"""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import make_client_factory

from leafpledge.config import LeafpledgeConfig
from leafpledge.engine.allocator import AllocationEntry
from leafpledge.errors import PermanentFulfillmentError, TransientFulfillmentError
from leafpledge.services.fulfillment import client_for_tenant


class Recorder:
    """Replays *responses* in order and remembers every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )


def _pledge(client):
    return client.create_pledge(
        period="2024-W10",
        total_trees=10,
        total_leaves=1000,
        allocations=[AllocationEntry("p1", 6), AllocationEntry("p2", 4)],
        evidence={"source": "jira", "period": "2024-W10", "issueCount": 3},
    )


class TestPledges:
    def test_create_pledge(self):
        recorder = Recorder(httpx.Response(201, json={"id": "pl-1", "status": "pending"}))
        with make_client_factory(recorder)("t1") as client:
            receipt = _pledge(client)

        assert (receipt.pledge_id, receipt.status) == ("pl-1", "pending")
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/v1/pledges"
        body = json.loads(request.content)
        assert body["tenantId"] == "t1"
        assert body["source"] == "leafpledge"
        assert body["totalTrees"] == 10
        assert body["allocations"] == [
            {"projectId": "p1", "trees": 6},
            {"projectId": "p2", "trees": 4},
        ]
        assert body["evidence"]["issueCount"] == 3

    def test_identifying_headers(self):
        recorder = Recorder(httpx.Response(201, json={"id": "pl-1"}))
        with make_client_factory(recorder)("t1") as client:
            _pledge(client)
        headers = recorder.requests[0].headers
        assert headers["X-Tenant-Id"] == "t1"
        assert headers["X-Source"] == "leafpledge"
        assert headers["X-Request-Id"].startswith("leafpledge-")
        assert "Authorization" not in headers

    def test_status_lookups(self):
        recorder = Recorder(httpx.Response(200, json={"id": "pl-1", "status": "fulfilled"}))
        with make_client_factory(recorder)("t1") as client:
            assert client.get_pledge_status("pl-1")["status"] == "fulfilled"
            client.get_order_status("or-9")
        assert [r.url.path for r in recorder.requests] == ["/v1/pledges/pl-1", "/v1/orders/or-9"]

    def test_empty_body(self):
        recorder = Recorder(httpx.Response(204))
        with make_client_factory(recorder)("t1") as client:
            assert client.get_order_status("or-1") == {}


class TestInstantOrders:
    def test_create_order(self):
        recorder = Recorder(httpx.Response(201, json={"id": "or-1", "treeId": "tree-77"}))
        with make_client_factory(recorder)("t1") as client:
            receipt = client.create_instant_order(
                project_id="p1", trees=2, issue_id="10001", issue_key="PROJ-1", award_id="abc"
            )
        assert receipt.order_id == "or-1"
        assert receipt.external_ref == "tree-77"
        body = json.loads(recorder.requests[0].content)
        assert recorder.requests[0].url.path == "/v1/orders/plant"
        assert body["reference"] == {"issueKey": "PROJ-1", "issueId": "10001", "awardId": "abc"}


class TestRetries:
    def test_client_error_is_not_retried(self):
        sleeps: list[float] = []
        recorder = Recorder(httpx.Response(422, json={"error": "bad project"}))
        with make_client_factory(recorder, sleeps)("t1") as client:
            with pytest.raises(PermanentFulfillmentError) as exc_info:
                _pledge(client)
        assert exc_info.value.status_code == 422
        assert exc_info.value.retryable is False
        assert len(recorder.requests) == 1
        assert sleeps == []

    def test_server_errors_exhaust_attempts(self):
        sleeps: list[float] = []
        recorder = Recorder(httpx.Response(503))
        with make_client_factory(recorder, sleeps)("t1") as client:
            with pytest.raises(TransientFulfillmentError) as exc_info:
                _pledge(client)
        assert len(recorder.requests) == 3
        assert sleeps == [2.0, 4.0]
        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 503

    @pytest.mark.parametrize("content", [b"<html>ok</html>", b"[1, 2]"])
    def test_unreadable_success_body_is_not_retried(self, content):
        sleeps: list[float] = []
        recorder = Recorder(httpx.Response(201, content=content))
        with make_client_factory(recorder, sleeps)("t1") as client:
            with pytest.raises(PermanentFulfillmentError) as exc_info:
                _pledge(client)
        assert exc_info.value.status_code == 201
        assert len(recorder.requests) == 1
        assert sleeps == []

    def test_network_errors_are_transient(self):
        recorder = Recorder(httpx.ConnectError("connection refused"))
        with make_client_factory(recorder)("t1") as client:
            with pytest.raises(TransientFulfillmentError):
                _pledge(client)
        assert len(recorder.requests) == 3

    def test_recovers_after_transient_failure(self):
        sleeps: list[float] = []
        recorder = Recorder(
            httpx.Response(502),
            httpx.Response(201, json={"id": "pl-2"}),
        )
        with make_client_factory(recorder, sleeps)("t1") as client:
            assert _pledge(client).pledge_id == "pl-2"
        assert sleeps == [2.0]

    def test_request_id_is_stable_across_retries(self):
        recorder = Recorder(httpx.Response(500))
        with make_client_factory(recorder)("t1") as client:
            with pytest.raises(TransientFulfillmentError) as exc_info:
                _pledge(client)
        ids = {r.headers["X-Request-Id"] for r in recorder.requests}
        assert ids == {exc_info.value.request_id}


class TestClientForTenant:
    def test_uses_config_and_account(self):
        recorder = Recorder(httpx.Response(200, json={}))
        sleeps: list[float] = []
        cfg = LeafpledgeConfig(
            fulfillment_base_url="https://api.example.test",
            source_name="leafpledge-test",
            max_attempts=2,
            backoff_base_seconds=3.0,
        )
        client = client_for_tenant(
            cfg, "t1", {"apiKey": "secret"},
            transport=httpx.MockTransport(recorder), sleep=sleeps.append,
        )
        with client:
            client.get_pledge_status("pl-1")
        headers = recorder.requests[0].headers
        assert headers["Authorization"] == "Bearer secret"
        assert headers["X-Source"] == "leafpledge-test"
        assert client.max_attempts == 2
        assert client.backoff_base == 3.0

    def test_without_account(self):
        recorder = Recorder(httpx.Response(200, json={}))
        cfg = LeafpledgeConfig(fulfillment_base_url="https://api.example.test", source_name="lp")
        with client_for_tenant(cfg, "t1", transport=httpx.MockTransport(recorder)) as client:
            client.get_pledge_status("pl-1")
        assert "Authorization" not in recorder.requests[0].headers
