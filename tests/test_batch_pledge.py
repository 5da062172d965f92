"""
tests/test_batch_pledge.py — Batch Pledge Scheduler Tests
==========================================================
"""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import pytest
from conftest import NOW, make_client_factory

from leafpledge.services.aggregation import AggregationEngine, AggScope
from leafpledge.services.batch_pledge import (
    BatchLease,
    BatchStatus,
    handle_batch_trigger,
    run_batch_pledges,
)
from leafpledge.services.ledger import Ledger
from leafpledge.services.storage_keys import batch_lease_key
from leafpledge.services.tenant_config import save_funding, save_tenant_config

WEEK = "2024-W10"
BATCH_ID = "2024-W10-20240306T120000"
SPLIT_60_40 = {
    "projectCatalogSelection": [
        {"projectId": "p1", "allocation": {"type": "percentage", "value": 60}},
        {"projectId": "p2", "allocation": {"type": "percentage", "value": 40}},
    ],
}


class PledgeApi:
    """In-process fulfillment API that records pledge bodies."""

    def __init__(self, status_code: int = 201):
        self.status_code = status_code
        self.bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={"id": f"pl-{len(self.bodies)}"})


@pytest.fixture
def tenant(memory_store):
    save_tenant_config(memory_store, "t1", {})
    save_funding(memory_store, "t1", SPLIT_60_40)
    return memory_store


def _seed(store, trees: int, leaves: int = 1000, tenant_id: str = "t1") -> None:
    AggregationEngine(store).increment(tenant_id, AggScope.GLOBAL, None, "weekly", WEEK, leaves, trees)


def _bucket(store, tenant_id: str = "t1"):
    return AggregationEngine(store).get_bucket(tenant_id, AggScope.GLOBAL, None, "weekly", WEEK)


# ---------------------------------------------------------------------------
# Successful pledge
# ---------------------------------------------------------------------------
class TestPledge:
    def test_pledges_accumulated_trees(self, tenant):
        _seed(tenant, 10)
        api = PledgeApi()
        report = run_batch_pledges(tenant, make_client_factory(api), now=NOW)

        assert report.period_key == WEEK
        assert report.pledged == 1
        result = report.results[0]
        assert (result.status, result.pledge_id, result.trees) == (BatchStatus.PLEDGED, "pl-1", 10)
        body = api.bodies[0]
        assert body["period"] == WEEK
        assert body["totalTrees"] == 10
        assert body["totalLeaves"] == 1000
        assert body["allocations"] == [
            {"projectId": "p1", "trees": 6},
            {"projectId": "p2", "trees": 4},
        ]
        assert body["evidence"] == {"source": "jira", "period": WEEK, "issueCount": 1}

    def test_bucket_reset_and_ledger_written(self, tenant):
        _seed(tenant, 10)
        run_batch_pledges(tenant, make_client_factory(PledgeApi()), now=NOW)

        bucket = _bucket(tenant)
        assert bucket.trees == 0
        assert bucket.leaves == 1000
        assert bucket.pledged_at is not None
        record = Ledger(tenant).get_batch_ledger("t1", BATCH_ID)
        assert record["status"] == "pledged"
        assert record["pledgeId"] == "pl-1"
        assert record["totalTrees"] == 10

    def test_lease_released(self, tenant):
        _seed(tenant, 10)
        run_batch_pledges(tenant, make_client_factory(PledgeApi()), now=NOW)
        assert tenant.get(batch_lease_key("t1", WEEK)) is None

    def test_carried_trees_join_the_batch(self, tenant):
        _seed(tenant, 10)
        AggregationEngine(tenant).set_carried_trees("t1", 2)
        api = PledgeApi()
        report = run_batch_pledges(tenant, make_client_factory(api), now=NOW)

        assert report.results[0].trees == 12
        assert api.bodies[0]["allocations"] == [
            {"projectId": "p1", "trees": 8},
            {"projectId": "p2", "trees": 4},
        ]
        assert AggregationEngine(tenant).get_carried_trees("t1") == 0

    def test_unallocated_trees_carried_forward(self, memory_store):
        save_tenant_config(memory_store, "t1", {})
        save_funding(memory_store, "t1", {
            "projectCatalogSelection": [
                {"projectId": "p1", "allocation": {"type": "percentage", "value": 50}},
                {"projectId": "p2", "allocation": {"type": "percentage", "value": 50}},
            ],
            "allocationPolicy": {"minTreesPerProjectPerBatch": 3},
        })
        _seed(memory_store, 5)
        api = PledgeApi()
        report = run_batch_pledges(memory_store, make_client_factory(api), now=NOW)

        assert report.results[0].trees == 3
        assert api.bodies[0]["allocations"] == [{"projectId": "p1", "trees": 3}]
        assert AggregationEngine(memory_store).get_carried_trees("t1") == 2
        assert _bucket(memory_store).trees == 0

    def test_carry_forward_disabled(self, memory_store):
        save_tenant_config(memory_store, "t1", {})
        save_funding(memory_store, "t1", {
            "projectCatalogSelection": [
                {"projectId": "p1", "allocation": {"type": "percentage", "value": 50}},
                {"projectId": "p2", "allocation": {"type": "percentage", "value": 50}},
            ],
            "allocationPolicy": {
                "minTreesPerProjectPerBatch": 3,
                "carryForwardRemainders": False,
            },
        })
        _seed(memory_store, 5)
        run_batch_pledges(memory_store, make_client_factory(PledgeApi()), now=NOW)
        assert AggregationEngine(memory_store).get_carried_trees("t1") == 0


# ---------------------------------------------------------------------------
# Skips
# ---------------------------------------------------------------------------
class TestSkips:
    def test_no_trees(self, tenant):
        _seed(tenant, 0, leaves=40)
        api = PledgeApi()
        report = run_batch_pledges(tenant, make_client_factory(api), now=NOW)
        assert report.results[0].reason == "no trees"
        assert api.bodies == []

    def test_no_funding(self, memory_store):
        save_tenant_config(memory_store, "t1", {})
        _seed(memory_store, 10)
        report = run_batch_pledges(memory_store, make_client_factory(PledgeApi()), now=NOW)
        assert report.results[0].status is BatchStatus.SKIPPED
        assert report.results[0].reason == "no valid allocations"
        assert _bucket(memory_store).trees == 0
        assert _bucket(memory_store).pledged_at is None
        assert AggregationEngine(memory_store).get_carried_trees("t1") == 10

    def test_skipped_trees_pledged_once_funding_is_saved(self, memory_store):
        save_tenant_config(memory_store, "t1", {})
        _seed(memory_store, 10)
        first = run_batch_pledges(memory_store, make_client_factory(PledgeApi()), now=NOW)
        assert first.results[0].status is BatchStatus.SKIPPED

        save_funding(memory_store, "t1", SPLIT_60_40)
        api = PledgeApi()
        report = run_batch_pledges(memory_store, make_client_factory(api), now=NOW + timedelta(days=7))

        assert report.period_key == "2024-W11"
        assert (report.results[0].status, report.results[0].trees) == (BatchStatus.PLEDGED, 10)
        assert api.bodies[0]["allocations"] == [
            {"projectId": "p1", "trees": 6},
            {"projectId": "p2", "trees": 4},
        ]
        assert AggregationEngine(memory_store).get_carried_trees("t1") == 0

    def test_pledging_disabled(self, memory_store):
        save_tenant_config(memory_store, "t1", {"plantingMode": {"pledgeEnabled": False}})
        _seed(memory_store, 10)
        report = run_batch_pledges(memory_store, make_client_factory(PledgeApi()), now=NOW)
        assert report.results[0].reason == "pledging disabled"
        assert report.skipped == 1

    def test_no_tenants(self, memory_store):
        report = run_batch_pledges(memory_store, make_client_factory(PledgeApi()), now=NOW)
        assert report.results == []


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------
class TestFailures:
    def test_failed_pledge_keeps_counters(self, tenant):
        _seed(tenant, 10)
        AggregationEngine(tenant).set_carried_trees("t1", 1)
        report = run_batch_pledges(tenant, make_client_factory(PledgeApi(503)), now=NOW)

        result = report.results[0]
        assert result.status is BatchStatus.FAILED
        assert result.error["error"] == "TransientFulfillmentError"
        assert _bucket(tenant).trees == 10
        assert AggregationEngine(tenant).get_carried_trees("t1") == 1
        assert Ledger(tenant).get_batch_ledger("t1", BATCH_ID)["status"] == "failed"
        assert tenant.get(batch_lease_key("t1", WEEK)) is None

    def test_unreadable_success_body_fails_the_batch(self, tenant):
        _seed(tenant, 10)
        html = MagicMock(return_value=httpx.Response(201, content=b"<html>ok</html>"))
        report = run_batch_pledges(tenant, make_client_factory(html), now=NOW)

        result = report.results[0]
        assert result.status is BatchStatus.FAILED
        assert result.error["error"] == "PermanentFulfillmentError"
        assert html.call_count == 1
        assert _bucket(tenant).trees == 10
        assert Ledger(tenant).get_batch_ledger("t1", BATCH_ID)["status"] == "failed"

    def test_one_tenant_does_not_stop_the_next(self, tenant):
        save_tenant_config(tenant, "t0", {"plantingMode": {"conversion": {"leavesPerTree": 0}}})
        _seed(tenant, 10)
        report = run_batch_pledges(tenant, make_client_factory(PledgeApi()), now=NOW)

        statuses = {r.tenant_id: r.status for r in report.results}
        assert statuses == {"t0": BatchStatus.ERROR, "t1": BatchStatus.PLEDGED}
        assert report.failed == 1
        assert report.pledged == 1

    def test_trigger_never_raises(self):
        store = MagicMock()
        store.scan_prefix.side_effect = RuntimeError("storage offline")
        assert handle_batch_trigger(store, make_client_factory(PledgeApi()), now=NOW) is None

    def test_trigger_returns_report(self, tenant):
        _seed(tenant, 10)
        report = handle_batch_trigger(tenant, make_client_factory(PledgeApi()), now=NOW)
        assert report.pledged == 1


# ---------------------------------------------------------------------------
# Lease
# ---------------------------------------------------------------------------
class TestLease:
    def test_held_lease_skips_tenant(self, tenant):
        _seed(tenant, 10)
        other = BatchLease(tenant, "t1", WEEK, seconds=900)
        assert other.acquire(NOW) is True

        api = PledgeApi()
        report = run_batch_pledges(tenant, make_client_factory(api), now=NOW)
        assert report.results[0].reason == "lease held"
        assert api.bodies == []
        assert _bucket(tenant).trees == 10

    def test_expired_lease_is_taken_over(self, tenant):
        _seed(tenant, 10)
        stale = BatchLease(tenant, "t1", WEEK, seconds=900)
        stale.acquire(NOW - timedelta(hours=1))

        report = run_batch_pledges(tenant, make_client_factory(PledgeApi()), now=NOW)
        assert report.pledged == 1

    def test_release_only_by_holder(self, memory_store):
        mine = BatchLease(memory_store, "t1", WEEK, seconds=900)
        theirs = BatchLease(memory_store, "t1", WEEK, seconds=900)
        assert mine.acquire(NOW) is True
        assert theirs.acquire(NOW) is False
        theirs.release()
        assert memory_store.get(batch_lease_key("t1", WEEK))["holder"] == mine.holder
        mine.release()
        assert memory_store.get(batch_lease_key("t1", WEEK)) is None
