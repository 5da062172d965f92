"""
leafpledge.services.batch_pledge — Scheduled Pledge Batch
==========================================================

Once per period (weekly by default) every registered tenant with
pledging enabled turns its accumulated trees into one pledge:

    lease → read period bucket (+ carried trees) → allocate
      → create pledge → reset tree counter → store new carry-forward

Tenants are processed one after another and independently; one tenant's
failure is logged and recorded, never propagated to the next.  The
scheduler itself never retries a pledge (the fulfillment client does).

A per-tenant-per-period lease, written with create-if-absent and carrying
an expiry, keeps two overlapping runs from pledging the same period.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from leafpledge.database.kv_store import KeyValueStore
from leafpledge.engine.allocator import allocate_funding
from leafpledge.engine.issue import parse_timestamp
from leafpledge.errors import FulfillmentError, LeafpledgeError
from leafpledge.services.aggregation import AggregationEngine, AggScope, period_key
from leafpledge.services.fulfillment import FulfillmentClient
from leafpledge.services.ledger import Ledger
from leafpledge.services.storage_keys import batch_lease_key
from leafpledge.services.tenant_config import get_tenant_config
from leafpledge.services.tenant_directory import TenantDirectory

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], FulfillmentClient]

DEFAULT_LEASE_SECONDS = 900
EVIDENCE_SOURCE = "jira"


class BatchStatus(StrEnum):
    PLEDGED = "pledged"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class TenantBatchResult:
    tenant_id: str
    status: BatchStatus
    reason: str | None = None
    batch_id: str | None = None
    pledge_id: str | None = None
    trees: int = 0
    error: dict[str, Any] | None = None


@dataclass(slots=True)
class BatchReport:
    period_type: str
    period_key: str
    results: list[TenantBatchResult] = field(default_factory=list)

    def count(self, status: BatchStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def pledged(self) -> int:
        return self.count(BatchStatus.PLEDGED)

    @property
    def failed(self) -> int:
        return self.count(BatchStatus.FAILED) + self.count(BatchStatus.ERROR)

    @property
    def skipped(self) -> int:
        return self.count(BatchStatus.SKIPPED)


# ---------------------------------------------------------------------------
# Lease
# ---------------------------------------------------------------------------
class BatchLease:
    """Expiring per-tenant-per-period lock stored under ``batchLease:``."""

    def __init__(self, store: KeyValueStore, tenant_id: str, key: str, *, seconds: int) -> None:
        self._store = store
        self._key = batch_lease_key(tenant_id, key)
        self._seconds = seconds
        self.holder = uuid.uuid4().hex

    def acquire(self, now: datetime) -> bool:
        lease = {
            "holder": self.holder,
            "acquiredAt": now.isoformat(),
            "expiresAt": (now + timedelta(seconds=self._seconds)).isoformat(),
        }
        if self._store.create_if_absent(self._key, lease):
            return True

        current, version = self._store.get_versioned(self._key)
        expires = parse_timestamp((current or {}).get("expiresAt"))
        if current is not None and expires is not None and expires > now:
            return False
        # Expired (or vanished) lease: take it over.
        if self._store.compare_and_set(self._key, lease, version):
            logger.warning("Took over expired batch lease %s", self._key)
            return True
        return False

    def release(self) -> None:
        current = self._store.get(self._key)
        if current is not None and current.get("holder") == self.holder:
            self._store.delete(self._key)


# ---------------------------------------------------------------------------
# Per-tenant run
# ---------------------------------------------------------------------------
def _pledge_tenant(
    store: KeyValueStore,
    tenant_id: str,
    client_factory: ClientFactory,
    *,
    now: datetime,
    period_type: str,
    lease_seconds: int,
) -> TenantBatchResult:
    config = get_tenant_config(store, tenant_id)
    if not config.planting_mode.pledge_enabled:
        return TenantBatchResult(tenant_id, BatchStatus.SKIPPED, "pledging disabled")

    key = period_key(period_type, now)
    lease = BatchLease(store, tenant_id, key, seconds=lease_seconds)
    if not lease.acquire(now):
        logger.info("Batch for %s %s already running elsewhere", tenant_id, key)
        return TenantBatchResult(tenant_id, BatchStatus.SKIPPED, "lease held")

    try:
        agg = AggregationEngine(store)
        bucket = agg.get_bucket(tenant_id, AggScope.GLOBAL, None, period_type, key)
        carried = agg.get_carried_trees(tenant_id)
        total = bucket.trees + carried
        if total < 1:
            logger.info("No trees to pledge for %s in %s", tenant_id, key)
            return TenantBatchResult(tenant_id, BatchStatus.SKIPPED, "no trees")

        entries = allocate_funding(total, config.funding)
        allocations = [e for e in entries if not e.is_remainder]
        if not allocations:
            # The carried pool is read by every later period.
            agg.reset(tenant_id, period_type, key, consumed=bucket.trees, pledged=False)
            agg.set_carried_trees(tenant_id, total)
            logger.info("No valid allocations for %s, carrying %d trees forward", tenant_id, total)
            return TenantBatchResult(tenant_id, BatchStatus.SKIPPED, "no valid allocations")

        remainder = next((e.trees for e in entries if e.is_remainder), 0)
        pledged_trees = sum(a.trees for a in allocations)
        batch_id = f"{key}-{now:%Y%m%dT%H%M%S}"
        ledger = Ledger(store)
        record = {
            "periodType": period_type,
            "periodKey": key,
            "totalTrees": pledged_trees,
            "totalLeaves": bucket.leaves,
            "carriedInTrees": carried,
            "remainderTrees": remainder,
            "allocations": [a.to_dict() for a in allocations],
        }

        try:
            with client_factory(tenant_id) as client:
                receipt = client.create_pledge(
                    period=key,
                    total_trees=pledged_trees,
                    total_leaves=bucket.leaves,
                    allocations=allocations,
                    evidence={
                        "source": EVIDENCE_SOURCE,
                        "period": key,
                        "issueCount": bucket.issue_count,
                    },
                )
        except FulfillmentError as exc:
            logger.error("Pledge failed for %s %s: %s", tenant_id, key, exc)
            ledger.update_batch_ledger(tenant_id, batch_id, {
                **record, "status": BatchStatus.FAILED.value, "error": exc.to_dict(),
            })
            return TenantBatchResult(
                tenant_id, BatchStatus.FAILED, str(exc), batch_id, error=exc.to_dict()
            )

        agg.reset(tenant_id, period_type, key, consumed=bucket.trees)
        carry = config.funding.allocation_policy.carry_forward_remainders
        agg.set_carried_trees(tenant_id, remainder if carry else 0)
        ledger.update_batch_ledger(tenant_id, batch_id, {
            **record, "status": BatchStatus.PLEDGED.value, "pledgeId": receipt.pledge_id,
        })
        logger.info(
            "Pledge %s created for %s: %d trees across %d projects",
            receipt.pledge_id, tenant_id, pledged_trees, len(allocations),
        )
        return TenantBatchResult(
            tenant_id, BatchStatus.PLEDGED,
            batch_id=batch_id, pledge_id=receipt.pledge_id, trees=pledged_trees,
        )
    finally:
        lease.release()


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------
def run_batch_pledges(
    store: KeyValueStore,
    client_factory: ClientFactory,
    *,
    now: datetime | None = None,
    period_type: str = "weekly",
    lease_seconds: int = DEFAULT_LEASE_SECONDS,
) -> BatchReport:
    """Pledge the current period's trees for every registered tenant."""
    now = now or datetime.now(UTC)
    report = BatchReport(period_type=period_type, period_key=period_key(period_type, now))
    tenants = TenantDirectory(store).list_tenants()
    logger.info("Batch pledge run for %s: %d tenants", report.period_key, len(tenants))

    for tenant_id in tenants:
        try:
            result = _pledge_tenant(
                store, tenant_id, client_factory,
                now=now, period_type=period_type, lease_seconds=lease_seconds,
            )
        except Exception as exc:
            logger.exception(
                "Batch pledge failed for tenant %s", tenant_id,
                extra={"task": "batch_pledge", "tenant": tenant_id},
            )
            if isinstance(exc, LeafpledgeError):
                error = exc.to_dict()
            else:
                error = {"error": type(exc).__name__, "message": str(exc)}
            result = TenantBatchResult(tenant_id, BatchStatus.ERROR, str(exc), error=error)
        report.results.append(result)

    logger.info(
        "Batch pledge run done: %d pledged, %d failed, %d skipped",
        report.pledged, report.failed, report.skipped,
    )
    return report


def handle_batch_trigger(
    store: KeyValueStore,
    client_factory: ClientFactory,
    *,
    now: datetime | None = None,
    period_type: str = "weekly",
    lease_seconds: int = DEFAULT_LEASE_SECONDS,
) -> BatchReport | None:
    """Scheduled-trigger boundary around :func:`run_batch_pledges`.  Never raises."""
    try:
        return run_batch_pledges(
            store, client_factory,
            now=now, period_type=period_type, lease_seconds=lease_seconds,
        )
    except Exception:
        logger.exception("Batch pledge run failed", extra={"task": "batch_pledge"})
        return None
