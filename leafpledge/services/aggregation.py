"""
leafpledge.services.aggregation — Time-Bucketed Counters
=========================================================

Leaves, trees and issue counts are accumulated into buckets keyed by
tenant, scope (global / user / team), period type and period key.

Every increment is an optimistic read-modify-write through
:meth:`KeyValueStore.update`, so concurrent deliveries hitting the same
bucket never lose an update.  Reads of a bucket that does not exist yet
return a zeroed bucket.

Period keys::

    daily    YYYY-MM-DD
    weekly   YYYY-Www     (ISO week of the ISO year)
    monthly  YYYY-MM
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from leafpledge.database.kv_store import KeyValueStore
from leafpledge.services.storage_keys import (
    agg_key,
    remainder_leaves_key,
    remainder_trees_key,
    team_agg_key,
    user_agg_key,
)

logger = logging.getLogger(__name__)

PERIOD_TYPES: tuple[str, ...] = ("daily", "weekly", "monthly")


class AggScope(StrEnum):
    GLOBAL = "global"
    USER = "user"
    TEAM = "team"


def period_key(period_type: str, ts: datetime) -> str:
    """Bucket key for *ts* (converted to UTC) in the given period type."""
    ts = ts.astimezone(UTC) if ts.tzinfo else ts
    if period_type == "daily":
        return ts.strftime("%Y-%m-%d")
    if period_type == "weekly":
        iso_year, iso_week, _ = ts.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if period_type == "monthly":
        return ts.strftime("%Y-%m")
    raise ValueError(f"Unknown period type: {period_type!r}")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Aggregate:
    period_type: str
    period_key: str
    leaves: int = 0
    trees: int = 0
    issue_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None
    pledged_at: str | None = None

    @classmethod
    def from_dict(cls, period_type: str, key: str, data: dict[str, Any] | None) -> Aggregate:
        data = data or {}
        return cls(
            period_type=data.get("periodType", period_type),
            period_key=data.get("periodKey", key),
            leaves=int(data.get("leaves", 0)),
            trees=int(data.get("trees", 0)),
            issue_count=int(data.get("issueCount", 0)),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            pledged_at=data.get("pledgedAt"),
        )


@dataclass(frozen=True, slots=True)
class IncrementResult:
    bucket: Aggregate
    applied_leaves: int
    original_leaves: int
    was_capped: bool = False


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
class AggregationEngine:
    """Bucket reads and increments over a :class:`KeyValueStore`."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    period_key = staticmethod(period_key)

    @staticmethod
    def _key(
        tenant_id: str,
        scope: AggScope | str,
        scope_id: str | None,
        period_type: str,
        key: str,
    ) -> str:
        scope = AggScope(scope)
        if scope is AggScope.GLOBAL:
            return agg_key(tenant_id, period_type, key)
        if not scope_id:
            raise ValueError(f"{scope} aggregates need a scope id")
        if scope is AggScope.USER:
            return user_agg_key(tenant_id, scope_id, period_type, key)
        return team_agg_key(tenant_id, scope_id, period_type, key)

    def get_bucket(
        self,
        tenant_id: str,
        scope: AggScope | str,
        scope_id: str | None,
        period_type: str,
        key: str,
    ) -> Aggregate:
        data = self._store.get(self._key(tenant_id, scope, scope_id, period_type, key))
        return Aggregate.from_dict(period_type, key, data)

    def increment(
        self,
        tenant_id: str,
        scope: AggScope | str,
        scope_id: str | None,
        period_type: str,
        key: str,
        leaves: int,
        trees: int = 0,
        *,
        daily_cap: int | None = None,
    ) -> IncrementResult:
        """Add *leaves* / *trees* to a bucket and bump its issue count.

        *daily_cap* only applies to daily user buckets: leaves beyond the
        remaining headroom are dropped and the result is flagged
        ``was_capped``.
        """
        apply_cap = (
            daily_cap is not None
            and AggScope(scope) is AggScope.USER
            and period_type == "daily"
        )
        outcome: dict[str, Any] = {}

        def add(current: dict[str, Any] | None) -> dict[str, Any]:
            now = datetime.now(UTC).isoformat()
            doc = current or {
                "periodType": period_type,
                "periodKey": key,
                "leaves": 0,
                "trees": 0,
                "issueCount": 0,
                "createdAt": now,
            }
            if scope_id:
                doc.setdefault("scopeId", scope_id)
            applied = leaves
            capped = False
            if apply_cap and doc["leaves"] + leaves > daily_cap:
                applied = max(0, daily_cap - doc["leaves"])
                capped = True
            doc["leaves"] += applied
            doc["trees"] = doc.get("trees", 0) + trees
            doc["issueCount"] += 1
            doc["updatedAt"] = now
            outcome.update(applied=applied, capped=capped)
            return doc

        doc = self._store.update(self._key(tenant_id, scope, scope_id, period_type, key), add)
        if outcome["capped"]:
            logger.info(
                "Daily cap hit for %s/%s: %d of %d leaves applied",
                tenant_id, scope_id, outcome["applied"], leaves,
            )
        return IncrementResult(
            bucket=Aggregate.from_dict(period_type, key, doc),
            applied_leaves=outcome["applied"],
            original_leaves=leaves,
            was_capped=outcome["capped"],
        )

    def reset(
        self,
        tenant_id: str,
        period_type: str,
        key: str,
        *,
        consumed: int | None = None,
        pledged: bool = True,
    ) -> Aggregate:
        """Zero the global bucket's trees after a pledge; leaves and counts stay.

        With *consumed*, only that many trees are taken off the bucket and
        anything added since the read is kept.  ``pledged=False`` moves trees
        out without stamping ``pledgedAt``.
        """

        def clear(current: dict[str, Any] | None) -> dict[str, Any]:
            now = datetime.now(UTC).isoformat()
            doc = current or {
                "periodType": period_type,
                "periodKey": key,
                "leaves": 0,
                "issueCount": 0,
                "createdAt": now,
            }
            remaining = 0 if consumed is None else max(0, doc.get("trees", 0) - consumed)
            doc["trees"] = remaining
            if pledged:
                doc["pledgedAt"] = now
            return doc

        doc = self._store.update(agg_key(tenant_id, period_type, key), clear)
        return Aggregate.from_dict(period_type, key, doc)

    # -- carry-forward pools -----------------------------------------------

    def get_remainder_leaves(self, tenant_id: str) -> int:
        data = self._store.get(remainder_leaves_key(tenant_id)) or {}
        return int(data.get("leaves", 0))

    def add_remainder_leaves(self, tenant_id: str, leaves: int, leaves_per_tree: int) -> int:
        """Pool leftover leaves; return how many whole trees the pool just yielded."""
        if leaves <= 0:
            return 0
        outcome = {"trees": 0}

        def pool(current: dict[str, Any] | None) -> dict[str, Any]:
            total = int((current or {}).get("leaves", 0)) + leaves
            outcome["trees"] = total // leaves_per_tree
            return {
                "leaves": total % leaves_per_tree,
                "updatedAt": datetime.now(UTC).isoformat(),
            }

        self._store.update(remainder_leaves_key(tenant_id), pool)
        return outcome["trees"]

    def get_carried_trees(self, tenant_id: str) -> int:
        data = self._store.get(remainder_trees_key(tenant_id)) or {}
        return int(data.get("trees", 0))

    def set_carried_trees(self, tenant_id: str, trees: int) -> None:
        self._store.set(
            remainder_trees_key(tenant_id),
            {"trees": trees, "updatedAt": datetime.now(UTC).isoformat()},
        )

    # -- reads ---------------------------------------------------------------

    def get_dashboard_aggregations(
        self, tenant_id: str, now: datetime | None = None
    ) -> dict[str, Aggregate]:
        """Current daily, weekly and monthly global buckets."""
        now = now or datetime.now(UTC)
        return {
            period_type: self.get_bucket(
                tenant_id, AggScope.GLOBAL, None, period_type, period_key(period_type, now)
            )
            for period_type in PERIOD_TYPES
        }
