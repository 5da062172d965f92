"""
leafpledge.services.ledger — Award Idempotency & Issue History
===============================================================

Two ledgers live here:

* **Award ledger** — one immutable record per scored completion, keyed by
  the deterministic award id.  Written with an atomic create-if-absent so
  two concurrent deliveries of the same event can never both record.
* **Issue ledger** — per-issue running totals and the ten most recent
  awards, always updated read-merge-write.

The reopen policy decision is computed here too, since it is a pure
function of issue-ledger state plus policy settings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from leafpledge.database.kv_store import KeyValueStore
from leafpledge.engine.issue import parse_timestamp
from leafpledge.engine.tenant_settings import ReopenPolicy
from leafpledge.services.storage_keys import (
    award_ledger_key,
    batch_ledger_key,
    issue_ledger_key,
)

logger = logging.getLogger(__name__)

MAX_RECENT_AWARDS = 10
SECONDS_PER_DAY = 86_400

# snake_case change names → stored camelCase keys
_LEDGER_FIELDS = {
    "completion_count": "completionCount",
    "total_leaves": "totalLeaves",
    "last_completed_at": "lastCompletedAt",
    "last_reopened_at": "lastReopenedAt",
}


def _iso(value: datetime | str | None) -> str | None:
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat()
    return value


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class IssueLedger:
    """Per-issue completion history."""

    issue_id: str
    completion_count: int = 0
    total_leaves: int = 0
    last_completed_at: datetime | None = None
    last_reopened_at: datetime | None = None
    awards: list[dict[str, Any]] = field(default_factory=list)
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, issue_id: str, data: dict[str, Any] | None) -> IssueLedger:
        data = data or {}
        return cls(
            issue_id=data.get("issueId", issue_id),
            completion_count=int(data.get("completionCount", 0)),
            total_leaves=int(data.get("totalLeaves", 0)),
            last_completed_at=parse_timestamp(data.get("lastCompletedAt")),
            last_reopened_at=parse_timestamp(data.get("lastReopenedAt")),
            awards=list(data.get("awards") or []),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )


@dataclass(frozen=True, slots=True)
class ReopenDecision:
    allowed: bool
    multiplier: float
    reason: str


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------
class Ledger:
    """Award, issue and batch ledgers over a :class:`KeyValueStore`."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    # -- award ledger -------------------------------------------------------

    def award_exists(self, tenant_id: str, award_id: str) -> bool:
        return self._store.get(award_ledger_key(tenant_id, award_id)) is not None

    def record_award(self, tenant_id: str, award_id: str, data: dict[str, Any]) -> bool:
        """Create the immutable award record.

        Returns False (and writes nothing) if a record with this id already
        exists, i.e. another delivery of the same event won the race.
        """
        record = {
            **data,
            "awardId": award_id,
            "createdAt": datetime.now(UTC).isoformat(),
        }
        created = self._store.create_if_absent(award_ledger_key(tenant_id, award_id), record)
        if not created:
            logger.info("Award %s already recorded for tenant %s", award_id, tenant_id)
        return created

    def get_award(self, tenant_id: str, award_id: str) -> dict[str, Any] | None:
        return self._store.get(award_ledger_key(tenant_id, award_id))

    # -- issue ledger -------------------------------------------------------

    def get_issue_ledger(self, tenant_id: str, issue_id: str) -> IssueLedger:
        """The issue's history; a zeroed ledger when nothing is stored yet."""
        data = self._store.get(issue_ledger_key(tenant_id, issue_id))
        return IssueLedger.from_dict(issue_id, data)

    def update_issue_ledger(self, tenant_id: str, issue_id: str, **changes: Any) -> dict[str, Any]:
        """Merge *changes* into the stored issue ledger.

        Accepted changes: ``completion_count``, ``total_leaves``,
        ``last_completed_at``, ``last_reopened_at``, plus ``award_id`` (with
        optional ``awarded_at`` / ``leaves``), which is prepended to the
        bounded recent-award list.  Unrelated fields are left untouched.
        """
        award_id = changes.pop("award_id", None)
        awarded_at = changes.pop("awarded_at", None)
        award_leaves = changes.pop("leaves", None)
        unknown = set(changes) - set(_LEDGER_FIELDS)
        if unknown:
            raise TypeError(f"Unknown issue ledger fields: {sorted(unknown)}")

        def merge(current: dict[str, Any] | None) -> dict[str, Any]:
            doc = self._blank(issue_id) if current is None else current
            for name, value in changes.items():
                doc[_LEDGER_FIELDS[name]] = _iso(value)
            if award_id is not None:
                doc["awards"] = [
                    {"awardId": award_id, "awardedAt": _iso(awarded_at), "leaves": award_leaves},
                    *(doc.get("awards") or [])[: MAX_RECENT_AWARDS - 1],
                ]
            doc["updatedAt"] = datetime.now(UTC).isoformat()
            return doc

        return self._store.update(issue_ledger_key(tenant_id, issue_id), merge)

    def record_completion(
        self,
        tenant_id: str,
        issue_id: str,
        award_id: str,
        leaves: int,
        at: datetime,
    ) -> dict[str, Any]:
        """Bump the completion count and cumulative leaves for one award."""
        stamp = _iso(at)

        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            doc = self._blank(issue_id) if current is None else current
            doc["completionCount"] = int(doc.get("completionCount", 0)) + 1
            doc["totalLeaves"] = int(doc.get("totalLeaves", 0)) + leaves
            doc["lastCompletedAt"] = stamp
            doc["awards"] = [
                {"awardId": award_id, "awardedAt": stamp, "leaves": leaves},
                *(doc.get("awards") or [])[: MAX_RECENT_AWARDS - 1],
            ]
            doc["updatedAt"] = datetime.now(UTC).isoformat()
            return doc

        return self._store.update(issue_ledger_key(tenant_id, issue_id), apply)

    def record_reopen(self, tenant_id: str, issue_id: str, at: datetime) -> dict[str, Any]:
        return self.update_issue_ledger(tenant_id, issue_id, last_reopened_at=at)

    @staticmethod
    def _blank(issue_id: str) -> dict[str, Any]:
        return {
            "issueId": issue_id,
            "completionCount": 0,
            "totalLeaves": 0,
            "lastCompletedAt": None,
            "lastReopenedAt": None,
            "awards": [],
        }

    # -- reopen policy ------------------------------------------------------

    def check_reopen_policy(
        self,
        tenant_id: str,
        issue_id: str,
        policy: ReopenPolicy | None,
        *,
        now: datetime | None = None,
    ) -> ReopenDecision:
        """Decide whether a re-completed issue may be rewarded again.

        Pure over the stored issue ledger; never writes.
        """
        if policy is None or not policy.enabled:
            return ReopenDecision(True, 1.0, "Reopen policy disabled")

        ledger = self.get_issue_ledger(tenant_id, issue_id)
        if ledger.completion_count == 0:
            return ReopenDecision(True, 1.0, "First completion")
        if ledger.last_completed_at is None:
            return ReopenDecision(True, 1.0, "No previous completion date")

        now = now or datetime.now(UTC)
        days = (now - ledger.last_completed_at).total_seconds() / SECONDS_PER_DAY

        if days < policy.pause_if_reopened_within_days:
            return ReopenDecision(
                False, 0, f"Reopened within {policy.pause_if_reopened_within_days:g} days"
            )
        if not policy.reaward_allowed:
            return ReopenDecision(False, 0, "Reaward not allowed")
        if days < policy.reaward_cooldown_days:
            return ReopenDecision(
                False, 0, f"Within {policy.reaward_cooldown_days:g} day cooldown"
            )
        return ReopenDecision(True, policy.reaward_multiplier or 0.5, "Reaward with multiplier")

    # -- batch ledger -------------------------------------------------------

    def get_batch_ledger(self, tenant_id: str, batch_id: str) -> dict[str, Any] | None:
        return self._store.get(batch_ledger_key(tenant_id, batch_id))

    def update_batch_ledger(
        self, tenant_id: str, batch_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge *data* into the batch record, creating it if needed."""

        def merge(current: dict[str, Any] | None) -> dict[str, Any]:
            doc = dict(current or {})
            doc.update(data)
            doc["batchId"] = batch_id
            doc["updatedAt"] = datetime.now(UTC).isoformat()
            return doc

        return self._store.update(batch_ledger_key(tenant_id, batch_id), merge)
