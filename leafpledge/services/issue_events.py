"""
leafpledge.services.issue_events — Issue-Updated Event Path
============================================================

One inbound "issue updated" webhook runs through:

    scope filter → reopen tracking → completion detection
      → award id → idempotency check → scoring → award record
      → issue ledger → aggregates → optional instant planting

:func:`process_issue_event` lets storage errors propagate.
:func:`handle_issue_updated` is the boundary the event source calls: it
never raises, so a failure can't trigger a redelivery storm, and it
returns an :class:`EventOutcome` describing what happened.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from leafpledge.database.kv_store import KeyValueStore
from leafpledge.engine.completion import CompletionResult, detect_completion, detect_reopen
from leafpledge.engine.issue import ChangeDelta, IssueSnapshot
from leafpledge.engine.scope import in_scope
from leafpledge.engine.scorer import ScoreResult, calculate_score
from leafpledge.engine.tenant_settings import TenantConfig
from leafpledge.errors import FulfillmentError, LeafpledgeError
from leafpledge.services.aggregation import PERIOD_TYPES, AggregationEngine, AggScope, period_key
from leafpledge.services.fulfillment import FulfillmentClient
from leafpledge.services.ledger import Ledger
from leafpledge.services.storage_keys import generate_award_id
from leafpledge.services.tenant_config import get_tenant_config

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], FulfillmentClient]


class EventStatus(StrEnum):
    AWARDED = "awarded"
    OUT_OF_SCOPE = "out_of_scope"
    NOT_COMPLETED = "not_completed"
    REOPENED = "reopened"
    DUPLICATE = "duplicate"
    REOPEN_BLOCKED = "reopen_blocked"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class EventOutcome:
    status: EventStatus
    tenant_id: str
    issue_id: str | None = None
    award_id: str | None = None
    leaves: int = 0
    trees: int = 0
    instant_trees: int = 0
    was_capped: bool = False
    reason: str | None = None
    error: dict[str, Any] | None = field(default=None)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _instant_project(config: TenantConfig) -> str | None:
    if config.planting_mode.instant_project_id:
        return config.planting_mode.instant_project_id
    projects = config.funding.project_catalog_selection
    return projects[0].project_id if projects else None


def _plant_instantly(
    client_factory: ClientFactory | None,
    config: TenantConfig,
    issue: IssueSnapshot,
    award_id: str,
    trees: int,
) -> int:
    """Place an instant order; returns the trees planted (0 on any failure)."""
    if client_factory is None:
        logger.warning("Instant planting enabled for %s but no client configured", config.tenant_id)
        return 0
    project_id = _instant_project(config)
    if project_id is None:
        logger.warning("Instant planting enabled for %s but no project set", config.tenant_id)
        return 0
    try:
        with client_factory(config.tenant_id) as client:
            receipt = client.create_instant_order(
                project_id=project_id,
                trees=trees,
                issue_id=issue.issue_id,
                issue_key=issue.key,
                award_id=award_id,
            )
    except FulfillmentError as exc:
        logger.error(
            "Instant order failed for %s (%s), trees stay in the pledge batch: %s",
            issue.key, award_id, exc,
        )
        return 0
    logger.info("Instant order %s: %d trees for %s", receipt.order_id, trees, issue.key)
    return trees


def _transition_token(completion: CompletionResult, delta: ChangeDelta) -> str:
    """Time component of the award id.

    Taken from the event only, never the clock: the change time, else the
    changelog id, else an empty token.
    """
    if completion.transition_time is not None:
        return completion.transition_time.isoformat()
    if delta.changelog_id:
        return f"changelog:{delta.changelog_id}"
    return ""


def _aggregate(
    agg: AggregationEngine,
    config: TenantConfig,
    issue: IssueSnapshot,
    score: ScoreResult,
    pledge_trees: int,
    now: datetime,
) -> bool:
    """Apply one award to global, user and team buckets.  Returns was_capped."""
    tenant_id = config.tenant_id
    was_capped = False

    for period_type in PERIOD_TYPES:
        key = period_key(period_type, now)
        agg.increment(tenant_id, AggScope.GLOBAL, None, period_type, key, score.leaves, pledge_trees)
        if issue.team_id:
            agg.increment(tenant_id, AggScope.TEAM, issue.team_id, period_type, key, score.leaves, score.trees)

    if issue.assignee_id:
        daily = agg.increment(
            tenant_id, AggScope.USER, issue.assignee_id, "daily", period_key("daily", now),
            score.leaves, score.trees,
            daily_cap=config.scoring.caps.per_user_per_day,
        )
        was_capped = daily.was_capped
        for period_type in ("weekly", "monthly"):
            agg.increment(
                tenant_id, AggScope.USER, issue.assignee_id, period_type,
                period_key(period_type, now), daily.applied_leaves, score.trees,
            )
    return was_capped


# ---------------------------------------------------------------------------
# Event path
# ---------------------------------------------------------------------------
def process_issue_event(
    store: KeyValueStore,
    tenant_id: str,
    payload: dict[str, Any],
    *,
    client_factory: ClientFactory | None = None,
    now: datetime | None = None,
) -> EventOutcome:
    """Run one issue-updated payload through the reward pipeline."""
    now = now or datetime.now(UTC)
    issue = IssueSnapshot.from_payload(payload.get("issue") or {})
    delta = ChangeDelta.from_payload(payload.get("changelog"), payload.get("timestamp"))
    config = get_tenant_config(store, tenant_id)
    ledger = Ledger(store)

    if not in_scope(issue, config.scope):
        logger.debug("Issue %s not in scope for %s", issue.key, tenant_id)
        return EventOutcome(EventStatus.OUT_OF_SCOPE, tenant_id, issue.issue_id)

    if detect_reopen(delta, config.completion):
        ledger.record_reopen(tenant_id, issue.issue_id, delta.changed_at or now)
        logger.info("Issue %s reopened", issue.key)
        return EventOutcome(EventStatus.REOPENED, tenant_id, issue.issue_id)

    history = ledger.get_issue_ledger(tenant_id, issue.issue_id)
    completion = detect_completion(
        issue, delta, config.completion,
        previously_completed=history.completion_count > 0,
    )
    if not completion.detected:
        return EventOutcome(EventStatus.NOT_COMPLETED, tenant_id, issue.issue_id)

    token = _transition_token(completion, delta)
    completed_at = completion.transition_time or now
    award_id = generate_award_id(
        tenant_id,
        issue.issue_id,
        completion.type,
        completion.to_status,
        token,
    )
    if ledger.award_exists(tenant_id, award_id):
        logger.info("Award %s already exists, skipping duplicate", award_id)
        return EventOutcome(EventStatus.DUPLICATE, tenant_id, issue.issue_id, award_id)

    score = calculate_score(issue, config, completion, ledger=ledger, now=now)

    created = ledger.record_award(tenant_id, award_id, {
        "issueId": issue.issue_id,
        "issueKey": issue.key,
        "projectKey": issue.project,
        "assigneeId": issue.assignee_id,
        "leaves": score.leaves,
        "trees": score.trees,
        "completionType": completion.type,
        "toStatus": completion.to_status,
        "transitionTime": token,
        "isReopen": completion.is_reopen,
        "blocked": score.blocked,
        "awardedAt": now.isoformat(),
    })
    if not created:
        return EventOutcome(EventStatus.DUPLICATE, tenant_id, issue.issue_id, award_id)

    ledger.record_completion(
        tenant_id, issue.issue_id, award_id, score.leaves, completed_at
    )

    if score.blocked:
        logger.info("Re-completion of %s blocked: %s", issue.key, score.details.get("reason"))
        return EventOutcome(
            EventStatus.REOPEN_BLOCKED, tenant_id, issue.issue_id, award_id,
            reason=score.details.get("reason"),
        )

    agg = AggregationEngine(store)
    leaves_per_tree = config.planting_mode.conversion.leaves_per_tree
    trees = score.trees + agg.add_remainder_leaves(
        tenant_id, score.details["remainder_leaves"], leaves_per_tree
    )

    instant_trees = 0
    if config.planting_mode.instant_enabled and trees > 0:
        instant_trees = _plant_instantly(client_factory, config, issue, award_id, trees)

    was_capped = _aggregate(agg, config, issue, score, trees - instant_trees, now)

    logger.info(
        "Awarded %d leaves (%d trees) for %s [%s]",
        score.leaves, trees, issue.key, completion.type,
    )
    return EventOutcome(
        EventStatus.AWARDED,
        tenant_id,
        issue.issue_id,
        award_id,
        leaves=score.leaves,
        trees=trees,
        instant_trees=instant_trees,
        was_capped=was_capped,
    )


def handle_issue_updated(
    store: KeyValueStore,
    tenant_id: str,
    payload: dict[str, Any],
    *,
    client_factory: ClientFactory | None = None,
    now: datetime | None = None,
) -> EventOutcome:
    """Boundary wrapper around :func:`process_issue_event`.  Never raises."""
    try:
        return process_issue_event(
            store, tenant_id, payload, client_factory=client_factory, now=now
        )
    except Exception as exc:
        logger.exception(
            "Issue event failed for tenant %s", tenant_id,
            extra={"task": "issue_updated", "tenant": tenant_id},
        )
        if isinstance(exc, LeafpledgeError):
            error = exc.to_dict()
        else:
            error = {"error": type(exc).__name__, "message": str(exc)}
        issue_id = ((payload or {}).get("issue") or {}).get("id")
        return EventOutcome(EventStatus.ERROR, tenant_id, issue_id, error=error)
