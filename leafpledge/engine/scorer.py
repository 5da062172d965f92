"""
leafpledge.engine.scorer — Leaves & Trees Scoring
==================================================

Turns a detected completion into an award of leaves (and whole trees).

Default formula::

    leaves = min(per_issue_max, (base_points + story_points × sp_mult) × type_weight)

Custom rules (tenant ``rules`` list) are tried in order.  The first
enabled rule whose ``when`` matches ``issue.completed`` and whose ``if``
conditions all pass replaces the default with its ``leaves_expr``.  A rule
whose expression fails is skipped; scoring never aborts because of one.

Rule conditions read issue fields through :data:`FIELD_ACCESSORS`, a
registry of extractors that return a :class:`FieldValue` tagged with its
kind, so each operator knows what it is comparing.

Re-completions consult the ledger's reopen policy: blocked awards score
zero, allowed ones are scaled by the policy multiplier.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from leafpledge.engine.completion import CompletionResult
from leafpledge.engine.expression import evaluate_expression
from leafpledge.engine.issue import IssueSnapshot
from leafpledge.engine.tenant_settings import RuleCondition, ScoringRule, TenantConfig
from leafpledge.errors import ExpressionError

if TYPE_CHECKING:
    from leafpledge.services.ledger import Ledger

logger = logging.getLogger(__name__)

__all__ = [
    "FIELD_ACCESSORS",
    "FieldKind",
    "FieldValue",
    "OPERATORS",
    "ScoreResult",
    "calculate_score",
    "field_value",
    "preview_score",
]

RULE_EVENT = "issue.completed"
DEFAULT_ISSUE_TYPE = "Task"
CUSTOM_FIELD_PREFIX = "customfield_"


# ---------------------------------------------------------------------------
# Tagged field values
# ---------------------------------------------------------------------------
class FieldKind(StrEnum):
    TEXT = "text"
    NUMBER = "number"
    LIST = "list"
    MISSING = "missing"


@dataclass(frozen=True, slots=True)
class FieldValue:
    kind: FieldKind
    value: Any = None

    @classmethod
    def of(cls, raw: Any) -> FieldValue:
        """Tag an arbitrary raw value (used for ``customfield_*`` lookups)."""
        if raw is None:
            return cls(FieldKind.MISSING)
        if isinstance(raw, bool):
            return cls(FieldKind.TEXT, raw)
        if isinstance(raw, (int, float)):
            return cls(FieldKind.NUMBER, raw)
        if isinstance(raw, (list, tuple)):
            return cls(FieldKind.LIST, list(raw))
        if isinstance(raw, dict):
            # Jira option / user objects
            return cls.of(raw.get("value", raw.get("name")))
        return cls(FieldKind.TEXT, raw)


def _text(value: str | None) -> FieldValue:
    return FieldValue(FieldKind.MISSING) if value is None else FieldValue(FieldKind.TEXT, value)


FIELD_ACCESSORS: dict[str, Callable[[IssueSnapshot], FieldValue]] = {
    "issueType": lambda i: _text(i.issue_type),
    "priority": lambda i: _text(i.priority),
    "project": lambda i: _text(i.project),
    "storyPoints": lambda i: FieldValue(FieldKind.NUMBER, i.story_points or 0),
    "labels": lambda i: FieldValue(FieldKind.LIST, list(i.labels)),
    "status": lambda i: _text(i.status),
    "resolution": lambda i: _text(i.resolution),
    "assignee": lambda i: _text(i.assignee_id),
}


def field_value(name: str, issue: IssueSnapshot) -> FieldValue:
    """Resolve a rule-condition field name against *issue*."""
    accessor = FIELD_ACCESSORS.get(name)
    if accessor is not None:
        return accessor(issue)
    if name.startswith(CUSTOM_FIELD_PREFIX):
        return FieldValue.of(issue.custom_fields.get(name))
    return FieldValue(FieldKind.MISSING)


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------
def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[FieldValue, Any], bool]:
    def check(actual: FieldValue, expected: Any) -> bool:
        return (
            actual.kind is FieldKind.NUMBER
            and _is_number(expected)
            and compare(actual.value, expected)
        )

    return check


OPERATORS: dict[str, Callable[[FieldValue, Any], bool]] = {
    "eq": lambda a, e: a.value == e,
    "neq": lambda a, e: a.value != e,
    "in": lambda a, e: isinstance(e, list) and a.kind is not FieldKind.MISSING and a.value in e,
    "notIn": lambda a, e: isinstance(e, list) and a.value not in e,
    "contains": lambda a, e: a.kind is FieldKind.LIST and e in a.value,
    "gt": _numeric(lambda a, e: a > e),
    "gte": _numeric(lambda a, e: a >= e),
    "lt": _numeric(lambda a, e: a < e),
    "lte": _numeric(lambda a, e: a <= e),
}


def _condition_passes(condition: RuleCondition, issue: IssueSnapshot) -> bool:
    check = OPERATORS.get(condition.op)
    if check is None:
        return False
    return check(field_value(condition.field, issue), condition.value)


def _rule_matches(rule: ScoringRule, issue: IssueSnapshot) -> bool:
    if not rule.enabled:
        return False
    if rule.when is not None and rule.when.event and rule.when.event != RULE_EVENT:
        return False
    return all(_condition_passes(c, issue) for c in rule.conditions)


def _apply_rules(
    rules: list[ScoringRule], issue: IssueSnapshot, variables: dict[str, float]
) -> tuple[float, str] | None:
    """``(leaves, rule_id)`` for the first matching rule that evaluates, else None."""
    for rule in rules:
        if not _rule_matches(rule, issue) or not rule.then.leaves_expr:
            continue
        try:
            return evaluate_expression(rule.then.leaves_expr, variables), rule.rule_id
        except ExpressionError as exc:
            logger.warning("Rule %s expression error: %s", rule.rule_id, exc)
    return None


# ---------------------------------------------------------------------------
# ScoreResult
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ScoreResult:
    leaves: int
    trees: int
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def blocked(self) -> bool:
        return bool(self.details.get("blocked"))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def calculate_score(
    issue: IssueSnapshot,
    config: TenantConfig,
    completion: CompletionResult,
    *,
    ledger: Ledger | None = None,
    now: datetime | None = None,
) -> ScoreResult:
    """Score one completion.

    *ledger* is only read, and only when ``completion.is_reopen``.
    """
    scoring = config.scoring
    issue_type = issue.issue_type or DEFAULT_ISSUE_TYPE
    story_points = issue.story_points or 0
    base = scoring.base_points
    sp_mult = scoring.story_point_multiplier
    weight = scoring.issue_type_weights.get(issue_type, 1.0)
    per_issue_max = scoring.caps.per_issue_max

    leaves: float = min(per_issue_max, (base + story_points * sp_mult) * weight)
    details: dict[str, Any] = {
        "base": base,
        "story_points": story_points,
        "issue_type_weight": weight,
        "sp_mult": sp_mult,
        "issue_type": issue_type,
        "priority": issue.priority,
        "formula": f"min({per_issue_max:g}, ({base:g} + {story_points:g} * {sp_mult:g}) * {weight:g})",
    }

    ruled = _apply_rules(
        config.rules,
        issue,
        {"base": base, "spMult": sp_mult, "storyPoints": story_points, "issueTypeWeight": weight},
    )
    if ruled is not None:
        leaves, details["rule_id"] = ruled

    if completion.is_reopen and ledger is not None:
        decision = ledger.check_reopen_policy(
            config.tenant_id, issue.issue_id, config.completion.reopen_policy, now=now
        )
        if not decision.allowed:
            return ScoreResult(
                leaves=0,
                trees=0,
                details={**details, "blocked": True, "reason": decision.reason},
            )
        leaves = math.floor(leaves * decision.multiplier)
        details["reopen_multiplier"] = decision.multiplier

    final = max(0, math.floor(leaves))
    leaves_per_tree = config.planting_mode.conversion.leaves_per_tree
    details["leaves_per_tree"] = leaves_per_tree
    details["remainder_leaves"] = final % leaves_per_tree
    return ScoreResult(leaves=final, trees=final // leaves_per_tree, details=details)


def preview_score(issue: IssueSnapshot, config: TenantConfig) -> ScoreResult:
    """Dry-run scoring against a synthetic detected completion.  Persists nothing."""
    completion = CompletionResult(detected=True, type="preview")
    result = calculate_score(issue, config, completion)
    return ScoreResult(
        leaves=result.leaves,
        trees=result.trees,
        details={**result.details, "preview": True, "issue_key": issue.key, "issue_id": issue.issue_id},
    )
