"""
leafpledge.engine.scope — Scope Filter
=======================================

Decides whether an issue is eligible for scoring at all.  Checks run in a
fixed order and stop at the first failure:

    project → issue type → label exclusions → epic exclusions

Missing project or issue type fails closed.  Pure; never raises.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from leafpledge.engine.issue import IssueSnapshot
from leafpledge.engine.tenant_settings import ScopeConfig
from leafpledge.engine.validation import ValidationResult

__all__ = ["in_scope", "validate_scope_config"]

_LIST_FIELDS = (
    "includedProjects",
    "excludedProjects",
    "includedIssueTypes",
    "excludedIssueTypes",
    "labelExclusions",
    "epicExclusions",
)


def _include_exclude(value: str | None, included: list[str], excluded: list[str]) -> bool:
    if not value:
        return False
    if value in excluded:
        return False
    if included and value not in included:
        return False
    return True


def _labels_allowed(labels: Iterable[str], exclusions: list[str]) -> bool:
    if not exclusions:
        return True
    return not any(label in exclusions for label in labels)


def _epic_allowed(epic_key: str | None, exclusions: list[str]) -> bool:
    if not exclusions or not epic_key:
        return True
    return epic_key not in exclusions


def in_scope(issue: IssueSnapshot, scope: ScopeConfig | None) -> bool:
    """Return True when *issue* passes every configured scope check."""
    if scope is None:
        return True

    if not _include_exclude(issue.project, scope.included_projects, scope.excluded_projects):
        return False
    if not _include_exclude(
        issue.issue_type, scope.included_issue_types, scope.excluded_issue_types
    ):
        return False
    if not _labels_allowed(issue.labels, scope.label_exclusions):
        return False
    return _epic_allowed(issue.epic_key, scope.epic_exclusions)


def validate_scope_config(raw: dict[str, Any]) -> ValidationResult:
    """Check that every list-valued scope setting in a raw document is a list."""
    errors = [
        f"{name} must be an array"
        for name in _LIST_FIELDS
        if raw.get(name) is not None and not isinstance(raw[name], list)
    ]
    return ValidationResult(valid=not errors, errors=errors)
