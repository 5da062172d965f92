"""
leafpledge.engine.completion — Completion & Reopen Detection
=============================================================

Decides whether an issue-change event means "this issue is done".

Three independent strategies look at the change delta:

* **statusName** — the new status is one of the configured done names.
* **statusCategory** — the new status belongs to a done category, read
  from the issue's own status-category metadata or guessed from the name.
* **resolution** — a resolution was set (optionally one of an allow-list).

The tenant's ``mode`` combines them: ``ANY`` (one matched), ``ALL`` (every
enabled strategy matched) or ``CUSTOM`` (ANY semantics, tagged
``custom``).  Pure; no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from leafpledge.engine.issue import ChangeDelta, IssueSnapshot
from leafpledge.engine.tenant_settings import CompletionConfig

__all__ = [
    "STRATEGIES",
    "CompletionResult",
    "detect_completion",
    "detect_reopen",
    "guess_status_category",
    "is_done_status",
]

STRATEGIES: tuple[str, ...] = ("resolution", "statusCategory", "statusName")

# Fixed fallback used by reopen detection.
DONE_PATTERNS: tuple[str, ...] = ("done", "closed", "resolved", "complete", "completed")

# Name heuristics for the statusCategory strategy, checked in order.
_CATEGORY_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("done", DONE_PATTERNS + ("released", "shipped")),
    ("indeterminate", ("in progress", "in review", "in development", "working", "active")),
    ("new", ("to do", "todo", "open", "new", "backlog", "pending")),
)


# ---------------------------------------------------------------------------
# CompletionResult
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Outcome of completion detection for one event."""

    detected: bool
    type: str = ""
    to_status: str | None = None
    transition_time: datetime | None = None
    is_reopen: bool = False
    strategies: dict[str, bool] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def guess_status_category(status_name: str | None, issue: IssueSnapshot | None = None) -> str:
    """Status category key (``new`` / ``indeterminate`` / ``done``) for *status_name*.

    The issue's own category metadata wins; otherwise a name heuristic.
    """
    if issue is not None and issue.status_category:
        return issue.status_category

    lower = (status_name or "").lower()
    for category, patterns in _CATEGORY_PATTERNS:
        if any(p in lower for p in patterns):
            return category
    return "indeterminate"


def is_done_status(status_name: str | None, config: CompletionConfig) -> bool:
    """True when *status_name* counts as done for reopen detection."""
    if not status_name:
        return False
    if config.status_name.enabled and status_name in config.status_name.done_status_names:
        return True
    lower = status_name.lower()
    return any(p in lower for p in DONE_PATTERNS)


def _composite(names: list[str]) -> str:
    return "+".join(sorted(names))


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------
def detect_completion(
    issue: IssueSnapshot,
    delta: ChangeDelta,
    config: CompletionConfig,
    *,
    previously_completed: bool = False,
) -> CompletionResult:
    """Evaluate the enabled strategies against *delta* and combine them per ``mode``.

    *previously_completed* comes from the issue ledger; a detected completion
    of an issue that was completed before is flagged ``is_reopen``.
    """
    matched = {name: False for name in STRATEGIES}
    to_status: str | None = None

    for item in delta.items:
        if item.field == "status":
            if (
                config.status_name.enabled
                and item.to_value in config.status_name.done_status_names
            ):
                matched["statusName"] = True
                to_status = item.to_value

            if config.status_category.enabled:
                category = guess_status_category(item.to_value, issue)
                if category in config.status_category.done_category_keys:
                    matched["statusCategory"] = True
                    to_status = to_status or item.to_value

        elif item.field == "resolution" and config.resolution.enabled:
            if item.to_id and item.to_value:
                required = config.resolution.required_resolution_names
                if not required or item.to_value in required:
                    matched["resolution"] = True

    enabled = [
        name
        for name, on in (
            ("statusName", config.status_name.enabled),
            ("statusCategory", config.status_category.enabled),
            ("resolution", config.resolution.enabled),
        )
        if on
    ]
    any_matched = any(matched.values())
    mode = (config.mode or "ANY").upper()

    if mode == "ANY":
        detected = any_matched
        completion_type = _composite([n for n, hit in matched.items() if hit])
    elif mode == "ALL":
        detected = bool(enabled) and all(matched[n] for n in enabled)
        completion_type = _composite(enabled)
    elif mode == "CUSTOM":
        # No custom expression path yet; behaves like ANY.
        detected = any_matched
        completion_type = "custom"
    else:
        detected = any_matched
        completion_type = "any"

    # None when the event carries no change time at all.
    transition_time = delta.changed_at or issue.updated

    return CompletionResult(
        detected=detected,
        type=completion_type,
        to_status=to_status or issue.status,
        transition_time=transition_time,
        is_reopen=detected and previously_completed,
        strategies=matched,
    )


def detect_reopen(delta: ChangeDelta, config: CompletionConfig) -> bool:
    """True when some status transition moves from a done status to a non-done one."""
    return any(
        is_done_status(item.from_value, config) and not is_done_status(item.to_value, config)
        for item in delta.for_field("status")
    )
