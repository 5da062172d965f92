"""
leafpledge.engine.issue — IssueSnapshot and ChangeDelta
========================================================

The event envelope for the reward pipeline.  An inbound "issue updated"
webhook is normalized into an :class:`IssueSnapshot` (the issue's current
field values) plus a :class:`ChangeDelta` (the ordered field transitions
that triggered the event).  Both are ephemeral and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

__all__ = ["ChangeDelta", "ChangeItem", "IssueSnapshot", "parse_timestamp"]

# Jira Cloud's default story-points field.
STORY_POINTS_FIELD = "customfield_10016"


def parse_timestamp(value: Any) -> datetime | None:
    """Best-effort conversion of a webhook timestamp to an aware UTC datetime.

    Accepts datetimes, epoch milliseconds, and ISO-8601 strings (including
    Jira's ``2024-01-15T10:30:00.000+0000`` form).  Returns None when the
    value cannot be interpreted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _name(obj: Any) -> str | None:
    """Pull ``name`` out of a Jira ``{"name": ...}`` object, or pass strings through."""
    if isinstance(obj, dict):
        return obj.get("name")
    return obj if isinstance(obj, str) else None


# ---------------------------------------------------------------------------
# IssueSnapshot
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class IssueSnapshot:
    """Current field values of the issue that changed."""

    issue_id: str
    key: str | None = None
    issue_type: str | None = None
    project: str | None = None
    labels: tuple[str, ...] = ()
    assignee_id: str | None = None
    story_points: float | None = None
    priority: str | None = None
    status: str | None = None
    status_category: str | None = None
    resolution: str | None = None
    epic_key: str | None = None
    team_id: str | None = None
    updated: datetime | None = None
    custom_fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, issue: dict) -> IssueSnapshot:
        """Build a snapshot from a Jira-shaped ``issue`` object."""
        fields = issue.get("fields") or {}
        status = fields.get("status") or {}
        category = status.get("statusCategory") if isinstance(status, dict) else None
        epic = fields.get("epic") or fields.get("parent") or {}
        team = fields.get("team")

        raw_points = fields.get(STORY_POINTS_FIELD)
        if raw_points is None:
            raw_points = fields.get("storyPoints")
        try:
            story_points = float(raw_points) if raw_points is not None else None
        except (TypeError, ValueError):
            story_points = None

        return cls(
            issue_id=str(issue.get("id") or issue.get("key") or ""),
            key=issue.get("key"),
            issue_type=_name(fields.get("issuetype")),
            project=(fields.get("project") or {}).get("key"),
            labels=tuple(fields.get("labels") or ()),
            assignee_id=(fields.get("assignee") or {}).get("accountId"),
            story_points=story_points,
            priority=_name(fields.get("priority")),
            status=_name(status),
            status_category=category.get("key") if isinstance(category, dict) else None,
            resolution=_name(fields.get("resolution")),
            epic_key=epic.get("key") if isinstance(epic, dict) else None,
            team_id=(team.get("id") if isinstance(team, dict) else team),
            updated=parse_timestamp(fields.get("updated")),
            custom_fields={
                k: v for k, v in fields.items() if k.startswith("customfield_")
            },
        )


# ---------------------------------------------------------------------------
# ChangeDelta
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChangeItem:
    """One field transition from the event's changelog."""

    field: str
    from_value: str | None = None
    to_value: str | None = None
    to_id: str | None = None


@dataclass(frozen=True, slots=True)
class ChangeDelta:
    """Ordered field transitions plus the time the change happened."""

    items: tuple[ChangeItem, ...] = ()
    changed_at: datetime | None = None
    changelog_id: str | None = None

    @classmethod
    def from_payload(cls, changelog: dict | None, timestamp: Any = None) -> ChangeDelta:
        """Build a delta from a Jira ``changelog`` and the webhook timestamp."""
        changelog = changelog or {}
        items = tuple(
            ChangeItem(
                field=item.get("field", ""),
                from_value=item.get("fromString"),
                to_value=item.get("toString"),
                to_id=None if item.get("to") is None else str(item.get("to")),
            )
            for item in changelog.get("items") or ()
        )
        changed_at = parse_timestamp(changelog.get("created")) or parse_timestamp(timestamp)
        changelog_id = changelog.get("id")
        return cls(
            items=items,
            changed_at=changed_at,
            changelog_id=None if changelog_id is None else str(changelog_id),
        )

    def for_field(self, name: str) -> list[ChangeItem]:
        return [item for item in self.items if item.field == name]
