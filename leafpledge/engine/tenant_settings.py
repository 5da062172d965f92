"""
leafpledge.engine.tenant_settings — Tenant Configuration Models
================================================================

Typed, immutable view of a tenant's configuration document.  Stored
documents use camelCase keys (``doneStatusNames``, ``leavesPerTree`` …);
the models expose snake_case attributes and accept either spelling.

Every field has a default, so a partial (or empty) document always
validates into a complete :class:`TenantConfig`.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

__all__ = [
    "Allocation",
    "AllocationPolicy",
    "CompletionConfig",
    "FundedProject",
    "FundingConfig",
    "PlantingMode",
    "ReopenPolicy",
    "RuleCondition",
    "ScopeConfig",
    "ScoringConfig",
    "ScoringRule",
    "TenantConfig",
]


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Completion detection
# ---------------------------------------------------------------------------
class StatusNameStrategy(_ConfigModel):
    enabled: bool = True
    done_status_names: list[str] = Field(
        default_factory=lambda: ["Done", "Resolved", "Closed"]
    )


class StatusCategoryStrategy(_ConfigModel):
    enabled: bool = True
    done_category_keys: list[str] = Field(default_factory=lambda: ["done"])


class ResolutionStrategy(_ConfigModel):
    enabled: bool = False
    required_resolution_names: list[str] = Field(default_factory=list)


class ReopenPolicy(_ConfigModel):
    """How a re-completed issue is rewarded."""

    enabled: bool = True
    pause_if_reopened_within_days: float = 7
    reaward_allowed: bool = True
    reaward_cooldown_days: float = 14
    reaward_multiplier: float = 0.5


class CompletionConfig(_ConfigModel):
    mode: str = "ANY"  # ANY | ALL | CUSTOM
    status_name: StatusNameStrategy = Field(default_factory=StatusNameStrategy)
    status_category: StatusCategoryStrategy = Field(default_factory=StatusCategoryStrategy)
    resolution: ResolutionStrategy = Field(default_factory=ResolutionStrategy)
    reopen_policy: ReopenPolicy = Field(default_factory=ReopenPolicy)


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------
class ScopeConfig(_ConfigModel):
    included_projects: list[str] = Field(default_factory=list)  # empty = all
    excluded_projects: list[str] = Field(default_factory=list)
    included_issue_types: list[str] = Field(
        default_factory=lambda: ["Story", "Bug", "Task", "Epic"]
    )
    excluded_issue_types: list[str] = Field(default_factory=lambda: ["Sub-task"])
    jql_allowlist: str = ""
    label_exclusions: list[str] = Field(default_factory=lambda: ["no-impact"])
    epic_exclusions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------
class ScoringCaps(_ConfigModel):
    per_user_per_day: int | None = 200
    per_issue_max: float = 200


class ScoringConfig(_ConfigModel):
    currency_name: str = "Leaves"
    base_points: float = 10
    story_point_multiplier: float = 5
    issue_type_weights: dict[str, float] = Field(
        default_factory=lambda: {"Bug": 1.2, "Story": 1.0, "Task": 0.7, "Epic": 2.0}
    )
    caps: ScoringCaps = Field(default_factory=ScoringCaps)


class RuleCondition(_ConfigModel):
    field: str
    op: str
    value: Any = None


class RuleWhen(_ConfigModel):
    event: str | None = None


class RuleThen(_ConfigModel):
    leaves_expr: str | None = None


class ScoringRule(_ConfigModel):
    """A custom scoring override: ``when`` + ``if`` conditions → ``then`` expression."""

    rule_id: str = ""
    enabled: bool = True
    when: RuleWhen | None = None
    conditions: list[RuleCondition] = Field(default_factory=list, alias="if")
    then: RuleThen = Field(default_factory=RuleThen)


# ---------------------------------------------------------------------------
# Planting
# ---------------------------------------------------------------------------
class PledgeBatching(_ConfigModel):
    frequency: str = "weekly"
    day_of_week: int = 5  # Friday


class Conversion(_ConfigModel):
    leaves_per_tree: int = Field(default=100, gt=0)


class PlantingMode(_ConfigModel):
    instant_enabled: bool = False  # Off by default for cost control
    pledge_enabled: bool = True
    instant_project_id: str | None = None
    pledge_batching: PledgeBatching = Field(default_factory=PledgeBatching)
    conversion: Conversion = Field(default_factory=Conversion)


class Privacy(_ConfigModel):
    leaderboard_mode: str = "TEAM_ONLY"  # ORG_ONLY | TEAM_ONLY | USER_OPT_IN
    user_opt_in_required: bool = True


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------
class Allocation(_ConfigModel):
    type: str = "percentage"
    value: float = 0


class FundedProject(_ConfigModel):
    project_id: str = ""
    name: str | None = None
    allocation: Allocation = Field(default_factory=Allocation)
    constraints: dict[str, Any] = Field(default_factory=dict)


class AllocationPolicy(_ConfigModel):
    rounding: str = "floor"  # floor | round | ceil
    min_trees_per_project_per_batch: int = 1
    carry_forward_remainders: bool = True


class FundingConfig(_ConfigModel):
    project_catalog_selection: list[FundedProject] = Field(default_factory=list)
    allocation_policy: AllocationPolicy = Field(default_factory=AllocationPolicy)


# ---------------------------------------------------------------------------
# Tenant snapshot
# ---------------------------------------------------------------------------
class TenantConfig(_ConfigModel):
    """Everything the pipeline reads about one tenant, frozen per invocation."""

    tenant_id: str = ""
    version: int = 1
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    scope: ScopeConfig = Field(default_factory=ScopeConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    planting_mode: PlantingMode = Field(default_factory=PlantingMode)
    privacy: Privacy = Field(default_factory=Privacy)
    rules: list[ScoringRule] = Field(default_factory=list)
    funding: FundingConfig = Field(default_factory=FundingConfig)
