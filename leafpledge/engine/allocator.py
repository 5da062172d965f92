"""
leafpledge.engine.allocator — Funding Allocation
=================================================

Splits a whole number of trees across the tenant's funded planting
projects by percentage.

Steps:
  1. ``exact = total × pct / 100`` per percentage project, rounded per
     policy (floor / round / ceil); fractional remainders are summed.
  2. Whole trees in the summed remainder go one each to the projects with
     the highest percentages (ties keep configuration order). When ceil
     or round overshoot the total, the excess comes back one tree at a
     time from the lowest percentages.
  3. Allocations under ``min_trees_per_project_per_batch`` are dropped.
  4. Whatever is left unallocated is reported as a synthetic
     ``_remainder`` entry for the caller to carry forward.

Pure; no I/O.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from leafpledge.engine.tenant_settings import FundingConfig
from leafpledge.engine.validation import ValidationResult

logger = logging.getLogger(__name__)

__all__ = [
    "REMAINDER_PROJECT_ID",
    "AllocationEntry",
    "AllocationPreview",
    "allocate_funding",
    "preview_allocation",
    "validate_funding_config",
]

REMAINDER_PROJECT_ID = "_remainder"
PERCENT_TOLERANCE = 0.01

# Absorbs float noise when fractional parts should sum to a whole tree.
_EPSILON = 1e-9

_ROUNDERS = {
    "floor": math.floor,
    "ceil": math.ceil,
    "round": lambda x: math.floor(x + 0.5),
}


@dataclass(slots=True)
class AllocationEntry:
    """Trees assigned to one project (or the ``_remainder`` carry entry)."""

    project_id: str
    trees: int
    name: str | None = None
    percentage: float | None = None
    constraints: dict[str, Any] = field(default_factory=dict)
    carry_forward: bool = False

    @property
    def is_remainder(self) -> bool:
        return self.project_id == REMAINDER_PROJECT_ID

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "trees": self.trees,
            "name": self.name,
            "percentage": self.percentage,
            "constraints": self.constraints,
            "carryForward": self.carry_forward,
        }


@dataclass(frozen=True, slots=True)
class AllocationPreview:
    total_trees: int
    allocated_trees: int
    remainder_trees: int
    allocations: list[AllocationEntry]
    carry_forward: bool


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------
def allocate_funding(total_trees: int, funding: FundingConfig | None) -> list[AllocationEntry]:
    """Allocate *total_trees* across the funded projects in *funding*."""
    projects = funding.project_catalog_selection if funding else []
    if not projects:
        logger.debug("No funded projects configured")
        return []
    if total_trees < 1:
        return []

    policy = funding.allocation_policy
    rounder = _ROUNDERS.get(policy.rounding, math.floor)
    min_trees = policy.min_trees_per_project_per_batch

    allocations: list[AllocationEntry] = []
    total_remainder = 0.0
    for project in projects:
        if project.allocation.type != "percentage":
            continue
        percentage = project.allocation.value or 0
        exact = total_trees * percentage / 100
        trees = int(rounder(exact))
        total_remainder += exact - trees
        allocations.append(AllocationEntry(
            project_id=project.project_id,
            trees=trees,
            name=project.name,
            percentage=percentage,
            constraints=dict(project.constraints),
        ))

    extra = math.floor(total_remainder + _EPSILON)
    if extra >= 1:
        by_percentage = sorted(allocations, key=lambda a: -(a.percentage or 0))
        for alloc in by_percentage[:extra]:
            alloc.trees += 1

    excess = sum(a.trees for a in allocations) - total_trees
    if excess > 0:
        logger.warning(
            "Rounding policy %s allocated %d trees over the %d earned, trimming",
            policy.rounding, excess, total_trees,
        )
        by_percentage = sorted(allocations, key=lambda a: (a.percentage or 0))
        while excess > 0:
            for alloc in by_percentage:
                if excess == 0:
                    break
                if alloc.trees > 0:
                    alloc.trees -= 1
                    excess -= 1

    valid: list[AllocationEntry] = []
    for alloc in allocations:
        if alloc.trees < min_trees:
            logger.info(
                "Project %s below minimum (%d < %d), %s",
                alloc.project_id, alloc.trees, min_trees,
                "carrying forward" if policy.carry_forward_remainders else "dropping",
            )
            continue
        valid.append(alloc)

    remainder = total_trees - sum(a.trees for a in valid)
    if remainder > 0:
        valid.append(AllocationEntry(
            project_id=REMAINDER_PROJECT_ID,
            trees=remainder,
            carry_forward=True,
        ))
    return valid


def preview_allocation(total_trees: int, funding: FundingConfig | None) -> AllocationPreview:
    """Dry-run :func:`allocate_funding` and summarise the result."""
    entries = allocate_funding(total_trees, funding)
    projects = [e for e in entries if not e.is_remainder]
    remainder = next((e for e in entries if e.is_remainder), None)
    return AllocationPreview(
        total_trees=total_trees,
        allocated_trees=sum(e.trees for e in projects),
        remainder_trees=remainder.trees if remainder else 0,
        allocations=projects,
        carry_forward=remainder.carry_forward if remainder else False,
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_funding_config(funding: FundingConfig | dict[str, Any] | None) -> ValidationResult:
    """Check project entries and that percentages sum to 100 (±0.01).

    Accepts a model or a raw camelCase document, so malformed values that
    a model would refuse can still be reported.
    """
    if isinstance(funding, FundingConfig):
        funding = funding.model_dump(by_alias=True)
    if not funding or funding.get("projectCatalogSelection") is None:
        return ValidationResult(valid=False, errors=["projectCatalogSelection is required"])

    errors: list[str] = []
    projects = funding["projectCatalogSelection"]
    percentage_projects = [
        p for p in projects if (p.get("allocation") or {}).get("type") == "percentage"
    ]

    if percentage_projects:
        total = 0.0
        for p in percentage_projects:
            value = p["allocation"].get("value")
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                total += value
        if abs(total - 100) > PERCENT_TOLERANCE:
            errors.append(f"Allocation percentages must sum to 100, got {total:g}")

    for p in projects:
        if not p.get("projectId"):
            errors.append("Each project must have a projectId")
        allocation = p.get("allocation") or {}
        if allocation.get("type") == "percentage":
            value = allocation.get("value")
            if (
                not isinstance(value, (int, float))
                or isinstance(value, bool)
                or not 0 <= value <= 100
            ):
                errors.append(f"Invalid percentage for project {p.get('projectId')}: {value}")

    return ValidationResult(valid=not errors, errors=errors)
