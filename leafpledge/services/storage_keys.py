"""
leafpledge.services.storage_keys — Key Scheme & Award IDs
==========================================================

Every persisted document is namespaced by tenant.  Keys follow the
pattern ``{entity}:{tenantId}:{…params}`` so one tenant's data can never
be read through another tenant's key.
"""

from __future__ import annotations

import hashlib

# Hex chars of the SHA-256 digest kept in an award id (64 bits).
AWARD_ID_LENGTH = 16

TENANT_PREFIX = "tenant:"


def config_key(tenant_id: str) -> str:
    return f"cfg:{tenant_id}:v1"


def rules_key(tenant_id: str) -> str:
    return f"rules:{tenant_id}:v1"


def funding_key(tenant_id: str) -> str:
    return f"funding:{tenant_id}:v1"


def account_key(tenant_id: str) -> str:
    """Linked fulfillment account: ``{companyId, companyName, apiKey, linkedAt}``."""
    return f"account:{tenant_id}:v1"


def issue_ledger_key(tenant_id: str, issue_id: str) -> str:
    return f"issueLedger:{tenant_id}:{issue_id}"


def award_ledger_key(tenant_id: str, award_id: str) -> str:
    return f"awardLedger:{tenant_id}:{award_id}"


def batch_ledger_key(tenant_id: str, batch_id: str) -> str:
    return f"batchLedger:{tenant_id}:{batch_id}"


def agg_key(tenant_id: str, period_type: str, period_key: str) -> str:
    return f"agg:{tenant_id}:{period_type}:{period_key}"


def user_agg_key(tenant_id: str, account_id: str, period_type: str, period_key: str) -> str:
    return f"userAgg:{tenant_id}:{account_id}:{period_type}:{period_key}"


def team_agg_key(tenant_id: str, team_id: str, period_type: str, period_key: str) -> str:
    return f"teamAgg:{tenant_id}:{team_id}:{period_type}:{period_key}"


def remainder_leaves_key(tenant_id: str) -> str:
    return f"remainderLeaves:{tenant_id}"


def remainder_trees_key(tenant_id: str) -> str:
    return f"remainderTrees:{tenant_id}"


def batch_lease_key(tenant_id: str, period_key: str) -> str:
    return f"batchLease:{tenant_id}:{period_key}"


def tenant_key(tenant_id: str) -> str:
    return f"{TENANT_PREFIX}{tenant_id}"


def generate_award_id(
    tenant_id: str,
    issue_id: str,
    completion_type: str,
    to_status: str | None,
    transition_time: str,
) -> str:
    """Deterministic idempotency key for one scored completion.

    SHA-256 over ``tenant|issue|type|status|time``, truncated to
    :data:`AWARD_ID_LENGTH` hex chars.  Identical inputs always give the
    identical id, so redelivered events collapse onto one award.
    """
    raw = f"{tenant_id}|{issue_id}|{completion_type}|{to_status or ''}|{transition_time}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:AWARD_ID_LENGTH]
