"""
leafpledge.services.tenant_config — Tenant Configuration Snapshots
===================================================================

Loads a tenant's configuration, custom rules and funding documents from
the key-value store and resolves them into one frozen
:class:`~leafpledge.engine.tenant_settings.TenantConfig`.

Stored documents are deep-merged onto the defaults before validation, so
a document written by an older version (or a partial one) still yields a
complete snapshot.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from leafpledge.database.kv_store import KeyValueStore
from leafpledge.engine.allocator import validate_funding_config
from leafpledge.engine.tenant_settings import FundingConfig, TenantConfig
from leafpledge.errors import FundingConfigError
from leafpledge.services.storage_keys import (
    account_key,
    config_key,
    funding_key,
    rules_key,
)
from leafpledge.services.tenant_directory import TenantDirectory

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1

# Snapshot sections that live in their own storage documents.
_SEPARATE_SECTIONS = {"tenant_id", "rules", "funding"}


def default_config_document() -> dict[str, Any]:
    """The default tenant configuration as a camelCase document."""
    return TenantConfig().model_dump(by_alias=True, exclude=_SEPARATE_SECTIONS)


def default_funding_document() -> dict[str, Any]:
    return FundingConfig().model_dump(by_alias=True)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* onto *base*.

    Nested dicts merge key by key; lists and scalars from *override*
    replace the base value.
    """
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_tenant_config(store: KeyValueStore, tenant_id: str) -> TenantConfig:
    """Resolve the full, defaults-merged snapshot for *tenant_id*."""
    stored = store.get(config_key(tenant_id)) or {}
    rules = store.get(rules_key(tenant_id)) or []
    funding = store.get(funding_key(tenant_id)) or {}

    document = deep_merge(default_config_document(), stored)
    document["tenantId"] = tenant_id
    document["rules"] = rules
    document["funding"] = deep_merge(default_funding_document(), funding)
    return TenantConfig.model_validate(document)


def get_account(store: KeyValueStore, tenant_id: str) -> dict[str, Any] | None:
    """The tenant's linked fulfillment account, if any."""
    return store.get(account_key(tenant_id))


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def save_tenant_config(
    store: KeyValueStore,
    tenant_id: str,
    document: dict[str, Any],
    *,
    directory: TenantDirectory | None = None,
) -> None:
    """Persist a config document and register the tenant for batch runs."""
    document = dict(document)
    document["version"] = CONFIG_VERSION
    document["updatedAt"] = datetime.now(UTC).isoformat()
    store.set(config_key(tenant_id), document)
    (directory or TenantDirectory(store)).register(tenant_id)


def save_rules(store: KeyValueStore, tenant_id: str, rules: list[dict[str, Any]]) -> None:
    store.set(rules_key(tenant_id), list(rules))


def save_funding(store: KeyValueStore, tenant_id: str, document: dict[str, Any]) -> None:
    """Validate and persist a funding document.

    Raises
    ------
    FundingConfigError
        If the percentages do not sum to 100 or a project entry is invalid.
    """
    merged = deep_merge(default_funding_document(), document)
    result = validate_funding_config(merged)
    if not result.valid:
        raise FundingConfigError(result.errors)
    funding = FundingConfig.model_validate(merged)
    store.set(funding_key(tenant_id), document)
    logger.info(
        "Funding saved for %s: %d projects",
        tenant_id, len(funding.project_catalog_selection),
    )
