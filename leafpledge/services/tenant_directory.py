"""
leafpledge.services.tenant_directory — Tenant Directory
========================================================

Index of tenants that have configured the app, used to drive the batch
path.  Each tenant owns one ``tenant:{id}`` key and the directory is read
with a prefix scan, so registering a tenant never rewrites a shared list.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from leafpledge.database.kv_store import KeyValueStore
from leafpledge.services.storage_keys import TENANT_PREFIX, tenant_key

logger = logging.getLogger(__name__)


class TenantDirectory:
    """Register, unregister and enumerate tenants."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def register(self, tenant_id: str) -> bool:
        """Add *tenant_id*.  Returns False if it was already registered."""
        created = self._store.create_if_absent(
            tenant_key(tenant_id),
            {"tenantId": tenant_id, "registeredAt": datetime.now(UTC).isoformat()},
        )
        if created:
            logger.info("Registered tenant %s", tenant_id)
        return created

    def unregister(self, tenant_id: str) -> None:
        self._store.delete(tenant_key(tenant_id))

    def list_tenants(self) -> list[str]:
        """All registered tenant ids, in key order."""
        return [
            key[len(TENANT_PREFIX):]
            for key, _ in self._store.scan_prefix(TENANT_PREFIX)
        ]

    def __contains__(self, tenant_id: str) -> bool:
        return self._store.get(tenant_key(tenant_id)) is not None
