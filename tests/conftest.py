"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.pool import StaticPool

from leafpledge.database.kv_store import MemoryKeyValueStore, SqlKeyValueStore
from leafpledge.database.models import Base
from leafpledge.services.fulfillment import FulfillmentClient

# Wednesday of ISO week 2024-W10.
NOW = datetime(2024, 3, 6, 12, 0, tzinfo=UTC)


@pytest.fixture
def memory_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with the ``kv_entries`` table.

    Uses StaticPool so every session shares the same in-memory database.
    pysqlite's own transaction handling is switched off so SAVEPOINTs
    (used by ``create_if_absent``) behave as they do on PostgreSQL.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def sql_store(db_engine: Engine) -> SqlKeyValueStore:
    return SqlKeyValueStore(db_engine)


def make_payload(
    *,
    issue_id: str = "10001",
    key: str = "PROJ-1",
    project: str = "PROJ",
    issue_type: str = "Story",
    story_points: float | None = 3,
    assignee: str | None = "acc-1",
    labels: tuple[str, ...] = (),
    priority: str = "Medium",
    team: str | None = None,
    from_status: str = "In Progress",
    to_status: str = "Done",
    changed_at: datetime = NOW,
    extra_items: tuple[dict[str, Any], ...] = (),
) -> dict[str, Any]:
    """A Jira-shaped ``issue updated`` webhook payload."""
    fields: dict[str, Any] = {
        "project": {"key": project},
        "issuetype": {"name": issue_type},
        "labels": list(labels),
        "priority": {"name": priority},
        "status": {"name": to_status},
        "customfield_10016": story_points,
        "updated": changed_at.isoformat(),
    }
    if assignee:
        fields["assignee"] = {"accountId": assignee}
    if team:
        fields["team"] = {"id": team}
    return {
        "issue": {"id": issue_id, "key": key, "fields": fields},
        "changelog": {
            "items": [
                {"field": "status", "fromString": from_status, "toString": to_status},
                *extra_items,
            ]
        },
        "timestamp": int(changed_at.timestamp() * 1000),
    }


def make_client_factory(
    handler: Callable[[httpx.Request], httpx.Response],
    sleeps: list[float] | None = None,
) -> Callable[[str], FulfillmentClient]:
    """Client factory whose requests are answered by *handler* in-process."""

    def factory(tenant_id: str) -> FulfillmentClient:
        return FulfillmentClient(
            "https://api.example.test",
            tenant_id=tenant_id,
            source="leafpledge",
            transport=httpx.MockTransport(handler),
            sleep=(sleeps.append if sleeps is not None else lambda _s: None),
        )

    return factory
