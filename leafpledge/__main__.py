"""
leafpledge.__main__ — Entry point for ``python -m leafpledge``
==============================================================

Wiring:
1. Load .env (secrets, ``DATABASE_URL``).
2. Load config.yaml (fulfillment endpoint, transport, batch cadence).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Run one command against the SQL-backed key-value store.

Commands::

    python -m leafpledge batch                       # one batch pledge pass
    python -m leafpledge event payload.json -t ACME  # feed one webhook payload
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from functools import partial

from dotenv import load_dotenv

from leafpledge.config import LeafpledgeConfig, load_config
from leafpledge.database.engine import create_db_engine, init_db
from leafpledge.database.kv_store import KeyValueStore, SqlKeyValueStore
from leafpledge.services.batch_pledge import handle_batch_trigger
from leafpledge.services.fulfillment import FulfillmentClient, client_for_tenant
from leafpledge.services.issue_events import EventStatus, handle_issue_updated
from leafpledge.services.tenant_config import get_account

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("leafpledge")


def _client_factory(store: KeyValueStore, cfg: LeafpledgeConfig, tenant_id: str) -> FulfillmentClient:
    return client_for_tenant(cfg, tenant_id, get_account(store, tenant_id))


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="leafpledge")
    parser.add_argument("--config", default="config.yaml", help="path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("batch", help="run one batch pledge pass over all tenants")

    event = sub.add_parser("event", help="process one issue-updated webhook payload")
    event.add_argument("file", help="JSON payload file")
    event.add_argument("-t", "--tenant", required=True, help="tenant id")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run one command."""
    args = _parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Infrastructure configuration.
    cfg = load_config(args.config)
    logger.info("Config loaded — fulfillment API: %s", cfg.fulfillment_base_url)

    # 3. Database.
    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        return 1
    init_db(engine)
    store = SqlKeyValueStore(engine)
    factory = partial(_client_factory, store, cfg)

    # 4. Command.
    if args.command == "batch":
        report = handle_batch_trigger(
            store,
            factory,
            period_type=cfg.batch_period_type,
            lease_seconds=cfg.batch_lease_seconds,
        )
        return 0 if report is not None and report.failed == 0 else 1

    with open(args.file, encoding="utf-8") as fh:
        payload = json.load(fh)
    outcome = handle_issue_updated(store, args.tenant, payload, client_factory=factory)
    logger.info("Event outcome: %s", outcome.status)
    return 1 if outcome.status is EventStatus.ERROR else 0


if __name__ == "__main__":
    sys.exit(main())
