"""
Leafpledge — Issue Completions → Leaves → Trees
================================================
Turns completed work-tracker issues into an impact currency (leaves),
converts accumulated leaves into trees, and pledges those trees to funded
planting projects through an external fulfillment API, per tenant.

Package layout::

    leafpledge/
    ├── __main__.py        # python -m leafpledge batch | event FILE
    ├── config.py          # YAML → typed Python config (infrastructure only)
    ├── errors.py          # Exception hierarchy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session helper
    │   ├── models.py      # kv_entries table
    │   └── kv_store.py    # Key-value store adapters (memory, SQL)
    ├── engine/            # Pure calculation, no I/O
    │   ├── issue.py       # IssueSnapshot / ChangeDelta envelopes
    │   ├── tenant_settings.py # Tenant config + funding pydantic models
    │   ├── validation.py  # ValidationResult envelope
    │   ├── scope.py       # Scope filter
    │   ├── expression.py  # Sandboxed scoring-expression parser
    │   ├── completion.py  # Completion + reopen detection
    │   ├── scorer.py      # Leaves / trees scoring + custom rules
    │   └── allocator.py   # Percentage funding allocation
    └── services/          # Stateful pipeline over the key-value store
        ├── storage_keys.py   # Key scheme + award id hashing
        ├── tenant_config.py  # Default-merged tenant snapshots
        ├── tenant_directory.py
        ├── ledger.py         # Award idempotency + issue history
        ├── aggregation.py    # Time-bucketed counters
        ├── fulfillment.py    # Fulfillment API client (httpx)
        ├── issue_events.py   # Event path
        └── batch_pledge.py   # Scheduled pledge batch
"""

__version__ = "0.1.0"
