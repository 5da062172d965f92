"""
leafpledge.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for **infrastructure-only** settings (fulfillment
API endpoint, transport discipline, batch cadence).  Per-tenant tuning
(scoring, completion, scope, funding) lives in the key-value store and is
loaded by :mod:`leafpledge.services.tenant_config`.

Usage::

    from leafpledge.config import load_config

    cfg = load_config()                 # reads ./config.yaml by default
    print(cfg.fulfillment_base_url)     # "https://api.afforestation.org"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LeafpledgeConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Fulfillment API
    fulfillment_base_url: str
    source_name: str

    # Transport discipline
    request_timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0

    # Batch pledging
    batch_period_type: str = "weekly"
    batch_lease_seconds: int = 900


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> LeafpledgeConfig:
    """Read *path* and return a :class:`LeafpledgeConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return LeafpledgeConfig(
        fulfillment_base_url=raw["fulfillment_base_url"].rstrip("/"),
        source_name=raw["source_name"],
        request_timeout_seconds=float(raw.get("request_timeout_seconds", 30.0)),
        max_attempts=int(raw.get("max_attempts", 3)),
        backoff_base_seconds=float(raw.get("backoff_base_seconds", 2.0)),
        batch_period_type=str(raw.get("batch_period_type", "weekly")),
        batch_lease_seconds=int(raw.get("batch_lease_seconds", 900)),
    )
