"""
beacon.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for the soft, per-deployment settings (intervals,
retention windows, node identity).  Secrets and connection strings stay in
the environment (``.env``): ``DISCORD_TOKEN``, ``DATABASE_URL``,
``REDIS_URL``.

Every bot process in a cluster needs its own ``node_id``.  It is injected,
never computed: ``NODE_ID`` in the environment wins over the YAML value so
the same ``config.yaml`` can be shared by several containers.

Usage::

    from beacon.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.node_id)           # "node-a"
    print(cfg.heartbeat_interval_seconds)  # 30
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BeaconConfig:
    """Immutable configuration loaded from ``config.yaml`` (+ ``NODE_ID``)."""

    # Identity
    node_id: str

    # Discord
    bot_prefix: str = "!"

    # Cluster coordination
    heartbeat_interval_seconds: int = 30
    node_ttl_seconds: int = 60

    # Voice
    voice_accrual_seconds: int = 60
    stale_voice_session_hours: int = 6

    # Retention
    daily_activity_retention_days: int = 90
    transaction_retention_days: int = 365

    # Logging
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> BeaconConfig:
    """Read *path* and return a :class:`BeaconConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If no node id is configured (neither ``NODE_ID`` nor ``node_id``).
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    node_id = os.getenv("NODE_ID") or raw.get("node_id")
    if not node_id:
        raise KeyError("node_id (set NODE_ID or add node_id to config.yaml)")

    return BeaconConfig(
        node_id=str(node_id),
        bot_prefix=raw.get("bot_prefix", "!"),
        heartbeat_interval_seconds=int(raw.get("heartbeat_interval_seconds", 30)),
        node_ttl_seconds=int(raw.get("node_ttl_seconds", 60)),
        voice_accrual_seconds=int(raw.get("voice_accrual_seconds", 60)),
        stale_voice_session_hours=int(raw.get("stale_voice_session_hours", 6)),
        daily_activity_retention_days=int(raw.get("daily_activity_retention_days", 90)),
        transaction_retention_days=int(raw.get("transaction_retention_days", 365)),
        log_level=str(raw.get("log_level", "INFO")).upper(),
    )
