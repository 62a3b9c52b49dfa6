"""
Beacon — Clustered Activity Points Bot for Discord
====================================================
Turns gateway activity (messages, reactions, voice presence) into a points
economy with levels and leaderboards, hands out roles from reactions, and
keeps several bot processes ("nodes") aware of each other through Redis.

Package layout::

    beacon/
    ├── config.py          # YAML + env → typed Python config
    ├── constants.py       # Point values, level formula, cache key layout
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models + ActivityType
    ├── engine/
    │   ├── stats.py       # UserStats, LeaderboardEntry
    │   ├── points.py      # Pure point math (messages, voice, levels)
    │   └── cache.py       # Redis coordination cache
    ├── services/
    │   ├── points_ledger.py     # Award protocol, stats, leaderboards, streaks
    │   ├── voice_tracker.py     # Voice session state machine + accrual
    │   ├── reaction_roles.py    # Reaction → role mapping engine
    │   ├── node_coordinator.py  # Heartbeats + cluster discovery
    │   └── retention_service.py # Age-based cleanup
    └── bot/
        ├── core.py        # Bot subclass, service wiring
        └── cogs/          # Thin gateway → service glue
"""

__version__ = "0.1.0"
