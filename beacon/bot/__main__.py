"""
beacon.bot.__main__ — Entry point for ``python -m beacon.bot``
==============================================================

Wiring:
1. Load .env (secrets and connection strings).
2. Load config.yaml (soft settings + node identity).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Connect the Redis coordination cache.
5. Create the BeaconBot and hand it config + engine + cache.
6. Start the bot (blocking — runs the asyncio event loop).

Run one process per node::

    NODE_ID=node-a python -m beacon.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from beacon.bot.core import BeaconBot
from beacon.config import load_config
from beacon.database.engine import create_db_engine, init_db
from beacon.engine.cache import CoordinationCache, create_redis_client

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("beacon")


def main() -> None:
    """Bootstrap and run one Beacon node."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    try:
        cfg = load_config()
    except (FileNotFoundError, KeyError) as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    logging.getLogger().setLevel(cfg.log_level)
    logger.info("Config loaded — node %s", cfg.node_id)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Redis.
    cache = CoordinationCache(create_redis_client())

    # 5. Bot.
    bot = BeaconBot(cfg=cfg, engine=engine, cache=cache)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Beacon node %s…", cfg.node_id)
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
