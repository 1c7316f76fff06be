#!/usr/bin/env python3
"""
Run one token refresh sweep.

Meant for cron or a platform scheduler when the in-process refresh loop is
disabled. Prints the sweep result and exits non-zero if any refresh failed.

Usage:
    python3 scripts/run_token_refresh.py
"""

import asyncio
import json
import logging
import os
import sys

# Add the parent directory to the path so we can import notifyhub modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from notifyhub.config import get_settings
from notifyhub.crypto import build_cipher
from notifyhub.db import AsyncSessionLocal, engine
from notifyhub.providers.registry import build_adapters
from notifyhub.services.refresh_scheduler import TokenRefreshScheduler


async def main() -> int:
    settings = get_settings()
    scheduler = TokenRefreshScheduler(
        AsyncSessionLocal, build_adapters(settings), build_cipher(settings), settings
    )
    try:
        result = await scheduler.run_sweep()
    finally:
        await engine.dispose()

    print(json.dumps(result, indent=2))
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(main()))
