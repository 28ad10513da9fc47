"""Entry point for the copy-trading engine."""

from __future__ import annotations

import asyncio
import logging

from copytrader.config import PAPER_TRADING_ENABLED, TRACKED_WALLET, setup_logging, validate_config
from copytrader.scheduler import CopyTraderScheduler

logger = logging.getLogger(__name__)


async def _main() -> None:
    setup_logging()
    try:
        validate_config()
    except ValueError:
        logger.error("invalid_config", exc_info=True)
        raise
    logger.info(
        "copytrader_starting",
        extra={"wallet": TRACKED_WALLET, "mode": "paper" if PAPER_TRADING_ENABLED else "live"},
    )

    scheduler = CopyTraderScheduler()
    await scheduler.start()


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
