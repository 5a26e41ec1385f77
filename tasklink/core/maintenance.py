"""
Background task that periodically flags connections whose webhooks went quiet.
"""

import asyncio
from typing import Optional

from tasklink.core.config import settings
from tasklink.core.logging import get_logger
from tasklink.services.github.health import ConnectionHealthMonitor

logger = get_logger(__name__)


async def maintenance_task(
    monitor: ConnectionHealthMonitor, interval: Optional[float] = None
) -> None:
    """
    Loop forever:
    1. Record a failure on every stale live connection
    2. Sleep ``interval`` seconds
    """
    interval = interval or settings.MAINTENANCE_INTERVAL_SECONDS
    logger.info("Maintenance task started (every %.0fs)", interval)
    while True:
        try:
            await monitor.check_stale_connections()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Stale connection check failed: %s", e, exc_info=True)
        await asyncio.sleep(interval)
