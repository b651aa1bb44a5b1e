"""
Background loops started with the application: monthly usage resets and
the import retention sweep
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from config.settings import settings
from models.entitlement import current_period

logger = logging.getLogger(__name__)


async def run_periodic(name: str, interval: float, func: Callable[[], Awaitable[object]]) -> None:
    """Call func every `interval` seconds until cancelled; errors are logged, not fatal."""
    logger.info(f"Starting periodic task '{name}' every {interval}s")
    while True:
        try:
            await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Periodic task '{name}' failed: {e}", exc_info=True)
        await asyncio.sleep(interval)


class MonthlyResetTrigger:
    """
    Runs the monthly reset once per calendar month.

    Checked on every tick; the reset fires on the first tick of a new month
    (including the first tick after startup), so it can lag the rollover by
    up to one check interval.
    """

    def __init__(self, reset: Callable[[], Awaitable[int]]):
        self.reset = reset
        self.last_period: Optional[str] = None

    async def __call__(self) -> Optional[int]:
        period = current_period()
        if period == self.last_period:
            return None
        logger.info(f"Month rollover detected ({self.last_period} -> {period}), resetting limits")
        count = await self.reset()
        self.last_period = period
        return count


def start_background_tasks(entitlement_service_factory, import_jobs, interval: Optional[float] = None) -> list:
    """
    Create the scheduler tasks. Returns them so the caller can cancel them on shutdown.

    Args:
        entitlement_service_factory: Callable returning an EntitlementService
        import_jobs: ImportJobManager whose retention sweep should run
        interval: Check interval in seconds (defaults to SWEEP_INTERVAL_SECONDS)
    """
    interval = interval or settings.sweep_interval_seconds

    async def reset_limits():
        return await entitlement_service_factory().reset_monthly_limits()

    return [
        asyncio.create_task(run_periodic("monthly-reset", interval, MonthlyResetTrigger(reset_limits))),
        asyncio.create_task(run_periodic("import-retention-sweep", interval, import_jobs.cleanup_old_imports)),
    ]
