"""Scheduler for the daily balance sync and transaction import."""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from backend.app.models import BankProviderType
from .jobs import run_scheduled_balance_sync, run_scheduled_transaction_import

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


def build_scheduler(settings, session_factory) -> AsyncIOScheduler:
    """Create a scheduler with one balance-sync and one import job per provider."""
    scheduler = AsyncIOScheduler()
    balance_trigger = CronTrigger.from_crontab(settings.balance_sync_cron)
    import_trigger = CronTrigger.from_crontab(settings.transaction_import_cron)

    for provider_type in BankProviderType:
        name = provider_type.value.lower()
        scheduler.add_job(
            run_scheduled_balance_sync,
            balance_trigger,
            args=[session_factory, provider_type],
            id=f"{name}-balance-sync",
            replace_existing=True,
        )
        scheduler.add_job(
            run_scheduled_transaction_import,
            import_trigger,
            args=[session_factory, provider_type],
            kwargs={'days': settings.scheduled_import_days},
            id=f"{name}-transaction-import",
            replace_existing=True,
        )
    return scheduler


def start_scheduler(settings, session_factory) -> None:
    """Start the sync scheduler. Must be called from a running event loop."""
    global _scheduler
    _scheduler = build_scheduler(settings, session_factory)
    _scheduler.start()
    logger.info(f"Bank sync scheduler started: balances '{settings.balance_sync_cron}', "
                f"transactions '{settings.transaction_import_cron}'")


def shutdown_scheduler() -> None:
    """Shutdown the sync scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Bank sync scheduler stopped")
