"""
Background jobs for bank synchronization.

Each job opens its own database session and closes it when done, so jobs
can run outside a request (scheduler, concurrent triggers).
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Callable, Dict, Any, List, Optional, Sequence

from sqlalchemy.orm import Session

from backend.app.models import Family, BankConnection, BankProviderType
from .service import BankIntegrationService, SyncResult

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def families_with_provider(db: Session, provider_type: BankProviderType) -> List[int]:
    """Ids of families with at least one connection of the given provider."""
    rows = db.query(BankConnection.family_id).filter(
        BankConnection.provider == provider_type
    ).distinct().order_by(BankConnection.family_id).all()
    return [row[0] for row in rows]


def _get_family(db: Session, family_id: int) -> Family:
    family = db.query(Family).filter(Family.id == family_id).first()
    if not family:
        raise ValueError(f"Family {family_id} not found")
    return family


async def run_balance_sync(
    session_factory: SessionFactory,
    family_id: int,
    provider_type: BankProviderType,
    **service_kwargs
) -> SyncResult:
    """Sync balances for one family in a dedicated session."""
    db = session_factory()
    try:
        family = _get_family(db, family_id)
        service = BankIntegrationService(db, **service_kwargs)
        return await service.sync_balances(family, provider_type)
    finally:
        db.close()


async def run_transaction_import(
    session_factory: SessionFactory,
    family_id: int,
    provider_type: BankProviderType,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    **service_kwargs
) -> SyncResult:
    """Import transactions for one family in a dedicated session."""
    db = session_factory()
    try:
        family = _get_family(db, family_id)
        service = BankIntegrationService(db, **service_kwargs)
        return await service.import_transactions(family, date_from, date_to, provider_type)
    finally:
        db.close()


async def run_scheduled_balance_sync(
    session_factory: SessionFactory,
    provider_type: BankProviderType,
    **service_kwargs
) -> Dict[int, Any]:
    """
    Daily balance sync across all families connected to a provider.

    A failing family is logged and skipped.

    Returns:
        {family_id: SyncResult or error message}
    """
    db = session_factory()
    try:
        family_ids = families_with_provider(db, provider_type)
    finally:
        db.close()

    logger.info(f"Scheduled {provider_type.value} balance sync for {len(family_ids)} families")

    results: Dict[int, Any] = {}
    for family_id in family_ids:
        try:
            results[family_id] = await run_balance_sync(session_factory, family_id, provider_type, **service_kwargs)
        except Exception as e:
            logger.error(f"Scheduled balance sync failed for family {family_id}: {e}")
            results[family_id] = str(e)
    return results


async def run_scheduled_transaction_import(
    session_factory: SessionFactory,
    provider_type: BankProviderType,
    days: int = 7,
    **service_kwargs
) -> Dict[int, Any]:
    """
    Daily transaction import across all families connected to a provider,
    covering the last `days` days.

    Returns:
        {family_id: SyncResult or error message}
    """
    db = session_factory()
    try:
        family_ids = families_with_provider(db, provider_type)
    finally:
        db.close()

    date_to = date.today()
    date_from = date_to - timedelta(days=days)
    logger.info(f"Scheduled {provider_type.value} transaction import for {len(family_ids)} families "
                f"({date_from} to {date_to})")

    results: Dict[int, Any] = {}
    for family_id in family_ids:
        try:
            results[family_id] = await run_transaction_import(
                session_factory, family_id, provider_type, date_from, date_to, **service_kwargs
            )
        except Exception as e:
            logger.error(f"Scheduled transaction import failed for family {family_id}: {e}")
            results[family_id] = str(e)
    return results


async def import_all_providers(
    session_factory: SessionFactory,
    family_id: int,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    provider_types: Sequence[BankProviderType] = tuple(BankProviderType),
    **service_kwargs
) -> Dict[str, Dict[str, Any]]:
    """
    Run the transaction import of every provider concurrently.

    All imports run to completion regardless of the others failing.

    Returns:
        {provider: {'status': 'success', 'result': {...}} or {'status': 'failed', 'error': str}}
    """
    results = await asyncio.gather(
        *(run_transaction_import(session_factory, family_id, p, date_from, date_to, **service_kwargs)
          for p in provider_types),
        return_exceptions=True
    )

    report: Dict[str, Dict[str, Any]] = {}
    for provider_type, result in zip(provider_types, results):
        if isinstance(result, Exception):
            logger.warning(f"{provider_type.value} import failed for family {family_id}: {result}")
            report[provider_type.value] = {'status': 'failed', 'error': str(result)}
        else:
            report[provider_type.value] = {'status': 'success', 'result': result.to_dict()}
    return report
