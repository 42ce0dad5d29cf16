"""
Bank Connection Routes

User-facing endpoints for:
- Connecting banks (requisition + completion)
- Importing transactions
- Syncing balances
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session, sessionmaker
from typing import List, Dict

from backend.database import get_db, get_session_factory
from backend.app import models, schemas
from backend.app.auth import get_current_family
from backend.app.bank_integration.service import BankIntegrationService, SyncResult
from backend.app.bank_integration.providers import BaseBankProvider, get_providers
from backend.app.bank_integration.jobs import import_all_providers
from backend.app.bank_integration.exceptions import (
    BankProviderError, InstitutionNotFoundError, RequisitionNotLinkedError, NoConnectedAccountsError
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank-connections", tags=["bank-connections"])


def get_bank_providers() -> Dict[models.BankProviderType, BaseBankProvider]:
    return get_providers()


def get_bank_service(
    db: Session = Depends(get_db),
    providers: Dict[models.BankProviderType, BaseBankProvider] = Depends(get_bank_providers)
) -> BankIntegrationService:
    return BankIntegrationService(db, providers=providers)


def _http_error(e: Exception) -> HTTPException:
    """Map bank integration errors to HTTP errors."""
    if isinstance(e, NoConnectedAccountsError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (InstitutionNotFoundError, RequisitionNotLinkedError, ValueError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


def _sync_response(result: SyncResult, message: str) -> schemas.SyncResultResponse:
    if result.failed:
        message = f"{message} ({len(result.failed)} accounts failed)"
    return schemas.SyncResultResponse(**result.to_dict(), message=message)


@router.post("/requisitions", response_model=schemas.RequisitionResponse)
async def create_requisition(
    request: schemas.RequisitionRequest,
    current_family: models.Family = Depends(get_current_family),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    Start connecting a bank.

    Example:
        POST /bank-connections/requisitions
        {
            "bank": {"name": "DNB", "country": "NO"},
            "redirect_url": "https://app.example.com/banking/callback"
        }

        Response:
        {
            "requisition_id": "8126e9fb-93c9-4228-937c-68f0383c2df7",
            "authorization_url": "https://ob.gocardless.com/psd2/start/...",
            "institution_id": "DNB_DNBANOKK",
            "provider": "GOCARDLESS"
        }
    """
    try:
        return await service.create_requisition(
            current_family,
            request.bank.model_dump(),
            request.redirect_url,
            request.provider
        )
    except (BankProviderError, InstitutionNotFoundError, ValueError) as e:
        raise _http_error(e)


@router.post("/complete", response_model=schemas.SyncResultResponse)
async def complete_connection(
    request: schemas.CompleteConnectionRequest,
    current_family: models.Family = Depends(get_current_family),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    Complete the connection after the user returns from the bank.

    Creates the connection, its accounts, and imports recent transactions.
    """
    try:
        result = await service.complete_connection(
            current_family,
            request.requisition_id,
            request.bank.model_dump(),
            request.provider,
            import_days=request.import_days
        )
    except (BankProviderError, RequisitionNotLinkedError, NoConnectedAccountsError, ValueError) as e:
        raise _http_error(e)

    return _sync_response(result, f"Successfully connected {result.accounts_updated} accounts")


@router.post("/import-transactions", response_model=schemas.SyncResultResponse)
async def import_transactions(
    request: schemas.ImportTransactionsRequest,
    current_family: models.Family = Depends(get_current_family),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    Import transactions from all connected accounts of a provider.

    Defaults to the last 7 days.
    """
    try:
        result = await service.import_transactions(
            current_family,
            request.date_from,
            request.date_to,
            request.provider
        )
    except (BankProviderError, NoConnectedAccountsError, ValueError) as e:
        raise _http_error(e)

    return _sync_response(result, f"Successfully imported {result.transactions_imported} transactions")


@router.post("/sync-balances", response_model=schemas.SyncResultResponse)
async def sync_balances(
    request: schemas.SyncBalancesRequest,
    current_family: models.Family = Depends(get_current_family),
    service: BankIntegrationService = Depends(get_bank_service)
):
    try:
        result = await service.sync_balances(current_family, request.provider)
    except (BankProviderError, ValueError) as e:
        raise _http_error(e)

    return _sync_response(result, f"Successfully updated {result.accounts_updated} account balances")


@router.post("/import-all")
async def import_all(
    request: schemas.ImportAllRequest,
    current_family: models.Family = Depends(get_current_family),
    session_factory: sessionmaker = Depends(get_session_factory),
    providers: Dict[models.BankProviderType, BaseBankProvider] = Depends(get_bank_providers)
) -> Dict[str, Dict]:
    """
    Import transactions from every provider concurrently.

    Each provider reports its own status; one failing does not affect the others.
    """
    return await import_all_providers(
        session_factory,
        current_family.id,
        request.date_from,
        request.date_to,
        providers=providers
    )


@router.get("/", response_model=List[schemas.BankConnection])
def list_connections(
    db: Session = Depends(get_db),
    current_family: models.Family = Depends(get_current_family)
):
    """
    List the family's bank connections with their connected accounts.
    """
    connections = db.query(models.BankConnection).filter(
        models.BankConnection.family_id == current_family.id
    ).order_by(models.BankConnection.id).all()

    return [
        schemas.BankConnection(
            id=c.id,
            provider=c.provider,
            item_id=c.item_id,
            institution_id=c.institution_id,
            institution_name=c.institution_name,
            institution_logo=c.institution_logo,
            institution_country=c.institution_country,
            created_at=c.created_at,
            connected_accounts=[
                schemas.ConnectedAccount(
                    id=a.id,
                    provider_account_id=a.provider_account_id,
                    account_name=a.account_name,
                    account_type=a.account_type,
                    account_subtype=a.account_subtype,
                    iban=a.iban,
                    financial_account_id=a.financial_account_id,
                    balance=a.financial_account.balance if a.financial_account else None,
                    currency=a.financial_account.currency if a.financial_account else None
                )
                for a in c.connected_accounts
            ]
        )
        for c in connections
    ]
