from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import date, datetime
from decimal import Decimal

from .models import BankProviderType


class TokenData(BaseModel):
    email: Optional[str] = None


# Bank Integration Schemas

class BankInfo(BaseModel):
    """Bank descriptor chosen by the user in the bank selector."""
    name: str
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    display_name: Optional[str] = None
    logo: Optional[str] = None
    institution_ids: Dict[str, str] = Field(default_factory=dict)  # e.g. {"gocardless": "DNB_DNBANOKK"}


class RequisitionRequest(BaseModel):
    bank: BankInfo
    redirect_url: str
    provider: BankProviderType = BankProviderType.GOCARDLESS


class RequisitionResponse(BaseModel):
    requisition_id: str
    authorization_url: str
    institution_id: Optional[str] = None
    provider: str


class CompleteConnectionRequest(BaseModel):
    requisition_id: str  # Plaid: the public token returned by Plaid Link
    bank: BankInfo
    provider: BankProviderType = BankProviderType.GOCARDLESS
    import_days: int = Field(default=90, ge=1, le=730)


class ImportTransactionsRequest(BaseModel):
    provider: BankProviderType = BankProviderType.GOCARDLESS
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class ImportAllRequest(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class SyncBalancesRequest(BaseModel):
    provider: BankProviderType = BankProviderType.GOCARDLESS


class AccountOutcome(BaseModel):
    provider_account_id: str
    financial_account_id: Optional[int] = None
    updated: bool
    imported: int
    duplicates: int
    ok: bool
    error: Optional[str] = None


class SyncResultResponse(BaseModel):
    provider: str
    connection_id: Optional[int] = None
    accounts_updated: int
    transactions_imported: int
    failed: int
    accounts: List[AccountOutcome]
    message: Optional[str] = None


class ConnectedAccount(BaseModel):
    id: int
    provider_account_id: str
    account_name: str
    account_type: Optional[str] = None
    account_subtype: Optional[str] = None
    iban: Optional[str] = None
    financial_account_id: Optional[int] = None
    balance: Optional[Decimal] = None
    currency: Optional[str] = None


class BankConnection(BaseModel):
    id: int
    provider: BankProviderType
    item_id: str
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None
    institution_logo: Optional[str] = None
    institution_country: Optional[str] = None
    created_at: Optional[datetime] = None
    connected_accounts: List[ConnectedAccount] = []

    class Config:
        from_attributes = True
