"""
GoCardless Bank Account Data Provider Implementation

GoCardless (formerly Nordigen) is a PSD2 aggregator covering European banks.
Access is granted per institution through an end-user agreement and a
requisition (redirect-based consent session).

Documentation: https://developer.gocardless.com/bank-account-data/overview
"""

import logging
from typing import Dict, Any, List, Optional
from datetime import date

import httpx

from backend.app.models import BankProviderType
from .base import BaseBankProvider
from ..exceptions import BankProviderError, InstitutionNotFoundError, RequisitionNotLinkedError
from ..tokens import GoCardlessTokenManager
from ..institutions import find_institution
from ..mapping import select_balance, map_gocardless_account_type, mask_account_number, to_decimal
from ..deduplication import TransactionDeduplicator

logger = logging.getLogger(__name__)

# Requisition status code for a completed consent
REQUISITION_LINKED = 'LN'

# End-user agreement policy
MAX_HISTORICAL_DAYS = 90
ACCESS_VALID_FOR_DAYS = 90
ACCESS_SCOPE = ['balances', 'details', 'transactions']


class GoCardlessProvider(BaseBankProvider):
    """
    GoCardless Bank Account Data API integration (direct REST calls).

    Flow:
    - resolve institution id for the bank
    - create end-user agreement (90 days history / validity)
    - create requisition, redirect user to its link
    - after redirect, read requisition accounts and fetch details/balances/transactions
    """

    name = BankProviderType.GOCARDLESS.value

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None,
                 token_manager: Optional[GoCardlessTokenManager] = None):
        super().__init__(settings, transport)
        self.api_base_url = settings.gocardless_api_base_url.rstrip('/')
        self.default_currency = settings.gocardless_default_currency
        self.user_language = settings.gocardless_user_language
        self.token_manager = token_manager or GoCardlessTokenManager(
            secret_id=settings.gocardless_secret_id,
            secret_key=settings.gocardless_secret_key,
            client_factory=lambda: self._client(self.api_base_url)
        )

    async def _authorized_request(self, method: str, path: str, action: str, **kwargs) -> Any:
        """Call the API with the cached access token. A 401 drops the token so the next call re-authenticates."""
        token = await self.token_manager.get_access_token()
        async with self._client(self.api_base_url) as client:
            try:
                return await self._request(
                    client, method, path, action,
                    headers={'Authorization': f'Bearer {token}'},
                    **kwargs
                )
            except BankProviderError as e:
                if e.status_code == 401:
                    logger.warning(f"GoCardless rejected the access token ({action}), invalidating it")
                    self.token_manager.invalidate()
                raise

    async def _get(self, path: str, action: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._authorized_request('GET', path, action, params=params)

    async def _post(self, path: str, action: str, body: Dict[str, Any]) -> Any:
        return await self._authorized_request('POST', path, action, json=body)

    # Institution / agreement

    async def list_institutions(self, country: str) -> List[Dict[str, Any]]:
        """List institutions available in a country (ISO 3166 alpha-2)."""
        data = await self._get('/institutions/', "list institutions", params={'country': country.upper()})
        return data if isinstance(data, list) else data.get('results', [])

    async def resolve_institution(self, bank: Dict[str, Any]) -> str:
        """
        Return the GoCardless institution id for a bank descriptor.

        Uses the descriptor's explicit GoCardless id when present, otherwise
        matches against the institution list for the bank's country.

        Raises:
            InstitutionNotFoundError: If no institution matches
        """
        explicit = (bank.get('institution_ids') or {}).get('gocardless')
        if explicit:
            return explicit

        country = bank.get('country')
        if not country:
            raise InstitutionNotFoundError(f"Bank not found: {bank.get('name')} (no country given)")

        institutions = await self.list_institutions(country)
        institution_id = find_institution(bank, institutions)
        if not institution_id:
            raise InstitutionNotFoundError(f"Bank not found: {bank.get('name')} ({country})")

        logger.info(f"Resolved {bank.get('name')!r} ({country}) to institution {institution_id}")
        return institution_id

    async def create_agreement(self, institution_id: str) -> str:
        """Create an end-user agreement for the institution and return its id."""
        data = await self._post('/agreements/enduser/', "create end user agreement", {
            'institution_id': institution_id,
            'max_historical_days': MAX_HISTORICAL_DAYS,
            'access_valid_for_days': ACCESS_VALID_FOR_DAYS,
            'access_scope': ACCESS_SCOPE
        })
        return data['id']

    # Requisition

    async def create_requisition(
        self,
        institution_id: str,
        agreement_id: str,
        redirect_url: str,
        reference: str
    ) -> Dict[str, Any]:
        """
        Create a requisition (consent session).

        Returns:
            {'requisition_id': str, 'authorization_url': str}
        """
        data = await self._post('/requisitions/', "create requisition", {
            'institution_id': institution_id,
            'redirect': redirect_url,
            'reference': reference,
            'agreement': agreement_id,
            'user_language': self.user_language
        })
        return {
            'requisition_id': data['id'],
            'authorization_url': data['link']
        }

    async def get_requisition(self, requisition_id: str) -> Dict[str, Any]:
        return await self._get(f'/requisitions/{requisition_id}/', "fetch requisition")

    async def start_link(
        self,
        bank: Dict[str, Any],
        redirect_url: str,
        reference: str
    ) -> Dict[str, Any]:
        institution_id = await self.resolve_institution(bank)
        agreement_id = await self.create_agreement(institution_id)
        requisition = await self.create_requisition(institution_id, agreement_id, redirect_url, reference)
        requisition['institution_id'] = institution_id
        return requisition

    async def finish_link(self, requisition_id: str) -> Dict[str, Any]:
        requisition = await self.get_requisition(requisition_id)

        status = requisition.get('status')
        if status != REQUISITION_LINKED:
            raise RequisitionNotLinkedError(
                f"Bank connection not completed (requisition {requisition_id} status: {status})"
            )

        return {
            # The requisition id is the long-lived handle for a GoCardless connection
            'access_credential': requisition_id,
            'item_id': requisition_id,
            'institution_id': requisition.get('institution_id'),
            'account_ids': list(requisition.get('accounts') or [])
        }

    # Accounts

    async def get_account_details(self, account_id: str) -> Dict[str, Any]:
        data = await self._get(f'/accounts/{account_id}/details/', "fetch account details")
        return data.get('account', data)

    async def get_account_balances(self, account_id: str) -> List[Dict[str, Any]]:
        data = await self._get(f'/accounts/{account_id}/balances/', "fetch account balances")
        return data.get('balances') or []

    async def get_account_transactions(
        self,
        account_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> Dict[str, List[Dict[str, Any]]]:
        params = {}
        if date_from:
            params['date_from'] = date_from.isoformat()
        if date_to:
            params['date_to'] = date_to.isoformat()

        data = await self._get(f'/accounts/{account_id}/transactions/', "fetch account transactions",
                               params=params or None)
        transactions = data.get('transactions') or {}
        return {
            'booked': transactions.get('booked') or [],
            'pending': transactions.get('pending') or []
        }

    async def fetch_account(self, access_credential: str, account_id: str) -> Dict[str, Any]:
        details = await self.get_account_details(account_id)
        balances = await self.get_account_balances(account_id)
        return self._normalize_account(account_id, details, balances)

    async def fetch_balance(self, access_credential: str, account_id: str) -> Optional[Dict[str, Any]]:
        balances = await self.get_account_balances(account_id)
        return self._normalize_balance(balances)

    async def fetch_transactions(
        self,
        access_credential: str,
        account_id: str,
        date_from: Optional[date],
        date_to: Optional[date]
    ) -> List[Dict[str, Any]]:
        data = await self.get_account_transactions(account_id, date_from, date_to)

        normalized = [self._normalize_transaction(account_id, tx, pending=False) for tx in data['booked']]
        normalized += [self._normalize_transaction(account_id, tx, pending=True) for tx in data['pending']]

        logger.info(f"GoCardless account {account_id}: {len(data['booked'])} booked, "
                    f"{len(data['pending'])} pending transactions")
        return normalized

    # Normalization

    def _normalize_balance(self, balances: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        selected = select_balance(balances)
        if not selected:
            return None
        amount_obj = selected.get('balanceAmount') or {}
        return {
            'amount': to_decimal(amount_obj.get('amount')),
            'currency': amount_obj.get('currency') or self.default_currency,
            'balance_type': selected.get('balanceType')
        }

    def _normalize_account(
        self,
        account_id: str,
        details: Dict[str, Any],
        balances: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Convert GoCardless account details + balances to internal format.

        GoCardless details format:
        {
            "resourceId": "abc",
            "iban": "NO9386011117947",
            "currency": "NOK",
            "name": "Brukskonto",
            "product": "Current Account",
            "cashAccountType": "CACC",
            "usage": "PRIV"
        }
        """
        balance = self._normalize_balance(balances)
        name = details.get('name') or details.get('displayName') or details.get('product') \
            or f"Account {account_id[-4:]}"
        currency = details.get('currency') or (balance or {}).get('currency') or self.default_currency

        return {
            'account_id': account_id,
            'name': name,
            'account_type': map_gocardless_account_type(details),
            'raw_type': details.get('cashAccountType') or details.get('usage'),
            'raw_subtype': details.get('product'),
            'iban': details.get('iban'),
            'masked_number': mask_account_number(details.get('iban') or details.get('bban') or account_id),
            'currency': currency,
            'balance': balance['amount'] if balance else None
        }

    def _normalize_transaction(self, account_id: str, tx: Dict[str, Any], pending: bool) -> Dict[str, Any]:
        """
        Convert a GoCardless transaction to internal format.

        GoCardless transaction format:
        {
            "transactionId": "2024011500001",
            "bookingDate": "2024-01-15",
            "valueDate": "2024-01-15",
            "transactionAmount": {"amount": "-5.47", "currency": "EUR"},
            "creditorName": "Starbucks",
            "remittanceInformationUnstructured": "Starbucks Coffee",
            "bankTransactionCode": "PMNT"
        }
        """
        amount_obj = tx.get('transactionAmount') or {}
        amount = to_decimal(amount_obj.get('amount'))
        reported_date = _parse_date(tx.get('bookingDate') or tx.get('valueDate'))
        tx_date = reported_date or date.today()

        structured = tx.get('remittanceInformationStructured')
        unstructured = tx.get('remittanceInformationUnstructured')
        if not unstructured and isinstance(tx.get('remittanceInformationUnstructuredArray'), list):
            unstructured = ' '.join(str(r) for r in tx['remittanceInformationUnstructuredArray'] if r)

        merchant = tx.get('creditorName') or tx.get('debtorName')
        description = unstructured or structured or tx.get('additionalInformation') or merchant \
            or 'GoCardless Transaction'

        external_id = tx.get('transactionId') or tx.get('internalTransactionId')
        if not external_id:
            external_id = TransactionDeduplicator.generate_external_id(
                prefix='gocardless',
                provider_account_id=account_id,
                amount=amount,
                transaction_date=reported_date,
                description=unstructured or ''
            )

        return {
            'external_id': external_id,
            'date': tx_date,
            'amount': amount,
            'currency': amount_obj.get('currency') or self.default_currency,
            'description': description.strip(),
            'merchant': merchant.strip() if merchant else None,
            'pending': pending,
            'bank_transaction_code': tx.get('bankTransactionCode'),
            'proprietary_transaction_code': tx.get('proprietaryBankTransactionCode')
        }


def _parse_date(date_str: Optional[str]) -> Optional[date]:
    if not date_str:
        return None
    try:
        return date.fromisoformat(date_str[:10])
    except (ValueError, TypeError):
        return None
