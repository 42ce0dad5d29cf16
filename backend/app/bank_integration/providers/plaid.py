"""
Plaid Provider Implementation

Plaid covers US/CA/UK institutions. The consent flow runs through Plaid Link
in the browser: the backend creates a link token, the frontend hands back a
public token, which is exchanged for a long-lived access token.

Documentation: https://plaid.com/docs/api/
"""

import logging
from typing import Dict, Any, List, Optional
from datetime import date

import httpx

from backend.app.models import BankProviderType
from .base import BaseBankProvider
from ..mapping import map_plaid_account_type, to_decimal

logger = logging.getLogger(__name__)

PLAID_API_VERSION = '2020-09-14'

# transactions/get page size (Plaid maximum is 500)
TRANSACTIONS_PAGE_SIZE = 500


class PlaidProvider(BaseBankProvider):
    """
    Plaid API integration (direct REST calls).

    Flow:
    - start_link creates a link token; its value is both the link handle and
      what the frontend passes to Plaid Link
    - finish_link exchanges the public token returned by Plaid Link
    - accounts/get and transactions/get read data with the access token
    """

    name = BankProviderType.PLAID.value

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(settings, transport)
        self.api_base_url = settings.plaid_api_base_url.rstrip('/')
        self.client_id = settings.plaid_client_id
        self.secret = settings.plaid_secret
        self.default_currency = settings.plaid_default_currency
        self.client_name = settings.plaid_client_name

    async def _post(self, path: str, action: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with self._client(self.api_base_url) as client:
            return await self._request(
                client, 'POST', path, action,
                json=body,
                headers={
                    'PLAID-CLIENT-ID': self.client_id or '',
                    'PLAID-SECRET': self.secret or '',
                    'Plaid-Version': PLAID_API_VERSION
                }
            )

    async def create_link_token(self, client_user_id: str, redirect_url: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a Plaid Link token for a family.

        Returns:
            {'link_token': str, 'expiration': str}
        """
        body = {
            'client_name': self.client_name,
            'user': {'client_user_id': client_user_id},
            'products': ['transactions'],
            'country_codes': ['US'],
            'language': 'en'
        }
        # Plaid only accepts https redirect URIs registered on the dashboard
        if redirect_url and redirect_url.startswith('https://'):
            body['redirect_uri'] = redirect_url

        data = await self._post('/link/token/create', "create link token", body)
        return {
            'link_token': data['link_token'],
            'expiration': data.get('expiration')
        }

    async def exchange_public_token(self, public_token: str) -> Dict[str, Any]:
        """Exchange a Plaid Link public token for an access token and item id."""
        data = await self._post('/item/public_token/exchange', "exchange public token", {
            'public_token': public_token
        })
        return {
            'access_token': data['access_token'],
            'item_id': data['item_id']
        }

    async def get_accounts(
        self,
        access_token: str,
        account_ids: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        body = {'access_token': access_token}
        if account_ids:
            body['options'] = {'account_ids': account_ids}
        return await self._post('/accounts/get', "fetch accounts", body)

    async def get_transactions(
        self,
        access_token: str,
        start_date: date,
        end_date: date,
        account_ids: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch all transactions in a date range, following offset pagination
        until total_transactions is reached.
        """
        transactions: List[Dict[str, Any]] = []
        offset = 0

        while True:
            options = {'count': TRANSACTIONS_PAGE_SIZE, 'offset': offset}
            if account_ids:
                options['account_ids'] = account_ids

            data = await self._post('/transactions/get', "fetch transactions", {
                'access_token': access_token,
                'start_date': start_date.isoformat(),
                'end_date': end_date.isoformat(),
                'options': options
            })

            page = data.get('transactions') or []
            transactions.extend(page)
            total = data.get('total_transactions', len(transactions))

            if not page or len(transactions) >= total:
                break
            offset = len(transactions)

        return transactions

    async def start_link(
        self,
        bank: Dict[str, Any],
        redirect_url: str,
        reference: str
    ) -> Dict[str, Any]:
        link = await self.create_link_token(reference, redirect_url)
        return {
            'requisition_id': link['link_token'],
            'authorization_url': link['link_token'],
            'institution_id': (bank.get('institution_ids') or {}).get('plaid')
        }

    async def finish_link(self, requisition_id: str) -> Dict[str, Any]:
        # For Plaid the completion handle is the public token from Plaid Link
        exchanged = await self.exchange_public_token(requisition_id)
        accounts = await self.get_accounts(exchanged['access_token'])

        return {
            'access_credential': exchanged['access_token'],
            'item_id': exchanged['item_id'],
            'institution_id': (accounts.get('item') or {}).get('institution_id'),
            'account_ids': [a['account_id'] for a in accounts.get('accounts') or []]
        }

    async def fetch_account(self, access_credential: str, account_id: str) -> Dict[str, Any]:
        data = await self.get_accounts(access_credential, [account_id])
        account = _find_account(data, account_id)
        return self._normalize_account(account)

    async def fetch_balance(self, access_credential: str, account_id: str) -> Optional[Dict[str, Any]]:
        data = await self.get_accounts(access_credential, [account_id])
        balances = _find_account(data, account_id).get('balances') or {}
        current = balances.get('current')
        if current is None:
            current = balances.get('available')
        if current is None:
            return None
        return {
            'amount': to_decimal(current),
            'currency': balances.get('iso_currency_code') or self.default_currency
        }

    async def fetch_transactions(
        self,
        access_credential: str,
        account_id: str,
        date_from: Optional[date],
        date_to: Optional[date]
    ) -> List[Dict[str, Any]]:
        date_to = date_to or date.today()
        date_from = date_from or date_to
        raw = await self.get_transactions(access_credential, date_from, date_to, [account_id])

        logger.info(f"Plaid account {account_id}: {len(raw)} transactions")
        return [self._normalize_transaction(tx) for tx in raw if tx.get('account_id', account_id) == account_id]

    def _normalize_account(self, account: Dict[str, Any]) -> Dict[str, Any]:
        """
        Convert a Plaid account to internal format.

        Plaid account format:
        {
            "account_id": "BxBXxLj1m4HMXBm9WZZmCWVbPjX16EHwv99vp",
            "name": "Plaid Checking",
            "mask": "0000",
            "type": "depository",
            "subtype": "checking",
            "balances": {"available": 100, "current": 110, "iso_currency_code": "USD"}
        }
        """
        balances = account.get('balances') or {}
        current = balances.get('current')
        mask = account.get('mask')

        return {
            'account_id': account['account_id'],
            'name': account.get('name') or account.get('official_name') or f"Account {mask or ''}".strip(),
            'account_type': map_plaid_account_type(account.get('type'), account.get('subtype')),
            'raw_type': account.get('type'),
            'raw_subtype': account.get('subtype'),
            'iban': None,
            'masked_number': f"****{mask}" if mask else None,
            'currency': balances.get('iso_currency_code') or self.default_currency,
            'balance': to_decimal(current) if current is not None else None
        }

    def _normalize_transaction(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        """
        Convert a Plaid transaction to internal format.

        Plaid reports money out as a positive amount; the sign is flipped
        so negative means money out like every other provider.
        """
        name = tx.get('name') or 'Plaid Transaction'
        merchant = tx.get('merchant_name') or name

        return {
            'external_id': tx['transaction_id'],
            'date': date.fromisoformat(tx['date']),
            'amount': -to_decimal(tx.get('amount')),
            'currency': tx.get('iso_currency_code') or self.default_currency,
            'description': name.strip(),
            'merchant': merchant.strip(),
            'pending': bool(tx.get('pending')),
            'bank_transaction_code': None,
            'proprietary_transaction_code': tx.get('transaction_code')
        }


def _find_account(data: Dict[str, Any], account_id: str) -> Dict[str, Any]:
    for account in data.get('accounts') or []:
        if account.get('account_id') == account_id:
            return account
    raise ValueError(f"Plaid account {account_id} not returned by accounts/get")
