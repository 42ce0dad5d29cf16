"""
Abstract base class for bank-data aggregator providers

Defines the common interface that all aggregator providers must implement.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from datetime import date

import httpx

from ..exceptions import BankProviderError


class BaseBankProvider(ABC):
    """
    Abstract base class for aggregator providers.

    All concrete providers (GoCardless, Plaid) must implement these methods
    so the import service can treat them uniformly. Amounts returned by
    fetch_transactions use one sign convention: negative means money out.
    """

    name: str = ""

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize provider with application settings.

        Args:
            settings: Settings instance with provider credentials
            transport: Optional httpx transport (used to stub the API in tests)
        """
        self.settings = settings
        self.transport = transport
        self.timeout = settings.http_timeout_seconds

    def _client(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={'Accept': 'application/json'}
        )

    @staticmethod
    async def _request(
        client: httpx.AsyncClient,
        method: str,
        url: str,
        action: str,
        **kwargs
    ) -> Any:
        """
        Perform a request and return the decoded JSON body.

        Raises:
            BankProviderError: On transport failure or non-2xx status (status and body embedded)
        """
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise BankProviderError(f"Failed to {action}: {e}") from e

        if not response.is_success:
            raise BankProviderError(f"Failed to {action}", response.status_code, response.text)
        return response.json()

    @abstractmethod
    async def start_link(
        self,
        bank: Dict[str, Any],
        redirect_url: str,
        reference: str
    ) -> Dict[str, Any]:
        """
        Start the consent flow for a bank.

        Args:
            bank: Bank descriptor (name, country, optional institution ids)
            redirect_url: Where the aggregator sends the user afterwards
            reference: Unique reference for this consent session

        Returns:
            Dictionary with keys:
            - requisition_id: str (identifier to complete the flow with)
            - authorization_url: str (URL or link token for the user)
            - institution_id: str (optional)
        """
        pass

    @abstractmethod
    async def finish_link(self, requisition_id: str) -> Dict[str, Any]:
        """
        Resolve a completed consent flow to its linked accounts.

        Returns:
            Dictionary with keys:
            - access_credential: str (stored encrypted on the connection)
            - item_id: str
            - institution_id: str (optional)
            - account_ids: List[str]

        Raises:
            RequisitionNotLinkedError: If the consent is not completed
        """
        pass

    @abstractmethod
    async def fetch_account(
        self,
        access_credential: str,
        account_id: str
    ) -> Dict[str, Any]:
        """
        Fetch account details and balance.

        Returns:
            Normalized account dictionary with keys:
            - account_id, name, account_type (AccountType), raw_type,
              raw_subtype, iban, masked_number, currency, balance (Decimal or None)
        """
        pass

    @abstractmethod
    async def fetch_balance(
        self,
        access_credential: str,
        account_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Fetch the preferred current balance.

        Returns:
            {'amount': Decimal, 'currency': str} or None if no balance is reported
        """
        pass

    @abstractmethod
    async def fetch_transactions(
        self,
        access_credential: str,
        account_id: str,
        date_from: Optional[date],
        date_to: Optional[date]
    ) -> List[Dict[str, Any]]:
        """
        Fetch booked and pending transactions for an account.

        Returns:
            List of normalized transaction dictionaries with keys:
            - external_id: str (native id or deterministic fallback)
            - date: date
            - amount: Decimal (signed, negative = money out)
            - currency: str
            - description: str
            - merchant: str (optional)
            - pending: bool
            - bank_transaction_code: str (optional)
            - proprietary_transaction_code: str (optional)
        """
        pass
