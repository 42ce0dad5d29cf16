"""
Bank Integration Service

Main orchestration service that handles:
- Consent (requisition / link) flow management
- Provider selection
- Account import and balance sync
- Transaction import with deduplication
"""

import time
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional, List, Tuple
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from backend.app.models import (
    Family, BankConnection, ConnectedAccount, FinancialAccount,
    BankProviderType, TransactionType, TransactionStatus
)

from .providers import BaseBankProvider, get_providers
from .encryption import TokenEncryption
from .deduplication import TransactionDeduplicator
from .exceptions import (
    BankIntegrationError, ProviderAuthError, NoConnectedAccountsError, with_prefix
)

logger = logging.getLogger(__name__)

# Default import window for manual and scheduled imports
DEFAULT_IMPORT_DAYS = 7


@dataclass
class AccountOutcome:
    """Result of processing one connected account."""
    provider_account_id: str
    financial_account_id: Optional[int] = None
    updated: bool = False
    imported: int = 0
    duplicates: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncResult:
    """
    Per-account outcomes of a multi-account operation.

    Accounts are processed independently, so a result can mix successes
    and failures; callers report partial failure from `failed`.
    """
    provider: str
    outcomes: List[AccountOutcome] = field(default_factory=list)
    connection_id: Optional[int] = None

    @property
    def accounts_updated(self) -> int:
        return sum(1 for o in self.outcomes if o.updated)

    @property
    def transactions_imported(self) -> int:
        return sum(o.imported for o in self.outcomes)

    @property
    def failed(self) -> List[AccountOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider': self.provider,
            'connection_id': self.connection_id,
            'accounts_updated': self.accounts_updated,
            'transactions_imported': self.transactions_imported,
            'failed': len(self.failed),
            'accounts': [dict(asdict(o), ok=o.ok) for o in self.outcomes]
        }


class BankIntegrationService:
    """
    Main service for bank integration.

    Provides family-scoped operations for:
    - Creating requisitions (start of the consent flow)
    - Completing connections and importing their accounts
    - Importing transactions
    - Syncing balances
    """

    def __init__(
        self,
        db: Session,
        providers: Optional[Dict[BankProviderType, BaseBankProvider]] = None,
        encryption: Optional[TokenEncryption] = None
    ):
        """
        Initialize service with database session.

        Args:
            db: SQLAlchemy database session
            providers: Provider instances by type (defaults to the process-wide ones)
            encryption: Credential encryption (defaults to Settings.secret_key)
        """
        self.db = db
        self.providers = providers if providers is not None else get_providers()
        self.encryption = encryption or TokenEncryption()

    def _get_provider(self, provider_type: BankProviderType) -> BaseBankProvider:
        """
        Get provider instance.

        Raises:
            ValueError: If provider is not configured
        """
        provider = self.providers.get(BankProviderType(provider_type))
        if not provider:
            raise ValueError(f"Unsupported provider: {provider_type}")
        return provider

    def _connected_accounts(
        self,
        family: Family,
        provider_type: BankProviderType
    ) -> List[Tuple[BankConnection, ConnectedAccount]]:
        connections = self.db.query(BankConnection).filter(
            BankConnection.family_id == family.id,
            BankConnection.provider == provider_type
        ).order_by(BankConnection.id).all()

        return [
            (connection, connected)
            for connection in connections
            for connected in sorted(connection.connected_accounts, key=lambda c: c.id)
            if connected.financial_account_id is not None
        ]

    async def create_requisition(
        self,
        family: Family,
        bank: Dict[str, Any],
        redirect_url: str,
        provider_type: BankProviderType = BankProviderType.GOCARDLESS
    ) -> Dict[str, Any]:
        """
        Start the consent flow for a bank.

        For GoCardless this resolves the institution, creates an end-user
        agreement and a requisition. For Plaid it creates a link token.

        Args:
            family: Current family
            bank: Bank descriptor {'name', 'country', 'institution_ids'?}
            redirect_url: Where the aggregator sends the user afterwards
            provider_type: Which aggregator to use

        Returns:
            {
                'requisition_id': str,
                'authorization_url': str,
                'institution_id': str or None,
                'provider': str
            }

        Raises:
            InstitutionNotFoundError: If the bank cannot be resolved
            BankProviderError: If an aggregator call fails

        Example:
            >>> result = await service.create_requisition(
            ...     family, {'name': 'DNB', 'country': 'NO'},
            ...     redirect_url="https://example.com/banking/callback"
            ... )
            >>> # Redirect user to result['authorization_url']
        """
        reference = f"{family.id}-{int(time.time() * 1000)}"

        try:
            provider = self._get_provider(provider_type)
            link = await provider.start_link(bank, redirect_url, reference)
        except (BankIntegrationError, ValueError) as e:
            logger.error(f"Failed to create requisition for family {family.id}: {e}")
            raise with_prefix(e, "Failed to create bank connection") from e

        logger.info(f"Created {provider.name} requisition {link['requisition_id']} for family {family.id}")
        return {
            'requisition_id': link['requisition_id'],
            'authorization_url': link['authorization_url'],
            'institution_id': link.get('institution_id'),
            'provider': provider.name
        }

    async def complete_connection(
        self,
        family: Family,
        requisition_id: str,
        bank: Dict[str, Any],
        provider_type: BankProviderType = BankProviderType.GOCARDLESS,
        import_days: int = 90
    ) -> SyncResult:
        """
        Complete the consent flow and import the linked accounts.

        Main workflow:
        1. Resolve the requisition (must be linked) to its account ids
        2. Create the BankConnection with the encrypted access credential
        3. Per account: create FinancialAccount + ConnectedAccount from
           details and balances, then import the last `import_days` of
           transactions

        Nothing is written if the requisition is not linked or has no
        accounts. Per-account failures are recorded in the result and the
        remaining accounts are still imported.

        Raises:
            RequisitionNotLinkedError: If the consent is not completed
            NoConnectedAccountsError: If the requisition has no accounts
            ValueError: If this requisition is already connected for the family
            BankProviderError: If the requisition lookup fails
        """
        try:
            provider = self._get_provider(provider_type)
            linked = await provider.finish_link(requisition_id)

            if not linked['account_ids']:
                raise NoConnectedAccountsError(f"No accounts linked for requisition {requisition_id}")

            existing = self.db.query(BankConnection).filter(
                BankConnection.family_id == family.id,
                BankConnection.provider == provider_type,
                BankConnection.item_id == linked['item_id']
            ).first()
            if existing:
                raise ValueError(f"Requisition {requisition_id} is already connected (connection {existing.id})")
        except (BankIntegrationError, ValueError) as e:
            logger.error(f"Failed to complete bank connection for family {family.id}: {e}")
            raise with_prefix(e, "Failed to complete bank connection") from e

        connection = BankConnection(
            family_id=family.id,
            provider=provider_type,
            access_token=self.encryption.encrypt(linked['access_credential']),
            item_id=linked['item_id'],
            institution_id=linked.get('institution_id') or bank.get('institution_id'),
            institution_name=bank.get('display_name') or bank.get('name'),
            institution_logo=bank.get('logo'),
            institution_country=bank.get('country')
        )
        self.db.add(connection)
        self.db.commit()
        self.db.refresh(connection)

        logger.info(f"Created {provider.name} connection {connection.id} for family {family.id} "
                    f"with {len(linked['account_ids'])} accounts")

        result = SyncResult(provider=provider.name, connection_id=connection.id)
        date_to = date.today()
        date_from = date_to - timedelta(days=import_days)

        for account_id in linked['account_ids']:
            outcome = AccountOutcome(provider_account_id=account_id)
            result.outcomes.append(outcome)

            try:
                connected = await self.import_account(connection, account_id)
            except ProviderAuthError as e:
                logger.error(f"Failed to complete bank connection for family {family.id}: {e}")
                raise with_prefix(e, "Failed to complete bank connection") from e
            except Exception as e:
                self.db.rollback()
                logger.warning(f"Failed to import account {account_id}: {e}")
                outcome.error = str(e)
                continue

            outcome.financial_account_id = connected.financial_account_id
            outcome.updated = True

            try:
                outcome.imported, outcome.duplicates = await self.import_account_transactions(
                    connection, connected, date_from, date_to
                )
            except ProviderAuthError as e:
                logger.error(f"Failed to complete bank connection for family {family.id}: {e}")
                raise with_prefix(e, "Failed to complete bank connection") from e
            except Exception as e:
                self.db.rollback()
                logger.warning(f"Failed to import transactions for account {account_id}: {e}")
                outcome.error = f"Transaction import failed: {e}"

        logger.info(f"Connection {connection.id}: {result.accounts_updated} accounts, "
                    f"{result.transactions_imported} transactions imported, {len(result.failed)} failed")
        return result

    async def import_account(self, connection: BankConnection, account_id: str) -> ConnectedAccount:
        """
        Create (or refresh) the FinancialAccount and ConnectedAccount for one
        provider account. Commits on success.

        An account already connected on this connection keeps its rows; only
        its balance is refreshed.
        """
        provider = self._get_provider(connection.provider)
        credential = self.encryption.decrypt(connection.access_token)

        account = await provider.fetch_account(credential, account_id)
        balance = account['balance'] if account['balance'] is not None else Decimal("0.00")

        connected = self.db.query(ConnectedAccount).filter(
            ConnectedAccount.connection_id == connection.id,
            ConnectedAccount.provider_account_id == account_id
        ).first()

        if connected and connected.financial_account:
            connected.financial_account.balance = balance
            self.db.commit()
            return connected

        financial_account = FinancialAccount(
            family_id=connection.family_id,
            name=account['name'],
            account_type=account['account_type'],
            balance=balance,
            currency=account['currency'],
            institution=connection.institution_name,
            account_number=account['masked_number']
        )
        self.db.add(financial_account)
        self.db.flush()

        if not connected:
            connected = ConnectedAccount(connection_id=connection.id, provider_account_id=account_id)
            self.db.add(connected)

        connected.financial_account_id = financial_account.id
        connected.account_name = account['name']
        connected.account_type = account['raw_type'] or account['account_type'].value
        connected.account_subtype = account['raw_subtype']
        connected.iban = account['iban']

        self.db.commit()
        self.db.refresh(connected)
        return connected

    async def import_transactions(
        self,
        family: Family,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        provider_type: BankProviderType = BankProviderType.GOCARDLESS
    ) -> SyncResult:
        """
        Import transactions for every connected account of a provider.

        Accounts are processed one at a time. Each account's batch is
        committed as a unit; a failing account is rolled back and recorded
        while the others continue.

        Args:
            family: Current family
            date_from: Start date (default: 7 days before date_to)
            date_to: End date (default: today)
            provider_type: Which aggregator's connections to import

        Raises:
            NoConnectedAccountsError: If the family has no connected accounts
            ProviderAuthError: If the aggregator rejects our credentials

        Example:
            >>> result = await service.import_transactions(family)
            >>> print(f"Imported {result.transactions_imported} new transactions")
        """
        date_to = date_to or date.today()
        date_from = date_from or date_to - timedelta(days=DEFAULT_IMPORT_DAYS)

        try:
            provider = self._get_provider(provider_type)
            accounts = self._connected_accounts(family, provider_type)
            if not accounts:
                raise NoConnectedAccountsError(f"No {provider.name} accounts connected")
        except (BankIntegrationError, ValueError) as e:
            logger.error(f"Failed to import transactions for family {family.id}: {e}")
            raise with_prefix(e, "Failed to import transactions") from e

        logger.info(f"Importing {provider.name} transactions for family {family.id} "
                    f"({len(accounts)} accounts, {date_from} to {date_to})")

        result = SyncResult(provider=provider.name)
        for connection, connected in accounts:
            outcome = AccountOutcome(
                provider_account_id=connected.provider_account_id,
                financial_account_id=connected.financial_account_id
            )
            result.outcomes.append(outcome)

            try:
                outcome.imported, outcome.duplicates = await self.import_account_transactions(
                    connection, connected, date_from, date_to
                )
                outcome.updated = True
            except ProviderAuthError as e:
                logger.error(f"Failed to import transactions for family {family.id}: {e}")
                raise with_prefix(e, "Failed to import transactions") from e
            except Exception as e:
                self.db.rollback()
                logger.warning(f"Failed to import transactions for account {connected.provider_account_id}: {e}")
                outcome.error = str(e)

        logger.info(f"Family {family.id}: imported {result.transactions_imported} {provider.name} transactions, "
                    f"{len(result.failed)} accounts failed")
        return result

    async def import_account_transactions(
        self,
        connection: BankConnection,
        connected_account: ConnectedAccount,
        date_from: Optional[date],
        date_to: Optional[date]
    ) -> Tuple[int, int]:
        """
        Import one account's transactions and commit them as one unit.

        Each transaction is skipped if an existing row matches its external
        id or the secondary key (date + absolute amount + description);
        otherwise it is inserted with ON CONFLICT DO NOTHING on
        (account_id, external_transaction_id).

        Returns:
            (imported, duplicates)
        """
        provider = self._get_provider(connection.provider)
        credential = self.encryption.decrypt(connection.access_token)
        financial_account_id = connected_account.financial_account_id

        transactions = await provider.fetch_transactions(
            credential, connected_account.provider_account_id, date_from, date_to
        )

        imported = 0
        duplicates = 0

        try:
            for tx in transactions:
                existing = TransactionDeduplicator.find_existing(
                    self.db,
                    financial_account_id,
                    tx['external_id'],
                    tx['date'],
                    tx['amount'],
                    tx['description']
                )
                if existing:
                    duplicates += 1
                    continue

                values = self._transaction_values(connection, financial_account_id, tx)
                if TransactionDeduplicator.insert_if_absent(self.db, values):
                    imported += 1
                else:
                    duplicates += 1

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Account {connected_account.provider_account_id}: "
                    f"imported={imported}, duplicates={duplicates}")
        return imported, duplicates

    def _transaction_values(
        self,
        connection: BankConnection,
        financial_account_id: int,
        tx: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Map a normalized provider transaction to Transaction column values.

        Amount is stored as a magnitude; the sign decides the type
        (negative = EXPENSE, otherwise INCOME).
        """
        amount = tx['amount']
        provider_name = BankProviderType(connection.provider).value.lower()

        return {
            'family_id': connection.family_id,
            'account_id': financial_account_id,
            'transaction_date': tx['date'],
            'description': tx['description'][:500],
            'merchant': tx.get('merchant'),
            'amount': abs(amount),
            'transaction_type': TransactionType.EXPENSE if amount < 0 else TransactionType.INCOME,
            'status': TransactionStatus.NEEDS_CATEGORIZATION,
            'currency': tx.get('currency'),
            'pending': bool(tx.get('pending')),
            'tags': [f"{provider_name}:{tx['external_id']}"],
            'external_transaction_id': tx['external_id'],
            'bank_transaction_code': tx.get('bank_transaction_code'),
            'proprietary_transaction_code': tx.get('proprietary_transaction_code')
        }

    async def sync_balances(
        self,
        family: Family,
        provider_type: BankProviderType = BankProviderType.GOCARDLESS
    ) -> SyncResult:
        """
        Refresh the balance of every connected account of a provider.

        Best effort: an account whose balance fetch fails is recorded and
        skipped. Accounts reporting no balance are left unchanged.

        Returns:
            SyncResult whose accounts_updated counts refreshed balances
        """
        try:
            provider = self._get_provider(provider_type)
        except ValueError as e:
            raise with_prefix(e, "Failed to sync account balances") from e

        result = SyncResult(provider=provider.name)

        for connection, connected in self._connected_accounts(family, provider_type):
            outcome = AccountOutcome(
                provider_account_id=connected.provider_account_id,
                financial_account_id=connected.financial_account_id
            )
            result.outcomes.append(outcome)

            try:
                credential = self.encryption.decrypt(connection.access_token)
                balance = await provider.fetch_balance(credential, connected.provider_account_id)
                if balance is None:
                    logger.info(f"No balance reported for account {connected.provider_account_id}")
                    continue

                connected.financial_account.balance = balance['amount']
                self.db.commit()
                outcome.updated = True
            except ProviderAuthError as e:
                logger.error(f"Failed to sync balances for family {family.id}: {e}")
                raise with_prefix(e, "Failed to sync account balances") from e
            except Exception as e:
                self.db.rollback()
                logger.warning(f"Failed to sync balance for account {connected.provider_account_id}: {e}")
                outcome.error = str(e)

        logger.info(f"Family {family.id}: updated {result.accounts_updated} {provider.name} account balances")
        return result
