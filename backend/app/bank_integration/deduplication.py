"""
Transaction Deduplication Module

Handles detection of duplicate transactions using a multi-level strategy:
1. External transaction ID (native provider id or deterministic fallback)
2. Secondary key: same account, date, absolute amount and description
3. Unique constraint on (account_id, external_transaction_id) enforced by the
   database, so concurrent imports cannot both insert the same row
"""

import hashlib
from decimal import Decimal
from datetime import date
from typing import Optional, Dict, Any

from sqlalchemy import and_, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from backend.app.models import Transaction


# Dialect-specific INSERT constructs supporting ON CONFLICT DO NOTHING
_CONFLICT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


class TransactionDeduplicator:
    """
    Handle transaction deduplication across repeated syncs.

    Prevents importing the same transaction multiple times from:
    - Overlapping date ranges of consecutive syncs
    - Scheduled and manual imports running for the same family
    - Providers that do not supply a stable transaction id
    """

    @staticmethod
    def generate_external_id(
        prefix: str,
        provider_account_id: str,
        amount: Decimal,
        transaction_date: Optional[date],
        description: str
    ) -> str:
        """
        Generate a deterministic transaction id from its attributes.

        Used when the provider does not supply a transaction id. Uses MD5 for
        speed (not security); the same transaction always yields the same id.
        A missing date hashes as an empty string, never as the import day.

        Example:
            >>> TransactionDeduplicator.generate_external_id(
            ...     'gocardless', 'acc-1', Decimal("-5.47"), date(2024, 1, 15), "Starbucks Coffee"
            ... )
            'gocardless-...'
        """
        amount_str = f"{amount:.2f}"
        desc_normalized = (description or '').strip()[:200]
        date_str = transaction_date.isoformat() if transaction_date else ''
        hash_input = f"{provider_account_id}|{amount_str}|{date_str}|{desc_normalized}"

        return f"{prefix}-{hashlib.md5(hash_input.encode()).hexdigest()[:20]}"

    @staticmethod
    def find_existing(
        db: Session,
        account_id: int,
        external_id: str,
        transaction_date: date,
        amount: Decimal,
        description: str
    ) -> Optional[Transaction]:
        """
        Look up an already-imported transaction for an account.

        Matches by external id, or by the secondary key
        (account + date + absolute amount + description).

        Args:
            db: Database session
            account_id: FinancialAccount id
            external_id: Provider or deterministic transaction id
            transaction_date: Transaction date
            amount: Signed amount from the provider
            description: Normalized description

        Returns:
            Matching Transaction if found, None otherwise
        """
        return db.query(Transaction).filter(
            Transaction.account_id == account_id,
            or_(
                Transaction.external_transaction_id == external_id,
                and_(
                    Transaction.transaction_date == transaction_date,
                    Transaction.amount == abs(amount),
                    Transaction.description == description
                )
            )
        ).first()

    @staticmethod
    def insert_if_absent(db: Session, values: Dict[str, Any]) -> bool:
        """
        Insert a transaction row unless (account_id, external_transaction_id) exists.

        The conflict check is done by the database in the same statement,
        which closes the gap between lookup and insert.

        Returns:
            True if a row was inserted, False if it already existed
        """
        dialect = db.get_bind().dialect.name
        insert = _CONFLICT_INSERTS.get(dialect)
        if insert is None:
            raise ValueError(f"Unsupported database dialect for conflict-free insert: {dialect}")

        stmt = insert(Transaction).values(**values).on_conflict_do_nothing(
            index_elements=['account_id', 'external_transaction_id']
        )
        result = db.connection().execute(stmt)
        return result.rowcount == 1
