"""
Bank Integration Module

Imports accounts, balances and transactions from bank-data aggregators.
Supports GoCardless Bank Account Data and Plaid with an extensible provider architecture.
"""

from .service import BankIntegrationService, SyncResult, AccountOutcome
from .encryption import TokenEncryption
from .deduplication import TransactionDeduplicator

__all__ = ['BankIntegrationService', 'SyncResult', 'AccountOutcome', 'TokenEncryption', 'TransactionDeduplicator']
