"""
Field mapping from aggregator payloads to the internal schema.
"""

from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional

from backend.app.models import AccountType


# Balance types in order of preference
BALANCE_PRIORITY = ('interimAvailable', 'closingBooked')

# ISO 20022 cash account type codes reported by GoCardless
CASH_ACCOUNT_TYPES = {
    'cacc': AccountType.CHECKING,   # Current account
    'tran': AccountType.CHECKING,   # Transactional account
    'cash': AccountType.CHECKING,   # Cash payment
    'svgs': AccountType.SAVINGS,    # Savings
    'sava': AccountType.SAVINGS,
    'loan': AccountType.LOAN,
    'mort': AccountType.LOAN,       # Mortgage
    'card': AccountType.CREDIT_CARD,
    'mgln': AccountType.OTHER,      # Margin lending
    'odft': AccountType.OTHER,      # Overdraft
    'nrex': AccountType.OTHER,      # Non-resident external
    'slry': AccountType.CHECKING,   # Salary
}

# (keyword, type) rules checked against usage/product strings, first hit wins
KEYWORD_RULES = (
    ('current', AccountType.CHECKING),
    ('checking', AccountType.CHECKING),
    ('saving', AccountType.SAVINGS),
    ('credit', AccountType.CREDIT_CARD),
    ('card', AccountType.CREDIT_CARD),
    ('investment', AccountType.INVESTMENT),
    ('securities', AccountType.INVESTMENT),
    ('loan', AccountType.LOAN),
    ('mortgage', AccountType.LOAN),
)


def to_decimal(value: Any) -> Decimal:
    """Parse an API amount (string or number) to Decimal, 0 if unparseable."""
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def select_balance(balances: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Pick the balance entry to store as the account balance.

    interimAvailable is preferred, then closingBooked, then the first
    entry reported. Returns None for an empty list.
    """
    if not balances:
        return None

    for balance_type in BALANCE_PRIORITY:
        for balance in balances:
            if balance.get('balanceType') == balance_type:
                return balance

    return balances[0]


def map_gocardless_account_type(details: Dict[str, Any]) -> AccountType:
    """
    Map GoCardless account details to an AccountType.

    cashAccountType is authoritative when present; otherwise usage and
    product strings are scanned for keywords. Defaults to CHECKING.
    """
    cash_account_type = details.get('cashAccountType')
    if cash_account_type:
        return CASH_ACCOUNT_TYPES.get(cash_account_type.strip().lower(), AccountType.OTHER)

    for field in ('usage', 'product'):
        value = (details.get(field) or '').lower()
        if not value:
            continue
        # PSD2 usage codes: PRIV (private) and ORGA (organisation) carry no type
        if value in ('priv', 'orga'):
            continue
        for keyword, account_type in KEYWORD_RULES:
            if keyword in value:
                return account_type

    return AccountType.CHECKING


def map_plaid_account_type(plaid_type: Optional[str], plaid_subtype: Optional[str]) -> AccountType:
    """Map Plaid type/subtype to an AccountType."""
    plaid_type = (plaid_type or '').lower()
    plaid_subtype = (plaid_subtype or '').lower()

    if plaid_type == 'depository':
        return AccountType.SAVINGS if plaid_subtype == 'savings' else AccountType.CHECKING
    if plaid_type == 'credit':
        return AccountType.CREDIT_CARD
    if plaid_type == 'investment':
        return AccountType.INVESTMENT
    if plaid_type == 'loan':
        return AccountType.LOAN
    return AccountType.OTHER


def mask_account_number(number: Optional[str]) -> Optional[str]:
    """Keep only the last four characters of an account number or IBAN."""
    if not number:
        return None
    return f"****{number[-4:]}"
