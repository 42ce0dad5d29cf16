"""Tests for transaction deduplication."""

from datetime import date
from decimal import Decimal

import pytest

from backend.app.models import FinancialAccount, Transaction, TransactionType, TransactionStatus, AccountType
from backend.app.bank_integration.deduplication import TransactionDeduplicator


@pytest.fixture
def account(db, family):
    account = FinancialAccount(family_id=family.id, name="Brukskonto", account_type=AccountType.CHECKING,
                               currency="EUR")
    db.add(account)
    db.commit()
    return account


def _values(account, external_id, amount="5.47", description="Starbucks Coffee"):
    return {
        'family_id': account.family_id,
        'account_id': account.id,
        'transaction_date': date(2024, 1, 15),
        'description': description,
        'amount': Decimal(amount),
        'transaction_type': TransactionType.EXPENSE,
        'status': TransactionStatus.NEEDS_CATEGORIZATION,
        'currency': 'EUR',
        'pending': False,
        'tags': [f"gocardless:{external_id}"],
        'external_transaction_id': external_id,
    }


class TestGenerateExternalId:

    def test_same_attributes_give_same_id(self):
        first = TransactionDeduplicator.generate_external_id(
            'gocardless', 'acc-1', Decimal("-5.47"), date(2024, 1, 15), "Starbucks Coffee")
        second = TransactionDeduplicator.generate_external_id(
            'gocardless', 'acc-1', Decimal("-5.470"), date(2024, 1, 15), "  Starbucks Coffee ")

        assert first == second
        assert first.startswith('gocardless-')

    @pytest.mark.parametrize("account_id, amount, tx_date, description", [
        ('acc-2', "-5.47", date(2024, 1, 15), "Starbucks Coffee"),
        ('acc-1', "5.47", date(2024, 1, 15), "Starbucks Coffee"),
        ('acc-1', "-5.47", date(2024, 1, 16), "Starbucks Coffee"),
        ('acc-1', "-5.47", date(2024, 1, 15), "Starbucks"),
    ])
    def test_any_attribute_change_gives_new_id(self, account_id, amount, tx_date, description):
        base = TransactionDeduplicator.generate_external_id(
            'gocardless', 'acc-1', Decimal("-5.47"), date(2024, 1, 15), "Starbucks Coffee")

        other = TransactionDeduplicator.generate_external_id(
            'gocardless', account_id, Decimal(amount), tx_date, description)

        assert other != base

    def test_missing_date_gives_stable_id(self):
        first = TransactionDeduplicator.generate_external_id(
            'gocardless', 'acc-1', Decimal("-5.47"), None, "Starbucks Coffee")
        second = TransactionDeduplicator.generate_external_id(
            'gocardless', 'acc-1', Decimal("-5.47"), None, "Starbucks Coffee")

        assert first == second
        assert first != TransactionDeduplicator.generate_external_id(
            'gocardless', 'acc-1', Decimal("-5.47"), date(2024, 1, 15), "Starbucks Coffee")


class TestFindExisting:

    def test_matches_by_external_id(self, db, account):
        TransactionDeduplicator.insert_if_absent(db, _values(account, 'tx-1'))

        found = TransactionDeduplicator.find_existing(
            db, account.id, 'tx-1', date(2024, 2, 1), Decimal("-99"), "Something else")

        assert found is not None
        assert found.external_transaction_id == 'tx-1'

    def test_matches_by_date_amount_and_description(self, db, account):
        TransactionDeduplicator.insert_if_absent(db, _values(account, 'tx-1'))

        found = TransactionDeduplicator.find_existing(
            db, account.id, 'tx-other', date(2024, 1, 15), Decimal("-5.47"), "Starbucks Coffee")

        assert found is not None

    def test_other_account_is_not_a_match(self, db, family, account):
        other = FinancialAccount(family_id=family.id, name="Sparekonto", account_type=AccountType.SAVINGS,
                                 currency="EUR")
        db.add(other)
        db.commit()
        TransactionDeduplicator.insert_if_absent(db, _values(account, 'tx-1'))

        assert TransactionDeduplicator.find_existing(
            db, other.id, 'tx-1', date(2024, 1, 15), Decimal("-5.47"), "Starbucks Coffee") is None


class TestInsertIfAbsent:

    def test_second_insert_with_same_external_id_is_skipped(self, db, account):
        assert TransactionDeduplicator.insert_if_absent(db, _values(account, 'tx-1')) is True
        assert TransactionDeduplicator.insert_if_absent(db, _values(account, 'tx-1', amount="7.00")) is False
        db.commit()

        rows = db.query(Transaction).filter(Transaction.account_id == account.id).all()
        assert len(rows) == 1
        assert rows[0].amount == Decimal("5.47")

    def test_same_external_id_on_other_account_is_inserted(self, db, family, account):
        other = FinancialAccount(family_id=family.id, name="Sparekonto", account_type=AccountType.SAVINGS,
                                 currency="EUR")
        db.add(other)
        db.commit()

        assert TransactionDeduplicator.insert_if_absent(db, _values(account, 'tx-1')) is True
        assert TransactionDeduplicator.insert_if_absent(db, _values(other, 'tx-1')) is True
