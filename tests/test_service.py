"""Tests for BankIntegrationService."""

from datetime import date
from decimal import Decimal

import pytest

from backend.app.models import (
    BankConnection, ConnectedAccount, FinancialAccount, Transaction,
    BankProviderType, TransactionType, TransactionStatus, AccountType
)
from backend.app.bank_integration.service import BankIntegrationService
from backend.app.bank_integration.providers.gocardless import GoCardlessProvider
from backend.app.bank_integration.exceptions import (
    RequisitionNotLinkedError, NoConnectedAccountsError, InstitutionNotFoundError, ProviderAuthError
)
from tests.fakes import (
    FakeProvider, make_account, make_transaction, mock_api, gocardless_token_route, GOCARDLESS_API_PREFIX
)

BANK = {'name': 'DNB', 'country': 'NO', 'logo': 'https://cdn.example.com/dnb.png'}


def _service(db, encryption, provider):
    return BankIntegrationService(db, providers={BankProviderType.GOCARDLESS: provider}, encryption=encryption)


def _three_account_provider(**kwargs):
    return FakeProvider(
        accounts={
            'acc-1': make_account('acc-1', balance="100.00"),
            'acc-2': make_account('acc-2', balance="200.00"),
            'acc-3': make_account('acc-3', balance="300.00", account_type=AccountType.SAVINGS),
        },
        **kwargs
    )


class TestCreateRequisition:

    async def test_returns_link_and_uses_family_reference(self, db, family, encryption):
        provider = FakeProvider()
        service = _service(db, encryption, provider)

        result = await service.create_requisition(family, BANK, 'https://app.example.com/callback')

        assert result == {
            'requisition_id': 'req-1',
            'authorization_url': 'https://ob.example.com/psd2/start/req-1',
            'institution_id': 'INST1',
            'provider': 'GOCARDLESS',
        }
        reference = provider.calls[0][1]
        assert reference.startswith(f"{family.id}-")

    async def test_unknown_bank_is_wrapped_with_prefix(self, db, family, encryption):
        class UnknownBankProvider(FakeProvider):
            async def start_link(self, bank, redirect_url, reference):
                raise InstitutionNotFoundError("Bank not found: Revolut (NO)")

        service = _service(db, encryption, UnknownBankProvider())

        with pytest.raises(InstitutionNotFoundError, match="Failed to create bank connection: Bank not found"):
            await service.create_requisition(family, {'name': 'Revolut', 'country': 'NO'}, 'https://x')

    async def test_unconfigured_provider_raises_value_error(self, db, family, encryption):
        service = _service(db, encryption, FakeProvider())

        with pytest.raises(ValueError, match="Unsupported provider"):
            await service.create_requisition(family, BANK, 'https://x', BankProviderType.PLAID)


class TestCompleteConnection:

    async def test_creates_connection_accounts_and_transactions(self, db, family, encryption):
        provider = FakeProvider(
            accounts={'acc-1': make_account('acc-1', name="Brukskonto", balance="1000.50")},
            transactions={'acc-1': [make_transaction('tx-1', "-42.50"), make_transaction('tx-2', "1000.00")]},
        )
        service = _service(db, encryption, provider)

        result = await service.complete_connection(family, 'req-1', BANK)

        assert result.accounts_updated == 1
        assert result.transactions_imported == 2
        assert result.failed == []

        connection = db.query(BankConnection).one()
        assert connection.family_id == family.id
        assert connection.provider == BankProviderType.GOCARDLESS
        assert connection.item_id == 'req-1'
        assert connection.institution_id == 'INST1'
        assert connection.institution_name == 'DNB'
        assert connection.institution_country == 'NO'
        assert connection.access_token != 'credential-req-1'
        assert encryption.decrypt(connection.access_token) == 'credential-req-1'

        connected = db.query(ConnectedAccount).one()
        assert connected.provider_account_id == 'acc-1'
        assert connected.account_type == 'CACC'
        account = connected.financial_account
        assert account.name == 'Brukskonto'
        assert account.balance == Decimal('1000.50')
        assert account.account_type == AccountType.CHECKING
        assert account.institution == 'DNB'
        assert account.family_id == family.id

    async def test_unlinked_requisition_creates_no_connection(self, db, family, encryption):
        service = _service(db, encryption, _three_account_provider(linked=False))

        with pytest.raises(RequisitionNotLinkedError, match="Failed to complete bank connection"):
            await service.complete_connection(family, 'req-1', BANK)

        assert db.query(BankConnection).count() == 0
        assert db.query(FinancialAccount).count() == 0

    async def test_requisition_without_accounts_creates_no_connection(self, db, family, encryption):
        service = _service(db, encryption, FakeProvider(accounts={}))

        with pytest.raises(NoConnectedAccountsError):
            await service.complete_connection(family, 'req-1', BANK)

        assert db.query(BankConnection).count() == 0

    async def test_completing_twice_is_rejected(self, db, family, encryption):
        service = _service(db, encryption, _three_account_provider())
        await service.complete_connection(family, 'req-1', BANK)

        with pytest.raises(ValueError, match="already connected"):
            await service.complete_connection(family, 'req-1', BANK)

        assert db.query(BankConnection).count() == 1
        assert db.query(FinancialAccount).count() == 3

    async def test_failing_account_is_skipped(self, db, family, encryption):
        service = _service(db, encryption, _three_account_provider(failing_accounts={'acc-2'}))

        result = await service.complete_connection(family, 'req-1', BANK)

        assert result.accounts_updated == 2
        assert [o.provider_account_id for o in result.failed] == ['acc-2']
        assert 'connection reset' in result.failed[0].error

        balances = sorted(a.balance for a in db.query(FinancialAccount).all())
        assert balances == [Decimal('100.00'), Decimal('300.00')]

    async def test_rejected_api_credentials_abort(self, db, family, encryption):
        provider = _three_account_provider(failing_accounts={'acc-1'}, error_class=ProviderAuthError)
        service = _service(db, encryption, provider)

        with pytest.raises(ProviderAuthError):
            await service.complete_connection(family, 'req-1', BANK)

        assert ('fetch_account', 'acc-2') not in provider.calls


class TestImportTransactions:

    async def _connect(self, db, family, encryption, provider):
        service = _service(db, encryption, provider)
        await service.complete_connection(family, 'req-1', BANK)
        return service

    async def test_reimport_is_idempotent(self, db, family, encryption):
        provider = FakeProvider(
            accounts={'acc-1': make_account('acc-1')},
            transactions={'acc-1': [make_transaction('tx-1', "-10.00"), make_transaction('tx-2', "20.00",
                                                                                          description="Refund")]},
        )
        service = await self._connect(db, family, encryption, provider)

        result = await service.import_transactions(family)

        assert result.transactions_imported == 0
        assert result.outcomes[0].duplicates == 2
        assert db.query(Transaction).count() == 2

    async def test_amount_is_stored_unsigned_with_type(self, db, family, encryption):
        provider = FakeProvider(
            accounts={'acc-1': make_account('acc-1')},
            transactions={'acc-1': [
                make_transaction('tx-out', "-42.50", description="Rema 1000"),
                make_transaction('tx-in', "1000.00", description="Lønn"),
                make_transaction('tx-zero', "0.00", description="Card check"),
            ]},
        )
        await self._connect(db, family, encryption, provider)

        rows = {t.external_transaction_id: t for t in db.query(Transaction).all()}

        assert rows['tx-out'].amount == Decimal('42.50')
        assert rows['tx-out'].transaction_type == TransactionType.EXPENSE
        assert rows['tx-in'].amount == Decimal('1000.00')
        assert rows['tx-in'].transaction_type == TransactionType.INCOME
        assert rows['tx-zero'].transaction_type == TransactionType.INCOME
        for row in rows.values():
            assert row.amount >= 0
            assert row.status == TransactionStatus.NEEDS_CATEGORIZATION

        assert rows['tx-out'].tags == ['gocardless:tx-out']
        assert rows['tx-out'].family_id == family.id

    async def test_same_date_amount_description_is_duplicate(self, db, family, encryption):
        provider = FakeProvider(
            accounts={'acc-1': make_account('acc-1')},
            transactions={'acc-1': [make_transaction('tx-1', "-5.47", description="Starbucks Coffee")]},
        )
        service = await self._connect(db, family, encryption, provider)

        # Bank re-issued the id for an already imported transaction
        provider.transactions['acc-1'] = [make_transaction('tx-1-reissued', "-5.47", description="Starbucks Coffee")]
        result = await service.import_transactions(family)

        assert result.transactions_imported == 0
        assert db.query(Transaction).count() == 1

    async def test_failing_account_does_not_stop_others(self, db, family, encryption):
        provider = _three_account_provider(transactions={
            'acc-1': [make_transaction('a-1', "-1.00")],
            'acc-3': [make_transaction('c-1', "-3.00")],
        })
        service = await self._connect(db, family, encryption, provider)
        provider.failing_transactions = {'acc-2'}
        provider.transactions['acc-1'].append(make_transaction('a-2', "-2.00", description="Kiosk"))
        provider.transactions['acc-3'].append(make_transaction('c-2', "-4.00", description="Kiosk"))

        result = await service.import_transactions(family, date(2024, 1, 1), date(2024, 1, 31))

        assert result.transactions_imported == 2
        assert result.accounts_updated == 2
        assert [o.provider_account_id for o in result.failed] == ['acc-2']

    async def test_account_batch_is_all_or_nothing(self, db, family, encryption):
        provider = FakeProvider(accounts={'acc-1': make_account('acc-1'), 'acc-2': make_account('acc-2')})
        service = await self._connect(db, family, encryption, provider)

        broken = make_transaction('bad', "-1.00")
        del broken['date']
        provider.transactions = {
            'acc-1': [make_transaction('good-1', "-1.00"), broken],
            'acc-2': [make_transaction('good-2', "-2.00")],
        }

        result = await service.import_transactions(family)

        assert [o.provider_account_id for o in result.failed] == ['acc-1']
        ids = [t.external_transaction_id for t in db.query(Transaction).all()]
        assert ids == ['good-2']

    async def test_without_connections_raises(self, db, family, encryption):
        service = _service(db, encryption, FakeProvider())

        with pytest.raises(NoConnectedAccountsError, match="Failed to import transactions"):
            await service.import_transactions(family)

    async def test_other_family_accounts_are_ignored(self, db, family, other_family, encryption):
        provider = FakeProvider(
            accounts={'acc-1': make_account('acc-1')},
            transactions={'acc-1': [make_transaction('tx-1', "-10.00")]},
        )
        await self._connect(db, family, encryption, provider)

        service = _service(db, encryption, provider)
        with pytest.raises(NoConnectedAccountsError):
            await service.import_transactions(other_family)

    async def test_rejected_api_credentials_abort(self, db, family, encryption):
        provider = _three_account_provider()
        service = await self._connect(db, family, encryption, provider)
        provider.error_class = ProviderAuthError
        provider.failing_transactions = {'acc-1', 'acc-2', 'acc-3'}
        provider.calls.clear()

        with pytest.raises(ProviderAuthError, match="Failed to import transactions"):
            await service.import_transactions(family)

        assert provider.calls == [('fetch_transactions', 'acc-1')]


class TestSyncBalances:

    async def test_updates_every_account(self, db, family, encryption):
        provider = _three_account_provider()
        service = _service(db, encryption, provider)
        await service.complete_connection(family, 'req-1', BANK)
        provider.balances = {
            'acc-1': {'amount': Decimal('111.11'), 'currency': 'EUR'},
            'acc-2': {'amount': Decimal('222.22'), 'currency': 'EUR'},
            'acc-3': {'amount': Decimal('-333.33'), 'currency': 'EUR'},
        }

        result = await service.sync_balances(family)

        assert result.accounts_updated == 3
        balances = sorted(a.balance for a in db.query(FinancialAccount).all())
        assert balances == [Decimal('-333.33'), Decimal('111.11'), Decimal('222.22')]

    async def test_failed_balance_fetch_is_best_effort(self, db, family, encryption):
        provider = _three_account_provider()
        service = _service(db, encryption, provider)
        await service.complete_connection(family, 'req-1', BANK)
        provider.failing_balances = {'acc-2'}
        provider.balances = {
            'acc-1': {'amount': Decimal('1.00'), 'currency': 'EUR'},
            'acc-3': {'amount': Decimal('3.00'), 'currency': 'EUR'},
        }

        result = await service.sync_balances(family)

        assert result.accounts_updated == 2
        assert [o.provider_account_id for o in result.failed] == ['acc-2']

        by_account = {c.provider_account_id: c.financial_account.balance for c in db.query(ConnectedAccount).all()}
        assert by_account == {'acc-1': Decimal('1.00'), 'acc-2': Decimal('200.00'), 'acc-3': Decimal('3.00')}

    async def test_missing_balance_leaves_account_unchanged(self, db, family, encryption):
        provider = FakeProvider(accounts={'acc-1': make_account('acc-1', balance="50.00")})
        service = _service(db, encryption, provider)
        await service.complete_connection(family, 'req-1', BANK)

        result = await service.sync_balances(family)

        assert result.accounts_updated == 0
        assert result.failed == []
        assert db.query(FinancialAccount).one().balance == Decimal('50.00')

    async def test_no_connections_updates_nothing(self, db, family, encryption):
        result = await _service(db, encryption, FakeProvider()).sync_balances(family)

        assert result.accounts_updated == 0
        assert result.to_dict()['accounts'] == []


class TestGoCardlessEndToEnd:
    """Service running against the real GoCardless provider over a mocked API."""

    @pytest.fixture
    def provider(self, settings):
        starbucks = {
            'bookingDate': '2024-01-15',
            'transactionAmount': {'amount': '-5.47', 'currency': 'EUR'},
            'remittanceInformationUnstructured': 'Starbucks Coffee',
        }
        routes = {
            ('POST', '/token/new/'): gocardless_token_route(),
            ('GET', '/requisitions/req-1/'): {'id': 'req-1', 'status': 'LN', 'accounts': ['acc-1']},
            ('GET', '/accounts/acc-1/details/'): {'account': {'name': 'Brukskonto', 'cashAccountType': 'CACC'}},
            ('GET', '/accounts/acc-1/balances/'): {'balances': [
                {'balanceType': 'closingBooked', 'balanceAmount': {'amount': '90.00', 'currency': 'EUR'}},
                {'balanceType': 'interimAvailable', 'balanceAmount': {'amount': '100.00', 'currency': 'EUR'}},
            ]},
            ('GET', '/accounts/acc-1/transactions/'): {'transactions': {'booked': [starbucks, dict(starbucks)]}},
        }
        return GoCardlessProvider(settings, transport=mock_api(routes, prefix=GOCARDLESS_API_PREFIX))

    async def test_repeated_transaction_without_id_is_imported_once(self, db, family, encryption, provider):
        service = _service(db, encryption, provider)

        result = await service.complete_connection(family, 'req-1', BANK)

        assert result.transactions_imported == 1
        assert result.outcomes[0].duplicates == 1

        second = await service.import_transactions(family)

        assert second.transactions_imported == 0
        assert second.outcomes[0].duplicates == 2

        [tx] = db.query(Transaction).all()
        assert tx.external_transaction_id.startswith('gocardless-')
        assert tx.amount == Decimal('5.47')
        assert tx.transaction_type == TransactionType.EXPENSE
        assert db.query(FinancialAccount).one().balance == Decimal('100.00')
