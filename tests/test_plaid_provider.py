"""Tests for the Plaid provider against a mocked Plaid API."""

import json
from datetime import date
from decimal import Decimal

import httpx

from backend.app.models import AccountType
from backend.app.bank_integration.providers.plaid import PlaidProvider
from tests.fakes import mock_api


ACCOUNTS = {
    'accounts': [
        {
            'account_id': 'plaid-acc-1',
            'name': 'Plaid Checking',
            'mask': '0000',
            'type': 'depository',
            'subtype': 'checking',
            'balances': {'available': 100, 'current': 110, 'iso_currency_code': 'USD'},
        },
        {
            'account_id': 'plaid-acc-2',
            'name': 'Plaid Credit Card',
            'mask': '3333',
            'type': 'credit',
            'subtype': 'credit card',
            'balances': {'available': None, 'current': 410, 'iso_currency_code': 'USD'},
        },
    ],
    'item': {'item_id': 'item-1', 'institution_id': 'ins_109508'},
}


def _json(request: httpx.Request):
    return json.loads(request.read())


def _plaid_transaction(transaction_id, amount, name="Uber 063015 SF**POOL**"):
    return {
        'transaction_id': transaction_id,
        'account_id': 'plaid-acc-1',
        'amount': amount,
        'date': '2024-01-15',
        'name': name,
        'merchant_name': None,
        'pending': False,
        'iso_currency_code': 'USD',
    }


async def test_start_link_creates_link_token(settings):
    requests = []
    provider = PlaidProvider(settings, transport=mock_api({
        ('POST', '/link/token/create'): {'link_token': 'link-sandbox-123', 'expiration': '2024-01-15T12:00:00Z'},
    }, requests))

    result = await provider.start_link({'name': 'Chase', 'country': 'US'}, 'https://app.example.com/plaid', '7-1')

    assert result['requisition_id'] == 'link-sandbox-123'
    assert result['authorization_url'] == 'link-sandbox-123'

    request = requests[0]
    assert request.headers['PLAID-CLIENT-ID'] == 'test-client-id'
    assert request.headers['PLAID-SECRET'] == 'test-plaid-secret'
    body = _json(request)
    assert body['user'] == {'client_user_id': '7-1'}
    assert body['products'] == ['transactions']
    assert body['redirect_uri'] == 'https://app.example.com/plaid'


async def test_finish_link_exchanges_public_token(settings):
    requests = []
    provider = PlaidProvider(settings, transport=mock_api({
        ('POST', '/item/public_token/exchange'): {'access_token': 'access-sandbox-1', 'item_id': 'item-1'},
        ('POST', '/accounts/get'): ACCOUNTS,
    }, requests))

    linked = await provider.finish_link('public-sandbox-1')

    assert linked == {
        'access_credential': 'access-sandbox-1',
        'item_id': 'item-1',
        'institution_id': 'ins_109508',
        'account_ids': ['plaid-acc-1', 'plaid-acc-2'],
    }
    assert _json(requests[0]) == {'public_token': 'public-sandbox-1'}


async def test_fetch_account_maps_type_and_mask(settings):
    provider = PlaidProvider(settings, transport=mock_api({('POST', '/accounts/get'): ACCOUNTS}))

    account = await provider.fetch_account('access-sandbox-1', 'plaid-acc-2')

    assert account['account_type'] == AccountType.CREDIT_CARD
    assert account['masked_number'] == '****3333'
    assert account['balance'] == Decimal('410')
    assert account['currency'] == 'USD'


async def test_fetch_balance_uses_current_balance(settings):
    provider = PlaidProvider(settings, transport=mock_api({('POST', '/accounts/get'): ACCOUNTS}))

    balance = await provider.fetch_balance('access-sandbox-1', 'plaid-acc-1')

    assert balance == {'amount': Decimal('110'), 'currency': 'USD'}


async def test_fetch_transactions_pages_and_flips_sign(settings):
    pages = [
        [_plaid_transaction('tx-1', 6.33), _plaid_transaction('tx-2', -500, name="United Airlines")],
        [_plaid_transaction('tx-3', 12.0, name="Starbucks")],
    ]

    def transactions_get(request):
        offset = _json(request)['options']['offset']
        page = pages[0] if offset == 0 else pages[1]
        return {'transactions': page, 'total_transactions': 3}

    requests = []
    provider = PlaidProvider(settings, transport=mock_api({
        ('POST', '/transactions/get'): transactions_get,
    }, requests))

    transactions = await provider.fetch_transactions('access-sandbox-1', 'plaid-acc-1',
                                                     date(2024, 1, 1), date(2024, 1, 31))

    assert [t['external_id'] for t in transactions] == ['tx-1', 'tx-2', 'tx-3']
    assert transactions[0]['amount'] == Decimal('-6.33')
    assert transactions[1]['amount'] == Decimal('500')
    assert transactions[0]['merchant'] == 'Uber 063015 SF**POOL**'

    offsets = [_json(r)['options']['offset'] for r in requests]
    assert offsets == [0, 2]
    assert _json(requests[0])['start_date'] == '2024-01-01'
    assert _json(requests[0])['options']['account_ids'] == ['plaid-acc-1']
