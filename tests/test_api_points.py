"""
Tests for Points API endpoints.

Covers:
- POST /api/points/transactions
- POST /api/points/redeem
- GET /api/points/balance
- GET /api/points/history
- Error responses for ledger failures
"""
import json
import pytest
from datetime import timedelta
from unittest.mock import patch


def _post(client, url, payload):
    return client.post(url, data=json.dumps(payload), content_type='application/json')


def _earn(client, user_id=1, transaction_id='txn_1', amount=100, category='groceries', **extra):
    payload = {
        'user_id': user_id,
        'transaction_id': transaction_id,
        'transaction_amount': amount,
        'category': category,
    }
    payload.update(extra)
    return _post(client, '/api/points/transactions', payload)


class TestRecordTransaction:
    """Tests for POST /api/points/transactions."""

    def test_record_transaction(self, client, engine):
        """Test a purchase is credited and reported."""
        response = _earn(client)

        assert response.status_code == 201
        data = response.get_json()
        assert data['success'] is True
        assert data['data']['points_earned'] == 200
        assert data['data']['balance'] == 200
        assert data['data']['already_processed'] is False
        assert data['data']['valid_until'] == '2026-01-01T12:00:00'

    def test_repeat_transaction(self, client, engine):
        """Test a repeated transaction id returns the original outcome with 200."""
        _earn(client)
        response = _earn(client)

        assert response.status_code == 200
        data = response.get_json()
        assert data['data']['already_processed'] is True
        assert data['data']['balance'] == 200

    def test_transaction_date(self, client, engine):
        """Test the purchase date sets the lot validity window."""
        response = _earn(client, transaction_date='2024-06-01T00:00:00Z')

        assert response.status_code == 201
        assert response.get_json()['data']['valid_until'] == '2025-06-01T00:00:00'

    @pytest.mark.parametrize('overrides, code', [
        ({'amount': -5}, 'INVALID_AMOUNT'),
        ({'amount': 'lots'}, 'INVALID_AMOUNT'),
        ({'category': 'furniture'}, 'INVALID_CATEGORY'),
        ({'transaction_id': ''}, 'INVALID_INPUT'),
    ])
    def test_invalid_transaction(self, client, engine, overrides, code):
        """Test invalid purchases are rejected with 400."""
        response = _earn(client, **overrides)

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == code

    def test_missing_user_id(self, client, engine):
        """Test a request without user_id is rejected."""
        response = _post(client, '/api/points/transactions', {'transaction_id': 'x'})

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_REQUEST'

    def test_non_json_body(self, client, engine):
        """Test a body that is not a JSON object is rejected."""
        response = client.post('/api/points/transactions', data='not json', content_type='text/plain')

        assert response.status_code == 400

    def test_bad_transaction_date(self, client, engine):
        """Test an unparseable transaction date is rejected."""
        response = _earn(client, transaction_date='yesterday')

        assert response.status_code == 400

    def test_numeric_transaction_date(self, client, engine):
        """Test a JSON number for the transaction date is rejected, not a server error."""
        response = _earn(client, transaction_date=20250101)

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_REQUEST'

    def test_product_code_recorded(self, client, engine):
        """Test the product code shows up on the earn history entry."""
        _earn(client, product_code='SKU-42')

        response = client.get('/api/points/history?user_id=1')

        assert response.get_json()['entries'][0]['product_code'] == 'SKU-42'


class TestRedeem:
    """Tests for POST /api/points/redeem."""

    def test_redeem(self, client, engine):
        """Test points are redeemed and the remainder reported."""
        _earn(client)
        response = _post(client, '/api/points/redeem', {'user_id': 1, 'points': 150})

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['remaining_points'] == 50
        assert data['points_redeemed'] == 150
        assert data['redemption_id'].startswith('RED_1_')
        assert len(data['lot_ids']) == 1

    def test_redeem_insufficient(self, client, engine):
        """Test redeeming more than the balance returns 422."""
        _earn(client)
        response = _post(client, '/api/points/redeem', {'user_id': 1, 'points': 500})

        assert response.status_code == 422
        error = response.get_json()['error']
        assert error['code'] == 'INSUFFICIENT_POINTS'

    def test_redeem_invalid_points(self, client, engine):
        """Test a non-integer points value returns 400."""
        response = _post(client, '/api/points/redeem', {'user_id': 1, 'points': 'ten'})

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_AMOUNT'

    def test_redeem_busy(self, client, engine):
        """Test a lock timeout returns 503 with Retry-After."""
        _earn(client)
        with patch.object(engine.storage._user_locks, 'acquire', return_value=False):
            response = _post(client, '/api/points/redeem', {'user_id': 1, 'points': 10})

        assert response.status_code == 503
        assert response.headers['Retry-After'] == '1'
        assert response.get_json()['error']['code'] == 'BUSY'

    def test_redeem_storage_failure(self, client, engine):
        """Test a storage failure returns 503 without internal details."""
        from pointsledger.utils.exceptions import StorageFailureError

        _earn(client)
        with patch.object(engine.storage, 'redeemable_lots', side_effect=StorageFailureError('connection reset')):
            response = _post(client, '/api/points/redeem', {'user_id': 1, 'points': 10})

        assert response.status_code == 503
        error = response.get_json()['error']
        assert error['code'] == 'STORAGE_FAILURE'
        assert 'connection reset' not in error['message']


class TestBalance:
    """Tests for GET /api/points/balance."""

    def test_balance(self, client, engine, clock):
        """Test the balance summary for a user."""
        _earn(client)
        _post(client, '/api/points/redeem', {'user_id': 1, 'points': 20})

        response = client.get('/api/points/balance?user_id=1')

        assert response.status_code == 200
        data = response.get_json()
        assert data['user_id'] == 1
        assert data['balance'] == 180
        assert data['lifetime_earned'] == 200
        assert data['lifetime_redeemed'] == 20
        assert data['expiring_soon'] == 0
        assert 'as_of' in data

    def test_balance_expiring_window(self, client, engine, clock):
        """Test expiring_days widens the expiring-soon window."""
        _earn(client)
        clock.advance(days=340)

        response = client.get('/api/points/balance?user_id=1&expiring_days=30')

        assert response.get_json()['expiring_soon'] == 200

    def test_balance_unknown_user(self, client, engine):
        """Test a user with no activity has zero balance."""
        response = client.get('/api/points/balance?user_id=404')

        assert response.status_code == 200
        assert response.get_json()['balance'] == 0

    def test_balance_requires_user(self, client, engine):
        response = client.get('/api/points/balance')

        assert response.status_code == 400


class TestHistory:
    """Tests for GET /api/points/history."""

    def test_history(self, client, engine, clock):
        """Test history lists entries oldest first."""
        _earn(client)
        clock.advance(hours=1)
        _post(client, '/api/points/redeem', {'user_id': 1, 'points': 50})

        response = client.get('/api/points/history?user_id=1')

        assert response.status_code == 200
        data = response.get_json()
        assert [e['kind'] for e in data['entries']] == ['earn', 'redeem']
        assert data['entries'][0]['external_reference'] == 'txn_1'
        assert data['entries'][0]['purchase_amount'] == '100.00'
        assert data['page'] == 1

    def test_history_type_filter(self, client, engine):
        """Test filtering history by transaction type."""
        _earn(client)
        _post(client, '/api/points/redeem', {'user_id': 1, 'points': 50})

        response = client.get('/api/points/history?user_id=1&transaction_type=redeem')

        entries = response.get_json()['entries']
        assert [e['kind'] for e in entries] == ['redeem']

    def test_history_date_filter(self, client, engine, clock):
        """Test a bare end date covers the whole day."""
        _earn(client, transaction_id='day_one')
        clock.advance(days=1)
        _earn(client, transaction_id='day_two')

        response = client.get('/api/points/history?user_id=1&start_date=2025-01-01&end_date=2025-01-01')

        entries = response.get_json()['entries']
        assert [e['external_reference'] for e in entries] == ['day_one']

    def test_history_pagination(self, client, engine, clock):
        """Test page and per_page."""
        for i in range(3):
            _earn(client, transaction_id=f'txn_{i}')
            clock.advance(minutes=1)

        response = client.get('/api/points/history?user_id=1&page=2&per_page=2')

        data = response.get_json()
        assert [e['external_reference'] for e in data['entries']] == ['txn_2']
        assert data['per_page'] == 2

    def test_history_invalid_type(self, client, engine):
        """Test an unknown transaction type returns 400."""
        response = client.get('/api/points/history?user_id=1&transaction_type=refund')

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_INPUT'

    def test_history_bad_date(self, client, engine):
        response = client.get('/api/points/history?user_id=1&start_date=soon')

        assert response.status_code == 400


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_not_found(self, client):
        response = client.get('/api/points/nothing')

        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'NOT_FOUND'
