from datetime import timedelta

import pytest

from conftest import OTHER_TOKEN
from models import Product, utcnow


def test_sync_requires_a_token(client, owner):
    response = client.post('/api/sync/upload', json={'data': {}})
    assert response.status_code == 401
    assert response.get_json() == {'error': 'Authentication required'}


def test_unknown_token_is_rejected(client, owner):
    response = client.get(f'/api/sync/download/{owner.id}', headers={'Authorization': 'Bearer nope'})
    assert response.status_code == 401


def test_download_of_another_account_is_forbidden(client, owner, other_user):
    response = client.get(f'/api/sync/download/{owner.id}',
                          headers={'Authorization': f'Bearer {OTHER_TOKEN}'})
    assert response.status_code == 403
    assert response.get_json() == {'error': 'Access denied'}


def test_upload_then_download(client, session, owner, auth_headers):
    response = client.post('/api/sync/upload', headers=auth_headers, json={
        'data': {
            'products': [{'id': 'p-1', 'name': 'Tea', 'quantity': 12, 'retailPrice': '250.5'}],
            'contacts': [{'id': 'c-1', 'name': 'Rashid'}],
        },
        'timestamp': '2024-05-01T10:00:00.000Z',
    })
    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['message'] == 'Data uploaded successfully'
    assert body['results'] == {'succeeded': {'products': 1, 'contacts': 1}, 'failed': []}

    response = client.get(f'/api/sync/download/{owner.id}', headers=auth_headers)
    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['timestamp'].endswith('Z')
    assert body['data']['products'][0]['retailPrice'] == 250.5
    assert body['data']['products'][0]['userId'] == owner.id
    assert body['data']['sales'] == []


@pytest.mark.parametrize('body', [{}, {'data': None}, {'data': []}])
def test_upload_without_data_object_is_400(client, owner, auth_headers, body):
    response = client.post('/api/sync/upload', headers=auth_headers, json=body)
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Invalid data format'}


@pytest.mark.parametrize('body', [{'data': {}}, {'lastSyncTimestamp': '2024-01-01T00:00:00Z'}])
def test_incremental_upload_without_data_is_400(client, owner, auth_headers, body):
    response = client.post('/api/sync/incremental-upload', headers=auth_headers, json=body)
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid data format'


def test_incremental_upload_reports_conflicts(client, factory, auth_headers):
    product = factory.product(name='Milk')
    response = client.post('/api/sync/incremental-upload', headers=auth_headers, json={
        'data': {'products': [{'id': product.id, 'name': 'Milk 1L'}, {'id': 'p-2', 'name': 'Eggs'}]},
        'lastSyncTimestamp': (utcnow() - timedelta(hours=1)).isoformat() + 'Z',
    })
    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['results']['created'] == 1
    assert body['results']['updated'] == 0
    assert body['results']['conflicts'][0]['serverData']['name'] == 'Milk'
    assert body['results']['conflicts'][0]['clientData']['name'] == 'Milk 1L'
    assert 'timestamp' in body


def test_changes_since_timestamp(client, session, factory, owner, auth_headers):
    product = factory.product(name='Bread')
    since = (utcnow() - timedelta(minutes=10)).isoformat() + 'Z'
    response = client.get(f'/api/sync/changes/{owner.id}/{since}', headers=auth_headers)
    assert response.status_code == 200
    body = response.get_json()
    assert [row['id'] for row in body['changes']['products']] == [product.id]
    assert 'sales' not in body['changes']


def test_changes_with_bad_timestamp_is_400(client, owner, auth_headers):
    response = client.get(f'/api/sync/changes/{owner.id}/not-a-date', headers=auth_headers)
    assert response.status_code == 400


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'ok'
    assert body['database'] == 'ok'


def test_slow_request_is_answered_with_408(app, client):
    app.config['REQUEST_TIMEOUT_SECONDS'] = -1
    response = client.get('/api/health')
    assert response.status_code == 408
    assert response.get_json() == {'error': 'Request timeout'}


def test_domain_errors_map_to_status_codes(client, factory, auth_headers):
    product = factory.product(quantity=1)

    response = client.post('/api/products/missing/damage', headers=auth_headers, json={'quantity': 1})
    assert response.status_code == 404

    response = client.post(f'/api/products/{product.id}/damage', headers=auth_headers, json={'quantity': 5})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Insufficient stock'}

    # rejected by the model's field validator
    response = client.post('/api/sales', headers=auth_headers, json={
        'items': [{'productId': product.id, 'quantity': 1, 'price': 10, 'priceType': 'bulk'}],
    })
    assert response.status_code == 400
    assert 'price_type' in response.get_json()['error']


def test_sale_route_round_trip(client, session, factory, auth_headers):
    product = factory.product(quantity=5, name='Biscuits')

    response = client.post('/api/sales', headers=auth_headers, json={
        'items': [{'productId': product.id, 'quantity': 2, 'price': 30}], 'paidAmount': 60,
    })
    assert response.status_code == 201
    sale = response.get_json()
    assert sale['totalAmount'] == 60.0
    assert sale['items'][0]['productName'] == 'Biscuits'

    response = client.put(f"/api/sales/{sale['id']}/payment", headers=auth_headers, json={'paidAmount': 40})
    assert response.status_code == 200
    assert response.get_json()['paidAmount'] == 40.0

    response = client.get(f"/api/audit-trail/Sale/{sale['id']}", headers=auth_headers)
    assert [(e['oldValue'], e['newValue']) for e in response.get_json()] == [('60', '40')]

    response = client.delete(f"/api/sales/{sale['id']}", headers=auth_headers)
    assert response.status_code == 204
    session.expire_all()
    assert float(session.get(Product, product.id).quantity) == 5.0


def test_audit_period_requires_both_dates(client, owner, auth_headers):
    response = client.get('/api/audit-trail/period?startDate=2024-01-01', headers=auth_headers)
    assert response.status_code == 400


def test_contact_statement_route(client, factory, auth_headers):
    customer = factory.contact()
    factory.loan(customer, '80', 'GIVEN')
    response = client.get(f'/api/contacts/{customer.id}/statement', headers=auth_headers)
    assert response.status_code == 200
    assert response.get_json()['closingBalance'] == 80.0

    response = client.get('/api/contacts/unknown/statement', headers=auth_headers)
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Contact not found'}


@pytest.mark.parametrize('url', ['/api/sales', '/api/bulk-purchases', '/api/returns'])
def test_write_routes_need_a_json_object(client, owner, auth_headers, url):
    response = client.post(url, headers=auth_headers, json=[{'productId': 'p-1'}])
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Request body must be a JSON object'}


def test_sync_upload_with_non_json_body_is_invalid_data(client, owner, auth_headers):
    response = client.post('/api/sync/upload', headers=auth_headers, data='not json',
                           content_type='text/plain')
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Invalid data format'}
