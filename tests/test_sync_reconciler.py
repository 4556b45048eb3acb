from datetime import datetime, timedelta

import pytest

from conftest import Factory
from models import Product, Sale, SaleItem, utcnow
from routes.errors import InvalidInput
from routes.snapshot import download_snapshot
from routes.sync_reconciler import reconcile


def _ago(**kw):
    return (utcnow() - timedelta(**kw)).isoformat() + 'Z'


def _ahead(**kw):
    return (utcnow() + timedelta(**kw)).isoformat() + 'Z'


@pytest.mark.parametrize('data', [None, {}, [], 'products'])
def test_rejects_empty_or_malformed_payload(session, owner, data):
    with pytest.raises(InvalidInput) as excinfo:
        reconcile(session, owner.id, data, _ago(hours=1))
    assert excinfo.value.message == 'Invalid data format'


def test_creates_absent_records_with_server_clock(session, owner):
    before = utcnow()
    result = reconcile(session, owner.id, {
        'products': [{'id': 'p-new', 'name': 'Lentils', 'quantity': 4, 'updatedAt': '2001-01-01T00:00:00Z'}],
    }, _ago(days=1))

    assert (result.created, result.updated, result.conflicts, result.failed) == (1, 0, [], [])
    product = session.get(Product, 'p-new')
    assert product.user_id == owner.id
    assert product.updated_at >= before


def test_server_row_changed_after_last_sync_is_a_conflict(session, factory, owner):
    product = factory.product(name='Flour', quantity=7)
    watermark = _ago(hours=1)

    result = reconcile(session, owner.id, {
        'products': [{'id': product.id, 'name': 'Flour (client)', 'quantity': 1}],
    }, watermark)

    assert result.created == result.updated == 0
    assert len(result.conflicts) == 1
    conflict = result.conflicts[0].to_dict()
    assert conflict['id'] == product.id
    assert conflict['type'] == 'products'
    assert conflict['serverData']['name'] == 'Flour'
    assert conflict['clientData']['name'] == 'Flour (client)'

    session.expire_all()
    unchanged = session.get(Product, product.id)
    assert unchanged.name == 'Flour'
    assert float(unchanged.quantity) == 7.0


def test_server_row_older_than_last_sync_is_updated(session, factory, owner):
    product = factory.product(name='Salt', created_at=datetime(2024, 1, 1))

    result = reconcile(session, owner.id, {
        'products': [{'id': product.id, 'name': 'Iodized Salt', 'createdAt': '2010-01-01T00:00:00Z'}],
    }, _ahead(minutes=5))

    assert result.updated == 1
    assert result.conflicts == []
    session.expire_all()
    updated = session.get(Product, product.id)
    assert updated.name == 'Iodized Salt'
    assert updated.created_at == datetime(2024, 1, 1)


@pytest.mark.parametrize('watermark', [None, '', 'yesterday-ish'])
def test_missing_or_unparseable_watermark_overwrites_existing_rows(session, factory, owner, watermark):
    product = factory.product(name='Ghee')
    result = reconcile(session, owner.id, {
        'products': [{'id': product.id, 'name': 'Desi Ghee'}, {'id': 'p-fresh', 'name': 'Butter'}],
    }, watermark)
    assert result.conflicts == []
    assert result.updated == 1
    assert result.created == 1
    session.expire_all()
    assert session.get(Product, product.id).name == 'Desi Ghee'


def test_unknown_stores_are_ignored(session, owner):
    result = reconcile(session, owner.id, {
        'invoices': [{'id': 'x'}],
        'contacts': [{'id': 'c-1', 'name': 'Hamid Stores'}],
    }, _ago(hours=1))
    assert result.created == 1
    assert result.failed == []


def test_one_bad_record_does_not_stop_the_batch(session, owner):
    result = reconcile(session, owner.id, {
        'products': [
            {'id': 'p-1', 'name': 'Tea'},
            {'id': 'p-2', 'name': 'Broken', 'quantity': -3},
            {'id': 'p-3', 'name': 'Coffee'},
        ],
    }, _ago(hours=1))

    assert result.created == 2
    assert len(result.failed) == 1
    failure = result.failed[0].to_dict()
    assert failure['item']['id'] == 'p-2'
    assert failure['type'] == 'products'
    assert failure['error']
    assert session.get(Product, 'p-2') is None
    assert session.get(Product, 'p-3') is not None


def test_non_list_store_is_reported_as_failure(session, owner):
    result = reconcile(session, owner.id, {'products': {'id': 'p-1'}}, _ago(hours=1))
    assert result.created == 0
    assert result.failed[0].store == 'products'


def test_records_owned_by_another_account_are_not_touched(session, owner, other_user):
    theirs = Factory(session, other_user.id).product(name='Their Rice')
    result = reconcile(session, owner.id, {
        'products': [{'id': theirs.id, 'name': 'Hijacked'}],
    }, _ahead(minutes=5))

    assert result.updated == 0
    assert len(result.failed) == 1
    assert 'another account' in result.failed[0].error
    session.expire_all()
    assert session.get(Product, theirs.id).user_id == other_user.id
    assert session.get(Product, theirs.id).name == 'Their Rice'


def test_children_arriving_before_parents_in_payload_still_insert(session, owner):
    # stores listed child-first; processing follows parent-first order
    data = {
        'saleItems': [{'id': 'si-1', 'saleId': 's-1', 'productId': 'p-1', 'quantity': 2, 'price': 50}],
        'sales': [{'id': 's-1', 'billNumber': 'INV-100001', 'totalAmount': 100}],
        'products': [{'id': 'p-1', 'name': 'Soap', 'quantity': 10}],
    }
    result = reconcile(session, owner.id, data, _ago(hours=1))

    assert result.failed == []
    assert result.created == 3
    assert session.get(SaleItem, 'si-1').sale_id == 's-1'
    assert session.get(Sale, 's-1').user_id == owner.id


def test_result_serializes_for_the_wire(session, factory, owner):
    product = factory.product()
    result = reconcile(session, owner.id, {'products': [{'id': product.id, 'name': 'X'}]}, _ago(hours=1))
    payload = result.to_dict()
    assert set(payload) == {'created', 'updated', 'conflicts', 'failed'}
    assert payload['conflicts'][0]['serverData']['id'] == product.id


def test_children_cannot_attach_to_another_accounts_rows(session, factory, owner, other_user):
    rice = factory.product(name='Rice')
    sale = factory.sale(items=[(rice, 1, '10')], total='10')
    own_item_id = sale.items[0].id

    result = reconcile(session, other_user.id, {
        'saleItems': [{'id': 'si-foreign', 'saleId': sale.id, 'productId': rice.id, 'quantity': 1, 'price': 1}],
    }, _ago(hours=1))

    assert result.created == 0
    assert len(result.failed) == 1
    assert 'saleId' in result.failed[0].error
    assert session.get(SaleItem, 'si-foreign') is None
    owner_items = download_snapshot(session, owner.id)['sales'][0]['items']
    assert [item['id'] for item in owner_items] == [own_item_id]


def test_update_cannot_repoint_a_row_at_another_account(session, factory, other_user):
    owners_rice = factory.product(name='Rice')
    theirs = Factory(session, other_user.id)
    salt = theirs.product(name='Salt')
    item = theirs.sale(items=[(salt, 1, '10')], total='10').items[0]

    result = reconcile(session, other_user.id, {
        'saleItems': [{'id': item.id, 'productId': owners_rice.id}],
    }, _ahead(minutes=5))

    assert result.updated == 0
    assert 'productId' in result.failed[0].error
    session.expire_all()
    assert session.get(SaleItem, item.id).product_id == salt.id
