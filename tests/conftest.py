# tests/conftest.py
# ---------------------------------------------------------------------
# Ground rules:
# - Every test gets its own SQLite file (PRAGMA foreign_keys=ON via models)
# - One app context is pushed for the whole test; db.session is shared
#   between service calls and test-client requests
# - Rate limiting and caching are off; API tokens are fixed strings
# - `factory` inserts rows directly (no stock side effects) for setup
# ---------------------------------------------------------------------
from decimal import Decimal
import itertools

import pytest

from app import create_app
from config import Config
from models import (
    db as _db, new_id, User, Product, Contact, Sale, SaleItem, BulkPurchase, BulkPurchaseItem,
    SaleReturn, SaleReturnItem, LoanTransaction, Expense, Branch, Employee, ShopSettings,
)

OWNER_TOKEN = 'owner-token'
OTHER_TOKEN = 'other-token'


class _TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    CACHE_TYPE = 'NullCache'
    TX_TIMEOUT_SECONDS = 10
    REQUEST_TIMEOUT_SECONDS = 30
    SLOW_REQUEST_SECONDS = 10


@pytest.fixture()
def app(tmp_path):
    class Cfg(_TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'hisabghar_test.db'}"

    application = create_app(Cfg)
    with application.app_context():
        _db.create_all()
        yield application
        _db.session.remove()
        _db.drop_all()
        _db.engine.dispose()


@pytest.fixture()
def session(app):
    return _db.session


@pytest.fixture()
def client(app):
    return app.test_client()


def _make_user(session, username, token):
    user = User(username=username, api_token=token)
    session.add(user)
    session.commit()
    return user


@pytest.fixture()
def owner(session):
    return _make_user(session, 'owner', OWNER_TOKEN)


@pytest.fixture()
def other_user(session):
    return _make_user(session, 'other', OTHER_TOKEN)


@pytest.fixture()
def auth_headers(owner):
    return {'Authorization': f'Bearer {OWNER_TOKEN}'}


class Factory:
    """Row builders for test setup. Each call commits; stock is not touched."""

    def __init__(self, session, user_id):
        self.session = session
        self.user_id = user_id
        self._seq = itertools.count(1)

    def _save(self, row):
        self.session.add(row)
        self.session.commit()
        return row

    def product(self, name=None, quantity=10, purchase_price='5.00', retail_price='10.00', **kw):
        n = next(self._seq)
        return self._save(Product(
            id=kw.pop('id', new_id()), user_id=kw.pop('user_id', self.user_id),
            name=name or f'Product {n}', sku=kw.pop('sku', f'SKU-{n}'),
            quantity=Decimal(str(quantity)), purchase_price=Decimal(purchase_price),
            retail_price=Decimal(retail_price), **kw))

    def contact(self, name=None, contact_type='customer', **kw):
        n = next(self._seq)
        return self._save(Contact(id=kw.pop('id', new_id()), user_id=kw.pop('user_id', self.user_id),
                                  name=name or f'Contact {n}', contact_type=contact_type, **kw))

    def sale(self, items=(), contact=None, total='0.00', paid='0.00', **kw):
        n = next(self._seq)
        sale = Sale(id=kw.pop('id', new_id()), user_id=self.user_id, bill_number=kw.pop('bill_number', f'INV-{n}'),
                    total_amount=Decimal(total), paid_amount=Decimal(paid),
                    contact_id=contact.id if contact else None, **kw)
        for product, quantity, price in items:
            sale.items.append(SaleItem(user_id=self.user_id, product_id=product.id,
                                       quantity=Decimal(str(quantity)), price=Decimal(str(price)),
                                       purchase_price=product.purchase_price))
        return self._save(sale)

    def purchase(self, items=(), contact=None, total='0.00', paid='0.00', **kw):
        n = next(self._seq)
        purchase = BulkPurchase(id=kw.pop('id', new_id()), user_id=self.user_id,
                                invoice_number=kw.pop('invoice_number', f'BP-{n}'),
                                total_amount=Decimal(total), paid_amount=Decimal(paid),
                                contact_id=contact.id if contact else None, **kw)
        for product, quantity, cost in items:
            purchase.items.append(BulkPurchaseItem(user_id=self.user_id, product_id=product.id,
                                                   quantity=Decimal(str(quantity)),
                                                   purchase_price=Decimal(str(cost))))
        return self._save(purchase)

    def sale_return(self, sale, items=(), refund='0.00', refund_paid=False, **kw):
        n = next(self._seq)
        sale_return = SaleReturn(id=kw.pop('id', new_id()), user_id=self.user_id, sale_id=sale.id,
                                 return_number=kw.pop('return_number', f'RET-{n}'),
                                 total_amount=Decimal(refund), refund_amount=Decimal(refund),
                                 refund_paid=refund_paid, **kw)
        for product, quantity, price in items:
            sale_return.items.append(SaleReturnItem(user_id=self.user_id, product_id=product.id,
                                                    quantity=Decimal(str(quantity)),
                                                    price=Decimal(str(price))))
        return self._save(sale_return)

    def loan(self, contact, amount, loan_type, **kw):
        return self._save(LoanTransaction(id=kw.pop('id', new_id()), user_id=self.user_id,
                                          contact_id=contact.id, amount=Decimal(str(amount)),
                                          type=loan_type, **kw))

    def expense(self, amount='25.00', category='Rent', **kw):
        return self._save(Expense(id=kw.pop('id', new_id()), user_id=self.user_id,
                                  amount=Decimal(amount), category=category, **kw))

    def branch(self, name='Main', **kw):
        return self._save(Branch(id=kw.pop('id', new_id()), user_id=self.user_id, name=name, **kw))

    def employee(self, branch=None, first_name='Ali', **kw):
        return self._save(Employee(id=kw.pop('id', new_id()), user_id=self.user_id,
                                   branch_id=branch.id if branch else None, first_name=first_name, **kw))

    def shop_settings(self, shop_name='HisabGhar Traders', **kw):
        return self._save(ShopSettings(id=kw.pop('id', new_id()), user_id=self.user_id,
                                       shop_name=shop_name, **kw))


@pytest.fixture()
def factory(session, owner):
    return Factory(session, owner.id)
