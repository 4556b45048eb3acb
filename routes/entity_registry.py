"""
Entity registry for synchronization.

Every syncable entity type is an EntityType member carrying both of its names:
the storage name ('bulkPurchaseItem') and the wire store name ('bulkPurchaseItems').
Each member maps to a strategy that knows how to find, create, update, wipe and
serialize rows of that type. The module refuses to import if any member lacks a
strategy or a slot in the deletion/insertion orders.
"""
import enum
import json
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.types import Boolean, DateTime, Integer, String

from models import (
    Money, Quantity, new_id, utcnow,
    Product, Contact, Sale, SaleItem, BulkPurchase, BulkPurchaseItem, Branch,
    Employee, Expense, SaleReturn, SaleReturnItem, LoanTransaction, ShopSettings,
)
from .errors import ValidationError
from .utils import camel_to_snake, snake_to_camel, parse_timestamp, coerce_number, iso_format

logger = logging.getLogger(__name__)

# Ownership is always stamped by the server, never taken from the payload.
PROTECTED_COLUMNS = frozenset({'user_id'})


class EntityType(enum.Enum):
    PRODUCT = ('product', 'products')
    CONTACT = ('contact', 'contacts')
    SALE = ('sale', 'sales')
    SALE_ITEM = ('saleItem', 'saleItems')
    BULK_PURCHASE = ('bulkPurchase', 'bulkPurchases')
    BULK_PURCHASE_ITEM = ('bulkPurchaseItem', 'bulkPurchaseItems')
    BRANCH = ('branch', 'branches')
    EMPLOYEE = ('employee', 'employees')
    EXPENSE = ('expense', 'expenses')
    SALE_RETURN = ('saleReturn', 'saleReturns')
    SALE_RETURN_ITEM = ('saleReturnItem', 'saleReturnItems')
    LOAN_TRANSACTION = ('loanTransaction', 'loanTransactions')
    SHOP_SETTINGS = ('shopSettings', 'shopSettings')

    def __init__(self, model_name, store_name):
        self.model_name = model_name
        self.store_name = store_name

    @classmethod
    def from_store_name(cls, name):
        """Wire name -> EntityType, None for names this build does not know."""
        return _BY_STORE_NAME.get(name)

    @classmethod
    def from_model_name(cls, name):
        return _BY_MODEL_NAME.get(name)


_BY_STORE_NAME = {t.store_name: t for t in EntityType}
_BY_MODEL_NAME = {t.model_name: t for t in EntityType}


def store_name_for(model_name):
    entity_type = EntityType.from_model_name(model_name)
    return entity_type.store_name if entity_type else None


def model_name_for(store_name):
    entity_type = EntityType.from_store_name(store_name)
    return entity_type.model_name if entity_type else None


# Children before parents. Sale goes before SaleReturn: sale_return.sale_id cascades.
DELETION_ORDER = (
    EntityType.SALE_ITEM,
    EntityType.BULK_PURCHASE_ITEM,
    EntityType.SALE_RETURN_ITEM,
    EntityType.SALE,
    EntityType.BULK_PURCHASE,
    EntityType.SALE_RETURN,
    EntityType.LOAN_TRANSACTION,
    EntityType.EXPENSE,
    EntityType.EMPLOYEE,
    EntityType.BRANCH,
    EntityType.CONTACT,
    EntityType.PRODUCT,
    EntityType.SHOP_SETTINGS,
)

# Parents before children.
INSERTION_ORDER = (
    EntityType.PRODUCT,
    EntityType.CONTACT,
    EntityType.BRANCH,
    EntityType.EMPLOYEE,
    EntityType.SHOP_SETTINGS,
    EntityType.SALE,
    EntityType.SALE_ITEM,
    EntityType.BULK_PURCHASE,
    EntityType.BULK_PURCHASE_ITEM,
    EntityType.SALE_RETURN,
    EntityType.SALE_RETURN_ITEM,
    EntityType.LOAN_TRANSACTION,
    EntityType.EXPENSE,
)


class EntityStrategy:
    """Storage operations for one entity type, driven by the model's column metadata."""

    def __init__(self, entity_type, model):
        self.entity_type = entity_type
        self.model = model
        self.columns = {column.key: column for column in sa_inspect(model).columns}
        # (column key, referenced table) for every foreign key except the owner
        self.references = [
            (key, fk.column.table.name)
            for key, column in self.columns.items() if key not in PROTECTED_COLUMNS
            for fk in column.foreign_keys
        ]

    def __repr__(self):
        return f'<EntityStrategy {self.entity_type.model_name}>'

    # --- wire conversion ---

    def _coerce(self, column, raw, key):
        column_type = column.type
        if isinstance(column_type, (Money, Quantity)):
            number = coerce_number(raw)
            if number is None:
                raise ValidationError(f'{key} must be numeric (got {raw!r})')
            return number
        if isinstance(column_type, DateTime):
            return parse_timestamp(raw, field=key)
        if isinstance(column_type, Boolean):
            if isinstance(raw, str):
                return raw.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(raw)
        if isinstance(column_type, Integer):
            try:
                return int(raw)
            except (TypeError, ValueError):
                raise ValidationError(f'{key} must be an integer (got {raw!r})')
        if isinstance(column_type, String):
            if isinstance(raw, (dict, list)):
                return json.dumps(raw)
            return str(raw)
        return raw

    def from_wire(self, payload):
        """
        Wire record (camelCase) -> column values (snake_case).

        - Keys that are not columns are dropped (nested collections, UI-only fields).
        - user_id is never read from the payload.
        - null for a NOT NULL column is dropped so the column default applies.
        """
        if not isinstance(payload, dict):
            raise ValidationError(f'{self.entity_type.store_name} record must be an object')
        values = {}
        for key, raw in payload.items():
            column_key = camel_to_snake(key)
            column = self.columns.get(column_key)
            if column is None or column_key in PROTECTED_COLUMNS:
                continue
            if raw is None:
                if column.nullable:
                    values[column_key] = None
                continue
            values[column_key] = self._coerce(column, raw, key)
        return values

    def to_wire(self, instance):
        row = {}
        for key in self.columns:
            value = getattr(instance, key)
            if isinstance(value, Decimal):
                value = float(value)
            elif isinstance(value, datetime):
                value = iso_format(value)
            row[snake_to_camel(key)] = value
        return row

    def export(self, instance):
        """Snapshot form of a row; parents override this to embed their children."""
        return self.to_wire(instance)

    # --- storage ---

    def find(self, session, record_id):
        return session.get(self.model, record_id)

    def find_many(self, session, user_id, since=None):
        query = session.query(self.model).filter(self.model.user_id == user_id)
        if since is not None:
            query = query.filter(self.model.updated_at > since)
        return query.order_by(self.model.created_at, self.model.id).all()

    def check_references(self, session, user_id, values):
        """Every referenced parent row must exist and belong to `user_id`."""
        for key, table_name in self.references:
            target_id = values.get(key)
            if target_id is None:
                continue
            target = _MODELS_BY_TABLE.get(table_name)
            if target is None:
                continue
            owned = (session.query(target.id)
                     .filter(target.id == target_id, target.user_id == user_id)
                     .first())
            if owned is None:
                raise ValidationError(f'{snake_to_camel(key)} {target_id} not found')

    def create(self, session, user_id, payload, stamp=None):
        """Build and add a row from a wire record. With `stamp`, updated_at is the server clock."""
        values = self.from_wire(payload)
        self.check_references(session, user_id, values)
        if not values.get('id'):
            values['id'] = new_id()
        if stamp is not None:
            values['updated_at'] = stamp
        instance = self.model(**values)
        instance.user_id = user_id
        session.add(instance)
        return instance

    def update(self, session, instance, payload, stamp=None):
        """Apply a wire record over an existing row. Identity and creation time never change."""
        values = self.from_wire(payload)
        for key in ('id', 'created_at', 'updated_at'):
            values.pop(key, None)
        self.check_references(session, instance.user_id, values)
        for key, value in values.items():
            setattr(instance, key, value)
        instance.updated_at = stamp or utcnow()
        return instance

    def delete_all(self, session, user_id):
        return session.query(self.model).filter(self.model.user_id == user_id).delete(synchronize_session=False)


def _line_item_export(entity_type, item):
    row = STRATEGIES[entity_type].to_wire(item)
    product = item.product
    row['productName'] = product.name if product is not None else None
    row['productSku'] = product.sku if product is not None else None
    return row


class SaleReturnStrategy(EntityStrategy):
    def export(self, instance):
        row = self.to_wire(instance)
        row['items'] = [_line_item_export(EntityType.SALE_RETURN_ITEM, item) for item in instance.items]
        return row


class SaleStrategy(EntityStrategy):
    def export(self, instance):
        row = self.to_wire(instance)
        row['items'] = [_line_item_export(EntityType.SALE_ITEM, item) for item in instance.items]
        row['returns'] = [STRATEGIES[EntityType.SALE_RETURN].export(r) for r in instance.returns]
        return row


class BulkPurchaseStrategy(EntityStrategy):
    def export(self, instance):
        row = self.to_wire(instance)
        row['items'] = [_line_item_export(EntityType.BULK_PURCHASE_ITEM, item) for item in instance.items]
        return row


STRATEGIES = {
    EntityType.PRODUCT: EntityStrategy(EntityType.PRODUCT, Product),
    EntityType.CONTACT: EntityStrategy(EntityType.CONTACT, Contact),
    EntityType.SALE: SaleStrategy(EntityType.SALE, Sale),
    EntityType.SALE_ITEM: EntityStrategy(EntityType.SALE_ITEM, SaleItem),
    EntityType.BULK_PURCHASE: BulkPurchaseStrategy(EntityType.BULK_PURCHASE, BulkPurchase),
    EntityType.BULK_PURCHASE_ITEM: EntityStrategy(EntityType.BULK_PURCHASE_ITEM, BulkPurchaseItem),
    EntityType.BRANCH: EntityStrategy(EntityType.BRANCH, Branch),
    EntityType.EMPLOYEE: EntityStrategy(EntityType.EMPLOYEE, Employee),
    EntityType.EXPENSE: EntityStrategy(EntityType.EXPENSE, Expense),
    EntityType.SALE_RETURN: SaleReturnStrategy(EntityType.SALE_RETURN, SaleReturn),
    EntityType.SALE_RETURN_ITEM: EntityStrategy(EntityType.SALE_RETURN_ITEM, SaleReturnItem),
    EntityType.LOAN_TRANSACTION: EntityStrategy(EntityType.LOAN_TRANSACTION, LoanTransaction),
    EntityType.SHOP_SETTINGS: EntityStrategy(EntityType.SHOP_SETTINGS, ShopSettings),
}


_MODELS_BY_TABLE = {strategy.model.__table__.name: strategy.model for strategy in STRATEGIES.values()}


def _check_registry():
    members = list(EntityType)
    problems = []
    missing = [t.name for t in members if t not in STRATEGIES]
    if missing:
        problems.append(f'no strategy for {missing}')
    if len(_BY_STORE_NAME) != len(members):
        problems.append('store names are not unique')
    if len(_BY_MODEL_NAME) != len(members):
        problems.append('model names are not unique')
    for label, order in (('DELETION_ORDER', DELETION_ORDER), ('INSERTION_ORDER', INSERTION_ORDER)):
        if len(order) != len(members) or set(order) != set(members):
            problems.append(f'{label} must list every entity type exactly once')
    for entity_type, strategy in STRATEGIES.items():
        if strategy.entity_type is not entity_type:
            problems.append(f'strategy for {entity_type.name} is bound to {strategy.entity_type.name}')
    if problems:
        raise RuntimeError('Entity registry is inconsistent: ' + '; '.join(problems))


_check_registry()
