from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime, timezone
import sqlite3
import uuid
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import validates
from decimal import Decimal, ROUND_HALF_UP, getcontext
from sqlalchemy.types import TypeDecorator, Numeric as SA_Numeric
import logging


db = SQLAlchemy()

getcontext().prec = 28

CONTACT_TYPES = ('customer', 'supplier', 'both')
PRICE_TYPES = ('retail', 'wholesale')
LOAN_TYPES = ('GIVEN', 'TAKEN', 'RETURNED_BY_CONTACT', 'RETURNED_TO_CONTACT')


def utcnow():
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores FOREIGN KEY clauses unless asked per connection.
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class _QuantizedDecimal(TypeDecorator):
    impl = SA_Numeric(precision=18, scale=2)
    cache_ok = True
    quantum = Decimal('0.01')

    def process_bind_param(self, value, dialect):
        # Called when saving to DB. Accepts Decimal, float, int, or str.
        if value is None:
            return None
        if not isinstance(value, Decimal):
            try:
                # Use str() to avoid binary-float surprises
                value = Decimal(str(value))
            except Exception:
                raise ValueError(f"Cannot convert {value!r} to Decimal")
        return value.quantize(self.quantum, rounding=ROUND_HALF_UP)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            if isinstance(value, Decimal):
                return value.quantize(self.quantum, rounding=ROUND_HALF_UP)
            # Convert via str to avoid float precision surprises (e.g., 123.45000000001)
            return Decimal(str(value)).quantize(self.quantum, rounding=ROUND_HALF_UP)
        except Exception as e:
            logging.exception("%s.process_result_value: failed to parse DB value %r (type=%s): %s",
                              type(self).__name__, value, type(value), e)
            return Decimal('0').quantize(self.quantum)

    def python_type(self):
        return Decimal


class Money(_QuantizedDecimal):
    """
    Currency amounts.
    - Python value: decimal.Decimal (quantized to 2 decimal places, ROUND_HALF_UP)
    - DB value: NUMERIC(18,2)
    """
    impl = SA_Numeric(precision=18, scale=2)
    cache_ok = True
    quantum = Decimal('0.01')


class Quantity(_QuantizedDecimal):
    """Stock quantities: integer-like decimals stored as NUMERIC(18,3)."""
    impl = SA_Numeric(precision=18, scale=3)
    cache_ok = True
    quantum = Decimal('0.001')


class TimestampMixin:
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class User(db.Model, UserMixin):
    """Owning account. Every synced row is scoped by user_id."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    username = db.Column(db.String(100), unique=True, nullable=False)
    api_token = db.Column(db.String(128), unique=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow)


class Product(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(100), nullable=True)
    unit = db.Column(db.String(20), nullable=True)
    quantity = db.Column(Quantity(), nullable=False, default=Decimal('0'))
    damaged_quantity = db.Column(Quantity(), nullable=False, default=Decimal('0'))
    low_stock_threshold = db.Column(Quantity(), nullable=False, default=Decimal('10'))
    retail_price = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    wholesale_price = db.Column(Money(), nullable=True)
    purchase_price = db.Column(Money(), nullable=True)
    per_unit_purchase_price = db.Column(Money(), nullable=True)
    is_raw_material = db.Column(db.Boolean, nullable=False, default=False)

    def is_low_stock(self):
        return (self.quantity or 0) <= (self.low_stock_threshold or 0)

    def adjust_stock(self, change, clamp=False):
        """Apply a signed stock change. With clamp=True a shortfall floors at zero instead of failing."""
        new_quantity = Decimal(self.quantity or 0) + Decimal(str(change))
        if new_quantity < 0 and clamp:
            new_quantity = Decimal('0')
        self.quantity = new_quantity

    @validates('quantity', 'damaged_quantity')
    def validate_quantity(self, key, value):
        """Ensure stock counters are numeric and >= 0."""
        if value is None:
            raise ValueError(f'{key} cannot be None')
        try:
            v = value if isinstance(value, Decimal) else Decimal(str(value))
        except Exception:
            raise ValueError(f'{key} must be a numeric value (got {value!r})')
        if v < 0:
            raise ValueError(f'{key} cannot be negative')
        return v

    __table_args__ = (
        db.UniqueConstraint('user_id', 'name', name='uq_product_user_name'),
        db.UniqueConstraint('user_id', 'sku', name='uq_product_user_sku'),
        db.Index('idx_product_user_updated', 'user_id', 'updated_at'),
    )


class Contact(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    contact_type = db.Column(db.String(20), nullable=False, default='customer')
    phone_number = db.Column(db.String(50), nullable=True)
    address = db.Column(db.String(300), nullable=True)
    email = db.Column(db.String(200), nullable=True)

    @validates('contact_type')
    def validate_contact_type(self, key, value):
        value = (value or 'customer').strip().lower()
        if value not in CONTACT_TYPES:
            raise ValueError(f'contact_type must be one of {", ".join(CONTACT_TYPES)}')
        return value

    __table_args__ = (
        db.UniqueConstraint('user_id', 'name', name='uq_contact_user_name'),
        db.Index('idx_contact_user_updated', 'user_id', 'updated_at'),
    )


class Branch(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    location = db.Column(db.String(300), nullable=True)
    phone = db.Column(db.String(50), nullable=True)


class Employee(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    branch_id = db.Column(db.String(36), db.ForeignKey('branch.id'), nullable=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    email = db.Column(db.String(200), nullable=True)
    permissions = db.Column(db.Text, nullable=True)  # JSON list

    branch = db.relationship('Branch')


class Sale(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    bill_number = db.Column(db.String(50), nullable=False)
    total_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    original_total_amount = db.Column(Money(), nullable=True)
    discount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    paid_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    sale_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    contact_id = db.Column(db.String(36), db.ForeignKey('contact.id'), nullable=True)
    employee_id = db.Column(db.String(36), db.ForeignKey('employee.id'), nullable=True)
    transport_cost = db.Column(Money(), nullable=True)
    transport_details = db.Column(db.String(300), nullable=True)

    contact = db.relationship('Contact')
    items = db.relationship('SaleItem', back_populates='sale', order_by='SaleItem.created_at')
    returns = db.relationship('SaleReturn', back_populates='sale', passive_deletes=True,
                              order_by='SaleReturn.created_at')

    __table_args__ = (
        db.Index('idx_sale_user_contact', 'user_id', 'contact_id'),
        db.Index('idx_sale_user_updated', 'user_id', 'updated_at'),
        db.Index('idx_sale_sale_date', 'sale_date'),
    )


class SaleItem(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    sale_id = db.Column(db.String(36), db.ForeignKey('sale.id'), nullable=False)
    product_id = db.Column(db.String(36), db.ForeignKey('product.id'), nullable=False)
    quantity = db.Column(Quantity(), nullable=False)
    price = db.Column(Money(), nullable=False)
    purchase_price = db.Column(Money(), nullable=True)  # cost snapshot at sale time
    price_type = db.Column(db.String(20), nullable=False, default='retail')

    sale = db.relationship('Sale', back_populates='items')
    product = db.relationship('Product')

    @validates('price_type')
    def validate_price_type(self, key, value):
        value = (value or 'retail').strip().lower()
        if value not in PRICE_TYPES:
            raise ValueError('price_type must be retail or wholesale')
        return value


class BulkPurchase(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    invoice_number = db.Column(db.String(50), nullable=True)
    total_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    paid_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    discount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    purchase_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    contact_id = db.Column(db.String(36), db.ForeignKey('contact.id'), nullable=True)
    transport_cost = db.Column(Money(), nullable=True)
    transport_details = db.Column(db.String(300), nullable=True)

    contact = db.relationship('Contact')
    items = db.relationship('BulkPurchaseItem', back_populates='bulk_purchase',
                            order_by='BulkPurchaseItem.created_at')

    __table_args__ = (
        db.Index('idx_bulk_purchase_user_contact', 'user_id', 'contact_id'),
        db.Index('idx_bulk_purchase_user_updated', 'user_id', 'updated_at'),
    )


class BulkPurchaseItem(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    bulk_purchase_id = db.Column(db.String(36), db.ForeignKey('bulk_purchase.id'), nullable=False)
    product_id = db.Column(db.String(36), db.ForeignKey('product.id'), nullable=False)
    quantity = db.Column(Quantity(), nullable=False)
    purchase_price = db.Column(Money(), nullable=False)

    bulk_purchase = db.relationship('BulkPurchase', back_populates='items')
    product = db.relationship('Product')


class SaleReturn(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    return_number = db.Column(db.String(50), nullable=False)
    total_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    refund_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    refund_paid = db.Column(db.Boolean, nullable=False, default=False)
    refund_date = db.Column(db.DateTime, nullable=True)
    return_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    reason = db.Column(db.String(500), nullable=True)
    remove_from_stock = db.Column(db.Boolean, nullable=False, default=False)
    is_container_return = db.Column(db.Boolean, nullable=False, default=False)
    # Snapshot wipes delete sales before returns; the cascade keeps that order FK-safe.
    sale_id = db.Column(db.String(36), db.ForeignKey('sale.id', ondelete='CASCADE'), nullable=False)

    sale = db.relationship('Sale', back_populates='returns')
    items = db.relationship('SaleReturnItem', back_populates='sale_return',
                            order_by='SaleReturnItem.created_at')

    __table_args__ = (
        db.Index('idx_sale_return_user_updated', 'user_id', 'updated_at'),
    )


class SaleReturnItem(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    sale_return_id = db.Column(db.String(36), db.ForeignKey('sale_return.id'), nullable=False)
    product_id = db.Column(db.String(36), db.ForeignKey('product.id'), nullable=False)
    quantity = db.Column(Quantity(), nullable=False)
    price = db.Column(Money(), nullable=False, default=Decimal('0.00'))

    sale_return = db.relationship('SaleReturn', back_populates='items')
    product = db.relationship('Product')


class LoanTransaction(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    contact_id = db.Column(db.String(36), db.ForeignKey('contact.id'), nullable=False)
    amount = db.Column(Money(), nullable=False)
    type = db.Column(db.String(30), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    date = db.Column(db.DateTime, nullable=False, default=utcnow)

    contact = db.relationship('Contact')

    @validates('type')
    def validate_type(self, key, value):
        value = (value or '').strip().upper()
        if value not in LOAN_TYPES:
            raise ValueError(f'Loan type must be one of {", ".join(LOAN_TYPES)}')
        return value

    __table_args__ = (
        db.Index('idx_loan_user_contact', 'user_id', 'contact_id'),
    )


class Expense(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(Money(), nullable=False)
    date = db.Column(db.DateTime, nullable=False, default=utcnow)
    category = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)
    receipt_number = db.Column(db.String(100), nullable=True)
    contact_id = db.Column(db.String(36), db.ForeignKey('contact.id'), nullable=True)
    product_id = db.Column(db.String(36), db.ForeignKey('product.id'), nullable=True)


class ShopSettings(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    shop_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=True)
    shop_description = db.Column(db.Text, nullable=True)
    address = db.Column(db.String(300), nullable=True)
    phone = db.Column(db.String(50), nullable=True)


# Manufacturing. Product references are plain indexed columns: a full sync
# wipes and reloads products, and recipes must survive that by id.

class Recipe(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    product_id = db.Column(db.String(36), nullable=False, index=True)

    product = db.relationship('Product', primaryjoin='foreign(Recipe.product_id) == Product.id', viewonly=True)
    ingredients = db.relationship('RecipeItem', back_populates='recipe', cascade='all, delete-orphan',
                                  order_by='RecipeItem.created_at')

    __table_args__ = (
        db.UniqueConstraint('user_id', 'product_id', name='uq_recipe_user_product'),
    )


class RecipeItem(TimestampMixin, db.Model):
    """One ingredient: `quantity` of `unit` per unit produced."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    recipe_id = db.Column(db.String(36), db.ForeignKey('recipe.id', ondelete='CASCADE'), nullable=False)
    raw_material_id = db.Column(db.String(36), nullable=False, index=True)
    quantity = db.Column(Quantity(), nullable=False)
    unit = db.Column(db.String(20), nullable=False, default='pcs')

    recipe = db.relationship('Recipe', back_populates='ingredients')
    raw_material = db.relationship('Product', primaryjoin='foreign(RecipeItem.raw_material_id) == Product.id',
                                   viewonly=True)


class ManufacturingRun(TimestampMixin, db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), nullable=False)
    recipe_id = db.Column(db.String(36), db.ForeignKey('recipe.id'), nullable=False)
    product_id = db.Column(db.String(36), nullable=False, index=True)
    quantity_produced = db.Column(Quantity(), nullable=False)
    manufacturing_cost = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    production_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    notes = db.Column(db.Text, nullable=True)

    recipe = db.relationship('Recipe')
    product = db.relationship('Product', primaryjoin='foreign(ManufacturingRun.product_id) == Product.id',
                              viewonly=True)
    consumed = db.relationship('ManufacturingRunItem', back_populates='run', cascade='all, delete-orphan')

    __table_args__ = (
        db.Index('idx_manufacturing_user_date', 'user_id', 'production_date'),
    )


class ManufacturingRunItem(db.Model):
    """Raw material taken by a run, in the raw material's own stock unit."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    run_id = db.Column(db.String(36), db.ForeignKey('manufacturing_run.id', ondelete='CASCADE'), nullable=False)
    raw_material_id = db.Column(db.String(36), nullable=False)
    quantity = db.Column(Quantity(), nullable=False)

    run = db.relationship('ManufacturingRun', back_populates='consumed')
    raw_material = db.relationship('Product',
                                   primaryjoin='foreign(ManufacturingRunItem.raw_material_id) == Product.id',
                                   viewonly=True)


class AuditTrail(db.Model):
    """Append-only field change log. Rows are never updated or deleted."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), nullable=True, index=True)
    table_name = db.Column(db.String(50), nullable=False)
    record_id = db.Column(db.String(36), nullable=False)
    field_name = db.Column(db.String(50), nullable=False)
    old_value = db.Column(db.String(100), nullable=True)
    new_value = db.Column(db.String(100), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    changed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    # Denormalized keys, no FK constraint: snapshot wipes must not touch the trail.
    sale_id = db.Column(db.String(36), nullable=True, index=True)
    purchase_id = db.Column(db.String(36), nullable=True, index=True)

    def __repr__(self):
        return f'<AuditTrail {self.table_name}:{self.record_id} {self.field_name} {self.old_value}->{self.new_value}>'

    __table_args__ = (
        db.Index('idx_audit_record_field', 'table_name', 'record_id', 'field_name'),
        db.Index('idx_audit_changed_at', 'changed_at'),
    )
