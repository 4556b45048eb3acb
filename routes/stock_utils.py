"""
Stock movement helpers shared by sales, purchases, returns and damage handling.

Callers run these inside db_utils.transaction(); nothing here commits.
"""
from decimal import Decimal
import logging

from models import Product, Contact
from .errors import InsufficientStockError, NotFoundError, ValidationError
from .utils import to_quantity, to_money

logger = logging.getLogger(__name__)


def lock_product(session, user_id, product_id):
    """
    Load an account's product for a stock change.
    - Row-locked on databases that support SELECT ... FOR UPDATE (no-op on SQLite).
    - Raises NotFoundError for unknown ids or another account's product.
    """
    if not product_id:
        raise ValidationError('productId is required')
    product = (session.query(Product)
               .filter_by(id=product_id, user_id=user_id)
               .with_for_update()
               .first())
    if product is None:
        raise NotFoundError(f'Product {product_id} not found')
    return product


def owned_contact(session, user_id, contact_id, required=False):
    if not contact_id:
        if required:
            raise ValidationError('contactId is required')
        return None
    contact = session.query(Contact).filter_by(id=contact_id, user_id=user_id).first()
    if contact is None:
        raise NotFoundError('Contact not found')
    return contact


def positive_quantity(value, field='quantity'):
    quantity = to_quantity(value, field)
    if quantity <= 0:
        raise ValidationError(f'{field} must be positive')
    return quantity


def add_stock(product, quantity):
    product.adjust_stock(quantity)


def remove_stock(product, quantity, clamp=False):
    """Take units out of stock. Without clamp a shortfall raises InsufficientStockError."""
    available = Decimal(product.quantity or 0)
    if quantity > available and not clamp:
        raise InsufficientStockError(
            f'Insufficient stock for {product.name}: {available.normalize()} available, '
            f'{quantity.normalize()} requested')
    if quantity > available:
        logger.info("remove_stock: clamping %s at zero (%s available, %s removed)",
                    product.id, available, quantity)
    product.adjust_stock(-quantity, clamp=clamp)


def parse_line_items(payload, price_field, require_price=True):
    """
    Validate payload['items'] -> [(product_id, quantity, price_or_None, raw_item)].

    Items with a zero quantity are dropped; at least one positive item must remain.
    """
    items = payload.get('items') if isinstance(payload, dict) else None
    if not isinstance(items, list) or not items:
        raise ValidationError('At least one item is required')

    parsed = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f'items[{index}] must be an object')
        quantity = to_quantity(item.get('quantity'), f'items[{index}].quantity')
        if quantity < 0:
            raise ValidationError(f'items[{index}].quantity must be non-negative')
        if quantity == 0:
            continue
        raw_price = item.get(price_field)
        if raw_price is None and require_price:
            raise ValidationError(f'items[{index}].{price_field} is required')
        price = None
        if raw_price is not None:
            price = to_money(raw_price, f'items[{index}].{price_field}')
        parsed.append((item.get('productId'), quantity, price, item))

    if not parsed:
        raise ValidationError('At least one item must have a positive quantity')
    return parsed
