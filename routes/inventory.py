"""
Product stock maintenance: damage write-off, restore and deletion.
"""
import logging

from flask import Blueprint, jsonify
from flask_login import login_required, current_user

from models import db, Product, SaleItem, BulkPurchaseItem, SaleReturnItem, Expense, Recipe, RecipeItem
from .db_utils import transaction
from .entity_registry import EntityType, STRATEGIES
from .errors import InsufficientStockError, NotFoundError, ReferentialIntegrityError, ValidationError
from .stock_utils import lock_product, positive_quantity
from .utils import json_body

logger = logging.getLogger(__name__)

inventory_bp = Blueprint('inventory', __name__, url_prefix='/api/products')


def damage_product(session, user_id, product_id, quantity):
    """Move units from sellable stock to damaged stock. quantity + damaged_quantity is unchanged."""
    quantity = positive_quantity(quantity)
    with transaction(session):
        product = lock_product(session, user_id, product_id)
        if quantity > product.quantity:
            raise InsufficientStockError('Insufficient stock')
        product.quantity = product.quantity - quantity
        product.damaged_quantity = product.damaged_quantity + quantity
    return product


def restore_product(session, user_id, product_id, quantity=None):
    """Move damaged units back to sellable stock; all of them when quantity is omitted."""
    with transaction(session):
        product = lock_product(session, user_id, product_id)
        damaged = product.damaged_quantity
        restore_qty = positive_quantity(quantity) if quantity not in (None, '', 0) else damaged
        if restore_qty <= 0:
            raise ValidationError('No damaged stock to restore')
        if restore_qty > damaged:
            raise ValidationError('Cannot restore more than damaged quantity')
        product.quantity = product.quantity + restore_qty
        product.damaged_quantity = damaged - restore_qty
    return product


def delete_product(session, user_id, product_id):
    """
    Delete a product that no transaction line references.
    Expenses tagged with the product keep their amount and lose the tag.
    """
    with transaction(session):
        product = session.query(Product).filter_by(id=product_id, user_id=user_id).first()
        if product is None:
            raise NotFoundError('Product not found')

        if session.query(SaleItem).filter_by(product_id=product.id).count():
            raise ReferentialIntegrityError(
                'This product cannot be deleted because it is referenced in sales records. '
                'Please remove all associated sales records first.')
        references = []
        if session.query(BulkPurchaseItem).filter_by(product_id=product.id).count():
            references.append('purchase')
        if session.query(SaleReturnItem).filter_by(product_id=product.id).count():
            references.append('return')
        if (session.query(Recipe).filter_by(user_id=user_id, product_id=product.id).count()
                or session.query(RecipeItem).filter_by(user_id=user_id, raw_material_id=product.id).count()):
            references.append('recipe')
        if references:
            raise ReferentialIntegrityError(
                f'This product cannot be deleted because it is referenced in {" and ".join(references)} records.')

        (session.query(Expense)
         .filter_by(product_id=product.id, user_id=user_id)
         .update({Expense.product_id: None}, synchronize_session=False))
        session.delete(product)
    logger.info("Product %s deleted for user %s", product_id, user_id)


@inventory_bp.route('/<product_id>/damage', methods=['POST'])
@login_required
def damage_product_route(product_id):
    payload = json_body(required=False)
    product = damage_product(db.session, current_user.id, product_id, payload.get('quantity'))
    return jsonify(STRATEGIES[EntityType.PRODUCT].to_wire(product))


@inventory_bp.route('/<product_id>/restore', methods=['POST'])
@login_required
def restore_product_route(product_id):
    payload = json_body(required=False)
    product = restore_product(db.session, current_user.id, product_id, payload.get('quantity'))
    return jsonify(STRATEGIES[EntityType.PRODUCT].to_wire(product))


@inventory_bp.route('/<product_id>', methods=['DELETE'])
@login_required
def delete_product_route(product_id):
    delete_product(db.session, current_user.id, product_id)
    return '', 204
