"""
Bulk purchases: stock in on create, reversed on edit and delete.
"""
from decimal import Decimal
import logging

from flask import Blueprint, jsonify
from flask_login import login_required, current_user

from models import db, new_id, BulkPurchase, BulkPurchaseItem
from .audit_utils import log_change
from .db_utils import transaction
from .entity_registry import EntityType, STRATEGIES
from .errors import NotFoundError
from .stock_utils import lock_product, owned_contact, add_stock, remove_stock, parse_line_items
from .utils import json_body, to_money, parse_timestamp, document_number

logger = logging.getLogger(__name__)

purchases_bp = Blueprint('purchases', __name__, url_prefix='/api/bulk-purchases')


def _owned_purchase(session, user_id, purchase_id):
    purchase = session.query(BulkPurchase).filter_by(id=purchase_id, user_id=user_id).first()
    if purchase is None:
        raise NotFoundError('Bulk purchase not found')
    return purchase


def _receive_items(session, user_id, purchase, items):
    """Attach items to the purchase, add them to stock and record the latest purchase price."""
    subtotal = Decimal('0.00')
    for product_id, quantity, unit_cost, _raw in items:
        product = lock_product(session, user_id, product_id)
        add_stock(product, quantity)
        product.purchase_price = unit_cost
        purchase.items.append(BulkPurchaseItem(
            user_id=user_id,
            product_id=product.id,
            quantity=quantity,
            purchase_price=unit_cost,
        ))
        subtotal += unit_cost * quantity
    return subtotal


def _revert_items(session, user_id, purchase):
    """
    Take the purchase's items back out of stock and delete them.
    Raises InsufficientStockError if some of the received stock was already sold.
    """
    for item in list(purchase.items):
        product = lock_product(session, user_id, item.product_id)
        remove_stock(product, item.quantity)
        session.delete(item)
    session.flush()
    session.expire(purchase, ['items'])


def _apply_header(purchase, payload, subtotal):
    discount = to_money(payload.get('discount') or 0, 'discount')
    purchase.discount = discount
    purchase.paid_amount = to_money(payload.get('paidAmount') or 0, 'paidAmount')
    if payload.get('totalAmount') is not None:
        purchase.total_amount = to_money(payload['totalAmount'], 'totalAmount')
    else:
        purchase.total_amount = max(subtotal - discount, Decimal('0.00'))
    if payload.get('purchaseDate'):
        purchase.purchase_date = parse_timestamp(payload['purchaseDate'], field='purchaseDate')
    transport_cost = payload.get('transportCost')
    purchase.transport_cost = to_money(transport_cost, 'transportCost') if transport_cost is not None else None
    if 'transportDetails' in payload:
        purchase.transport_details = payload.get('transportDetails')


def create_bulk_purchase(session, user_id, payload):
    """
    Record a supplier purchase.

    - Each item: productId, quantity, purchasePrice.
    - Every product's quantity grows by the item quantity and its purchase_price
      becomes the item's unit cost.
    """
    items = parse_line_items(payload, 'purchasePrice')
    with transaction(session):
        contact = owned_contact(session, user_id, payload.get('contactId'))
        purchase = BulkPurchase(
            id=payload.get('id') or new_id(),
            user_id=user_id,
            invoice_number=payload.get('invoiceNumber') or document_number('BP'),
            contact_id=contact.id if contact else None,
        )
        session.add(purchase)
        subtotal = _receive_items(session, user_id, purchase, items)
        _apply_header(purchase, payload, subtotal)
    logger.info("Bulk purchase %s (%s) created for user %s", purchase.id, purchase.invoice_number, user_id)
    return purchase


def update_bulk_purchase(session, user_id, purchase_id, payload):
    """Replace a purchase's items and header. Old items leave stock before the new ones arrive."""
    items = parse_line_items(payload, 'purchasePrice')
    with transaction(session):
        purchase = _owned_purchase(session, user_id, purchase_id)
        old_paid = purchase.paid_amount
        if 'contactId' in payload:
            contact = owned_contact(session, user_id, payload.get('contactId'))
            purchase.contact_id = contact.id if contact else None
        if payload.get('invoiceNumber'):
            purchase.invoice_number = payload['invoiceNumber']
        _revert_items(session, user_id, purchase)
        subtotal = _receive_items(session, user_id, purchase, items)
        _apply_header(purchase, payload, subtotal)
        new_paid = purchase.paid_amount
    log_change('BulkPurchase', purchase.id, 'paidAmount', old_paid, new_paid,
               description=f'Purchase {purchase.invoice_number} edited', user_id=user_id, session=session)
    return purchase


def update_purchase_payment(session, user_id, purchase_id, paid_amount, description=None):
    paid = to_money(paid_amount, 'paidAmount')
    with transaction(session):
        purchase = _owned_purchase(session, user_id, purchase_id)
        old_paid = purchase.paid_amount
        purchase.paid_amount = paid
    log_change('BulkPurchase', purchase.id, 'paidAmount', old_paid, paid,
               description=description or f'Payment updated on purchase {purchase.invoice_number}',
               user_id=user_id, session=session)
    return purchase


def delete_bulk_purchase(session, user_id, purchase_id):
    with transaction(session):
        purchase = _owned_purchase(session, user_id, purchase_id)
        _revert_items(session, user_id, purchase)
        session.delete(purchase)
    logger.info("Bulk purchase %s deleted for user %s", purchase_id, user_id)


@purchases_bp.route('', methods=['POST'])
@login_required
def create_bulk_purchase_route():
    purchase = create_bulk_purchase(db.session, current_user.id, json_body())
    return jsonify(STRATEGIES[EntityType.BULK_PURCHASE].export(purchase)), 201


@purchases_bp.route('/<purchase_id>', methods=['PUT'])
@login_required
def update_bulk_purchase_route(purchase_id):
    purchase = update_bulk_purchase(db.session, current_user.id, purchase_id, json_body())
    return jsonify(STRATEGIES[EntityType.BULK_PURCHASE].export(purchase))


@purchases_bp.route('/<purchase_id>/payment', methods=['PUT'])
@login_required
def update_purchase_payment_route(purchase_id):
    payload = json_body()
    purchase = update_purchase_payment(db.session, current_user.id, purchase_id, payload.get('paidAmount'),
                                       description=payload.get('description'))
    return jsonify(STRATEGIES[EntityType.BULK_PURCHASE].to_wire(purchase))


@purchases_bp.route('/<purchase_id>', methods=['DELETE'])
@login_required
def delete_bulk_purchase_route(purchase_id):
    delete_bulk_purchase(db.session, current_user.id, purchase_id)
    return '', 204
