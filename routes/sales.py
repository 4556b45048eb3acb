"""
Sales: creation (stock out), payment edits (audited) and deletion (stock back in).
"""
from decimal import Decimal
import logging

from flask import Blueprint, jsonify
from flask_login import login_required, current_user

from models import db, new_id, Sale, SaleItem, Employee
from .audit_utils import log_change
from .db_utils import transaction
from .entity_registry import EntityType, STRATEGIES
from .errors import NotFoundError, ReferentialIntegrityError
from .stock_utils import lock_product, owned_contact, remove_stock, add_stock, parse_line_items
from .utils import json_body, to_money, parse_timestamp, document_number

logger = logging.getLogger(__name__)

sales_bp = Blueprint('sales', __name__, url_prefix='/api/sales')


def _owned_sale(session, user_id, sale_id):
    sale = session.query(Sale).filter_by(id=sale_id, user_id=user_id).first()
    if sale is None:
        raise NotFoundError('Sale not found')
    return sale


def create_sale(session, user_id, payload):
    """
    Record a sale and take its items out of stock, all or nothing.

    - Each item: productId, quantity, price, optional priceType (retail|wholesale).
    - totalAmount defaults to the item subtotal minus discount.
    - The product's current purchase price is captured on each line for profit reporting.
    """
    items = parse_line_items(payload, 'price')
    discount = to_money(payload.get('discount') or 0, 'discount')
    paid = to_money(payload.get('paidAmount') or 0, 'paidAmount')

    with transaction(session):
        contact = owned_contact(session, user_id, payload.get('contactId'))
        employee_id = payload.get('employeeId')
        if employee_id and session.query(Employee).filter_by(id=employee_id, user_id=user_id).first() is None:
            raise NotFoundError('Employee not found')

        sale = Sale(
            id=payload.get('id') or new_id(),
            user_id=user_id,
            bill_number=payload.get('billNumber') or document_number('INV'),
            discount=discount,
            paid_amount=paid,
            contact_id=contact.id if contact else None,
            employee_id=employee_id or None,
            transport_details=payload.get('transportDetails'),
        )
        if payload.get('saleDate'):
            sale.sale_date = parse_timestamp(payload['saleDate'], field='saleDate')
        if payload.get('transportCost') is not None:
            sale.transport_cost = to_money(payload['transportCost'], 'transportCost')
        session.add(sale)

        subtotal = Decimal('0.00')
        for product_id, quantity, price, raw in items:
            product = lock_product(session, user_id, product_id)
            remove_stock(product, quantity)
            sale.items.append(SaleItem(
                user_id=user_id,
                product_id=product.id,
                quantity=quantity,
                price=price,
                purchase_price=product.purchase_price,
                price_type=raw.get('priceType') or 'retail',
            ))
            subtotal += price * quantity

        sale.original_total_amount = subtotal
        if payload.get('totalAmount') is not None:
            sale.total_amount = to_money(payload['totalAmount'], 'totalAmount')
        else:
            sale.total_amount = max(subtotal - discount, Decimal('0.00'))

    logger.info("Sale %s (%s) created for user %s", sale.id, sale.bill_number, user_id)
    return sale


def update_sale_payment(session, user_id, sale_id, paid_amount, description=None):
    paid = to_money(paid_amount, 'paidAmount')
    with transaction(session):
        sale = _owned_sale(session, user_id, sale_id)
        old_paid = sale.paid_amount
        sale.paid_amount = paid
    log_change('Sale', sale.id, 'paidAmount', old_paid, paid,
               description=description or f'Payment updated on sale {sale.bill_number}',
               user_id=user_id, session=session)
    return sale


def delete_sale(session, user_id, sale_id):
    """
    Delete a sale, returning its items to stock first.
    A sale that already has returns is refused; delete the returns first.
    """
    with transaction(session):
        sale = _owned_sale(session, user_id, sale_id)
        if sale.returns:
            raise ReferentialIntegrityError(
                f'Cannot delete sale {sale.bill_number}: it has {len(sale.returns)} return(s)')
        for item in list(sale.items):
            product = lock_product(session, user_id, item.product_id)
            add_stock(product, item.quantity)
            session.delete(item)
        session.delete(sale)
    logger.info("Sale %s deleted for user %s", sale_id, user_id)


@sales_bp.route('', methods=['POST'])
@login_required
def create_sale_route():
    payload = json_body()
    sale = create_sale(db.session, current_user.id, payload)
    return jsonify(STRATEGIES[EntityType.SALE].export(sale)), 201


@sales_bp.route('/<sale_id>/payment', methods=['PUT'])
@login_required
def update_sale_payment_route(sale_id):
    payload = json_body(required=False)
    sale = update_sale_payment(db.session, current_user.id, sale_id, payload.get('paidAmount'),
                               description=payload.get('description'))
    return jsonify(STRATEGIES[EntityType.SALE].to_wire(sale))


@sales_bp.route('/<sale_id>', methods=['DELETE'])
@login_required
def delete_sale_route(sale_id):
    delete_sale(db.session, current_user.id, sale_id)
    return '', 204
