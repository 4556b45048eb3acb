"""
Sale returns and refund payment.

Stock effect of a returned line, fixed when the return is created:
- container return          -> back into stock (empties come back)
- remove_from_stock         -> out of stock, never below zero (written-off goods)
- otherwise                 -> back into stock
"""
from decimal import Decimal
import logging

from flask import Blueprint, jsonify
from flask_login import login_required, current_user

from models import db, new_id, utcnow, Sale, SaleReturn, SaleReturnItem
from .audit_utils import log_change
from .db_utils import transaction
from .entity_registry import EntityType, STRATEGIES
from .errors import NotFoundError, ValidationError
from .stock_utils import lock_product, add_stock, remove_stock, parse_line_items
from .utils import json_body, to_money, document_number

logger = logging.getLogger(__name__)

returns_bp = Blueprint('returns', __name__, url_prefix='/api/returns')

CONTAINER_RETURN_REASON = 'Empty container return'


def _apply_return_stock(product, quantity, sale_return):
    if sale_return.is_container_return or not sale_return.remove_from_stock:
        add_stock(product, quantity)
    else:
        remove_stock(product, quantity, clamp=True)


def create_return(session, user_id, payload):
    """
    Record a return against one of the account's sales.

    Container returns carry no money: total, refund and line prices are zero.
    The original sale is left untouched.
    """
    is_container = bool(payload.get('isContainerReturn'))
    items = parse_line_items(payload, 'price', require_price=not is_container)

    with transaction(session):
        sale_id = payload.get('saleId')
        if not sale_id:
            raise ValidationError('saleId is required')
        sale = session.query(Sale).filter_by(id=sale_id, user_id=user_id).first()
        if sale is None:
            raise NotFoundError('Sale not found')

        sale_return = SaleReturn(
            id=payload.get('id') or new_id(),
            user_id=user_id,
            sale_id=sale.id,
            return_number=payload.get('returnNumber') or document_number('RET'),
            reason=CONTAINER_RETURN_REASON if is_container else payload.get('reason'),
            remove_from_stock=bool(payload.get('removeFromStock')),
            is_container_return=is_container,
        )
        session.add(sale_return)

        total = Decimal('0.00')
        for product_id, quantity, price, _raw in items:
            product = lock_product(session, user_id, product_id)
            line_price = Decimal('0.00') if is_container else price
            sale_return.items.append(SaleReturnItem(
                user_id=user_id,
                product_id=product.id,
                quantity=quantity,
                price=line_price,
            ))
            _apply_return_stock(product, quantity, sale_return)
            total += line_price * quantity

        sale_return.total_amount = total
        if is_container:
            sale_return.refund_amount = Decimal('0.00')
        elif payload.get('refundAmount') is not None:
            sale_return.refund_amount = to_money(payload['refundAmount'], 'refundAmount')
        else:
            sale_return.refund_amount = total

    logger.info("Return %s (%s) created against sale %s", sale_return.id, sale_return.return_number, sale_id)
    return sale_return


def pay_return_credit(session, user_id, return_id, amount=None):
    """Mark a return's refund as paid out; `amount` overrides the stored refund amount."""
    with transaction(session):
        sale_return = session.query(SaleReturn).filter_by(id=return_id, user_id=user_id).first()
        if sale_return is None:
            raise NotFoundError('Return not found')
        old_paid = sale_return.refund_amount if sale_return.refund_paid else Decimal('0.00')
        if amount is not None:
            sale_return.refund_amount = to_money(amount, 'amount')
        sale_return.refund_paid = True
        sale_return.refund_date = utcnow()
        new_paid = sale_return.refund_amount
    log_change('SaleReturn', sale_return.id, 'paidAmount', old_paid, new_paid,
               description=f'Refund paid on return {sale_return.return_number}',
               user_id=user_id, session=session)
    return sale_return


@returns_bp.route('', methods=['POST'])
@login_required
def create_return_route():
    payload = json_body()
    sale_return = create_return(db.session, current_user.id, payload)
    return jsonify(STRATEGIES[EntityType.SALE_RETURN].export(sale_return)), 201


@returns_bp.route('/<return_id>/pay-credit', methods=['POST'])
@login_required
def pay_return_credit_route(return_id):
    payload = json_body(required=False)
    sale_return = pay_return_credit(db.session, current_user.id, return_id, payload.get('amount'))
    return jsonify(STRATEGIES[EntityType.SALE_RETURN].to_wire(sale_return))
