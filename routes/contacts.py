"""
Contact statement, contact deletion and loan transactions.
"""
import logging

from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from models import db, new_id, Sale, BulkPurchase, LoanTransaction, Expense, LOAN_TYPES
from .db_utils import transaction
from .entity_registry import EntityType, STRATEGIES
from .errors import NotFoundError, ReferentialIntegrityError, ValidationError
from .ledger import build_statement
from .stock_utils import owned_contact
from .utils import json_body, to_money, parse_timestamp

logger = logging.getLogger(__name__)

contacts_bp = Blueprint('contacts', __name__, url_prefix='/api')


def delete_contact(session, user_id, contact_id):
    """
    Delete a contact together with its loan transactions.
    Refused while any sale or purchase still points at the contact.
    """
    with transaction(session):
        contact = owned_contact(session, user_id, contact_id, required=True)
        sales = session.query(Sale).filter_by(contact_id=contact.id, user_id=user_id).count()
        purchases = session.query(BulkPurchase).filter_by(contact_id=contact.id, user_id=user_id).count()
        if sales or purchases:
            references = []
            if sales:
                references.append(f'{sales} sale(s)')
            if purchases:
                references.append(f'{purchases} purchase(s)')
            raise ReferentialIntegrityError(f'Cannot delete contact. It is linked to {" and ".join(references)}.')

        loans = (session.query(LoanTransaction)
                 .filter_by(contact_id=contact.id, user_id=user_id)
                 .delete(synchronize_session=False))
        (session.query(Expense)
         .filter_by(contact_id=contact.id, user_id=user_id)
         .update({Expense.contact_id: None}, synchronize_session=False))
        session.delete(contact)
    logger.info("Contact %s deleted for user %s with %d loan transaction(s)", contact_id, user_id, loans)


def create_loan(session, user_id, contact_id, payload):
    amount = to_money(payload.get('amount'), 'amount')
    if amount <= 0:
        raise ValidationError('Amount must be positive')
    loan_type = (payload.get('type') or '').strip().upper()
    if loan_type not in LOAN_TYPES:
        raise ValidationError(f'type must be one of {", ".join(LOAN_TYPES)}')

    with transaction(session):
        contact = owned_contact(session, user_id, contact_id, required=True)
        loan = LoanTransaction(
            id=payload.get('id') or new_id(),
            user_id=user_id,
            contact_id=contact.id,
            amount=amount,
            type=loan_type,
            description=payload.get('description'),
        )
        if payload.get('date'):
            loan.date = parse_timestamp(payload['date'], field='date')
        session.add(loan)
    return loan


def delete_loan(session, user_id, loan_id):
    with transaction(session):
        loan = session.query(LoanTransaction).filter_by(id=loan_id, user_id=user_id).first()
        if loan is None:
            raise NotFoundError('Loan transaction not found')
        session.delete(loan)


@contacts_bp.route('/contacts/<contact_id>/statement', methods=['GET'])
@login_required
def contact_statement(contact_id):
    statement = build_statement(
        db.session, current_user.id, contact_id,
        start_date=request.args.get('startDate'),
        end_date=request.args.get('endDate'),
    )
    return jsonify(statement)


@contacts_bp.route('/contacts/<contact_id>', methods=['DELETE'])
@login_required
def delete_contact_route(contact_id):
    delete_contact(db.session, current_user.id, contact_id)
    return '', 204


@contacts_bp.route('/contacts/<contact_id>/loans', methods=['POST'])
@login_required
def create_loan_route(contact_id):
    payload = json_body()
    loan = create_loan(db.session, current_user.id, contact_id, payload)
    return jsonify(STRATEGIES[EntityType.LOAN_TRANSACTION].to_wire(loan)), 201


@contacts_bp.route('/loans/<loan_id>', methods=['DELETE'])
@login_required
def delete_loan_route(loan_id):
    delete_loan(db.session, current_user.id, loan_id)
    return '', 204
