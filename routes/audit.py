from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from models import db
from .audit_utils import (
    audit_to_wire, get_audit_trail, get_audit_changes_for_period, get_contact_audit_trail,
)
from .errors import ValidationError
from .stock_utils import owned_contact
from .utils import parse_timestamp, is_date_only

audit_bp = Blueprint('audit', __name__, url_prefix='/api/audit-trail')


@audit_bp.route('/contact/<contact_id>', methods=['GET'])
@login_required
def contact_audit_trail(contact_id):
    """Payment edits on the contact's sales and purchases, newest first."""
    owned_contact(db.session, current_user.id, contact_id, required=True)
    entries = get_contact_audit_trail(db.session, current_user.id, contact_id)
    return jsonify([audit_to_wire(e) for e in entries])


@audit_bp.route('/period', methods=['GET'])
@login_required
def audit_period():
    start_date, end_date = request.args.get('startDate'), request.args.get('endDate')
    if not start_date or not end_date:
        raise ValidationError('Start date and end date are required')
    start = parse_timestamp(start_date, field='startDate')
    end = parse_timestamp(end_date, field='endDate')
    if is_date_only(end_date):
        # whole day, to the last millisecond
        end = end.replace(hour=23, minute=59, second=59, microsecond=999000)
    entries = get_audit_changes_for_period(db.session, current_user.id, start, end)
    return jsonify([audit_to_wire(e) for e in entries])


@audit_bp.route('/<table_name>/<record_id>', methods=['GET'])
@login_required
def record_audit_trail(table_name, record_id):
    entries = get_audit_trail(db.session, current_user.id, table_name, record_id)
    return jsonify([audit_to_wire(e) for e in entries])
