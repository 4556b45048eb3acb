"""
Append-only audit trail of field edits (today: payment changes on sales, purchases and returns).

log_change is fire-and-forget: it runs after the business transaction has
committed, writes its own row in its own commit and never raises.
"""
import logging

from sqlalchemy import or_

from models import db, AuditTrail, Sale, BulkPurchase
from .utils import coerce_number, format_number, iso_format

logger = logging.getLogger(__name__)

# Fields compared as numbers, so 100 / 100.0 / "100.00" are the same value.
NUMERIC_FIELDS = frozenset({'paidAmount'})

# Table name -> denormalized key column filled on the audit row.
LINKED_COLUMNS = {
    'Sale': 'sale_id',
    'BulkPurchase': 'purchase_id',
}

_VALUE_MAX = 100
_DESCRIPTION_MAX = 255


def _is_unchanged(field_name, old_value, new_value):
    if old_value == new_value:
        return True
    if field_name in NUMERIC_FIELDS:
        old_number, new_number = coerce_number(old_value), coerce_number(new_value)
        return old_number is not None and new_number is not None and old_number == new_number
    return False


def _stored_value(field_name, value):
    if value is None:
        return None
    if field_name in NUMERIC_FIELDS:
        number = coerce_number(value)
        if number is not None:
            return format_number(number)
    return str(value)[:_VALUE_MAX]


def log_change(table_name, record_id, field_name, old_value, new_value,
               description=None, user_id=None, session=None):
    """
    Append one audit row for a changed field, or nothing if the value did not change.

    Returns the AuditTrail row, or None when skipped or when writing failed.
    """
    if _is_unchanged(field_name, old_value, new_value):
        return None

    session = session or db.session
    try:
        entry = AuditTrail(
            user_id=user_id,
            table_name=table_name,
            record_id=str(record_id),
            field_name=field_name,
            old_value=_stored_value(field_name, old_value),
            new_value=_stored_value(field_name, new_value),
            description=description[:_DESCRIPTION_MAX] if description else None,
        )
        linked = LINKED_COLUMNS.get(table_name)
        if linked:
            setattr(entry, linked, str(record_id))
        session.add(entry)
        session.commit()
        return entry
    except Exception as e:
        session.rollback()
        logger.warning("Failed to log audit change %s:%s %s: %s", table_name, record_id, field_name, e)
        return None


def audit_to_wire(entry):
    return {
        'id': entry.id,
        'tableName': entry.table_name,
        'recordId': entry.record_id,
        'fieldName': entry.field_name,
        'oldValue': entry.old_value,
        'newValue': entry.new_value,
        'description': entry.description,
        'changedAt': iso_format(entry.changed_at),
        'saleId': entry.sale_id,
        'purchaseId': entry.purchase_id,
    }


def get_audit_trail(session, user_id, table_name, record_id):
    """All changes to one record, newest first."""
    return (session.query(AuditTrail)
            .filter(AuditTrail.user_id == user_id,
                    AuditTrail.table_name == table_name,
                    AuditTrail.record_id == str(record_id))
            .order_by(AuditTrail.changed_at.desc(), AuditTrail.id.desc())
            .all())


def get_audit_changes_for_period(session, user_id, start, end):
    """All changes recorded between start and end (inclusive), newest first."""
    return (session.query(AuditTrail)
            .filter(AuditTrail.user_id == user_id,
                    AuditTrail.changed_at >= start,
                    AuditTrail.changed_at <= end)
            .order_by(AuditTrail.changed_at.desc(), AuditTrail.id.desc())
            .all())


def get_contact_audit_trail(session, user_id, contact_id):
    """Changes to the contact's sales and purchases, newest first."""
    sale_ids = [row.id for row in session.query(Sale.id).filter_by(user_id=user_id, contact_id=contact_id)]
    purchase_ids = [row.id for row in
                    session.query(BulkPurchase.id).filter_by(user_id=user_id, contact_id=contact_id)]
    if not sale_ids and not purchase_ids:
        return []

    conditions = []
    if sale_ids:
        conditions.append((AuditTrail.table_name == 'Sale') & AuditTrail.record_id.in_(sale_ids))
    if purchase_ids:
        conditions.append((AuditTrail.table_name == 'BulkPurchase') & AuditTrail.record_id.in_(purchase_ids))

    return (session.query(AuditTrail)
            .filter(AuditTrail.user_id == user_id, or_(*conditions))
            .order_by(AuditTrail.changed_at.desc(), AuditTrail.id.desc())
            .all())


def original_field_values(session, table_name, record_ids, field_name):
    """
    {record_id: value before the first recorded edit} for the given records.

    Records that were never edited are absent from the result.
    """
    record_ids = [str(r) for r in record_ids]
    if not record_ids:
        return {}
    rows = (session.query(AuditTrail)
            .filter(AuditTrail.table_name == table_name,
                    AuditTrail.field_name == field_name,
                    AuditTrail.record_id.in_(record_ids))
            .order_by(AuditTrail.changed_at.asc(), AuditTrail.id.asc())
            .all())
    originals = {}
    for row in rows:
        originals.setdefault(row.record_id, row.old_value)
    return originals
