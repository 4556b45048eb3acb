"""
Contact statement: a running balance across sales, purchases, loans and refunds.

Positive balance means the contact owes the shop. Lines are ordered by the row's
creation timestamp, never by the editable business date, so a backdated entry
does not reshuffle balances that were already shown to the customer.
"""
from datetime import timedelta
from decimal import Decimal
import logging

from models import Sale, BulkPurchase, LoanTransaction, SaleReturn, Contact
from .entity_registry import EntityType, STRATEGIES
from .errors import NotFoundError
from .utils import parse_timestamp, is_date_only, iso_format, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')

# loan type -> (side, label)
LOAN_LINES = {
    'GIVEN': ('debit', 'Loan Given'),
    'RETURNED_TO_CONTACT': ('debit', 'Loan Returned to Customer'),
    'TAKEN': ('credit', 'Loan Taken'),
    'RETURNED_BY_CONTACT': ('credit', 'Loan Returned by Customer'),
}


def _line(kind, date, sort_date, description, debit, credit, reference, data):
    return {
        'type': kind,
        'date': date,
        'sortDate': sort_date,
        'description': description,
        'debit': debit,
        'credit': credit,
        'reference': reference,
        'data': data,
    }


def _sale_lines(sale, detailed=True):
    data = STRATEGIES[EntityType.SALE].export(sale) if detailed else None
    yield _line('SALE', sale.sale_date, sale.created_at, f'Sale Invoice #{sale.bill_number}',
                to_decimal(sale.total_amount), to_decimal(sale.paid_amount), sale.bill_number, data)


def _purchase_lines(purchase, detailed=True):
    data = STRATEGIES[EntityType.BULK_PURCHASE].export(purchase) if detailed else None
    label = purchase.invoice_number or purchase.id[-6:]
    reference = purchase.invoice_number or purchase.id
    total, paid = to_decimal(purchase.total_amount), to_decimal(purchase.paid_amount)
    yield _line('PURCHASE', purchase.purchase_date, purchase.created_at, f'Purchase Invoice #{label}',
                ZERO, total - paid, reference, data)
    if paid > 0:
        yield _line('PURCHASE_PAYMENT', purchase.purchase_date, purchase.created_at,
                    f'Purchase Payment #{label}', paid, ZERO, reference, data)


def _loan_lines(loan, detailed=True):
    side, label = LOAN_LINES.get(loan.type, (None, loan.type))
    if side is None:
        logger.warning("ledger: loan %s has unknown type %r, ignored", loan.id, loan.type)
        return
    amount = to_decimal(loan.amount)
    description = f'{label} - {loan.description}' if loan.description else label
    debit, credit = (amount, ZERO) if side == 'debit' else (ZERO, amount)
    data = STRATEGIES[EntityType.LOAN_TRANSACTION].to_wire(loan) if detailed else None
    yield _line('LOAN', loan.date, loan.created_at or loan.date, description, debit, credit, loan.id, data)


def _return_lines(sale_return, detailed=True):
    refund = to_decimal(sale_return.refund_amount)
    if not sale_return.refund_paid or refund <= 0:
        return
    data = STRATEGIES[EntityType.SALE_RETURN].export(sale_return) if detailed else None
    yield _line('RETURN', sale_return.return_date, sale_return.created_at or sale_return.return_date,
                f'Return Refund #{sale_return.return_number}', ZERO, refund,
                sale_return.return_number, data)


def _window(query, column, start=None, end=None, end_exclusive=False, before=None):
    if start is not None:
        query = query.filter(column >= start)
    if end is not None:
        query = query.filter(column < end if end_exclusive else column <= end)
    if before is not None:
        query = query.filter(column < before)
    return query


def _collect_lines(session, user_id, contact_id, detailed=True, **window):
    sales = _window(session.query(Sale).filter(Sale.user_id == user_id, Sale.contact_id == contact_id),
                    Sale.sale_date, **window).order_by(Sale.sale_date).all()
    purchases = _window(session.query(BulkPurchase).filter(BulkPurchase.user_id == user_id,
                                                           BulkPurchase.contact_id == contact_id),
                        BulkPurchase.purchase_date, **window).order_by(BulkPurchase.purchase_date).all()
    loans = _window(session.query(LoanTransaction).filter(LoanTransaction.user_id == user_id,
                                                          LoanTransaction.contact_id == contact_id),
                    LoanTransaction.date, **window).order_by(LoanTransaction.date).all()
    returns = _window(session.query(SaleReturn).join(Sale, SaleReturn.sale_id == Sale.id)
                      .filter(SaleReturn.user_id == user_id, Sale.user_id == user_id,
                              Sale.contact_id == contact_id),
                      SaleReturn.return_date, **window).order_by(SaleReturn.return_date).all()

    lines = []
    for sale in sales:
        lines.extend(_sale_lines(sale, detailed))
    for purchase in purchases:
        lines.extend(_purchase_lines(purchase, detailed))
    for loan in loans:
        lines.extend(_loan_lines(loan, detailed))
    for sale_return in returns:
        lines.extend(_return_lines(sale_return, detailed))
    return lines


def _line_to_wire(line):
    out = dict(line)
    out['date'] = iso_format(line['date'])
    out['sortDate'] = iso_format(line['sortDate'])
    out['debit'] = float(line['debit'])
    out['credit'] = float(line['credit'])
    out['runningBalance'] = float(line['runningBalance'])
    return out


def build_statement(session, user_id, contact_id, start_date=None, end_date=None):
    """
    Statement for one contact, optionally limited to [start_date, end_date].

    - start_date / end_date accept ISO timestamps or 'YYYY-MM-DD'; a date-only
      end_date covers that whole day.
    - openingBalance is the balance of every line dated before start_date,
      computed with the same rules as the visible lines.
    - Each transaction carries runningBalance; closingBalance is the last one
      (or the opening balance when there are no lines).
    """
    contact = session.query(Contact).filter_by(id=contact_id, user_id=user_id).first()
    if contact is None:
        raise NotFoundError('Contact not found')

    start = parse_timestamp(start_date, field='startDate')
    end = parse_timestamp(end_date, field='endDate')
    end_exclusive = False
    if end is not None and is_date_only(end_date):
        end = end + timedelta(days=1)
        end_exclusive = True

    opening = ZERO
    if start is not None:
        for line in _collect_lines(session, user_id, contact_id, detailed=False, before=start):
            opening += line['debit'] - line['credit']

    lines = _collect_lines(session, user_id, contact_id, start=start, end=end, end_exclusive=end_exclusive)
    lines.sort(key=lambda line: line['sortDate'])

    balance = opening
    for line in lines:
        balance += line['debit'] - line['credit']
        line['runningBalance'] = balance

    return {
        'contact': STRATEGIES[EntityType.CONTACT].to_wire(contact),
        'openingBalance': float(opening),
        'closingBalance': float(balance),
        'transactions': [_line_to_wire(line) for line in lines],
    }
