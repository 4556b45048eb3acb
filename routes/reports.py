from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from models import db, Sale, BulkPurchase
from datetime import datetime, time, timedelta
from decimal import Decimal
import logging

from .audit_utils import original_field_values
from .errors import ValidationError
from .utils import parse_timestamp, iso_format, to_decimal, coerce_number

reports_bp = Blueprint('reports', __name__, url_prefix='/api/reports')

ZERO = Decimal('0.00')


def _day_range(start_date, end_date):
    """Whole days: [start 00:00, day after end 00:00)."""
    if not start_date or not end_date:
        raise ValidationError('Start date and end date are required')
    start = parse_timestamp(start_date, field='startDate')
    end = parse_timestamp(end_date, field='endDate')
    start = datetime.combine(start.date(), time.min)
    end = datetime.combine(end.date(), time.min) + timedelta(days=1)
    if end <= start:
        raise ValidationError('endDate must not be before startDate')
    return start, end


def _paid_amounts(session, table_name, rows):
    """
    Paid amount as first recorded, per row id.
    - Rows whose payment was edited report the value before the first edit.
    - Untouched rows report their current paid_amount.
    """
    originals = original_field_values(session, table_name, [r.id for r in rows], 'paidAmount')
    paid = {}
    for row in rows:
        original = originals.get(row.id)
        number = coerce_number(original) if original is not None else None
        paid[row.id] = (to_decimal(number) if number is not None else to_decimal(row.paid_amount),
                        row.id in originals)
    return paid


def build_day_book(session, user_id, start_date, end_date):
    """
    Day book: one entry per purchased or sold line between start_date and end_date (whole days).

    - Sale lines report profit as (price - cost snapshot) * quantity, zero when no cost is known.
    - Every entry repeats its transaction's paidAmount as originally recorded.
    """
    start, end = _day_range(start_date, end_date)

    sales = (session.query(Sale)
             .filter(Sale.user_id == user_id, Sale.sale_date >= start, Sale.sale_date < end)
             .order_by(Sale.sale_date).all())
    purchases = (session.query(BulkPurchase)
                 .filter(BulkPurchase.user_id == user_id,
                         BulkPurchase.purchase_date >= start, BulkPurchase.purchase_date < end)
                 .order_by(BulkPurchase.purchase_date).all())

    sale_paid = _paid_amounts(session, 'Sale', sales)
    purchase_paid = _paid_amounts(session, 'BulkPurchase', purchases)

    entries = []
    for purchase in purchases:
        paid, edited = purchase_paid[purchase.id]
        for item in purchase.items:
            quantity, cost = Decimal(item.quantity), to_decimal(item.purchase_price)
            entries.append({
                'date': purchase.purchase_date,
                'type': 'purchase',
                'transactionId': purchase.id,
                'reference': purchase.invoice_number,
                'productName': item.product.name if item.product else '',
                'productDescription': (item.product.description if item.product else None) or '',
                'purchaseQuantity': quantity,
                'purchasePrice': cost,
                'transportCost': to_decimal(purchase.transport_cost),
                'supplierName': purchase.contact.name if purchase.contact else '',
                'totalPurchaseCost': quantity * cost,
                'customerName': '',
                'saleQuantity': ZERO,
                'saleUnitPrice': ZERO,
                'totalSalePrice': ZERO,
                'profitLoss': ZERO,
                'paidAmount': paid,
                'paymentEdited': edited,
            })

    for sale in sales:
        paid, edited = sale_paid[sale.id]
        for item in sale.items:
            quantity = Decimal(item.quantity)
            price, cost = to_decimal(item.price), to_decimal(item.purchase_price)
            entries.append({
                'date': sale.sale_date,
                'type': 'sale',
                'transactionId': sale.id,
                'reference': sale.bill_number,
                'productName': item.product.name if item.product else '',
                'productDescription': (item.product.description if item.product else None) or '',
                'purchaseQuantity': ZERO,
                'purchasePrice': cost,
                'transportCost': ZERO,
                'supplierName': '',
                'totalPurchaseCost': ZERO,
                'customerName': sale.contact.name if sale.contact else 'Walk-in Customer',
                'saleQuantity': quantity,
                'saleUnitPrice': price,
                'totalSalePrice': price * quantity,
                'profitLoss': (price - cost) * quantity if cost > 0 else ZERO,
                'paidAmount': paid,
                'paymentEdited': edited,
            })

    entries.sort(key=lambda e: e['date'])

    summary = {
        'totalPurchaseAmount': float(sum((e['totalPurchaseCost'] for e in entries), ZERO)),
        'totalSaleAmount': float(sum((e['totalSalePrice'] for e in entries), ZERO)),
        'totalProfit': float(sum((e['profitLoss'] for e in entries), ZERO)),
        'totalEntries': len(entries),
    }

    for entry in entries:
        for key, value in entry.items():
            if isinstance(value, Decimal):
                entry[key] = float(value)
        entry['date'] = iso_format(entry['date'])

    return {
        'data': entries,
        'summary': summary,
        'dateRange': {'startDate': start_date, 'endDate': end_date},
    }


@reports_bp.route('/day-book', methods=['GET'])
@login_required
def day_book():
    report = build_day_book(db.session, current_user.id,
                            request.args.get('startDate'), request.args.get('endDate'))
    logging.debug("day_book: %d entries for user %s", report['summary']['totalEntries'], current_user.id)
    return jsonify(report)
