import csv
import io
from datetime import datetime, timedelta
from models import db, Order, OrderItem, MenuItem, Payment, StockItem, StockMovement, money
from errors import ValidationError

MAX_RANGE_DAYS = 366


def parse_day(value, field='date'):
    if not value:
        return datetime.utcnow().date()
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be YYYY-MM-DD')


def parse_range(start, end):
    end_day = parse_day(end, 'end_date')
    start_day = parse_day(start, 'start_date') if start else end_day - timedelta(days=29)
    if start_day > end_day:
        raise ValidationError('start_date must be before end_date')
    if (end_day - start_day).days + 1 > MAX_RANGE_DAYS:
        raise ValidationError(f'Date range cannot exceed {MAX_RANGE_DAYS} days')
    return start_day, end_day


def _bounds(start_day, end_day=None):
    start = datetime.combine(start_day, datetime.min.time())
    end = datetime.combine(end_day or start_day, datetime.min.time()) + timedelta(days=1)
    return start, end


def _orders(branch_id, start_day, end_day=None, include_cancelled=False):
    start, end = _bounds(start_day, end_day)
    query = Order.query.filter(Order.branch_id == branch_id,
                               Order.created_at >= start, Order.created_at < end)
    if not include_cancelled:
        query = query.filter(Order.status != 'CANCELLED')
    return query.all()


def _summarize(orders):
    revenue = sum(o.total or 0 for o in orders)
    return {
        'total_orders': len(orders),
        'total_revenue': money(revenue),
        'total_tax': money(sum(o.tax or 0 for o in orders)),
        'total_service_charge': money(sum(o.service_charge or 0 for o in orders)),
        'average_order_value': money(revenue / len(orders)) if orders else 0.0
    }


def daily_sales(branch_id, day):
    all_orders = _orders(branch_id, day, include_cancelled=True)
    orders = [o for o in all_orders if o.status != 'CANCELLED']

    by_status = {}
    for order in all_orders:
        by_status[order.status] = by_status.get(order.status, 0) + 1

    by_hour = {}
    for order in orders:
        bucket = by_hour.setdefault(order.created_at.hour, {'hour': order.created_at.hour,
                                                            'count': 0, 'revenue': 0.0})
        bucket['count'] += 1
        bucket['revenue'] = money(bucket['revenue'] + (order.total or 0))

    return {
        'date': day.isoformat(),
        'summary': _summarize(orders),
        'status_breakdown': [{'status': s, 'count': c} for s, c in sorted(by_status.items())],
        'hourly_breakdown': [by_hour[h] for h in sorted(by_hour)]
    }


def sales_by_range(branch_id, start_day, end_day):
    orders = _orders(branch_id, start_day, end_day)
    days = {}
    for order in orders:
        days.setdefault(order.created_at.date(), []).append(order)
    rows = []
    current = start_day
    while current <= end_day:
        rows.append({'date': current.isoformat(), **_summarize(days.get(current, []))})
        current += timedelta(days=1)
    return {
        'start_date': start_day.isoformat(),
        'end_date': end_day.isoformat(),
        'summary': _summarize(orders),
        'days': rows
    }


def top_items(branch_id, start_day, end_day, limit=10):
    start, end = _bounds(start_day, end_day)
    rows = db.session.query(OrderItem, MenuItem) \
        .join(MenuItem, OrderItem.menu_item_id == MenuItem.id) \
        .join(Order, Order.id == OrderItem.order_id) \
        .filter(Order.branch_id == branch_id, Order.status != 'CANCELLED',
                Order.created_at >= start, Order.created_at < end).all()
    totals = {}
    for order_item, menu_item in rows:
        entry = totals.setdefault(menu_item.id, {
            'menu_item_id': menu_item.id,
            'name': menu_item.name,
            'category': menu_item.category.name if menu_item.category else None,
            'total_quantity': 0,
            'total_revenue': 0.0,
            'orders': set()
        })
        entry['total_quantity'] += order_item.quantity or 0
        entry['total_revenue'] = money(entry['total_revenue'] + order_item.line_total)
        entry['orders'].add(order_item.order_id)
    result = sorted(totals.values(), key=lambda e: (-e['total_quantity'], -e['total_revenue']))[:limit]
    for entry in result:
        entry['order_count'] = len(entry.pop('orders'))
    return result


def _payments(branch_id, start_day, end_day=None):
    start, end = _bounds(start_day, end_day)
    return Payment.query.join(Order, Order.id == Payment.order_id) \
        .filter(Order.branch_id == branch_id, Payment.paid_at >= start, Payment.paid_at < end).all()


def payment_methods(branch_id, start_day, end_day):
    methods = {}
    refunds = {'count': 0, 'total_amount': 0.0}
    for payment in _payments(branch_id, start_day, end_day):
        if payment.payment_type == 'REFUND':
            refunds['count'] += 1
            refunds['total_amount'] = money(refunds['total_amount'] + abs(payment.amount or 0))
            continue
        entry = methods.setdefault(payment.payment_type, {'payment_type': payment.payment_type,
                                                          'count': 0, 'total_amount': 0.0})
        entry['count'] += 1
        entry['total_amount'] = money(entry['total_amount'] + (payment.amount or 0))
    return {
        'methods': sorted(methods.values(), key=lambda e: -e['total_amount']),
        'refunds': refunds
    }


def cash_reconciliation(branch_id, day):
    received = 0.0
    cash_count = 0
    refunded = 0.0
    refund_count = 0
    for payment in _payments(branch_id, day):
        if payment.payment_type == 'CASH':
            received += payment.amount or 0
            cash_count += 1
        elif payment.payment_type == 'REFUND':
            original = db.session.get(Payment, payment.refunded_payment_id) \
                if payment.refunded_payment_id else None
            if original is not None and original.payment_type == 'CASH':
                refunded += abs(payment.amount or 0)
                refund_count += 1
    return {
        'date': day.isoformat(),
        'cash_received': money(received),
        'cash_transaction_count': cash_count,
        'cash_refunds': money(refunded),
        'refund_count': refund_count,
        'net_cash': money(received - refunded)
    }


def table_turnover(branch_id, start_day, end_day):
    tables = {}
    for order in _orders(branch_id, start_day, end_day):
        if order.table is None:
            continue
        entry = tables.setdefault(order.table_id, {'table_id': order.table_id,
                                                   'table_number': order.table.table_number,
                                                   'orders': []})
        entry['orders'].append(order)
    result = []
    for entry in tables.values():
        orders = entry.pop('orders')
        minutes = [(o.updated_at - o.created_at).total_seconds() / 60
                   for o in orders if o.updated_at and o.created_at]
        summary = _summarize(orders)
        entry.update({
            'total_orders': summary['total_orders'],
            'total_revenue': summary['total_revenue'],
            'average_order_value': summary['average_order_value'],
            'average_service_minutes': round(sum(minutes) / len(minutes), 1) if minutes else None
        })
        result.append(entry)
    return sorted(result, key=lambda e: -e['total_orders'])


def inventory_usage(branch_id, start_day, end_day):
    """Net recipe consumption per stock item.

    Stock given back by a cancelled order is taken off its consumption.
    Waste and manual corrections are reported apart from both.
    """
    start, end = _bounds(start_day, end_day)
    rows = db.session.query(StockMovement, StockItem) \
        .join(StockItem, StockItem.id == StockMovement.stock_item_id) \
        .filter(StockItem.branch_id == branch_id,
                StockMovement.created_at >= start, StockMovement.created_at < end).all()
    usage = {}
    for movement, item in rows:
        entry = usage.setdefault(item.id, {'stock_item_id': item.id, 'name': item.name,
                                           'unit': item.unit, 'total_consumed': 0.0,
                                           'total_received': 0.0, 'total_adjusted': 0.0,
                                           'current_quantity': item.quantity})
        if movement.type == 'CONSUMPTION' or (movement.type == 'ADJUSTMENT' and movement.order_id):
            entry['total_consumed'] = round(entry['total_consumed'] - movement.change, 3)
        elif movement.type == 'RESTOCK':
            entry['total_received'] = round(entry['total_received'] + movement.change, 3)
        else:
            entry['total_adjusted'] = round(entry['total_adjusted'] + movement.change, 3)
    return sorted(usage.values(), key=lambda e: -e['total_consumed'])


EXPORTS = {
    'sales': lambda b, s, e: sales_by_range(b, s, e)['days'],
    'items': lambda b, s, e: top_items(b, s, e, limit=1000),
    'payments': lambda b, s, e: payment_methods(b, s, e)['methods'],
    'inventory': inventory_usage,
}


def to_csv(rows):
    if not rows:
        return ''
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=list(rows[0].keys()))
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue()


def export_csv(report_type, branch_id, start_day, end_day):
    if report_type not in EXPORTS:
        raise ValidationError(f'Unknown report type: {report_type}')
    rows = EXPORTS[report_type](branch_id, start_day, end_day)
    filename = f'{report_type}_report_{start_day.isoformat()}_{end_day.isoformat()}.csv'
    return filename, to_csv(rows)
