import logging
import secrets
from datetime import datetime, timedelta
from flask import current_app
from models import (db, Branch, DiningTable, MenuItem, Modifier, ProductVariant, Order,
                    OrderItem, OrderItemModifier, Payment, ORDER_TYPES, PAYMENT_METHODS,
                    money, record_audit)
from errors import ValidationError, NotFoundError, InvalidTransition, ConflictError
from validators import as_int, as_float, as_str, one_of
import settings_service
import stock_service
from caching import invalidate_menu
import kitchen_events

logger = logging.getLogger(__name__)

ORDER_STATUSES = ['AWAITING_PAYMENT', 'PENDING', 'CONFIRMED', 'PREPARING', 'READY',
                  'SERVED', 'COMPLETED', 'CANCELLED']

TRANSITIONS = {
    'AWAITING_PAYMENT': ['PENDING', 'CONFIRMED', 'CANCELLED'],
    'PENDING': ['CONFIRMED', 'CANCELLED'],
    'CONFIRMED': ['PREPARING', 'CANCELLED'],
    'PREPARING': ['READY', 'CANCELLED'],
    'READY': ['SERVED'],
    'SERVED': ['COMPLETED'],
    'COMPLETED': [],
    'CANCELLED': []
}

OPEN_STATUSES = ['AWAITING_PAYMENT', 'PENDING', 'CONFIRMED', 'PREPARING', 'READY', 'SERVED']
KITCHEN_STATUSES = ['PENDING', 'CONFIRMED', 'PREPARING', 'READY']
# Cancelling from these gives the consumed ingredients back
RESTORE_ON_CANCEL = ['CONFIRMED', 'PREPARING']
MAX_ITEM_QUANTITY = 99


def can_transition(current, target):
    return target in TRANSITIONS.get(current, [])


def tracking_url(order):
    return f"{current_app.config['FRONTEND_URL'].rstrip('/')}/order/{order.pin}"


def _generate_order_code(branch):
    today = datetime.utcnow().date()
    start = datetime.combine(today, datetime.min.time())
    count = Order.query.filter(Order.branch_id == branch.id,
                               Order.created_at >= start,
                               Order.created_at < start + timedelta(days=1)).count()
    while True:
        count += 1
        code = f'{branch.code}-{today.strftime("%Y%m%d")}-{count:04d}'
        if not Order.query.filter_by(order_code=code).first():
            return code


def _generate_pin():
    length = current_app.config.get('ORDER_PIN_LENGTH', 8)
    while True:
        pin = ''.join(secrets.choice('0123456789') for _ in range(length))
        if not Order.query.filter_by(pin=pin).first():
            return pin


def _build_item(branch_id, line):
    if not isinstance(line, dict):
        raise ValidationError('Each item must be an object')
    menu_item_id = as_int(line.get('menu_item_id'), 'menu_item_id')
    quantity = as_int(line.get('quantity', 1), 'quantity', minimum=1, maximum=MAX_ITEM_QUANTITY)
    menu_item = db.session.get(MenuItem, menu_item_id)
    if not menu_item or menu_item.branch_id != branch_id:
        raise ValidationError(f'Menu item {menu_item_id} not found')
    if not menu_item.is_available:
        raise ValidationError(f'{menu_item.name} is not available')

    unit_price = menu_item.price or 0
    variant = None
    if line.get('variant_id') not in (None, ''):
        variant = db.session.get(ProductVariant, as_int(line['variant_id'], 'variant_id'))
        if not variant or variant.menu_item_id != menu_item.id or not variant.is_active:
            raise ValidationError(f'Invalid variant for {menu_item.name}')
        unit_price += variant.price_adjustment or 0

    order_item = OrderItem(
        menu_item=menu_item,
        quantity=quantity,
        unit_price=money(unit_price),
        note=line.get('note'),
        variant_id=variant.id if variant else None,
        variant_name=variant.name if variant else None,
        variant_price=money(variant.price_adjustment) if variant else None
    )

    modifier_ids = line.get('modifiers') or []
    if not isinstance(modifier_ids, list):
        raise ValidationError('modifiers must be a list of ids')
    for raw_id in modifier_ids:
        modifier_id = raw_id.get('id') if isinstance(raw_id, dict) else raw_id
        modifier = db.session.get(Modifier, as_int(modifier_id, 'modifier id'))
        if not modifier or modifier.menu_item_id != menu_item.id:
            raise ValidationError(f'Invalid modifier for {menu_item.name}')
        order_item.modifiers.append(OrderItemModifier(modifier_id=modifier.id, name=modifier.name,
                                                      extra_price=money(modifier.extra_price)))
    return order_item


def calculate_totals(subtotal, branch_id):
    tax_rate = settings_service.get_rate('tax_rate', branch_id)
    service_rate = settings_service.get_rate('service_charge_rate', branch_id)
    subtotal = money(subtotal)
    tax = money(subtotal * tax_rate / 100)
    service_charge = money(subtotal * service_rate / 100)
    return {
        'subtotal': subtotal,
        'tax': tax,
        'service_charge': service_charge,
        'total': money(subtotal + tax + service_charge)
    }


def create_order(branch_id, data, user_id=None):
    """Validate and price a new order, then store it in one transaction."""
    branch = db.session.get(Branch, branch_id)
    if not branch or not branch.is_active:
        raise NotFoundError('Branch not found')

    order_type = one_of(data.get('order_type') or 'DINE_IN', 'order_type', ORDER_TYPES)
    payment_method = one_of(data.get('payment_method') or 'CASH', 'payment_method', PAYMENT_METHODS)

    table = None
    if data.get('table_id') not in (None, ''):
        table = db.session.get(DiningTable, as_int(data['table_id'], 'table_id'))
        if not table or table.branch_id != branch.id:
            raise ValidationError('Table not found in this branch')
    if order_type == 'DINE_IN' and table is None:
        raise ValidationError('table_id is required for dine-in orders')
    if order_type == 'DELIVERY' and not data.get('delivery_address'):
        raise ValidationError('delivery_address is required for delivery orders')

    lines = data.get('items')
    if not isinstance(lines, list) or not lines:
        raise ValidationError('Order must contain at least one item')

    try:
        items = [_build_item(branch.id, line) for line in lines]
        totals = calculate_totals(sum(item.line_total for item in items), branch.id)
        order = Order(
            branch_id=branch.id,
            order_code=_generate_order_code(branch),
            pin=_generate_pin(),
            table=table,
            customer_name=data.get('customer_name'),
            customer_phone=data.get('customer_phone'),
            order_type=order_type,
            delivery_address=data.get('delivery_address'),
            payment_method=payment_method,
            status='AWAITING_PAYMENT' if payment_method in ('CARD', 'ONLINE') else 'PENDING',
            payment_status='UNPAID',
            notes=data.get('notes'),
            **totals
        )
        order.items.extend(items)
        db.session.add(order)
        if table is not None and order_type == 'DINE_IN':
            table.status = 'occupied'
        db.session.flush()
        record_audit('ORDER_CREATE', user_id, branch.id, order_id=order.id,
                     order_code=order.order_code, total=order.total)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('Order %s created for branch %s (total %.2f, %d items)',
                order.order_code, branch.code, order.total, len(items))
    kitchen_events.push_change(branch.id, 'order.created', order.summary())
    return order


def _release_table(order):
    table = order.table
    if table is None or table.status != 'occupied':
        return
    still_open = Order.query.filter(Order.table_id == table.id, Order.id != order.id,
                                    Order.status.in_(OPEN_STATUSES)).count()
    if not still_open:
        table.status = 'available'


def _apply_status(order, target, user_id=None):
    """Move the order and run the stock side effects. The caller commits."""
    previous = order.status
    if not can_transition(previous, target):
        raise InvalidTransition(f'Cannot change order from {previous} to {target}')
    if target == 'CONFIRMED' and not stock_service.has_consumed(order):
        stock_service.consume_for_order(order, user_id)
    if target == 'CANCELLED' and previous in RESTORE_ON_CANCEL:
        stock_service.restore_for_order(order, user_id)
    order.status = target
    order.updated_at = datetime.utcnow()
    if target in ('COMPLETED', 'CANCELLED'):
        _release_table(order)
    return previous


def update_status(order, target, user_id=None):
    target = one_of(as_str(target, 'status').upper(), 'status', ORDER_STATUSES)
    if target == 'CANCELLED':
        return cancel_order(order, user_id=user_id)
    try:
        previous = _apply_status(order, target, user_id)
        record_audit('ORDER_STATUS_UPDATE', user_id, order.branch_id, order_id=order.id,
                     old_status=previous, new_status=target)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    if target == 'CONFIRMED':
        invalidate_menu(order.branch_id)
    logger.info('Order %s: %s -> %s', order.order_code, previous, target)
    kitchen_events.push_change(order.branch_id, 'order.updated',
                               {'order_id': order.id, 'status': order.status, 'previous': previous})
    return order


def cancel_order(order, reason=None, user_id=None):
    try:
        previous = _apply_status(order, 'CANCELLED', user_id)
        if reason:
            note = f'CANCELLED: {reason}'
            order.notes = f'{order.notes}\n{note}' if order.notes else note
        record_audit('ORDER_CANCEL', user_id, order.branch_id, order_id=order.id,
                     old_status=previous, reason=reason)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    if previous in RESTORE_ON_CANCEL:
        invalidate_menu(order.branch_id)
    logger.info('Order %s cancelled from %s', order.order_code, previous)
    kitchen_events.push_change(order.branch_id, 'order.cancelled',
                               {'order_id': order.id, 'status': order.status, 'previous': previous})
    return order


# Payments
def _refresh_payment_status(order):
    paid = order.total_paid
    if paid <= 0:
        refunded = any(p.payment_type == 'REFUND' for p in order.payments)
        order.payment_status = 'REFUNDED' if refunded else 'UNPAID'
    elif paid >= money(order.total):
        order.payment_status = 'PAID'
    else:
        order.payment_status = 'PARTIAL'


def record_payment(order, data, user_id=None):
    if order.status == 'CANCELLED':
        raise ValidationError('Cannot pay a cancelled order')
    method = one_of(as_str(data.get('payment_type') or data.get('method'), 'payment_type').upper(),
                    'payment_type', PAYMENT_METHODS)
    amount = money(as_float(data.get('amount'), 'amount', positive=True))
    balance = order.balance
    if balance <= 0:
        raise ConflictError('Order is already fully paid')

    change = 0.0
    if method == 'CASH':
        if amount > balance:
            change = money(amount - balance)
        stored = min(amount, balance)
    else:
        if amount > balance:
            raise ValidationError(f'Amount exceeds the outstanding balance of {balance:.2f}')
        stored = amount

    try:
        payment = Payment(order_id=order.id, payment_type=method, amount=money(stored),
                          transaction_ref=data.get('transaction_ref'), user_id=user_id)
        db.session.add(payment)
        db.session.flush()
        db.session.refresh(order)
        order.payment_method = method
        if method == 'CASH':
            order.amount_paid = amount
            order.change_amount = change
        _refresh_payment_status(order)
        moved = None
        if order.payment_status == 'PAID':
            if order.status == 'AWAITING_PAYMENT':
                moved = _apply_status(order, 'PENDING', user_id)
            elif order.status == 'SERVED':
                moved = _apply_status(order, 'COMPLETED', user_id)
        record_audit('PAYMENT_RECORD', user_id, order.branch_id, order_id=order.id,
                     payment_id=payment.id, payment_type=method, amount=payment.amount)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('Payment %.2f %s on order %s (%s)', payment.amount, method,
                order.order_code, order.payment_status)
    kitchen_events.push_change(order.branch_id, 'payment.recorded',
                               {'order_id': order.id, 'payment_status': order.payment_status,
                                'status': order.status})
    if moved:
        kitchen_events.push_change(order.branch_id, 'order.updated',
                                   {'order_id': order.id, 'status': order.status, 'previous': moved})
    return payment, change


def refundable_amount(payment):
    refunded = sum(-(p.amount or 0) for p in Payment.query.filter_by(refunded_payment_id=payment.id))
    return money((payment.amount or 0) - refunded)


def refund_payment(order, payment_id, data, user_id=None):
    payment = db.session.get(Payment, as_int(payment_id, 'payment_id'))
    if not payment or payment.order_id != order.id:
        raise NotFoundError('Payment not found')
    if payment.payment_type == 'REFUND':
        raise ValidationError('Cannot refund a refund')
    available = refundable_amount(payment)
    amount = money(as_float(data.get('amount', available), 'amount', positive=True))
    if amount > available:
        raise ValidationError(f'Refund exceeds the refundable amount of {available:.2f}')

    try:
        refund = Payment(order_id=order.id, payment_type='REFUND', amount=-amount,
                         transaction_ref=data.get('reason'), refunded_payment_id=payment.id,
                         user_id=user_id)
        db.session.add(refund)
        db.session.flush()
        db.session.refresh(order)
        order.payment_status = 'REFUNDED' if order.total_paid <= 0 else 'PARTIAL'
        record_audit('REFUND', user_id, order.branch_id, order_id=order.id,
                     payment_id=payment.id, amount=amount, reason=data.get('reason'))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info('Refund %.2f on payment %s of order %s', amount, payment.id, order.order_code)
    kitchen_events.push_change(order.branch_id, 'payment.recorded',
                               {'order_id': order.id, 'payment_status': order.payment_status,
                                'status': order.status})
    return refund


# Queries
def get_order(branch_id, order_id):
    order = db.session.get(Order, order_id)
    if not order or order.branch_id != branch_id:
        raise NotFoundError('Order not found')
    return order


def list_orders(branch_id, statuses=None, table_id=None, payment_status=None,
                day=None, limit=50, offset=0):
    query = Order.query.filter_by(branch_id=branch_id)
    if statuses:
        query = query.filter(Order.status.in_(statuses))
    if table_id:
        query = query.filter_by(table_id=table_id)
    if payment_status:
        query = query.filter_by(payment_status=payment_status)
    if day:
        start = datetime.combine(day, datetime.min.time())
        query = query.filter(Order.created_at >= start, Order.created_at < start + timedelta(days=1))
    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return orders, total


def find_by_pin(pin):
    pin = (pin or '').strip()
    length = current_app.config.get('ORDER_PIN_LENGTH', 8)
    if len(pin) != length or not pin.isdigit():
        raise ValidationError(f'PIN must be {length} digits')
    order = Order.query.filter_by(pin=pin).first()
    if not order:
        raise NotFoundError('Order not found')
    return order


def public_view(order):
    return {
        'order_code': order.order_code,
        'branch_name': order.branch.name if order.branch else None,
        'table_number': order.table.table_number if order.table else None,
        'status': order.status,
        'payment_status': order.payment_status,
        'total': money(order.total),
        'created_at': order.created_at.isoformat() if order.created_at else None,
        'items': [{
            'name': item.menu_item.name if item.menu_item else None,
            'quantity': item.quantity,
            'variant_name': item.variant_name,
            'modifiers': [m.name for m in item.modifiers],
            'line_total': item.line_total
        } for item in order.items]
    }


def kitchen_queue(branch_id):
    return Order.query.filter(Order.branch_id == branch_id, Order.status.in_(KITCHEN_STATUSES)) \
        .order_by(Order.created_at.asc(), Order.id.asc()).all()


def table_history(branch_id, table_id, limit=50):
    table = db.session.get(DiningTable, table_id)
    if not table or table.branch_id != branch_id:
        raise NotFoundError('Table not found')
    return Order.query.filter_by(table_id=table.id) \
        .order_by(Order.created_at.desc()).limit(limit).all()
