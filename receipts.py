"""Plain text tickets for 32 column thermal printers.

Everything here works on the order dictionary produced by ``Order.to_dict()``
so the printer service can format tickets without a database.
"""
from datetime import datetime

WIDTH = 32
DEFAULT_BAR_KEYWORDS = ['juice', 'coffee', 'tea', 'drink', 'beverage']
DEFAULT_FOOTER = ['Thank you for your order!', 'Please pay at the cashier']


def center_text(text, width=WIDTH):
    text = str(text)
    if len(text) >= width:
        return text
    padding = (width - len(text)) // 2
    return ' ' * padding + text


def format_currency(amount, currency='MAD'):
    return f'{float(amount or 0):.2f} {currency}'


def _format_date(value):
    if not value:
        return ''
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return value.strftime('%Y-%m-%d %H:%M')


def _header(lines, title, subtitle=None):
    lines.append(center_text(title))
    if subtitle:
        lines.append(center_text(subtitle))
    lines.append(center_text('=' * WIDTH))
    lines.append('')


def _order_info(lines, order, label='Date'):
    lines.append(f"Order: {order.get('order_code', '')}")
    lines.append(f"Table: {order.get('table_number') or '-'}")
    if order.get('customer_name'):
        lines.append(f"Customer: {order['customer_name']}")
    lines.append(f"{label}: {_format_date(order.get('created_at'))}")
    lines.append('')


def order_receipt(order, currency='MAD', footer=None):
    lines = []
    _header(lines, order.get('branch_name') or 'POSQ Restaurant')
    _order_info(lines, order)

    lines.append('ITEMS:')
    lines.append('-' * WIDTH)
    for item in order.get('items', []):
        name = item.get('item_name') or ''
        if item.get('variant_name'):
            name = f"{name} ({item['variant_name']})"
        lines.append(name)
        lines.append(f"  {item.get('quantity', 0)}x {format_currency(item.get('unit_price'), currency)}")
        if item.get('note'):
            lines.append(f"  Note: {item['note']}")
        for modifier in item.get('modifiers') or []:
            lines.append(f"  + {modifier.get('name')} (+{format_currency(modifier.get('extra_price'), currency)})")
        line_total = item.get('line_total')
        if line_total is None:
            extras = sum(m.get('extra_price') or 0 for m in item.get('modifiers') or [])
            line_total = ((item.get('unit_price') or 0) + extras) * (item.get('quantity') or 0)
        lines.append(f"  Subtotal: {format_currency(line_total, currency)}")
        lines.append('')

    tax = float(order.get('tax') or 0)
    service_charge = float(order.get('service_charge') or 0)
    total = float(order.get('total') or 0)
    subtotal = order.get('subtotal')
    if subtotal is None:
        subtotal = total - tax - service_charge

    lines.append('-' * WIDTH)
    lines.append(f"Subtotal: {format_currency(subtotal, currency)}")
    if tax > 0:
        lines.append(f"Tax: {format_currency(tax, currency)}")
    if service_charge > 0:
        lines.append(f"Service Charge: {format_currency(service_charge, currency)}")
    lines.append('=' * WIDTH)
    lines.append(f"TOTAL: {format_currency(total, currency)}")
    lines.append('')

    for text in (footer if footer is not None else DEFAULT_FOOTER):
        lines.append(center_text(text))
    lines.append('')
    lines.append(center_text('=' * WIDTH))
    return '\n'.join(lines)


def _prep_lines(lines, items):
    for item in items:
        name = item.get('item_name') or ''
        if item.get('variant_name'):
            name = f"{name} ({item['variant_name']})"
        lines.append(f"{item.get('quantity', 0)}x {name}")
        if item.get('note'):
            lines.append(f"  Note: {item['note']}")
        modifiers = item.get('modifiers') or []
        if modifiers:
            lines.append('  Modifiers:')
            for modifier in modifiers:
                lines.append(f"    - {modifier.get('name')}")
        lines.append('')


def kitchen_ticket(order):
    lines = []
    _header(lines, order.get('branch_name') or 'POSQ Kitchen', 'KITCHEN ORDER')
    _order_info(lines, order, label='Time')
    lines.append('ITEMS TO PREPARE:')
    lines.append('-' * WIDTH)
    _prep_lines(lines, order.get('items', []))
    lines.append('-' * WIDTH)
    lines.append(center_text('PREPARE ORDER'))
    lines.append('')
    return '\n'.join(lines)


def is_bar_item(item, keywords=None):
    keywords = [k.lower() for k in (keywords or DEFAULT_BAR_KEYWORDS)]
    haystack = f"{item.get('item_name') or ''} {item.get('category') or ''}".lower()
    return any(keyword in haystack for keyword in keywords)


def bar_ticket(order, keywords=None):
    """Beverage ticket, or None when the order has nothing for the bar."""
    bar_items = [i for i in order.get('items', []) if is_bar_item(i, keywords)]
    if not bar_items:
        return None
    lines = []
    _header(lines, order.get('branch_name') or 'POSQ Bar', 'BAR ORDER')
    _order_info(lines, order, label='Time')
    lines.append('BEVERAGES TO PREPARE:')
    lines.append('-' * WIDTH)
    _prep_lines(lines, bar_items)
    lines.append('-' * WIDTH)
    lines.append(center_text('PREPARE BEVERAGES'))
    lines.append('')
    return '\n'.join(lines)


def self_test_page(now=None):
    now = now or datetime.now()
    lines = []
    _header(lines, 'POSQ Printer Test')
    lines.append(f"Date: {now.strftime('%Y-%m-%d')}")
    lines.append(f"Time: {now.strftime('%H:%M:%S')}")
    lines.append('')
    lines.append('This is a test print to verify')
    lines.append('that the printer is working')
    lines.append('correctly.')
    lines.append('')
    lines.append(center_text('=' * WIDTH))
    lines.append(center_text('Test Complete'))
    lines.append('')
    return '\n'.join(lines)


def render(ticket, order, currency='MAD', footer=None, keywords=None):
    if ticket == 'receipt':
        return order_receipt(order, currency, footer)
    if ticket == 'kitchen':
        return kitchen_ticket(order)
    if ticket == 'bar':
        return bar_ticket(order, keywords)
    raise ValueError(f'Unknown ticket type: {ticket}')
