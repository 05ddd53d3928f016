from flask import Flask, request, jsonify, session, Response, send_from_directory
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from datetime import datetime, timedelta
import time
import json
import os

from config import Config, TestConfig, configure_logging
from models import (db, User, Branch, DiningTable, Order, AuditLog, STAFF_ROLES, TABLE_STATUSES,
                    money, record_audit)
from errors import POSError, ValidationError, NotFoundError, PermissionDenied, ConflictError
from validators import as_int, as_float, as_bool, as_str, one_of, require_fields
from auth import login_user, current_user, login_required, roles_required, resolve_branch_id, ensure_same_branch
from caching import cache
import kitchen_events
import settings_service
import order_service
import menu_service
import stock_service
import report_service
import receipts
import printing
import qr_codes

app = Flask(__name__)
app.config.from_object(TestConfig if os.getenv('POSQ_CONFIG') == 'test' else Config)

configure_logging(app.config['LOG_LEVEL'])
db.init_app(app)
cache.init_app(app)
limiter = Limiter(get_remote_address, app=app, default_limits=[])
kitchen_events.configure(app.config['KDS_EVENT_BUFFER'])

MANAGERS = ('owner', 'admin', 'manager')
CASHIERS = MANAGERS + ('cashier',)
FRONT_OF_HOUSE = CASHIERS + ('waiter',)
ALL_STAFF = FRONT_OF_HOUSE + ('kitchen',)


@app.errorhandler(POSError)
def handle_pos_error(error):
    db.session.rollback()
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(404)
def handle_not_found(error):
    if request.path.startswith('/api/'):
        return jsonify({'message': 'Not found'}), 404
    return error


@app.errorhandler(405)
def handle_method_not_allowed(error):
    if request.path.startswith('/api/'):
        return jsonify({'message': 'Method not allowed'}), 405
    return error


@app.errorhandler(429)
def handle_rate_limited(error):
    app.logger.warning('Rate limit hit on %s from %s', request.path, get_remote_address())
    return jsonify({'message': 'Too many requests, please try again later'}), 429


def _login_limit():
    return app.config['LOGIN_RATE_LIMIT']


def _order_limit():
    return app.config['ORDER_RATE_LIMIT']


def _failed(response):
    return response.status_code >= 400


def _json():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('JSON object expected')
    return data


def _uid():
    return session.get('user_id')


def _page_args(default_limit=50):
    limit = as_int(request.args.get('limit', default_limit), 'limit', minimum=1, maximum=500)
    offset = as_int(request.args.get('offset', 0), 'offset', minimum=0)
    return limit, offset


def _get_branch_by_code(code):
    branch = Branch.query.filter_by(code=code.upper()).first()
    if not branch or not branch.is_active:
        raise NotFoundError('Branch not found')
    return branch


@app.route('/api')
def api_index():
    return jsonify({'message': 'POSQ Restaurant POS API'})


@app.route('/api/health')
def health():
    return jsonify({'status': 'OK', 'timestamp': datetime.utcnow().isoformat()})


# Authentication Routes
@app.route('/api/login', methods=['POST'])
@limiter.limit(_login_limit, deduct_when=_failed)
def api_login():
    data = _json()
    require_fields(data, 'username', 'password')
    username = as_str(data['username'], 'username')
    user = User.query.filter_by(username=username).first()

    if user and user.is_active and user.check_password(as_str(data['password'], 'password')):
        login_user(user)
        app.logger.info('User %s logged in', user.username)
        return jsonify({'message': 'Login successful', 'user': user.to_dict()}), 200

    app.logger.warning('Failed login for %s', username)
    return jsonify({'message': 'Invalid credentials'}), 401


@app.route('/api/pin-login', methods=['POST'])
@limiter.limit(_login_limit, deduct_when=_failed)
def api_pin_login():
    data = _json()
    require_fields(data, 'username', 'pin')
    pin = str(data['pin'])
    if len(pin) != 4 or not pin.isdigit():
        raise ValidationError('PIN must be 4 digits')
    user = User.query.filter_by(username=as_str(data['username'], 'username')).first()
    if user and user.is_active and user.check_pin(pin):
        login_user(user)
        app.logger.info('User %s logged in with PIN', user.username)
        return jsonify({'message': 'Login successful', 'user': user.to_dict()}), 200
    return jsonify({'message': 'Invalid credentials'}), 401


@app.route('/api/logout', methods=['POST'])
def api_logout():
    session.clear()
    return jsonify({'message': 'Logged out'})


@app.route('/api/me', methods=['GET'])
@login_required
def api_me():
    user = current_user()
    data = user.to_dict()
    if user.role == 'owner':
        data['branches'] = [b.to_dict() for b in Branch.query.filter_by(owner_id=user.id).all()]
    elif user.branch:
        data['branch'] = user.branch.to_dict()
    return jsonify(data)


# Public (customer) routes
@app.route('/api/public/branches/<code>/menu', methods=['GET'])
def public_menu(code):
    branch = _get_branch_by_code(code)
    return jsonify({
        'branch': {'name': branch.name, 'code': branch.code, 'logo_url': branch.logo_url},
        'currency': settings_service.get_setting('currency', branch.id),
        'categories': menu_service.customer_menu(branch.id)
    })


@app.route('/api/public/branches/<code>/tables/<number>', methods=['GET'])
def public_table(code, number):
    branch = _get_branch_by_code(code)
    table = DiningTable.query.filter_by(branch_id=branch.id, table_number=number).first()
    if not table:
        raise NotFoundError('Table not found')
    return jsonify({
        'branch': {'id': branch.id, 'name': branch.name, 'code': branch.code},
        'table': {'id': table.id, 'table_number': table.table_number,
                  'capacity': table.capacity, 'status': table.status}
    })


def _tracking(order):
    url = order_service.tracking_url(order)
    return {'tracking_url': url, 'tracking_qr': qr_codes.make_data_url(url)}


@app.route('/api/public/orders', methods=['POST'])
@limiter.limit(_order_limit)
def public_create_order():
    data = _json()
    if data.get('branch_code'):
        branch = _get_branch_by_code(data['branch_code'])
    else:
        branch = db.session.get(Branch, as_int(data.get('branch_id'), 'branch_id'))
        if not branch:
            raise NotFoundError('Branch not found')
    if data.get('table_number') and not data.get('table_id'):
        table = DiningTable.query.filter_by(branch_id=branch.id, table_number=data['table_number']).first()
        if not table:
            raise ValidationError('Table not found in this branch')
        data['table_id'] = table.id

    order = order_service.create_order(branch.id, data)
    body = order_service.public_view(order)
    body.update({'pin': order.pin, **_tracking(order)})
    return jsonify({'message': 'Order placed', 'order': body}), 201


@app.route('/api/public/orders/<pin>', methods=['GET'])
def public_order_status(pin):
    order = order_service.find_by_pin(pin)
    return jsonify(order_service.public_view(order))


# Menu Management
@app.route('/api/categories', methods=['GET', 'POST'])
@login_required
def handle_categories():
    branch_id = resolve_branch_id()
    if request.method == 'POST':
        _require_roles(MANAGERS)
        category = menu_service.create_category(branch_id, _json(), _uid())
        return jsonify({'message': 'Category created', 'category': category.to_dict()}), 201
    return jsonify([c.to_dict() for c in menu_service.list_categories(branch_id)])


@app.route('/api/categories/<int:category_id>', methods=['PUT', 'DELETE'])
@roles_required(*MANAGERS)
def handle_category(category_id):
    category = menu_service.get_category(resolve_branch_id(), category_id)
    if request.method == 'DELETE':
        menu_service.delete_category(category, _uid())
        return jsonify({'message': 'Category deleted'})
    menu_service.update_category(category, _json(), _uid())
    return jsonify({'message': 'Category updated', 'category': category.to_dict()})


def _require_roles(roles):
    user = current_user()
    if user is None or user.role not in roles:
        raise PermissionDenied('Insufficient permissions')
    return user


@app.route('/api/menu', methods=['GET'])
@login_required
def get_menu():
    branch_id = resolve_branch_id()
    category_id = as_int(request.args.get('category_id'), 'category_id', required=False)
    items = menu_service.list_items(branch_id, category_id=category_id,
                                    available_only=as_bool(request.args.get('available')))
    menu_data = []
    for item in items:
        data = item.to_dict()
        can_make = stock_service.inventory_available(item)
        data['inventory_available'] = can_make
        data['effective_availability'] = bool(item.is_available) and can_make
        menu_data.append(data)
    return jsonify(menu_data)


@app.route('/api/menu', methods=['POST'])
@roles_required(*MANAGERS)
def add_menu_item():
    item = menu_service.create_item(resolve_branch_id(), _json(), _uid())
    return jsonify({'message': 'Menu item added', 'id': item.id, 'item': item.to_dict()}), 201


@app.route('/api/menu/<int:item_id>', methods=['GET'])
@login_required
def get_menu_item(item_id):
    item = menu_service.get_item(resolve_branch_id(), item_id)
    data = item.to_dict()
    data['recipe'] = [r.to_dict() for r in item.recipes]
    data['inventory_available'] = stock_service.inventory_available(item)
    return jsonify(data)


@app.route('/api/menu/<int:item_id>', methods=['PUT', 'PATCH'])
@roles_required(*MANAGERS)
def update_menu_item(item_id):
    item = menu_service.get_item(resolve_branch_id(), item_id)
    menu_service.update_item(item, _json(), _uid())
    return jsonify({'message': 'Menu item updated', 'item': item.to_dict()})


@app.route('/api/menu/<int:item_id>', methods=['DELETE'])
@roles_required(*MANAGERS)
def delete_menu_item(item_id):
    item = menu_service.get_item(resolve_branch_id(), item_id)
    menu_service.delete_item(item, _uid())
    return jsonify({'message': 'Menu item deleted'})


@app.route('/api/menu/<int:item_id>/recipe', methods=['GET'])
@login_required
def get_menu_item_recipe(item_id):
    branch_id = resolve_branch_id()
    menu_service.get_item(branch_id, item_id)
    return jsonify([r.to_dict() for r in stock_service.list_recipes(branch_id, menu_item_id=item_id)])


@app.route('/api/menu/<int:item_id>/modifiers', methods=['GET', 'POST'])
@login_required
def handle_modifiers(item_id):
    item = menu_service.get_item(resolve_branch_id(), item_id)
    if request.method == 'POST':
        _require_roles(MANAGERS)
        modifier = menu_service.add_modifier(item, _json(), _uid())
        return jsonify({'message': 'Modifier added', 'modifier': modifier.to_dict()}), 201
    return jsonify([m.to_dict() for m in item.modifiers])


@app.route('/api/menu/<int:item_id>/modifiers/<int:modifier_id>', methods=['PUT', 'DELETE'])
@roles_required(*MANAGERS)
def handle_modifier(item_id, modifier_id):
    item = menu_service.get_item(resolve_branch_id(), item_id)
    modifier = menu_service.get_modifier(item, modifier_id)
    if request.method == 'DELETE':
        menu_service.delete_modifier(item, modifier, _uid())
        return jsonify({'message': 'Modifier deleted'})
    menu_service.update_modifier(item, modifier, _json(), _uid())
    return jsonify({'message': 'Modifier updated', 'modifier': modifier.to_dict()})


@app.route('/api/menu/<int:item_id>/variants', methods=['GET', 'POST', 'PUT'])
@login_required
def handle_variants(item_id):
    item = menu_service.get_item(resolve_branch_id(), item_id)
    if request.method == 'POST':
        _require_roles(MANAGERS)
        variant = menu_service.add_variant(item, _json(), _uid())
        return jsonify({'message': 'Variant added', 'variant': variant.to_dict()}), 201
    if request.method == 'PUT':
        _require_roles(MANAGERS)
        variants = menu_service.replace_variants(item, _json().get('variants'), _uid())
        return jsonify({'message': 'Variants replaced', 'variants': [v.to_dict() for v in variants]})
    return jsonify([v.to_dict() for v in item.variants])


@app.route('/api/menu/<int:item_id>/variants/<int:variant_id>', methods=['PUT', 'DELETE'])
@roles_required(*MANAGERS)
def handle_variant(item_id, variant_id):
    item = menu_service.get_item(resolve_branch_id(), item_id)
    variant = menu_service.get_variant(item, variant_id)
    if request.method == 'DELETE':
        menu_service.delete_variant(item, variant, _uid())
        return jsonify({'message': 'Variant deleted'})
    menu_service.update_variant(item, variant, _json(), _uid())
    return jsonify({'message': 'Variant updated', 'variant': variant.to_dict()})


# Image Upload
@app.route('/api/upload/image', methods=['POST'])
@roles_required(*MANAGERS)
def upload_image():
    if 'file' not in request.files:
        return jsonify({'message': 'No file part'}), 400
    image_url, filename = menu_service.save_image(request.files['file'])
    return jsonify({
        'message': 'File uploaded successfully',
        'image_url': image_url,
        'filename': filename
    }), 201


# Serve uploaded files
@app.route('/uploads/images/<filename>')
def uploaded_file(filename):
    return send_from_directory(app.config['IMAGE_UPLOAD_FOLDER'], filename)


# Table Management
@app.route('/api/tables', methods=['GET', 'POST'])
@login_required
def handle_tables():
    branch_id = resolve_branch_id()
    if request.method == 'POST':
        _require_roles(MANAGERS)
        data = _json()
        require_fields(data, 'table_number')
        number = str(data['table_number']).strip()
        if DiningTable.query.filter_by(branch_id=branch_id, table_number=number).first():
            raise ConflictError(f'Table {number} already exists')
        table = DiningTable(
            branch_id=branch_id,
            table_number=number,
            capacity=as_int(data.get('capacity', 4), 'capacity', minimum=1),
            description=data.get('description'),
            status=one_of(data.get('status', 'available'), 'status', TABLE_STATUSES)
        )
        db.session.add(table)
        db.session.flush()
        qr_codes.ensure_table_url(table, app.config['FRONTEND_URL'])
        record_audit('TABLE_CREATE', _uid(), branch_id, table_id=table.id, table_number=number)
        db.session.commit()
        return jsonify({'message': 'Table created', 'id': table.id, 'table': table.to_dict()}), 201

    query = DiningTable.query.filter_by(branch_id=branch_id)
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'])
    tables = sorted(query.all(), key=qr_codes.table_sort_key)
    return jsonify([t.to_dict() for t in tables])


def _get_table(table_id, branch_id=None):
    return ensure_same_branch(db.session.get(DiningTable, table_id),
                              branch_id or resolve_branch_id(), 'Table')


@app.route('/api/tables/<int:table_id>', methods=['GET', 'PUT', 'DELETE'])
@login_required
def handle_table(table_id):
    table = _get_table(table_id)

    if request.method == 'GET':
        return jsonify(table.to_dict())

    elif request.method == 'PUT':
        data = _json()
        if 'status' in data:
            table.status = one_of(data['status'], 'status', TABLE_STATUSES)
        if set(data) - {'status', 'branch_id'}:
            _require_roles(MANAGERS)
        if 'table_number' in data:
            number = str(data['table_number']).strip()
            clash = DiningTable.query.filter_by(branch_id=table.branch_id, table_number=number).first()
            if clash and clash.id != table.id:
                raise ConflictError(f'Table {number} already exists')
            if number != table.table_number:
                table.table_number = number
                table.qr_code_url = None
                qr_codes.ensure_table_url(table, app.config['FRONTEND_URL'])
        if 'capacity' in data:
            table.capacity = as_int(data['capacity'], 'capacity', minimum=1)
        if 'description' in data:
            table.description = data['description']
        record_audit('TABLE_UPDATE', _uid(), table.branch_id, table_id=table.id)
        db.session.commit()
        return jsonify({'message': 'Table updated', 'table': table.to_dict()})

    elif request.method == 'DELETE':
        _require_roles(MANAGERS)
        open_orders = Order.query.filter(Order.table_id == table.id,
                                         Order.status.in_(order_service.OPEN_STATUSES)).count()
        if open_orders:
            raise ConflictError('Table has open orders')
        # history stays, it just loses the link to the removed table
        Order.query.filter_by(table_id=table.id).update({'table_id': None})
        record_audit('TABLE_DELETE', _uid(), table.branch_id, table_id=table.id,
                     table_number=table.table_number)
        db.session.delete(table)
        db.session.commit()
        return jsonify({'message': 'Table deleted'})


@app.route('/api/tables/<int:table_id>/qr', methods=['GET'])
@login_required
def table_qr(table_id):
    table = _get_table(table_id)
    url = qr_codes.ensure_table_url(table, app.config['FRONTEND_URL'])
    db.session.commit()
    if request.args.get('format', 'png') == 'dataurl':
        return jsonify({'table_id': table.id, 'url': url, 'qr_code': qr_codes.make_data_url(url)})
    return Response(qr_codes.make_png(url), mimetype='image/png',
                    headers={'Content-Disposition': f'inline; filename=table-{table.table_number}-qr.png'})


@app.route('/api/tables/qr-sheet', methods=['GET'])
@roles_required(*MANAGERS)
def table_qr_sheet():
    branch = db.session.get(Branch, resolve_branch_id())
    tables = DiningTable.query.filter_by(branch_id=branch.id).all()
    html = qr_codes.branch_sheet(branch, tables, app.config['FRONTEND_URL'])
    db.session.commit()
    return Response(html, mimetype='text/html')


@app.route('/api/tables/<int:table_id>/orders', methods=['GET'])
@login_required
def table_orders(table_id):
    limit, _ = _page_args()
    orders = order_service.table_history(resolve_branch_id(), table_id, limit=limit)
    return jsonify([o.summary() for o in orders])


# Order Management
@app.route('/api/orders', methods=['GET', 'POST'])
@login_required
def handle_orders():
    branch_id = resolve_branch_id()
    if request.method == 'POST':
        _require_roles(FRONT_OF_HOUSE)
        order = order_service.create_order(branch_id, _json(), _uid())
        return jsonify({'message': 'Order created', 'order': order.to_dict(), **_tracking(order)}), 201

    statuses = [s.strip().upper() for s in request.args.get('status', '').split(',') if s.strip()]
    for status in statuses:
        one_of(status, 'status', order_service.ORDER_STATUSES)
    day = report_service.parse_day(request.args['date']) if request.args.get('date') else None
    limit, offset = _page_args()
    orders, total = order_service.list_orders(
        branch_id,
        statuses=statuses,
        table_id=as_int(request.args.get('table_id'), 'table_id', required=False),
        payment_status=request.args.get('payment_status'),
        day=day, limit=limit, offset=offset
    )
    return jsonify({'orders': [o.summary() for o in orders], 'total': total,
                    'limit': limit, 'offset': offset})


@app.route('/api/orders/<int:order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    order = order_service.get_order(resolve_branch_id(), order_id)
    return jsonify(order.to_dict())


@app.route('/api/orders/<int:order_id>/status', methods=['PATCH', 'PUT'])
@roles_required(*ALL_STAFF)
def update_order_status(order_id):
    order = order_service.get_order(resolve_branch_id(), order_id)
    data = _json()
    require_fields(data, 'status')
    if str(data['status']).upper() == 'CANCELLED':
        order_service.cancel_order(order, data.get('reason'), _uid())
    else:
        order_service.update_status(order, data['status'], _uid())
    return jsonify({'message': 'Order status updated', 'order': order.to_dict()})


@app.route('/api/orders/<int:order_id>/cancel', methods=['POST'])
@roles_required(*FRONT_OF_HOUSE)
def cancel_order(order_id):
    order = order_service.get_order(resolve_branch_id(), order_id)
    order_service.cancel_order(order, _json().get('reason'), _uid())
    return jsonify({'message': 'Order cancelled', 'order': order.to_dict()})


@app.route('/api/orders/<int:order_id>/payments', methods=['GET', 'POST'])
@login_required
def handle_order_payments(order_id):
    order = order_service.get_order(resolve_branch_id(), order_id)
    if request.method == 'POST':
        _require_roles(CASHIERS)
        payment, change = order_service.record_payment(order, _json(), _uid())
        return jsonify({
            'message': 'Payment recorded',
            'payment': payment.to_dict(),
            'change': change,
            'total_paid': order.total_paid,
            'balance': order.balance,
            'payment_status': order.payment_status,
            'order_status': order.status
        }), 201
    return jsonify({'payments': [p.to_dict() for p in order.payments],
                    'total_paid': order.total_paid, 'balance': order.balance})


@app.route('/api/orders/<int:order_id>/payments/<int:payment_id>/refund', methods=['POST'])
@roles_required(*MANAGERS)
def refund_payment(order_id, payment_id):
    order = order_service.get_order(resolve_branch_id(), order_id)
    refund = order_service.refund_payment(order, payment_id, _json(), _uid())
    return jsonify({
        'message': 'Refund recorded',
        'refund': refund.to_dict(),
        'total_paid': order.total_paid,
        'payment_status': order.payment_status
    }), 201


@app.route('/api/orders/<int:order_id>/receipt', methods=['GET'])
@login_required
def render_receipt(order_id):
    order = order_service.get_order(resolve_branch_id(), order_id)
    ticket = one_of(request.args.get('ticket', 'receipt'), 'ticket', printing.TICKETS)
    footer = settings_service.get_setting('receipt_footer', order.branch_id)
    text = receipts.render(ticket, order.to_dict(),
                           currency=settings_service.get_setting('currency', order.branch_id),
                           footer=[footer] if isinstance(footer, str) else footer,
                           keywords=settings_service.get_setting('bar_keywords', order.branch_id))
    if text is None:
        return jsonify({'message': 'Nothing to print for this ticket'}), 404
    return Response(text, mimetype='text/plain')


@app.route('/api/orders/<int:order_id>/print', methods=['POST'])
@roles_required(*FRONT_OF_HOUSE)
def print_order(order_id):
    order = order_service.get_order(resolve_branch_id(), order_id)
    data = _json()
    tickets = data.get('tickets') or [data.get('ticket', 'receipt')]
    results = []
    for ticket in tickets:
        one_of(ticket, 'ticket', printing.TICKETS)
        results.append(printing.print_order(order, ticket, data.get('printer_id')))
    ok = all(r['success'] for r in results)
    return jsonify({'success': ok, 'results': results}), 200 if ok else 502


@app.route('/api/printers', methods=['GET'])
@roles_required(*CASHIERS)
def printers():
    return jsonify(printing.printer_status())


# Kitchen display
@app.route('/api/kitchen/orders', methods=['GET'])
@roles_required(*ALL_STAFF)
def get_kitchen_orders():
    orders = order_service.kitchen_queue(resolve_branch_id())
    return jsonify([o.to_dict(include_payments=False) for o in orders])


@app.route('/api/kitchen/stream')
@roles_required(*ALL_STAFF)
def kds_stream():
    branch_id = resolve_branch_id()
    last_id = as_int(request.headers.get('Last-Event-ID') or request.args.get('last_event_id', 0),
                     'last_event_id', minimum=0)
    heartbeat = app.config['KDS_HEARTBEAT_SECONDS']

    def event_stream():
        last_seen = last_id
        while True:
            events = kitchen_events.changes_since(branch_id, last_seen)
            if events:
                for evt in events:
                    yield f"id: {evt['id']}\n"
                    yield f"event: {evt['event']}\n"
                    yield f"data: {json.dumps(evt)}\n\n"
                last_seen = events[-1]['id']
            else:
                yield "event: heartbeat\n"
                yield f"data: {json.dumps({'time': datetime.utcnow().isoformat()})}\n\n"
            time.sleep(heartbeat)
    return Response(event_stream(), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})


# Inventory Management
@app.route('/api/stock', methods=['GET', 'POST'])
@roles_required(*ALL_STAFF)
def handle_stock():
    branch_id = resolve_branch_id()
    if request.method == 'POST':
        _require_roles(MANAGERS)
        item = stock_service.create_stock_item(branch_id, _json(), _uid())
        return jsonify({'message': 'Stock item created', 'stock_item': item.to_dict()}), 201
    items = stock_service.list_stock_items(branch_id, low_only=as_bool(request.args.get('low')),
                                           search=request.args.get('search'))
    return jsonify([i.to_dict() for i in items])


@app.route('/api/stock/<int:stock_item_id>', methods=['GET', 'PUT', 'DELETE'])
@roles_required(*ALL_STAFF)
def handle_stock_item(stock_item_id):
    item = stock_service.get_stock_item(resolve_branch_id(), stock_item_id)
    if request.method == 'GET':
        data = item.to_dict()
        data['recipes'] = [r.to_dict() for r in item.recipes]
        return jsonify(data)
    _require_roles(MANAGERS)
    if request.method == 'DELETE':
        stock_service.delete_stock_item(item, _uid())
        return jsonify({'message': 'Stock item deleted'})
    stock_service.update_stock_item(item, _json(), _uid())
    return jsonify({'message': 'Stock item updated', 'stock_item': item.to_dict()})


@app.route('/api/stock/<int:stock_item_id>/move', methods=['POST'])
@roles_required(*MANAGERS)
def move_stock(stock_item_id):
    branch_id = resolve_branch_id()
    movement = stock_service.record_movement(branch_id, stock_item_id, _json(), _uid())
    item = stock_service.get_stock_item(branch_id, stock_item_id)
    return jsonify({'message': 'Stock updated', 'movement': movement.to_dict(),
                    'stock_item': item.to_dict()}), 201


@app.route('/api/stock/<int:stock_item_id>/movements', methods=['GET'])
@roles_required(*MANAGERS)
def stock_movements(stock_item_id):
    item = stock_service.get_stock_item(resolve_branch_id(), stock_item_id)
    limit, offset = _page_args()
    rows, total = stock_service.list_movements(item, limit, offset, request.args.get('type'))
    return jsonify({'movements': [m.to_dict() for m in rows], 'total': total,
                    'limit': limit, 'offset': offset})


@app.route('/api/stock/bulk-restock', methods=['POST'])
@roles_required(*MANAGERS)
def bulk_restock():
    data = _json()
    movements = stock_service.bulk_restock(resolve_branch_id(), data.get('updates'),
                                           data.get('reason'), _uid())
    return jsonify({'message': f'{len(movements)} stock items restocked',
                    'movements': [m.to_dict() for m in movements]}), 201


@app.route('/api/stock/low', methods=['GET'])
@roles_required(*ALL_STAFF)
def get_low_stock():
    return jsonify([i.to_dict() for i in stock_service.low_stock(resolve_branch_id())])


@app.route('/api/stock/alerts', methods=['GET'])
@roles_required(*MANAGERS)
def get_stock_alerts():
    alerts = stock_service.list_alerts(resolve_branch_id(),
                                       include_resolved=as_bool(request.args.get('include_resolved')))
    return jsonify([a.to_dict() for a in alerts])


@app.route('/api/stock/alerts/<int:alert_id>/resolve', methods=['POST'])
@roles_required(*MANAGERS)
def resolve_stock_alert(alert_id):
    alert = stock_service.resolve_alert(resolve_branch_id(), alert_id, _uid())
    return jsonify({'message': 'Alert resolved', 'alert': alert.to_dict()})


@app.route('/api/recipes', methods=['GET', 'POST'])
@roles_required(*MANAGERS)
def handle_recipes():
    branch_id = resolve_branch_id()
    if request.method == 'POST':
        recipe = stock_service.create_recipe(branch_id, _json(), _uid())
        return jsonify({'message': 'Recipe created', 'recipe': recipe.to_dict()}), 201
    menu_item_id = as_int(request.args.get('menu_item_id'), 'menu_item_id', required=False)
    return jsonify([r.to_dict() for r in stock_service.list_recipes(branch_id, menu_item_id)])


@app.route('/api/recipes/<int:recipe_id>', methods=['PUT', 'DELETE'])
@roles_required(*MANAGERS)
def handle_recipe(recipe_id):
    branch_id = resolve_branch_id()
    if request.method == 'DELETE':
        stock_service.delete_recipe(branch_id, recipe_id, _uid())
        return jsonify({'message': 'Recipe deleted'})
    recipe = stock_service.update_recipe(branch_id, recipe_id, _json(), _uid())
    return jsonify({'message': 'Recipe updated', 'recipe': recipe.to_dict()})


# Branches (owners)
def _owned_branch(branch_id):
    branch = db.session.get(Branch, branch_id)
    if not branch or branch.owner_id != session.get('user_id'):
        raise NotFoundError('Branch not found')
    return branch


def _branch_settings(branch_id, settings):
    if not isinstance(settings, dict):
        raise ValidationError('settings must be an object')
    for key, value in settings.items():
        settings_service.set_setting(key, _clean_setting(key, value), branch_id)


def _branch_view(branch):
    return dict(branch.to_dict(), settings=settings_service.all_settings(branch.id))


@app.route('/api/branches', methods=['GET', 'POST'])
@roles_required('owner')
def handle_branches():
    owner_id = _uid()
    if request.method == 'POST':
        data = _json()
        require_fields(data, 'name', 'code')
        code = as_str(data['code'], 'code').upper()
        if Branch.query.filter_by(code=code).first():
            raise ConflictError(f'Branch code {code} already exists')
        branch = Branch(name=as_str(data['name'], 'name'), code=code, address=data.get('address'),
                        phone=data.get('phone'), email=data.get('email'),
                        logo_url=data.get('logo_url'), owner_id=owner_id)
        db.session.add(branch)
        db.session.flush()
        _branch_settings(branch.id, data.get('settings') or {})
        record_audit('BRANCH_CREATE', owner_id, branch.id, code=code)
        db.session.commit()
        app.logger.info('Branch %s created by owner %s', code, owner_id)
        return jsonify({'message': 'Branch created', 'branch': _branch_view(branch)}), 201

    branches = Branch.query.filter_by(owner_id=owner_id).order_by(Branch.name).all()
    return jsonify([b.to_dict() for b in branches])


@app.route('/api/branches/<int:branch_id>', methods=['GET', 'PUT'])
@roles_required('owner')
def handle_branch(branch_id):
    branch = _owned_branch(branch_id)
    if request.method == 'GET':
        return jsonify(_branch_view(branch))
    data = _json()
    if 'name' in data:
        branch.name = as_str(data['name'], 'name')
    for field in ('address', 'phone', 'email', 'logo_url'):
        if field in data:
            setattr(branch, field, data[field])
    if 'settings' in data:
        _branch_settings(branch.id, data['settings'] or {})
    if 'is_active' in data:
        branch.is_active = as_bool(data['is_active'], True)
    record_audit('BRANCH_UPDATE', _uid(), branch.id)
    db.session.commit()
    return jsonify({'message': 'Branch updated', 'branch': _branch_view(branch)})


@app.route('/api/branches/<int:branch_id>/<action>', methods=['POST'])
@roles_required('owner')
def toggle_branch(branch_id, action):
    if action not in ('activate', 'deactivate'):
        raise NotFoundError('Not found')
    branch = _owned_branch(branch_id)
    branch.is_active = action == 'activate'
    record_audit(f'BRANCH_{action.upper()}', _uid(), branch.id)
    db.session.commit()
    return jsonify({'message': f'Branch {action}d', 'branch': branch.to_dict()})


@app.route('/api/branches/<int:branch_id>/dashboard', methods=['GET'])
@roles_required('owner')
def branch_dashboard(branch_id):
    branch = _owned_branch(branch_id)
    start = datetime.combine(datetime.utcnow().date(), datetime.min.time())
    today = Order.query.filter(Order.branch_id == branch.id, Order.created_at >= start,
                               Order.created_at < start + timedelta(days=1)).all()
    open_orders = Order.query.filter(Order.branch_id == branch.id,
                                     Order.status.in_(order_service.OPEN_STATUSES)).count()
    return jsonify({
        'branch': branch.to_dict(),
        'orders_today': len(today),
        'revenue_today': money(sum(o.total or 0 for o in today if o.status != 'CANCELLED')),
        'open_orders': open_orders,
        'low_stock_count': len(stock_service.low_stock(branch.id)),
        'staff_count': User.query.filter_by(branch_id=branch.id, is_active=True).count()
    })


# Staff Management
def _validate_pin(pin):
    pin = str(pin)
    if len(pin) != 4 or not pin.isdigit():
        raise ValidationError('PIN must be 4 digits')
    return pin


def _check_role_grant(actor, role):
    one_of(role, 'role', STAFF_ROLES)
    if actor.role == 'manager' and role in ('admin', 'manager'):
        raise PermissionDenied('Managers can only manage cashier, kitchen and waiter accounts')


@app.route('/api/staff', methods=['GET', 'POST'])
@roles_required(*MANAGERS)
def handle_staff():
    branch_id = resolve_branch_id()
    actor = current_user()
    if request.method == 'POST':
        data = _json()
        require_fields(data, 'username', 'password', 'role')
        _check_role_grant(actor, data['role'])
        username = as_str(data['username'], 'username')
        password = as_str(data['password'], 'password')
        if User.query.filter_by(username=username).first():
            raise ConflictError('Username already exists')
        if len(password) < 6:
            raise ValidationError('Password must be at least 6 characters')
        user = User(
            username=username,
            full_name=data.get('full_name'),
            email=data.get('email'),
            phone=data.get('phone'),
            role=data['role'],
            branch_id=branch_id,
            salary=as_float(data.get('salary'), 'salary', minimum=0, required=False),
            hire_date=report_service.parse_day(data['hire_date'], 'hire_date') if data.get('hire_date') else None,
            is_active=True
        )
        user.set_password(password)
        if data.get('pin'):
            user.set_pin(_validate_pin(data['pin']))
        db.session.add(user)
        db.session.flush()
        record_audit('STAFF_CREATE', actor.id, branch_id, staff_id=user.id, role=user.role)
        db.session.commit()
        app.logger.info('Staff member %s (%s) created in branch %s', user.username, user.role, branch_id)
        return jsonify({'message': 'Staff member created', 'id': user.id, 'user': user.to_dict()}), 201

    query = User.query.filter_by(branch_id=branch_id)
    if request.args.get('role'):
        query = query.filter_by(role=request.args['role'])
    return jsonify([u.to_dict() for u in query.order_by(User.username).all()])


def _get_staff(staff_id, branch_id):
    user = ensure_same_branch(db.session.get(User, staff_id), branch_id, 'Staff member')
    actor = current_user()
    if actor.role == 'manager' and user.role in ('admin', 'manager') and user.id != actor.id:
        raise PermissionDenied('Managers cannot manage this account')
    return user


@app.route('/api/staff/<int:staff_id>', methods=['GET', 'PUT'])
@roles_required(*MANAGERS)
def handle_staff_member(staff_id):
    branch_id = resolve_branch_id()
    user = _get_staff(staff_id, branch_id)
    if request.method == 'GET':
        return jsonify(user.to_dict())

    data = _json()
    if 'role' in data and data['role'] != user.role:
        _check_role_grant(current_user(), data['role'])
        user.role = data['role']
    for field in ('full_name', 'email', 'phone'):
        if field in data:
            setattr(user, field, data[field])
    if 'salary' in data:
        user.salary = as_float(data['salary'], 'salary', minimum=0, required=False)
    if 'hire_date' in data:
        user.hire_date = report_service.parse_day(data['hire_date'], 'hire_date') if data['hire_date'] else None
    if data.get('password'):
        password = as_str(data['password'], 'password')
        if len(password) < 6:
            raise ValidationError('Password must be at least 6 characters')
        user.set_password(password)
    if 'pin' in data:
        user.set_pin(_validate_pin(data['pin']) if data['pin'] else None)
    record_audit('STAFF_UPDATE', _uid(), branch_id, staff_id=user.id)
    db.session.commit()
    return jsonify({'message': 'Staff member updated', 'user': user.to_dict()})


@app.route('/api/staff/<int:staff_id>/<action>', methods=['POST'])
@roles_required(*MANAGERS)
def toggle_staff(staff_id, action):
    if action not in ('activate', 'deactivate'):
        raise NotFoundError('Not found')
    branch_id = resolve_branch_id()
    user = _get_staff(staff_id, branch_id)
    if user.id == _uid():
        raise ValidationError('You cannot change your own account status')
    user.is_active = action == 'activate'
    record_audit(f'STAFF_{action.upper()}', _uid(), branch_id, staff_id=user.id)
    db.session.commit()
    return jsonify({'message': f'Staff member {action}d', 'user': user.to_dict()})


# Settings Management
RATE_SETTINGS = ('tax_rate', 'service_charge_rate')


def _clean_setting(key, value):
    if key in RATE_SETTINGS:
        rate = as_float(value, key, minimum=0)
        if rate > 100:
            raise ValidationError(f'{key} must be at most 100')
        return rate
    if key == 'bar_keywords' and not isinstance(value, list):
        raise ValidationError('bar_keywords must be a list')
    return value


@app.route('/api/settings', methods=['GET', 'POST'])
@login_required
def handle_settings():
    branch_id = resolve_branch_id()
    if request.method == 'POST':
        _require_roles(MANAGERS)
        data = {k: v for k, v in _json().items() if k != 'branch_id'}
        if not data:
            raise ValidationError('No settings given')
        for key, value in data.items():
            settings_service.set_setting(key, _clean_setting(key, value), branch_id)
        record_audit('SETTINGS_UPDATE', _uid(), branch_id, keys=sorted(data))
        db.session.commit()
        return jsonify({'message': 'Settings saved successfully'}), 200

    return jsonify(settings_service.all_settings(branch_id))


@app.route('/api/settings/<key>', methods=['GET', 'PUT', 'DELETE'])
@login_required
def handle_setting(key):
    branch_id = resolve_branch_id()
    if request.method == 'GET':
        value = settings_service.get_setting(key, branch_id)
        if value is None:
            return jsonify({'message': 'Setting not found'}), 404
        return jsonify({'key': key, 'value': value})

    _require_roles(MANAGERS)
    if request.method == 'PUT':
        data = _json()
        if data.get('value') is None:
            return jsonify({'message': 'Value is required'}), 400
        settings_service.set_setting(key, _clean_setting(key, data['value']), branch_id)
        record_audit('SETTINGS_UPDATE', _uid(), branch_id, keys=[key])
        db.session.commit()
        return jsonify({'message': 'Setting updated successfully'}), 200

    if not settings_service.delete_setting(key, branch_id):
        return jsonify({'message': 'Setting not found'}), 404
    record_audit('SETTINGS_DELETE', _uid(), branch_id, key=key)
    db.session.commit()
    return jsonify({'message': 'Setting deleted successfully'}), 200


@app.route('/api/audit-logs', methods=['GET'])
@roles_required(*MANAGERS)
def audit_logs():
    branch_id = resolve_branch_id()
    limit, offset = _page_args()
    query = AuditLog.query.filter_by(branch_id=branch_id)
    if request.args.get('action'):
        query = query.filter_by(action=request.args['action'].upper())
    total = query.count()
    logs = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit).all()
    return jsonify({'logs': [log.to_dict() for log in logs], 'total': total,
                    'limit': limit, 'offset': offset})


# Reports
def _range_args():
    return report_service.parse_range(request.args.get('start_date'), request.args.get('end_date'))


@app.route('/api/reports/sales/daily', methods=['GET'])
@roles_required(*MANAGERS)
def daily_sales_report():
    day = report_service.parse_day(request.args.get('date'))
    return jsonify(report_service.daily_sales(resolve_branch_id(), day))


@app.route('/api/reports/sales/range', methods=['GET'])
@roles_required(*MANAGERS)
def sales_range_report():
    start, end = _range_args()
    return jsonify(report_service.sales_by_range(resolve_branch_id(), start, end))


@app.route('/api/reports/items/top', methods=['GET'])
@roles_required(*MANAGERS)
def top_items_report():
    start, end = _range_args()
    limit = as_int(request.args.get('limit', 10), 'limit', minimum=1, maximum=100)
    return jsonify(report_service.top_items(resolve_branch_id(), start, end, limit))


@app.route('/api/reports/payments/methods', methods=['GET'])
@roles_required(*MANAGERS)
def payment_methods_report():
    start, end = _range_args()
    return jsonify(report_service.payment_methods(resolve_branch_id(), start, end))


@app.route('/api/reports/cash/reconciliation', methods=['GET'])
@roles_required(*CASHIERS)
def cash_reconciliation_report():
    day = report_service.parse_day(request.args.get('date'))
    return jsonify(report_service.cash_reconciliation(resolve_branch_id(), day))


@app.route('/api/reports/tables/turnover', methods=['GET'])
@roles_required(*MANAGERS)
def table_turnover_report():
    start, end = _range_args()
    return jsonify(report_service.table_turnover(resolve_branch_id(), start, end))


@app.route('/api/reports/inventory/usage', methods=['GET'])
@roles_required(*MANAGERS)
def inventory_usage_report():
    start, end = _range_args()
    return jsonify(report_service.inventory_usage(resolve_branch_id(), start, end))


@app.route('/api/reports/export/<report_type>', methods=['GET'])
@roles_required(*MANAGERS)
def export_report(report_type):
    start, end = _range_args()
    filename, content = report_service.export_csv(report_type, resolve_branch_id(), start, end)
    return Response(content, mimetype='text/csv',
                    headers={'Content-Disposition': f'attachment; filename={filename}'})


# Database initialization function
def initialize_database():
    """Create any missing tables."""
    db.create_all()
    app.logger.info('Database initialized (%s)', app.config['SQLALCHEMY_DATABASE_URI'])


# Initialize Database
with app.app_context():
    initialize_database()

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5000)
