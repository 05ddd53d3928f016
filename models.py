import json
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

# Role names. Owners hold restaurants, everyone else works inside one branch.
ROLES = ['owner', 'admin', 'manager', 'cashier', 'kitchen', 'waiter']
STAFF_ROLES = ['admin', 'manager', 'cashier', 'kitchen', 'waiter']

ORDER_TYPES = ['DINE_IN', 'TAKEAWAY', 'DELIVERY']
PAYMENT_METHODS = ['CASH', 'CARD', 'ONLINE', 'MOBILE']
PAYMENT_TYPES = PAYMENT_METHODS + ['REFUND']
TABLE_STATUSES = ['available', 'occupied', 'reserved', 'cleaning']
MOVEMENT_TYPES = ['CONSUMPTION', 'RESTOCK', 'ADJUSTMENT', 'WASTE', 'MANUAL']


def money(value):
    return round(float(value or 0), 2)


def _iso(value):
    return value.isoformat() if value else None


def load_json(value, default=None):
    if value is None:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(120))
    role = db.Column(db.String(20), nullable=False)
    pin_hash = db.Column(db.String(255))
    email = db.Column(db.String(120))
    phone = db.Column(db.String(30))
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'))
    salary = db.Column(db.Float)
    hire_date = db.Column(db.Date)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    branch = db.relationship('Branch', foreign_keys=[branch_id], backref=db.backref('staff', lazy=True))

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def set_pin(self, pin):
        self.pin_hash = generate_password_hash(pin) if pin else None

    def check_pin(self, pin):
        return bool(self.pin_hash) and check_password_hash(self.pin_hash, pin)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'full_name': self.full_name,
            'role': self.role,
            'email': self.email,
            'phone': self.phone,
            'branch_id': self.branch_id,
            'salary': self.salary,
            'hire_date': _iso(self.hire_date),
            'has_pin': bool(self.pin_hash),
            'is_active': self.is_active,
            'created_at': _iso(self.created_at)
        }


class Branch(db.Model):
    __tablename__ = 'branches'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=False)
    address = db.Column(db.Text)
    phone = db.Column(db.String(30))
    email = db.Column(db.String(120))
    logo_url = db.Column(db.String(255))
    # users.branch_id points back here, so this side is added after both tables exist
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id', use_alter=True, name='fk_branches_owner_id'))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = db.relationship('User', foreign_keys=[owner_id])

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'address': self.address,
            'phone': self.phone,
            'email': self.email,
            'logo_url': self.logo_url,
            'owner_id': self.owner_id,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at)
        }


class DiningTable(db.Model):
    __tablename__ = 'tables'
    __table_args__ = (db.UniqueConstraint('branch_id', 'table_number', name='uq_table_branch_number'),)
    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=False)
    table_number = db.Column(db.String(20), nullable=False)
    capacity = db.Column(db.Integer, default=4)
    description = db.Column(db.Text)
    qr_code_url = db.Column(db.String(255))
    status = db.Column(db.String(20), default='available')  # available, occupied, reserved, cleaning
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    branch = db.relationship('Branch', backref=db.backref('tables', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'branch_id': self.branch_id,
            'table_number': self.table_number,
            'capacity': self.capacity,
            'description': self.description,
            'qr_code_url': self.qr_code_url,
            'status': self.status
        }


class Category(db.Model):
    __tablename__ = 'categories'
    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    position = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'branch_id': self.branch_id,
            'name': self.name,
            'position': self.position
        }


class MenuItem(db.Model):
    __tablename__ = 'menu_items'
    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey('categories.id'))
    sku = db.Column(db.String(50))
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    price = db.Column(db.Float, nullable=False)
    image_url = db.Column(db.String(255))
    is_available = db.Column(db.Boolean, default=True)
    preparation_time = db.Column(db.Integer)  # in minutes
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    category = db.relationship('Category', backref=db.backref('items', lazy=True))
    modifiers = db.relationship('Modifier', backref='menu_item', lazy=True,
                                cascade='all, delete-orphan')
    variants = db.relationship('ProductVariant', backref='menu_item', lazy=True,
                               cascade='all, delete-orphan', order_by='ProductVariant.sort_order')

    def to_dict(self):
        return {
            'id': self.id,
            'branch_id': self.branch_id,
            'category_id': self.category_id,
            'category': self.category.name if self.category else None,
            'sku': self.sku,
            'name': self.name,
            'description': self.description,
            'price': money(self.price),
            'image_url': self.image_url,
            'is_available': self.is_available,
            'preparation_time': self.preparation_time,
            'modifiers': [m.to_dict() for m in self.modifiers],
            'variants': [v.to_dict() for v in self.variants]
        }


class Modifier(db.Model):
    __tablename__ = 'modifiers'
    id = db.Column(db.Integer, primary_key=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey('menu_items.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    extra_price = db.Column(db.Float, default=0)

    def to_dict(self):
        return {
            'id': self.id,
            'menu_item_id': self.menu_item_id,
            'name': self.name,
            'extra_price': money(self.extra_price)
        }


class ProductVariant(db.Model):
    __tablename__ = 'product_variants'
    id = db.Column(db.Integer, primary_key=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey('menu_items.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    price_adjustment = db.Column(db.Float, default=0)
    sort_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'menu_item_id': self.menu_item_id,
            'name': self.name,
            'price_adjustment': money(self.price_adjustment),
            'sort_order': self.sort_order,
            'is_active': self.is_active
        }


class Order(db.Model):
    __tablename__ = 'orders'
    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=False)
    order_code = db.Column(db.String(40), unique=True, nullable=False)
    pin = db.Column(db.String(8), unique=True, nullable=False)
    table_id = db.Column(db.Integer, db.ForeignKey('tables.id'))
    customer_name = db.Column(db.String(100))
    customer_phone = db.Column(db.String(30))
    order_type = db.Column(db.String(20), default='DINE_IN')  # DINE_IN, TAKEAWAY, DELIVERY
    delivery_address = db.Column(db.String(255))
    subtotal = db.Column(db.Float, default=0)
    tax = db.Column(db.Float, default=0)
    service_charge = db.Column(db.Float, default=0)
    total = db.Column(db.Float, default=0)
    status = db.Column(db.String(20), default='PENDING')
    payment_status = db.Column(db.String(20), default='UNPAID')  # UNPAID, PARTIAL, PAID, REFUNDED
    payment_method = db.Column(db.String(20), default='CASH')
    amount_paid = db.Column(db.Float)
    change_amount = db.Column(db.Float)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    branch = db.relationship('Branch', backref=db.backref('orders', lazy=True))
    table = db.relationship('DiningTable', backref=db.backref('orders', lazy=True))
    items = db.relationship('OrderItem', backref='order', lazy=True, cascade='all, delete-orphan')
    payments = db.relationship('Payment', backref='order', lazy=True, order_by='Payment.id')

    @property
    def total_paid(self):
        return money(sum(p.amount or 0 for p in self.payments))

    @property
    def balance(self):
        return money((self.total or 0) - self.total_paid)

    def summary(self):
        return {
            'id': self.id,
            'branch_id': self.branch_id,
            'order_code': self.order_code,
            'table_id': self.table_id,
            'table_number': self.table.table_number if self.table else None,
            'customer_name': self.customer_name,
            'order_type': self.order_type,
            'status': self.status,
            'payment_status': self.payment_status,
            'total': money(self.total),
            'created_at': _iso(self.created_at)
        }

    def to_dict(self, include_payments=True):
        data = self.summary()
        data.update({
            'pin': self.pin,
            'branch_name': self.branch.name if self.branch else None,
            'customer_phone': self.customer_phone,
            'delivery_address': self.delivery_address,
            'subtotal': money(self.subtotal),
            'tax': money(self.tax),
            'service_charge': money(self.service_charge),
            'payment_method': self.payment_method,
            'amount_paid': self.amount_paid,
            'change_amount': self.change_amount,
            'notes': self.notes,
            'updated_at': _iso(self.updated_at),
            'items': [item.to_dict() for item in self.items]
        })
        if include_payments:
            data['payments'] = [p.to_dict() for p in self.payments]
            data['total_paid'] = self.total_paid
            data['balance'] = self.balance
        return data


class OrderItem(db.Model):
    __tablename__ = 'order_items'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    menu_item_id = db.Column(db.Integer, db.ForeignKey('menu_items.id'), nullable=False)
    quantity = db.Column(db.Integer, default=1)
    unit_price = db.Column(db.Float, nullable=False)
    note = db.Column(db.Text)
    variant_id = db.Column(db.Integer, db.ForeignKey('product_variants.id', ondelete='SET NULL'))
    variant_name = db.Column(db.String(100))
    variant_price = db.Column(db.Float)

    menu_item = db.relationship('MenuItem')
    modifiers = db.relationship('OrderItemModifier', backref='order_item', lazy=True,
                                cascade='all, delete-orphan')

    @property
    def line_total(self):
        extras = sum(m.extra_price or 0 for m in self.modifiers)
        return money(((self.unit_price or 0) + extras) * (self.quantity or 0))

    def to_dict(self):
        return {
            'id': self.id,
            'menu_item_id': self.menu_item_id,
            'item_name': self.menu_item.name if self.menu_item else None,
            'category': self.menu_item.category.name if self.menu_item and self.menu_item.category else None,
            'quantity': self.quantity,
            'unit_price': money(self.unit_price),
            'note': self.note,
            'variant_id': self.variant_id,
            'variant_name': self.variant_name,
            'variant_price': self.variant_price,
            'modifiers': [m.to_dict() for m in self.modifiers],
            'line_total': self.line_total
        }


class OrderItemModifier(db.Model):
    __tablename__ = 'order_item_modifiers'
    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey('order_items.id'), nullable=False)
    modifier_id = db.Column(db.Integer, db.ForeignKey('modifiers.id'))
    name = db.Column(db.String(100))
    extra_price = db.Column(db.Float, default=0)

    def to_dict(self):
        return {
            'modifier_id': self.modifier_id,
            'name': self.name,
            'extra_price': money(self.extra_price)
        }


class Payment(db.Model):
    __tablename__ = 'payments'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    payment_type = db.Column(db.String(20), nullable=False)  # CASH, CARD, ONLINE, MOBILE, REFUND
    amount = db.Column(db.Float, nullable=False)
    transaction_ref = db.Column(db.String(100))
    refunded_payment_id = db.Column(db.Integer, db.ForeignKey('payments.id'))
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    paid_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'payment_type': self.payment_type,
            'amount': money(self.amount),
            'transaction_ref': self.transaction_ref,
            'refunded_payment_id': self.refunded_payment_id,
            'user_id': self.user_id,
            'paid_at': _iso(self.paid_at)
        }


class StockItem(db.Model):
    __tablename__ = 'stock_items'
    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    sku = db.Column(db.String(50))
    quantity = db.Column(db.Float, default=0)
    unit = db.Column(db.String(20))  # kg, g, l, ml, pieces, etc.
    min_threshold = db.Column(db.Float, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_low(self):
        return (self.quantity or 0) <= (self.min_threshold or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'branch_id': self.branch_id,
            'name': self.name,
            'sku': self.sku,
            'quantity': round(self.quantity or 0, 3),
            'unit': self.unit,
            'min_threshold': self.min_threshold,
            'status': 'low' if self.is_low else 'adequate'
        }


class Recipe(db.Model):
    __tablename__ = 'recipes'
    __table_args__ = (db.UniqueConstraint('menu_item_id', 'stock_item_id', name='uq_recipe_item_stock'),)
    id = db.Column(db.Integer, primary_key=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey('menu_items.id'), nullable=False)
    stock_item_id = db.Column(db.Integer, db.ForeignKey('stock_items.id'), nullable=False)
    qty_per_serving = db.Column(db.Float, nullable=False)

    menu_item = db.relationship('MenuItem', backref=db.backref('recipes', lazy=True, cascade='all, delete-orphan'))
    stock_item = db.relationship('StockItem', backref=db.backref('recipes', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'menu_item_id': self.menu_item_id,
            'menu_item_name': self.menu_item.name if self.menu_item else None,
            'stock_item_id': self.stock_item_id,
            'stock_item_name': self.stock_item.name if self.stock_item else None,
            'sku': self.stock_item.sku if self.stock_item else None,
            'unit': self.stock_item.unit if self.stock_item else None,
            'qty_per_serving': self.qty_per_serving
        }


class StockMovement(db.Model):
    __tablename__ = 'stock_movements'
    id = db.Column(db.Integer, primary_key=True)
    stock_item_id = db.Column(db.Integer, db.ForeignKey('stock_items.id'), nullable=False)
    change = db.Column(db.Float, nullable=False)
    reason = db.Column(db.String(255))
    type = db.Column(db.String(20), default='MANUAL')  # CONSUMPTION, RESTOCK, ADJUSTMENT, WASTE, MANUAL
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'))
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    reference = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    stock_item = db.relationship('StockItem', backref=db.backref('movements', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'stock_item_id': self.stock_item_id,
            'change': self.change,
            'reason': self.reason,
            'type': self.type,
            'order_id': self.order_id,
            'user_id': self.user_id,
            'reference': self.reference,
            'created_at': _iso(self.created_at)
        }


class LowStockAlert(db.Model):
    __tablename__ = 'low_stock_alerts'
    id = db.Column(db.Integer, primary_key=True)
    stock_item_id = db.Column(db.Integer, db.ForeignKey('stock_items.id'), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=False)
    current_quantity = db.Column(db.Float)
    min_threshold = db.Column(db.Float)
    is_resolved = db.Column(db.Boolean, default=False)
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    stock_item = db.relationship('StockItem')

    def to_dict(self):
        return {
            'id': self.id,
            'stock_item_id': self.stock_item_id,
            'stock_item_name': self.stock_item.name if self.stock_item else None,
            'branch_id': self.branch_id,
            'current_quantity': self.current_quantity,
            'min_threshold': self.min_threshold,
            'is_resolved': self.is_resolved,
            'resolved_at': _iso(self.resolved_at),
            'created_at': _iso(self.created_at)
        }


class Setting(db.Model):
    __tablename__ = 'settings'
    __table_args__ = (db.UniqueConstraint('branch_id', 'key', name='uq_setting_branch_key'),)
    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'))  # NULL = global default
    key = db.Column(db.String(100), nullable=False)
    value = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'))
    action = db.Column(db.String(50), nullable=False)
    meta = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'branch_id': self.branch_id,
            'action': self.action,
            'meta': load_json(self.meta, {}),
            'created_at': _iso(self.created_at)
        }


def record_audit(action, user_id=None, branch_id=None, **meta):
    """Queue an audit row on the current session; the caller commits."""
    log = AuditLog(user_id=user_id, branch_id=branch_id, action=action,
                   meta=json.dumps(meta, default=str))
    db.session.add(log)
    return log
