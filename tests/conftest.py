import os
from types import SimpleNamespace

os.environ['POSQ_CONFIG'] = 'test'

import pytest

from app import app as flask_app, limiter
from models import (db, User, Branch, DiningTable, Category, MenuItem, Modifier, ProductVariant,
                    StockItem, Recipe, Order)
import kitchen_events
import settings_service

PASSWORD = 'secret123'


def _user(username, role, branch=None, pin=None):
    user = User(username=username, full_name=username.title(), role=role,
                branch_id=branch.id if branch else None, is_active=True)
    user.set_password(PASSWORD)
    user.set_pin(pin)
    db.session.add(user)
    db.session.flush()
    return user


def seed_data():
    owner = _user('owner', 'owner')
    other_owner = _user('owner2', 'owner')

    cas = Branch(name='Dar Tajine', code='CAS', owner_id=owner.id)
    rab = Branch(name='Rabat Grill', code='RAB', owner_id=other_owner.id)
    db.session.add_all([cas, rab])
    db.session.flush()

    admin = _user('admin', 'admin', cas)
    _user('manager', 'manager', cas)
    _user('cashier', 'cashier', cas, pin='2222')
    _user('kitchen', 'kitchen', cas)
    _user('waiter', 'waiter', cas)
    _user('admin_rab', 'admin', rab)

    t1 = DiningTable(branch_id=cas.id, table_number='T1', capacity=4, description='Window')
    t2 = DiningTable(branch_id=cas.id, table_number='T2', capacity=2)
    rab_t1 = DiningTable(branch_id=rab.id, table_number='T1', capacity=4)
    mains = Category(branch_id=cas.id, name='Mains', position=1)
    drinks = Category(branch_id=cas.id, name='Drinks', position=2)
    db.session.add_all([t1, t2, rab_t1, mains, drinks])
    db.session.flush()

    tagine = MenuItem(branch_id=cas.id, category_id=mains.id, name='Chicken Tagine', price=100.0)
    bread = Modifier(name='Extra bread', extra_price=3.0)
    tagine.modifiers.append(bread)
    large = ProductVariant(name='Large', price_adjustment=20.0, sort_order=0)
    retired = ProductVariant(name='Family', price_adjustment=50.0, sort_order=1, is_active=False)
    tagine.variants.extend([large, retired])
    juice = MenuItem(branch_id=cas.id, category_id=drinks.id, name='Orange Juice', price=25.0)
    coffee = MenuItem(branch_id=cas.id, category_id=drinks.id, name='Moroccan Coffee', price=20.0)
    special = MenuItem(branch_id=cas.id, category_id=mains.id, name='Seasonal Special',
                       price=80.0, is_available=False)
    couscous = MenuItem(branch_id=rab.id, name='Couscous', price=60.0)
    db.session.add_all([tagine, juice, coffee, special, couscous])
    db.session.flush()

    chicken = StockItem(branch_id=cas.id, name='Chicken', quantity=10.0, unit='kg', min_threshold=2.0)
    oranges = StockItem(branch_id=cas.id, name='Oranges', quantity=1.0, unit='kg', min_threshold=0.5)
    flour = StockItem(branch_id=rab.id, name='Flour', quantity=5.0, unit='kg', min_threshold=1.0)
    db.session.add_all([chicken, oranges, flour])
    db.session.flush()
    db.session.add_all([
        Recipe(menu_item_id=tagine.id, stock_item_id=chicken.id, qty_per_serving=0.5),
        Recipe(menu_item_id=juice.id, stock_item_id=oranges.id, qty_per_serving=0.5),
    ])

    settings_service.set_setting('tax_rate', 10, cas.id)
    db.session.commit()

    return SimpleNamespace(
        cas_id=cas.id, rab_id=rab.id, owner_id=owner.id, admin_id=admin.id,
        t1_id=t1.id, t2_id=t2.id, rab_t1_id=rab_t1.id,
        mains_id=mains.id, drinks_id=drinks.id,
        tagine_id=tagine.id, bread_id=bread.id, large_id=large.id, retired_id=retired.id,
        juice_id=juice.id, coffee_id=coffee.id, special_id=special.id, couscous_id=couscous.id,
        chicken_id=chicken.id, oranges_id=oranges.id, flour_id=flour.id
    )


@pytest.fixture
def app(tmp_path):
    flask_app.config['IMAGE_UPLOAD_FOLDER'] = str(tmp_path / 'images')
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        limiter.reset()
    kitchen_events.clear()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def seed(app):
    with app.app_context():
        return seed_data()


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, username, password=PASSWORD):
    response = client.post('/api/login', json={'username': username, 'password': password})
    assert response.status_code == 200, response.get_json()
    return response


@pytest.fixture
def as_admin(client, seed):
    login(client, 'admin')
    return client


def place_order(client, seed, **overrides):
    body = {
        'table_id': seed.t1_id,
        'items': [{'menu_item_id': seed.tagine_id, 'quantity': 2}],
    }
    body.update(overrides)
    response = client.post('/api/orders', json=body)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['order']


def get_order(app, order_id):
    with app.app_context():
        return db.session.get(Order, order_id).to_dict()
