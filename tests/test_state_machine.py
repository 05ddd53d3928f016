import pytest

from conftest import login, place_order, get_order
from models import db, StockItem, StockMovement, DiningTable, LowStockAlert
import order_service
import kitchen_events


def _status(client, order_id, status, **extra):
    return client.patch(f'/api/orders/{order_id}/status', json={'status': status, **extra})


def _stock(app, stock_item_id):
    with app.app_context():
        return db.session.get(StockItem, stock_item_id).quantity


def _movements(app, order_id):
    with app.app_context():
        rows = StockMovement.query.filter_by(order_id=order_id).order_by(StockMovement.id).all()
        return [(m.type, m.change, m.reference) for m in rows]


@pytest.mark.parametrize('current,target,allowed', [
    ('PENDING', 'CONFIRMED', True),
    ('PENDING', 'READY', False),
    ('AWAITING_PAYMENT', 'PENDING', True),
    ('AWAITING_PAYMENT', 'CONFIRMED', True),
    ('PREPARING', 'CANCELLED', True),
    ('READY', 'CANCELLED', False),
    ('SERVED', 'COMPLETED', True),
    ('COMPLETED', 'CANCELLED', False),
    ('CANCELLED', 'PENDING', False),
])
def test_transition_table(current, target, allowed):
    assert order_service.can_transition(current, target) is allowed


def test_full_lifecycle_consumes_stock_once_and_frees_table(app, as_admin, seed):
    order = place_order(as_admin, seed)
    assert _stock(app, seed.chicken_id) == 10.0

    for status in ('CONFIRMED', 'PREPARING', 'READY', 'SERVED', 'COMPLETED'):
        response = _status(as_admin, order['id'], status)
        assert response.status_code == 200, response.get_json()
        assert response.get_json()['order']['status'] == status

    # 2 tagines x 0.5 kg
    assert _stock(app, seed.chicken_id) == 9.0
    assert _movements(app, order['id']) == [('CONSUMPTION', -1.0, f"order_{order['id']}")]
    with app.app_context():
        assert db.session.get(DiningTable, seed.t1_id).status == 'available'


def test_skipping_a_step_is_rejected(as_admin, seed):
    order = place_order(as_admin, seed)
    response = _status(as_admin, order['id'], 'READY')
    assert response.status_code == 400
    assert 'PENDING to READY' in response.get_json()['message']


def test_unknown_status_is_rejected(as_admin, seed):
    order = place_order(as_admin, seed)
    assert _status(as_admin, order['id'], 'LOST').status_code == 400


def test_awaiting_payment_order_can_be_confirmed_directly(app, as_admin, seed):
    order = place_order(as_admin, seed, payment_method='ONLINE')
    assert _status(as_admin, order['id'], 'CONFIRMED').status_code == 200
    assert _stock(app, seed.chicken_id) == 9.0


def test_cancel_after_confirm_restores_consumed_stock(app, as_admin, seed):
    order = place_order(as_admin, seed)
    _status(as_admin, order['id'], 'CONFIRMED')
    _status(as_admin, order['id'], 'PREPARING')

    response = as_admin.post(f"/api/orders/{order['id']}/cancel", json={'reason': 'customer left'})
    assert response.status_code == 200
    body = response.get_json()['order']
    assert body['status'] == 'CANCELLED'
    assert body['notes'].endswith('CANCELLED: customer left')

    assert _stock(app, seed.chicken_id) == 10.0
    assert _movements(app, order['id']) == [
        ('CONSUMPTION', -1.0, f"order_{order['id']}"),
        ('ADJUSTMENT', 1.0, f"order_{order['id']}_cancelled"),
    ]
    with app.app_context():
        assert db.session.get(DiningTable, seed.t1_id).status == 'available'


def test_restore_uses_the_ledger_not_the_current_recipe(app, as_admin, seed):
    order = place_order(as_admin, seed)
    _status(as_admin, order['id'], 'CONFIRMED')
    recipes = as_admin.get(f'/api/recipes?menu_item_id={seed.tagine_id}').get_json()
    as_admin.put(f"/api/recipes/{recipes[0]['id']}", json={'qty_per_serving': 2})

    _status(as_admin, order['id'], 'CANCELLED')
    assert _stock(app, seed.chicken_id) == 10.0


def test_cancel_before_confirm_touches_no_stock(app, as_admin, seed):
    order = place_order(as_admin, seed)
    assert _status(as_admin, order['id'], 'CANCELLED', reason='duplicate').status_code == 200
    assert _movements(app, order['id']) == []
    assert get_order(app, order['id'])['notes'] == 'CANCELLED: duplicate'


def test_cancelled_and_ready_orders_cannot_be_cancelled(as_admin, seed):
    order = place_order(as_admin, seed)
    _status(as_admin, order['id'], 'CANCELLED')
    assert as_admin.post(f"/api/orders/{order['id']}/cancel").status_code == 400
    assert _status(as_admin, order['id'], 'PENDING').status_code == 400

    other = place_order(as_admin, seed, table_id=seed.t2_id)
    for status in ('CONFIRMED', 'PREPARING', 'READY'):
        _status(as_admin, other['id'], status)
    assert as_admin.post(f"/api/orders/{other['id']}/cancel").status_code == 400


def test_table_stays_occupied_while_another_order_is_open(app, as_admin, seed):
    first = place_order(as_admin, seed)
    place_order(as_admin, seed)
    _status(as_admin, first['id'], 'CANCELLED')
    with app.app_context():
        assert db.session.get(DiningTable, seed.t1_id).status == 'occupied'


def test_confirm_opens_low_stock_alert_and_restock_resolves_it(app, as_admin, seed):
    order = place_order(as_admin, seed, items=[{'menu_item_id': seed.juice_id, 'quantity': 1}])
    _status(as_admin, order['id'], 'CONFIRMED')

    assert _stock(app, seed.oranges_id) == 0.5
    alerts = as_admin.get('/api/stock/alerts').get_json()
    assert [a['stock_item_id'] for a in alerts] == [seed.oranges_id]
    assert alerts[0]['current_quantity'] == 0.5

    # a second confirmation updates the open alert instead of adding one
    second = place_order(as_admin, seed, table_id=seed.t2_id,
                         items=[{'menu_item_id': seed.juice_id, 'quantity': 1}])
    _status(as_admin, second['id'], 'CONFIRMED')
    with app.app_context():
        open_alerts = LowStockAlert.query.filter_by(is_resolved=False).all()
        assert len(open_alerts) == 1
        assert open_alerts[0].current_quantity == 0.0

    as_admin.post(f'/api/stock/{seed.oranges_id}/move', json={'change': 5, 'type': 'RESTOCK'})
    assert as_admin.get('/api/stock/alerts').get_json() == []
    resolved = as_admin.get('/api/stock/alerts?include_resolved=1').get_json()
    assert resolved[0]['is_resolved'] is True


def test_stock_may_go_negative(app, as_admin, seed):
    order = place_order(as_admin, seed, items=[{'menu_item_id': seed.juice_id, 'quantity': 4}])
    assert _status(as_admin, order['id'], 'CONFIRMED').status_code == 200
    assert _stock(app, seed.oranges_id) == -1.0


def test_ledger_matches_quantity(app, as_admin, seed):
    as_admin.post('/api/stock', json={'name': 'Saffron', 'quantity': 3, 'unit': 'g'})
    with app.app_context():
        saffron = StockItem.query.filter_by(name='Saffron').one()
        saffron_id = saffron.id
    as_admin.post(f'/api/stock/{saffron_id}/move', json={'change': -0.5, 'type': 'WASTE', 'reason': 'spilled'})
    as_admin.post(f'/api/stock/{saffron_id}/move', json={'change': 2, 'type': 'RESTOCK'})

    with app.app_context():
        item = db.session.get(StockItem, saffron_id)
        ledger = sum(m.change for m in item.movements)
        assert item.quantity == ledger == 4.5


def test_kitchen_can_move_orders_and_sees_queue(client, seed):
    login(client, 'waiter')
    order = place_order(client, seed)
    served = place_order(client, seed, table_id=seed.t2_id)

    login(client, 'kitchen')
    for status in ('CONFIRMED', 'PREPARING', 'READY', 'SERVED'):
        assert _status(client, served['id'], status).status_code == 200
    assert _status(client, order['id'], 'CONFIRMED').status_code == 200

    queue = client.get('/api/kitchen/orders').get_json()
    assert [o['id'] for o in queue] == [order['id']]
    assert 'payments' not in queue[0]
    assert client.post(f"/api/orders/{order['id']}/cancel").status_code == 403


def test_status_changes_publish_events(as_admin, seed):
    order = place_order(as_admin, seed)
    _status(as_admin, order['id'], 'CONFIRMED')
    _status(as_admin, order['id'], 'CANCELLED')

    events = kitchen_events.changes_since(seed.cas_id)
    assert [e['event'] for e in events] == ['order.created', 'order.updated', 'order.cancelled']
    assert events[1]['payload'] == {'order_id': order['id'], 'status': 'CONFIRMED', 'previous': 'PENDING'}
    assert events[2]['payload']['previous'] == 'CONFIRMED'


def test_non_text_status_is_rejected(app, as_admin, seed):
    order = place_order(as_admin, seed)
    for status in (5, ['CONFIRMED'], {'status': 'CONFIRMED'}):
        response = as_admin.patch(f"/api/orders/{order['id']}/status", json={'status': status})
        assert response.status_code == 400
    assert get_order(app, order['id'])['status'] == 'PENDING'
