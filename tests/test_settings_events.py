import json

import pytest

from conftest import login, place_order
from models import db, MenuItem
from caching import cache, menu_cache_key, invalidate_menu
import kitchen_events
import settings_service


# Settings
def test_settings_merge_defaults_global_and_branch(app, seed):
    with app.app_context():
        assert settings_service.get_setting('currency', seed.cas_id) == 'MAD'
        settings_service.set_setting('currency', 'EUR')
        settings_service.set_setting('currency', 'USD', seed.rab_id)
        db.session.commit()

        assert settings_service.get_setting('currency', seed.cas_id) == 'EUR'
        assert settings_service.get_setting('currency', seed.rab_id) == 'USD'
        assert settings_service.get_rate('tax_rate', seed.cas_id) == 10.0
        assert settings_service.get_rate('tax_rate', seed.rab_id) == 0.0
        assert settings_service.get_setting('missing', default='x') == 'x'

        everything = settings_service.all_settings(seed.rab_id)
        assert everything['currency'] == 'USD'
        assert everything['bar_keywords'] == settings_service.DEFAULT_SETTINGS['bar_keywords']


def test_settings_store_json_values(app, seed):
    with app.app_context():
        settings_service.set_setting('bar_keywords', ['tea', 'smoothie'], seed.cas_id)
        settings_service.set_setting('print_on_confirm', True, seed.cas_id)
        db.session.commit()
        assert settings_service.get_setting('bar_keywords', seed.cas_id) == ['tea', 'smoothie']
        assert settings_service.get_setting('print_on_confirm', seed.cas_id) is True


def test_settings_api(as_admin, seed):
    body = as_admin.get('/api/settings').get_json()
    assert body['tax_rate'] == 10
    assert body['currency'] == 'MAD'

    assert as_admin.post('/api/settings', json={'tax_rate': 150}).status_code == 400
    assert as_admin.post('/api/settings', json={'service_charge_rate': -1}).status_code == 400
    assert as_admin.post('/api/settings', json={'bar_keywords': 'juice'}).status_code == 400
    assert as_admin.post('/api/settings', json={}).status_code == 400

    saved = as_admin.post('/api/settings', json={'tax_rate': 5.5, 'receipt_footer': 'Bslama!'})
    assert saved.status_code == 200
    assert as_admin.get('/api/settings/tax_rate').get_json() == {'key': 'tax_rate', 'value': 5.5}
    assert as_admin.put('/api/settings/service_charge_rate', json={'value': 5}).status_code == 200
    assert as_admin.put('/api/settings/service_charge_rate', json={}).status_code == 400

    order = place_order(as_admin, seed)
    assert (order['subtotal'], order['tax'], order['service_charge'], order['total']) == (200.0, 11.0, 10.0, 221.0)

    assert as_admin.delete('/api/settings/tax_rate').status_code == 200
    assert as_admin.get('/api/settings/tax_rate').get_json()['value'] == 0
    assert as_admin.delete('/api/settings/tax_rate').status_code == 404
    assert as_admin.get('/api/settings/nothing').status_code == 404


def test_settings_are_per_branch(client, seed):
    login(client, 'admin')
    client.post('/api/settings', json={'currency': 'EUR'})
    login(client, 'admin_rab')
    assert client.get('/api/settings/currency').get_json()['value'] == 'MAD'


def test_staff_read_but_do_not_write_settings(client, seed):
    login(client, 'waiter')
    assert client.get('/api/settings').status_code == 200
    assert client.post('/api/settings', json={'currency': 'EUR'}).status_code == 403
    assert client.delete('/api/settings/currency').status_code == 403


# Kitchen events
@pytest.fixture
def small_buffer():
    kitchen_events.configure(3)
    yield
    kitchen_events.configure(500)


def test_event_buffer_is_bounded_and_per_branch(small_buffer):
    kitchen_events.clear()
    first = kitchen_events.push_change(1, 'order.created', {'id': 1})
    for i in range(4):
        kitchen_events.push_change(1, 'order.updated', {'id': i})
    other = kitchen_events.push_change(2, 'order.created', {'id': 9})

    events = kitchen_events.changes_since(1)
    assert len(events) == 2
    assert first['id'] not in [e['id'] for e in events]
    assert kitchen_events.changes_since(2) == [other]
    assert kitchen_events.last_event_id() == other['id']
    assert kitchen_events.changes_since(1, last_id=events[0]['id']) == events[1:]


def test_event_ids_keep_growing_after_clear():
    before = kitchen_events.push_change(1, 'order.created', {})
    kitchen_events.clear()
    assert kitchen_events.last_event_id() == 0
    after = kitchen_events.push_change(1, 'order.created', {})
    assert after['id'] > before['id']


def _first_chunk(response):
    chunk = next(iter(response.response))
    response.close()
    return chunk


def test_stream_replays_pending_events(client, seed):
    login(client, 'waiter')
    order = place_order(client, seed)

    login(client, 'kitchen')
    response = client.get('/api/kitchen/stream')
    assert response.mimetype == 'text/event-stream'
    assert response.headers['Cache-Control'] == 'no-cache'
    event = kitchen_events.changes_since(seed.cas_id)[-1]
    assert _first_chunk(response) == f"id: {event['id']}\n".encode()
    assert event['payload']['order_code'] == order['order_code']


def test_stream_resumes_after_last_event_id(client, seed):
    login(client, 'admin')
    place_order(client, seed)
    last = kitchen_events.last_event_id()

    response = client.get('/api/kitchen/stream', headers={'Last-Event-ID': str(last)})
    assert _first_chunk(response) == b'event: heartbeat\n'

    response = client.get(f'/api/kitchen/stream?last_event_id={last - 1}')
    assert _first_chunk(response) == f'id: {last}\n'.encode()


def test_stream_only_carries_own_branch(client, seed):
    login(client, 'admin')
    place_order(client, seed)
    login(client, 'admin_rab')
    assert _first_chunk(client.get('/api/kitchen/stream')) == b'event: heartbeat\n'
    assert client.get('/api/kitchen/stream?last_event_id=abc').status_code == 400


def test_event_payloads_are_json_serialisable(as_admin, seed):
    place_order(as_admin, seed)
    for event in kitchen_events.changes_since(seed.cas_id):
        assert json.loads(json.dumps(event)) == event


# Customer menu cache
@pytest.fixture
def real_cache(app):
    cache.init_app(app, config={'CACHE_TYPE': 'SimpleCache'})
    yield cache
    cache.init_app(app, config={'CACHE_TYPE': 'NullCache'})


def _coffee(client):
    menu = client.get('/api/public/branches/CAS/menu').get_json()
    return {i['name']: i for c in menu['categories'] for i in c['items']}['Moroccan Coffee']


def test_customer_menu_is_cached_until_the_menu_changes(app, as_admin, seed, real_cache):
    assert _coffee(as_admin)['price'] == 20.0
    with app.app_context():
        db.session.get(MenuItem, seed.coffee_id).price = 99.0
        db.session.commit()
        assert cache.get(menu_cache_key(seed.cas_id)) is not None
    assert _coffee(as_admin)['price'] == 20.0

    as_admin.patch(f'/api/menu/{seed.coffee_id}', json={'description': 'Spiced'})
    fresh = _coffee(as_admin)
    assert fresh['price'] == 99.0
    assert fresh['description'] == 'Spiced'


def test_stock_changes_refresh_the_customer_menu(app, as_admin, seed, real_cache):
    juice = {i['name']: i for c in as_admin.get('/api/public/branches/CAS/menu').get_json()['categories']
             for i in c['items']}['Orange Juice']
    assert juice['is_available'] is True

    order = place_order(as_admin, seed, items=[{'menu_item_id': seed.juice_id, 'quantity': 2}])
    as_admin.patch(f"/api/orders/{order['id']}/status", json={'status': 'CONFIRMED'})
    juice = {i['name']: i for c in as_admin.get('/api/public/branches/CAS/menu').get_json()['categories']
             for i in c['items']}['Orange Juice']
    assert juice['is_available'] is False


def test_invalidate_menu_drops_only_that_branch(app, real_cache):
    with app.app_context():
        cache.set(menu_cache_key(1), ['one'])
        cache.set(menu_cache_key(2), ['two'])
        invalidate_menu(1)
        assert cache.get(menu_cache_key(1)) is None
        assert cache.get(menu_cache_key(2)) == ['two']
