import pytest
import requests

from conftest import login, place_order
import printing


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError('No JSON')
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')


@pytest.fixture
def sent(monkeypatch):
    calls = []
    replies = {}

    def fake_post(url, json=None, timeout=None):
        calls.append({'url': url, 'json': json, 'timeout': timeout})
        reply = replies.get(json['ticket'], FakeResponse(200, {'success': True}))
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(printing.requests, 'post', fake_post)
    return calls, replies


def test_print_receipt_goes_to_printer_service(as_admin, seed, sent):
    calls, _ = sent
    order = place_order(as_admin, seed)

    response = as_admin.post(f"/api/orders/{order['id']}/print", json={})
    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'results': [
        {'success': True, 'printer_id': 'kitchen', 'ticket': 'receipt', 'skipped': False}]}

    call = calls[0]
    assert call['url'] == 'http://printer.test/print/order'
    assert call['timeout'] == 5.0
    payload = call['json']
    assert payload['order']['order_code'] == order['order_code']
    assert payload['currency'] == 'MAD'
    assert payload['footer'] == ['Thank you for your order!']
    assert 'juice' in payload['keywords']


def test_tickets_use_their_configured_printers(as_admin, seed, sent):
    calls, replies = sent
    replies['bar'] = FakeResponse(200, {'success': True, 'skipped': True})
    as_admin.post('/api/settings', json={'bar_printer_id': 'terrace-bar'})
    order = place_order(as_admin, seed)

    response = as_admin.post(f"/api/orders/{order['id']}/print", json={'tickets': ['kitchen', 'bar']})
    results = response.get_json()['results']
    assert [(r['ticket'], r['printer_id']) for r in results] == [('kitchen', 'kitchen'), ('bar', 'terrace-bar')]
    assert results[1]['skipped'] is True
    assert len(calls) == 2


def test_explicit_printer_wins(as_admin, seed, sent):
    calls, _ = sent
    order = place_order(as_admin, seed)
    as_admin.post(f"/api/orders/{order['id']}/print", json={'ticket': 'kitchen', 'printer_id': 'pass'})
    assert calls[0]['json']['printer_id'] == 'pass'


def test_printer_failures_are_reported_not_raised(as_admin, seed, sent):
    _, replies = sent
    replies['receipt'] = requests.ConnectionError('printer service down')
    replies['kitchen'] = FakeResponse(404, {'error': 'Printer not found'})
    replies['bar'] = FakeResponse(500)
    order = place_order(as_admin, seed)

    response = as_admin.post(f"/api/orders/{order['id']}/print",
                             json={'tickets': ['receipt', 'kitchen', 'bar']})
    assert response.status_code == 502
    body = response.get_json()
    assert body['success'] is False
    errors = [r['error'] for r in body['results']]
    assert errors == ['printer service down', 'Printer not found', 'Printer service returned 500']


def test_unknown_ticket_is_rejected(as_admin, seed, sent):
    calls, _ = sent
    order = place_order(as_admin, seed)
    response = as_admin.post(f"/api/orders/{order['id']}/print", json={'ticket': 'menu'})
    assert response.status_code == 400
    assert calls == []


def test_printer_status(as_admin, monkeypatch):
    monkeypatch.setattr(printing.requests, 'get',
                        lambda url, timeout=None: FakeResponse(200, {'printers': [{'id': 'kitchen'}]}))
    assert as_admin.get('/api/printers').get_json() == {'available': True, 'printers': [{'id': 'kitchen'}]}

    def down(url, timeout=None):
        raise requests.ConnectionError('refused')

    monkeypatch.setattr(printing.requests, 'get', down)
    body = as_admin.get('/api/printers').get_json()
    assert body['available'] is False
    assert body['error'] == 'refused'


def test_kitchen_staff_cannot_print(client, seed, sent):
    login(client, 'waiter')
    order = place_order(client, seed)
    assert client.post(f"/api/orders/{order['id']}/print", json={}).status_code == 200
    login(client, 'kitchen')
    assert client.post(f"/api/orders/{order['id']}/print", json={}).status_code == 403
