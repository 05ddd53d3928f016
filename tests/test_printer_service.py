import pytest

import printer_service
from printer_service import PrinterManager, PrinterError

ORDER = {
    'order_code': 'CAS-20240301-0001',
    'branch_name': 'Dar Tajine',
    'table_number': 'T1',
    'total': 45.0,
    'items': [
        {'item_name': 'Chicken Tagine', 'quantity': 1, 'unit_price': 20.0, 'modifiers': []},
        {'item_name': 'Orange Juice', 'quantity': 1, 'unit_price': 25.0, 'modifiers': []},
    ]
}


@pytest.fixture
def manager(monkeypatch):
    fresh = PrinterManager(with_defaults=False)
    fresh.add('front', 'Front Desk', 'dummy')
    monkeypatch.setattr(printer_service, 'manager', fresh)
    return fresh


@pytest.fixture
def service(manager):
    return printer_service.app.test_client()


def _output(manager, printer_id='front'):
    return manager.printers[printer_id]['device'].output


def test_default_printers_come_from_environment(monkeypatch):
    monkeypatch.setenv('KITCHEN_PRINTER_IP', '10.0.0.5')
    monkeypatch.setenv('PRINTER_NETWORK_PORT', '9200')
    printers = {p['id']: p for p in PrinterManager().status()}
    assert set(printers) == {'kitchen', 'bar'}
    assert printers['kitchen']['connection'] == {'address': '10.0.0.5', 'port': 9200}
    assert printers['bar']['type'] == 'network'


def test_add_validates_connection_details():
    manager = PrinterManager(with_defaults=False)
    with pytest.raises(PrinterError):
        manager.add('x', 'X', 'serial')
    with pytest.raises(PrinterError):
        manager.add('x', 'X', 'network', {})
    with pytest.raises(PrinterError):
        manager.add('x', 'X', 'usb', {'vendor_id': '0x04b8'})
    assert manager.printers == {}


def test_dummy_printer_records_output(manager):
    assert manager.print('front', 'Hello kitchen') is True
    assert b'Hello kitchen\n' in _output(manager)
    status = manager.status()[0]
    assert status['status'] == 'connected'
    assert status['last_printed_at'] is not None


def test_failed_print_marks_printer_in_error(manager, monkeypatch):
    def broken(printer):
        raise OSError('connection refused')

    monkeypatch.setattr(manager, '_open_device', broken)
    assert manager.print('front', 'Hello') is False
    assert manager.status()[0]['status'] == 'error'
    assert manager.print('missing', 'Hello') is False


class FlakyNetwork:
    opened = []

    def __init__(self, host, port=9100, timeout=10):
        self.closed = False
        FlakyNetwork.opened.append(self)

    def text(self, content):
        if 'jam' in content:
            raise OSError('paper jam')

    def cut(self):
        pass

    def close(self):
        self.closed = True


def test_network_connection_is_closed_after_every_job(monkeypatch):
    FlakyNetwork.opened = []
    monkeypatch.setattr(printer_service, 'Network', FlakyNetwork)
    manager = PrinterManager(with_defaults=False)
    manager.add('kitchen', 'Kitchen', 'network', {'address': '10.0.0.5'})

    assert manager.print('kitchen', 'Tagine x2') is True
    assert manager.print('kitchen', 'paper jam ahead') is False
    assert manager.printers['kitchen']['status'] == 'error'
    assert [d.closed for d in FlakyNetwork.opened] == [True, True]


def test_status_is_a_snapshot(manager):
    listing = manager.status()
    manager.add('bar', 'Bar', 'dummy')
    assert [p['id'] for p in listing] == ['front']
    assert [p['id'] for p in manager.status()] == ['front', 'bar']


def test_health_and_listing(service):
    body = service.get('/health').get_json()
    assert body['status'] == 'OK'
    assert body['printers'] == 1
    assert [p['id'] for p in service.get('/printers').get_json()['printers']] == ['front']


def test_register_and_remove_printers(service, manager):
    assert service.post('/printers', json={'id': 'bar'}).status_code == 400
    assert service.post('/printers', json={'id': 'bar', 'name': 'Bar', 'type': 'fax'}).status_code == 400

    created = service.post('/printers', json={'id': 'bar', 'name': 'Bar', 'type': 'network',
                                              'connection': {'address': '10.0.0.9'}})
    assert created.status_code == 201
    assert 'bar' in manager.printers

    assert service.delete('/printers/bar').status_code == 200
    assert service.delete('/printers/bar').status_code == 404


def test_test_page_and_raw_print(service, manager):
    assert service.post('/test', json={'printer_id': 'front'}).status_code == 200
    assert b'Test Complete' in _output(manager)
    assert service.post('/test', json={'printer_id': 'nope'}).status_code == 404

    assert service.post('/print', json={'printer_id': 'front'}).status_code == 400
    assert service.post('/print', json={'printer_id': 'nope', 'content': 'x'}).status_code == 404
    assert service.post('/print', json={'printer_id': 'front', 'content': 'Table 4 ready'}).status_code == 200
    assert b'Table 4 ready' in _output(manager)


def test_print_order_tickets(service, manager):
    response = service.post('/print/order', json={'order': ORDER, 'printer_id': 'front',
                                                   'ticket': 'kitchen'})
    assert response.status_code == 200
    assert b'KITCHEN ORDER' in _output(manager)

    service.post('/print/order', json={'order': ORDER, 'printer_id': 'front', 'currency': 'EUR',
                                       'footer': ['Merci']})
    assert b'TOTAL: 45.00 EUR' in _output(manager)
    assert b'Merci' in _output(manager)


def test_print_order_errors_and_skips(service, manager, monkeypatch):
    assert service.post('/print/order', json={'printer_id': 'front'}).status_code == 400
    assert service.post('/print/order', json={'order': ORDER, 'printer_id': 'nope'}).status_code == 404
    assert service.post('/print/order', json={'order': ORDER, 'printer_id': 'front',
                                              'ticket': 'menu'}).status_code == 400

    food_only = dict(ORDER, items=ORDER['items'][:1])
    skipped = service.post('/print/order', json={'order': food_only, 'printer_id': 'front',
                                                 'ticket': 'bar'})
    assert skipped.get_json()['skipped'] is True

    monkeypatch.setattr(manager, 'print', lambda printer_id, content: False)
    failed = service.post('/print/order', json={'order': ORDER, 'printer_id': 'front'})
    assert failed.status_code == 500
