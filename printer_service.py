"""Standalone printer microservice.

Run with ``python printer_service.py``. The main backend talks to it over HTTP
(see printing.py); it owns the ESC/POS connections to the physical printers.
"""
import os
import logging
import threading
from datetime import datetime
from flask import Flask, request, jsonify
from escpos.printer import Network, Usb, Dummy
from config import configure_logging
import receipts

logger = logging.getLogger('printer_service')

PRINTER_TYPES = ['network', 'usb', 'dummy']


class PrinterError(Exception):
    pass


class PrinterManager:
    def __init__(self, with_defaults=True):
        self.printers = {}
        self._lock = threading.Lock()
        if with_defaults:
            self.initialize_default_printers()

    def initialize_default_printers(self):
        port = int(os.getenv('PRINTER_NETWORK_PORT', 9100))
        self.add('kitchen', 'Kitchen Printer', 'network',
                 {'address': os.getenv('KITCHEN_PRINTER_IP', '192.168.1.100'), 'port': port})
        self.add('bar', 'Bar Printer', 'network',
                 {'address': os.getenv('BAR_PRINTER_IP', '192.168.1.101'), 'port': port})

    def add(self, printer_id, name, printer_type, connection=None):
        if printer_type not in PRINTER_TYPES:
            raise PrinterError(f'Unsupported printer type: {printer_type}')
        connection = connection or {}
        if printer_type == 'network' and not connection.get('address'):
            raise PrinterError('Network printers need an address')
        if printer_type == 'usb' and not (connection.get('vendor_id') and connection.get('product_id')):
            raise PrinterError('USB printers need vendor_id and product_id')
        with self._lock:
            self.printers[printer_id] = {
                'id': printer_id,
                'name': name,
                'type': printer_type,
                'connection': connection,
                # dummy printers keep one device so the output can be inspected
                'device': Dummy() if printer_type == 'dummy' else None,
                'status': 'connected',
                'last_printed_at': None
            }
        logger.info('Printer added: %s (%s)', name, printer_type)
        return self.printers[printer_id]

    def remove(self, printer_id):
        with self._lock:
            printer = self.printers.pop(printer_id, None)
        if printer is None:
            return False
        logger.info('Printer removed: %s', printer_id)
        return True

    def _open_device(self, printer):
        connection = printer['connection']
        if printer['type'] == 'dummy':
            return printer['device']
        if printer['type'] == 'network':
            return Network(connection['address'], port=int(connection.get('port', 9100)),
                           timeout=int(connection.get('timeout', 10)))
        return Usb(int(str(connection['vendor_id']), 0), int(str(connection['product_id']), 0))

    def print(self, printer_id, content):
        printer = self.printers.get(printer_id)
        if printer is None:
            logger.error('Print failed: printer not found: %s', printer_id)
            return False
        logger.info('Printing to %s...', printer['name'])
        device = None
        try:
            device = self._open_device(printer)
            device.text(content if content.endswith('\n') else content + '\n')
            device.cut()
        except Exception:
            logger.exception('Print failed for %s', printer_id)
            printer['status'] = 'error'
            return False
        finally:
            if device is not None and printer['type'] != 'dummy':
                self._close(printer_id, device)
        printer['status'] = 'connected'
        printer['last_printed_at'] = datetime.utcnow().isoformat()
        logger.info('Successfully printed to %s', printer['name'])
        return True

    def _close(self, printer_id, device):
        try:
            device.close()
        except Exception:
            logger.warning('Could not close connection to %s', printer_id, exc_info=True)

    def test(self, printer_id):
        return self.print(printer_id, receipts.self_test_page())

    def status(self):
        with self._lock:
            printers = list(self.printers.values())
        return [{
            'id': p['id'],
            'name': p['name'],
            'type': p['type'],
            'connection': p['connection'],
            'status': p['status'],
            'last_printed_at': p['last_printed_at']
        } for p in printers]


app = Flask(__name__)
manager = PrinterManager()


@app.route('/health', methods=['GET'])
def health():
    return jsonify({
        'status': 'OK',
        'timestamp': datetime.utcnow().isoformat(),
        'printers': len(manager.printers)
    })


@app.route('/printers', methods=['GET'])
def list_printers():
    return jsonify({'printers': manager.status()})


@app.route('/printers', methods=['POST'])
def add_printer():
    data = request.get_json(silent=True) or {}
    if not data.get('id') or not data.get('name') or not data.get('type'):
        return jsonify({'error': 'id, name and type are required'}), 400
    try:
        manager.add(data['id'], data['name'], data['type'], data.get('connection'))
    except PrinterError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify({'success': True, 'message': 'Printer added successfully'}), 201


@app.route('/printers/<printer_id>', methods=['DELETE'])
def remove_printer(printer_id):
    if not manager.remove(printer_id):
        return jsonify({'error': 'Printer not found'}), 404
    return jsonify({'success': True, 'message': 'Printer removed successfully'})


@app.route('/test', methods=['POST'])
def test_print():
    data = request.get_json(silent=True) or {}
    printer_id = data.get('printer_id', 'kitchen')
    if printer_id not in manager.printers:
        return jsonify({'error': 'Printer not found'}), 404
    if not manager.test(printer_id):
        return jsonify({'error': 'Test print failed'}), 500
    return jsonify({'success': True, 'message': 'Test print sent successfully'})


@app.route('/print', methods=['POST'])
def print_raw():
    data = request.get_json(silent=True) or {}
    printer_id = data.get('printer_id')
    content = data.get('content')
    if not printer_id or not content:
        return jsonify({'error': 'Printer ID and content are required'}), 400
    if printer_id not in manager.printers:
        return jsonify({'error': 'Printer not found'}), 404
    if not manager.print(printer_id, content):
        return jsonify({'error': 'Print job failed'}), 500
    return jsonify({'success': True, 'message': 'Print job sent successfully'})


@app.route('/print/order', methods=['POST'])
def print_order():
    data = request.get_json(silent=True) or {}
    order = data.get('order')
    printer_id = data.get('printer_id')
    ticket = data.get('ticket', 'receipt')
    if not order or not printer_id:
        return jsonify({'error': 'Order data and printer ID are required'}), 400
    if printer_id not in manager.printers:
        return jsonify({'error': 'Printer not found'}), 404
    try:
        content = receipts.render(ticket, order, currency=data.get('currency', 'MAD'),
                                  footer=data.get('footer'), keywords=data.get('keywords'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if content is None:
        return jsonify({'success': True, 'skipped': True, 'message': 'Nothing to print for this ticket'})
    if not manager.print(printer_id, content):
        return jsonify({'error': 'Order receipt print failed'}), 500
    logger.info('Printed %s ticket for order %s on %s', ticket, order.get('order_code'), printer_id)
    return jsonify({'success': True, 'message': 'Order receipt printed successfully'})


if __name__ == '__main__':
    configure_logging()
    port = int(os.getenv('PRINTER_PORT', 4000))
    logger.info('Printer service running on port %s', port)
    app.run(host='0.0.0.0', port=port)
