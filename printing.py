import logging
import requests
from flask import current_app
import settings_service

logger = logging.getLogger(__name__)

TICKETS = ['receipt', 'kitchen', 'bar']


def _service_url(path):
    return f"{current_app.config['PRINTER_SERVICE_URL']}{path}"


def _timeout():
    return current_app.config.get('PRINTER_SERVICE_TIMEOUT', 5)


def printer_status():
    """Printer list from the microservice, or an error entry when it is down."""
    try:
        response = requests.get(_service_url('/printers'), timeout=_timeout())
        response.raise_for_status()
        return {'available': True, 'printers': response.json().get('printers', [])}
    except (requests.RequestException, ValueError) as e:
        logger.error('Printer service unreachable: %s', e)
        return {'available': False, 'printers': [], 'error': str(e)}


def default_printer(ticket, branch_id):
    if ticket == 'bar':
        return settings_service.get_setting('bar_printer_id', branch_id)
    if ticket == 'kitchen':
        return settings_service.get_setting('kitchen_printer_id', branch_id)
    return settings_service.get_setting('receipt_printer_id', branch_id,
                                        default=settings_service.get_setting('kitchen_printer_id', branch_id))


def print_order(order, ticket='receipt', printer_id=None):
    """Send an order to the printer service. Never raises on transport errors."""
    branch_id = order.branch_id
    printer_id = printer_id or default_printer(ticket, branch_id)
    footer = settings_service.get_setting('receipt_footer', branch_id)
    payload = {
        'order': order.to_dict(),
        'printer_id': printer_id,
        'ticket': ticket,
        'currency': settings_service.get_setting('currency', branch_id,
                                                 default=current_app.config['CURRENCY']),
        'footer': [footer] if isinstance(footer, str) else footer,
        'keywords': settings_service.get_setting('bar_keywords', branch_id)
    }
    try:
        response = requests.post(_service_url('/print/order'), json=payload, timeout=_timeout())
    except requests.RequestException as e:
        logger.error('Print job for order %s failed: %s', order.order_code, e)
        return {'success': False, 'printer_id': printer_id, 'ticket': ticket, 'error': str(e)}

    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.status_code >= 400:
        error = body.get('error') or f'Printer service returned {response.status_code}'
        logger.error('Print job for order %s rejected: %s', order.order_code, error)
        return {'success': False, 'printer_id': printer_id, 'ticket': ticket, 'error': error}

    logger.info('Printed %s for order %s on %s', ticket, order.order_code, printer_id)
    return {'success': True, 'printer_id': printer_id, 'ticket': ticket,
            'skipped': bool(body.get('skipped'))}
