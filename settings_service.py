import json
from models import db, Setting, load_json

DEFAULT_SETTINGS = {
    'tax_rate': 0,               # percent of subtotal
    'service_charge_rate': 0,    # percent of subtotal
    'currency': 'MAD',
    'receipt_footer': 'Thank you for your order!',
    'kitchen_printer_id': 'kitchen',
    'bar_printer_id': 'bar',
    'bar_keywords': ['juice', 'coffee', 'tea', 'drink', 'beverage']
}


def _dump(value):
    # Same storage format the settings screen has always used
    return json.dumps(value) if isinstance(value, (dict, list, bool)) else str(value)


def get_setting(key, branch_id=None, default=None):
    """Branch value first, then the global row, then the built-in default."""
    if branch_id is not None:
        setting = Setting.query.filter_by(branch_id=branch_id, key=key).first()
        if setting:
            return load_json(setting.value)
    setting = Setting.query.filter_by(branch_id=None, key=key).first()
    if setting:
        return load_json(setting.value)
    if default is not None:
        return default
    return DEFAULT_SETTINGS.get(key)


def get_rate(key, branch_id=None):
    value = get_setting(key, branch_id)
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def set_setting(key, value, branch_id=None):
    setting = Setting.query.filter_by(branch_id=branch_id, key=key).first()
    value_str = _dump(value)
    if setting:
        setting.value = value_str
    else:
        setting = Setting(branch_id=branch_id, key=key, value=value_str)
        db.session.add(setting)
    return setting


def delete_setting(key, branch_id=None):
    setting = Setting.query.filter_by(branch_id=branch_id, key=key).first()
    if not setting:
        return False
    db.session.delete(setting)
    return True


def all_settings(branch_id=None):
    result = dict(DEFAULT_SETTINGS)
    for setting in Setting.query.filter_by(branch_id=None).all():
        result[setting.key] = load_json(setting.value)
    if branch_id is not None:
        for setting in Setting.query.filter_by(branch_id=branch_id).all():
            result[setting.key] = load_json(setting.value)
    return result
