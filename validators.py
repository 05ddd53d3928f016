from errors import ValidationError


def require_fields(data, *fields):
    missing = [f for f in fields if data.get(f) in (None, '')]
    if missing:
        raise ValidationError('Missing required fields', details=missing)


def as_int(value, field, minimum=None, maximum=None, required=True):
    if value in (None, ''):
        if required:
            raise ValidationError(f'{field} is required')
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')
    if isinstance(value, float) and value != number:
        raise ValidationError(f'{field} must be an integer')
    if minimum is not None and number < minimum:
        raise ValidationError(f'{field} must be at least {minimum}')
    if maximum is not None and number > maximum:
        raise ValidationError(f'{field} must be at most {maximum}')
    return number


def as_float(value, field, minimum=None, required=True, positive=False):
    if value in (None, ''):
        if required:
            raise ValidationError(f'{field} is required')
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a number')
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number')
    if number != number or number in (float('inf'), float('-inf')):
        raise ValidationError(f'{field} must be a number')
    if positive and number <= 0:
        raise ValidationError(f'{field} must be positive')
    if minimum is not None and number < minimum:
        raise ValidationError(f'{field} must be at least {minimum}')
    return number


def as_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def one_of(value, field, choices):
    if value not in choices:
        raise ValidationError(f'{field} must be one of: {", ".join(choices)}')
    return value


def as_str(value, field, required=True):
    """Stripped string value. Numbers, lists and objects are rejected."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f'{field} cannot be empty')
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be a string')
    return value.strip()
