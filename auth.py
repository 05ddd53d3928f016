from functools import wraps
from flask import session, jsonify, request
from models import db, User, Branch
from errors import PermissionDenied, ValidationError, NotFoundError


def login_user(user):
    session.clear()
    session['user_id'] = user.id
    session['username'] = user.username
    session['role'] = user.role
    session['branch_id'] = user.branch_id
    session['full_name'] = user.full_name


def current_user():
    user_id = session.get('user_id')
    if not user_id:
        return None
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        return None
    return user


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_user() is None:
            return jsonify({'message': 'Authentication required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def roles_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = current_user()
            if user is None:
                return jsonify({'message': 'Authentication required'}), 401
            if user.role not in roles:
                return jsonify({'message': 'Insufficient permissions'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def _requested_branch_id():
    data = request.get_json(silent=True) if request.is_json else None
    value = request.args.get('branch_id') or (data or {}).get('branch_id')
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError('branch_id must be an integer')


def resolve_branch_id(user=None):
    """Branch the current request acts on.

    Staff always work inside their own branch. Owners pick one of the
    branches they own with ``branch_id`` (query string or JSON body).
    """
    user = user or current_user()
    if user is None:
        raise PermissionDenied('Authentication required', status_code=401)
    if user.role == 'owner':
        branch_id = _requested_branch_id()
        if branch_id is None:
            raise ValidationError('branch_id is required')
        branch = db.session.get(Branch, branch_id)
        if not branch:
            raise NotFoundError('Branch not found')
        if branch.owner_id != user.id:
            raise PermissionDenied('Access denied: branch belongs to another owner')
        return branch.id
    if not user.branch_id:
        raise ValidationError('User is not assigned to a branch')
    return user.branch_id


def ensure_same_branch(obj, branch_id, label='Record'):
    if obj is None or obj.branch_id != branch_id:
        raise NotFoundError(f'{label} not found')
    return obj
