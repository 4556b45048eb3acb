from functools import wraps
from flask_login import current_user
from flask import jsonify


def owner_required(param='user_id'):
    """
    Restrict a route to the account named in its URL.
    Example: @owner_required('user_id') on /download/<user_id>
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                # login_required normally runs first; act as a safe fallback
                return jsonify({'error': 'Authentication required'}), 401
            if str(kwargs.get(param)) != str(current_user.id):
                return jsonify({'error': 'Access denied'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator
