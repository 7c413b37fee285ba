"""Middleware for the authenticated user context."""
from functools import wraps
from flask import session, g, jsonify


def load_current_user():
    """
    Load the current user id into g (Flask's per-request global).

    Sessions are issued by the authentication service; this process only
    reads the user id it stored in the signed session cookie.
    """
    g.user_id = None

    user_id = session.get('user_id')
    if user_id is None:
        return
    try:
        g.user_id = int(user_id)
    except (TypeError, ValueError):
        session.pop('user_id', None)


def require_login(f):
    """
    Decorator: Require user to be logged in.

    Answers 401 JSON when there is no authenticated user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('user_id') is None:
            return jsonify({'status': 'error', 'message': 'Authentication required', 'reason': 'UNAUTHENTICATED'}), 401
        return f(*args, **kwargs)
    return decorated_function
