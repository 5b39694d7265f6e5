import threading
import time
from functools import wraps
from flask import session, jsonify, request, current_app


def login_required(view_func):
    """Reject the request with 401 if no user session is present."""
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not session.get('user_id'):
            return jsonify({'status': 'error', 'message': 'Authentication required'}), 401
        return view_func(*args, **kwargs)
    return wrapper


def role_required(*roles):
    """Ensure the signed-in user has one of the required roles (e.g., 'admin', 'regular')."""
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            if not session.get('user_id'):
                return jsonify({'status': 'error', 'message': 'Authentication required'}), 401
            role = session.get('role')
            if not role or (roles and role not in roles):
                current_app.logger.warning(
                    f"User {session.get('user_id')} with role {role!r} denied access (needs {', '.join(roles)})"
                )
                return jsonify({'status': 'error', 'message': 'Insufficient permissions'}), 403
            return view_func(*args, **kwargs)
        return wrapper
    return decorator


# --- Simple rate limiting (per IP, per endpoint) ---
RATE_LIMITS = {}
_RATE_LIMITS_LOCK = threading.Lock()
RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX = 30     # max requests per window per IP per endpoint


def rate_limit(limit=RATE_LIMIT_MAX, window=RATE_LIMIT_WINDOW):
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            ip = request.remote_addr or "unknown"
            endpoint = request.endpoint or f.__name__
            current = int(time.time()) // window
            key = (ip, endpoint, current)
            with _RATE_LIMITS_LOCK:
                if key not in RATE_LIMITS:
                    # Windows for this endpoint that have already closed.
                    for stale in [k for k in RATE_LIMITS if k[1] == endpoint and k[2] < current]:
                        del RATE_LIMITS[stale]
                count = RATE_LIMITS.get(key, 0)
                if count < limit:
                    RATE_LIMITS[key] = count + 1
            if count >= limit:
                return jsonify({'status': 'error', 'message': 'Too many requests. Please try again later.'}), 429
            return f(*args, **kwargs)
        return wrapped
    return decorator
