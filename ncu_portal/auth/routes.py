from flask import request, jsonify, session, current_app
from . import auth_bp
from .decorators import rate_limit


@auth_bp.route('/session', methods=['POST'])
@rate_limit(limit=10)
def create_session():
    """Sign in with a Supabase access token issued to the browser."""
    data = request.get_json(silent=True) or {}
    token = data.get('access_token')
    if not token:
        auth_header = request.headers.get('Authorization', '')
        if auth_header.lower().startswith('bearer '):
            token = auth_header[7:].strip()
    if not token:
        return jsonify({'status': 'error', 'message': 'access_token is required'}), 400

    gateway = current_app.extensions['supabase_gateway']
    try:
        user = gateway.get_user(token)
    except Exception as e:
        current_app.logger.error(f"Authentication error: {str(e)}")
        return jsonify({'status': 'error', 'message': 'Unable to verify credentials'}), 401
    if not user:
        return jsonify({'status': 'error', 'message': 'Invalid or expired token'}), 401

    session.clear()
    session['user_id'] = user['id']
    session['email'] = user['email']
    session['role'] = 'admin' if user['is_admin'] else 'regular'
    session.permanent = True
    return jsonify({'status': 'success', 'user': {
        'id': user['id'],
        'email': user['email'],
        'role': session['role'],
    }}), 200


@auth_bp.route('/logout', methods=['POST'])
def logout():
    user_id = session.get('user_id')
    if user_id:
        # An unfinished import session belongs to the user signing out.
        sessions = current_app.extensions.get('import_sessions')
        if sessions is not None:
            sessions.discard(user_id)
    session.clear()
    return jsonify({'status': 'success', 'message': 'Signed out'}), 200
