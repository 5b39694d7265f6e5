from decimal import Decimal, InvalidOperation
from flask import request, jsonify, session, current_app
from ncu_portal.auth.decorators import login_required, role_required
from . import offline_api_bp
from .queue import TRANSACTION_TYPES


def _queue():
    return current_app.extensions['offline_queue']


def _sync():
    return current_app.extensions['offline_sync']


@offline_api_bp.route('/transactions', methods=['POST'])
@login_required
def queue_transaction():
    data = request.get_json(silent=True) or {}
    tx_type = data.get('type')
    if tx_type not in TRANSACTION_TYPES:
        return jsonify({'status': 'error', 'message': f"type must be one of: {', '.join(TRANSACTION_TYPES)}"}), 400
    try:
        amount = Decimal(str(data.get('amount')))
    except InvalidOperation:
        return jsonify({'status': 'error', 'message': 'Invalid amount'}), 400
    if not amount.is_finite() or amount <= 0:
        return jsonify({'status': 'error', 'message': 'Amount must be greater than zero'}), 400

    # Staff/admins capture transactions on behalf of members; members only for themselves.
    user_id = session['user_id']
    if session.get('role') == 'admin' and data.get('user_id'):
        user_id = data['user_id']

    loan_id = data.get('loan_id') or None
    if tx_type == 'loan_payment' and not loan_id:
        return jsonify({'status': 'error', 'message': 'loan_id is required for loan payments'}), 400
    metadata = data.get('metadata')
    if metadata is not None and not isinstance(metadata, dict):
        return jsonify({'status': 'error', 'message': 'metadata must be an object'}), 400

    tx = _queue().enqueue(
        user_id=user_id,
        type=tx_type,
        amount=amount,
        description=data.get('description') or None,
        loan_id=loan_id,
        metadata=metadata,
    )
    return jsonify({'status': 'success', 'transaction': tx.to_dict()}), 201


@offline_api_bp.route('/queue', methods=['GET'])
@login_required
def list_queue():
    queue = _queue().get_queue()
    if session.get('role') != 'admin':
        queue = [tx for tx in queue if tx.user_id == session['user_id']]
    return jsonify({'status': 'success', 'transactions': [tx.to_dict() for tx in queue]}), 200


@offline_api_bp.route('/stats', methods=['GET'])
@login_required
def queue_stats():
    stats = _queue().stats()
    stats['total_amount'] = str(stats['total_amount'])
    return jsonify({'status': 'success', **stats}), 200


@offline_api_bp.route('/sync', methods=['POST'])
@login_required
def sync_now():
    result = _queue().flush()
    if result.skipped:
        message = ('A sync is already in progress' if result.reason == 'in_progress'
                   else 'Device is offline; transactions remain queued')
        return jsonify({'status': 'error', 'message': message, 'result': result.to_dict()}), 409
    current_app.logger.info(f"Manual offline sync: {result.processed} processed, {result.failed} failed")
    return jsonify({'status': 'success', 'result': result.to_dict()}), 200


@offline_api_bp.route('/clear', methods=['POST'])
@role_required('admin')
def clear_queue():
    count = len(_queue().get_queue())
    _queue().clear()
    current_app.logger.warning(f"User {session['user_id']} cleared {count} queued offline transaction(s)")
    return jsonify({'status': 'success', 'cleared': count}), 200


def _mode_response():
    return jsonify({
        'status': 'success',
        'offline': _queue().is_offline_mode(),
        'online': _sync().is_online(),
    }), 200


@offline_api_bp.route('/mode', methods=['GET'])
@login_required
def offline_mode():
    return _mode_response()


# Process-wide switches: admin only.
@offline_api_bp.route('/mode', methods=['POST'])
@role_required('admin')
def set_offline_mode():
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get('offline'), bool):
        return jsonify({'status': 'error', 'message': 'offline must be true or false'}), 400
    _queue().set_offline_mode(data['offline'])
    current_app.logger.info(f"User {session['user_id']} set offline mode to {data['offline']}")
    return _mode_response()


@offline_api_bp.route('/network', methods=['POST'])
@role_required('admin')
def report_network():
    """Clients forward their online/offline signal here."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get('online'), bool):
        return jsonify({'status': 'error', 'message': 'online must be true or false'}), 400
    result = _sync().report_connectivity(data['online'])
    return jsonify({
        'status': 'success',
        'online': _sync().is_online(),
        'result': result.to_dict() if result else None,
    }), 200
