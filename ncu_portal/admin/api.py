from datetime import datetime
from flask import request, jsonify, session, current_app, make_response
from ncu_portal.auth.decorators import role_required
from ncu_portal.storage import get_cached_data
from . import admin_api_bp
from .bulk_import import (
    KNOWN_EMAILS_CACHE_KEY,
    ImportFileError,
    ImportParseError,
    ImportState,
    ImportStateError,
    check_upload,
    decode_upload,
    error_report_csv,
    error_report_excel,
    template_csv,
)


def _sessions():
    return current_app.extensions['import_sessions']


def _known_emails():
    gateway = current_app.extensions['supabase_gateway']
    return get_cached_data(
        current_app.extensions['local_cache'],
        KNOWN_EMAILS_CACHE_KEY,
        gateway.list_user_emails,
        current_app.config['KNOWN_USERS_CACHE_MINUTES'],
    )


def _current():
    return _sessions().get(session['user_id'])


def _no_session():
    return jsonify({'status': 'error', 'message': 'No import in progress'}), 404


def _state_error(e):
    return jsonify({'status': 'error', 'message': str(e)}), 409


def _ok(import_session, status=200, **extra):
    return jsonify({'status': 'success', 'import': import_session.to_dict(), **extra}), status


@admin_api_bp.errorhandler(413)
def upload_too_large(e):
    limit_mb = current_app.config['IMPORT_MAX_FILE_BYTES'] // (1024 * 1024)
    return jsonify({'status': 'error', 'field': 'file', 'message': f'File is too large. Maximum size is {limit_mb}MB.'}), 413


@admin_api_bp.route('/import', methods=['GET'])
@role_required('admin')
def import_state():
    import_session = _current()
    if import_session is None:
        return _no_session()
    return _ok(import_session)


@admin_api_bp.route('/import', methods=['DELETE'])
@role_required('admin')
def discard_import():
    import_session = _current()
    if import_session is not None and import_session.state == ImportState.SUBMITTING:
        return _state_error(ImportStateError("Import is still being submitted"))
    _sessions().discard(session['user_id'])
    return jsonify({'status': 'success', 'message': 'Import session closed'}), 200


@admin_api_bp.route('/import/parse', methods=['POST'])
@role_required('admin')
def parse_import():
    """Parse an uploaded CSV/Excel file or pasted CSV text into a preview."""
    existing = _current()
    if existing is not None and existing.state == ImportState.SUBMITTING:
        return _state_error(ImportStateError("Import is still being submitted"))

    upload = request.files.get('file')
    try:
        if upload is not None and upload.filename:
            content = upload.read()
            check_upload(
                upload.filename,
                len(content),
                current_app.config['IMPORT_MAX_FILE_BYTES'],
                current_app.config['IMPORT_ALLOWED_EXTENSIONS'],
            )
            text = decode_upload(upload.filename, content)
            source_label = upload.filename
        else:
            body = request.get_json(silent=True) or {}
            text = request.form.get('text') or body.get('text') or ''
            if not text.strip():
                return jsonify({'status': 'error', 'field': 'text', 'message': 'Paste CSV data or upload a file'}), 400
            source_label = None
    except ImportFileError as e:
        return jsonify({'status': 'error', 'field': e.field, 'message': str(e)}), 400
    except ImportParseError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    try:
        known = _known_emails()
    except Exception as e:
        current_app.logger.error(f"Failed to load existing users for import: {str(e)}")
        return jsonify({'status': 'error', 'message': 'Unable to load existing users; try again later'}), 502

    import_session = _sessions().open(session['user_id'], known)
    try:
        import_session.parse(text, source_label)
    except ImportParseError as e:
        _sessions().discard(session['user_id'])
        current_app.logger.info(f"Import parse failed: {str(e)}")
        return jsonify({'status': 'error', 'message': str(e)}), 400
    return _ok(import_session)


@admin_api_bp.route('/import/rows/<int:row_id>/toggle', methods=['POST'])
@role_required('admin')
def toggle_import_row(row_id):
    import_session = _current()
    if import_session is None:
        return _no_session()
    try:
        import_session.toggle_row(row_id)
    except KeyError:
        return jsonify({'status': 'error', 'message': f'Row {row_id} not found'}), 404
    except ImportStateError as e:
        return _state_error(e)
    return _ok(import_session)


@admin_api_bp.route('/import/rows/toggle-all', methods=['POST'])
@role_required('admin')
def toggle_all_import_rows():
    import_session = _current()
    if import_session is None:
        return _no_session()
    try:
        import_session.toggle_all()
    except ImportStateError as e:
        return _state_error(e)
    return _ok(import_session)


def _transition(action):
    import_session = _current()
    if import_session is None:
        return _no_session()
    try:
        getattr(import_session, action)()
    except ImportStateError as e:
        return _state_error(e)
    return _ok(import_session)


@admin_api_bp.route('/import/proceed', methods=['POST'])
@role_required('admin')
def proceed_import():
    return _transition('proceed')


@admin_api_bp.route('/import/back', methods=['POST'])
@role_required('admin')
def back_to_preview():
    return _transition('back')


@admin_api_bp.route('/import/cancel', methods=['POST'])
@role_required('admin')
def cancel_preview():
    return _transition('cancel')


@admin_api_bp.route('/import/retry-failed', methods=['POST'])
@role_required('admin')
def retry_failed_import():
    return _transition('retry_failed')


@admin_api_bp.route('/import/confirm', methods=['POST'])
@role_required('admin')
def confirm_import():
    import_session = _current()
    if import_session is None:
        return _no_session()
    data = request.get_json(silent=True) or {}
    send_emails = data.get('send_welcome_emails')
    if send_emails is not None and not isinstance(send_emails, bool):
        return jsonify({'status': 'error', 'message': 'send_welcome_emails must be true or false'}), 400

    gateway = current_app.extensions['supabase_gateway']
    try:
        result = import_session.confirm(gateway, session['user_id'], send_emails)
    except ImportStateError as e:
        return _state_error(e)

    if result.success > 0:
        # New members exist now; the next import must see them.
        current_app.extensions['local_cache'].invalidate(KNOWN_EMAILS_CACHE_KEY)
    if result.success == 0 and result.failed:
        message = f"Import failed: {result.failed} record(s) not created"
    else:
        message = f"Imported {result.success} user(s); {result.failed} failed"
    return _ok(import_session, message=message)


def _completed_result():
    import_session = _current()
    if import_session is None or import_session.result is None:
        return None
    return import_session.result


def _report_name(ext):
    return f"import-errors-{datetime.utcnow().strftime('%Y-%m-%d')}.{ext}"


@admin_api_bp.route('/import/error-report', methods=['GET'])
@role_required('admin')
def download_error_report():
    result = _completed_result()
    if result is None:
        return jsonify({'status': 'error', 'message': 'No completed import to report on'}), 404
    response = make_response(error_report_csv(result))
    response.headers["Content-Disposition"] = f"attachment; filename={_report_name('csv')}"
    response.headers["Content-Type"] = "text/csv; charset=utf-8"
    return response


@admin_api_bp.route('/import/error-report/excel', methods=['GET'])
@role_required('admin')
def download_error_report_excel():
    result = _completed_result()
    if result is None:
        return jsonify({'status': 'error', 'message': 'No completed import to report on'}), 404
    try:
        content = error_report_excel(result)
    except Exception as e:
        return jsonify({'status': 'error', 'message': f'Failed to generate error report Excel: {str(e)}'}), 500
    response = make_response(content)
    response.headers["Content-Disposition"] = f"attachment; filename={_report_name('xlsx')}"
    response.headers["Content-Type"] = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    return response


@admin_api_bp.route('/import/template', methods=['GET'])
@role_required('admin')
def download_template():
    response = make_response(template_csv())
    response.headers["Content-Disposition"] = "attachment; filename=user-import-template.csv"
    response.headers["Content-Type"] = "text/csv; charset=utf-8"
    return response
