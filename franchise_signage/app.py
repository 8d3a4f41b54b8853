"""
@app_factory
Flask routes over the signage core
"""

import hmac
import logging
from functools import wraps

from flask import Flask, g, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

from .core import SignageCore
from .errors import AuthenticationError, SignageError, ValidationError

logger = logging.getLogger(__name__)


def success(data=None, message='Success', status_code=200):
    return jsonify({'success': True, 'message': message, 'data': data}), status_code


def error(message, status_code=500, details=None):
    body = {'success': False, 'message': message}
    if details is not None:
        body['details'] = details
    return jsonify(body), status_code


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _base_url() -> str:
    return request.host_url.rstrip('/')


def create_app(core: SignageCore) -> Flask:
    """@app_factory - Create and configure Flask application"""
    config = core.config
    app = Flask(__name__)
    app.config['SECRET_KEY'] = config.SECRET_KEY
    app.config['MAX_CONTENT_LENGTH'] = config.MAX_CONTENT_LENGTH
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
    CORS(app, resources={r"/api/*": {"origins": config.ALLOWED_ORIGINS}},
         allow_headers=['Content-Type', 'Authorization', 'X-API-Key', 'X-Device-Token'])
    app.extensions['signage_core'] = core

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------
    @app.before_request
    def require_ready():
        if not core.ready and request.path != '/api/health':
            return error('Server is starting, please try again', 503)

    def require_admin(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            api_key = request.headers.get('X-API-Key', '')
            if not config.API_KEY or not hmac.compare_digest(api_key.encode(), config.API_KEY.encode()):
                raise AuthenticationError('Invalid credentials')
            return view(*args, **kwargs)
        return wrapped

    def require_device(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            g.franchise = core.franchises.authenticate_device(request.headers.get('X-Device-Token'))
            return view(*args, **kwargs)
        return wrapped

    # -------------------------------------------------------------------------
    # Error handling
    # -------------------------------------------------------------------------
    @app.errorhandler(SignageError)
    def handle_signage_error(e):
        return error(e.message, e.status_code, getattr(e, 'details', None))

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(e):
        return error(f'File too large. Maximum size: {config.MAX_CONTENT_LENGTH // (1024 * 1024)}MB', 400)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        if e.code == 404:
            return error(f'Route {request.method} {request.path} not found', 404)
        return error(e.description or e.name, e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception(f"[Error] {e}")
        return error('Internal server error', 500)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------
    @app.route('/api/health')
    def health():
        return jsonify({'status': 'ok' if core.ready else 'starting'})

    # -------------------------------------------------------------------------
    # Franchises
    # -------------------------------------------------------------------------
    @app.route('/api/franchises', methods=['POST'])
    @require_admin
    def register_franchise():
        data = _json_body()
        franchise = core.franchises.register(data.get('name'), data.get('location'), data.get('deviceId'))
        franchise['message'] = 'SAVE THE TOKEN - it cannot be retrieved again!'
        return success(franchise, 'Franchise registered successfully', 201)

    @app.route('/api/franchises')
    @require_admin
    def list_franchises():
        return success(core.franchises.list_franchises())

    @app.route('/api/franchises/<franchise_id>')
    @require_admin
    def get_franchise(franchise_id):
        return success(core.franchises.get_franchise(franchise_id))

    @app.route('/api/franchises/<franchise_id>', methods=['PUT'])
    @require_admin
    def update_franchise(franchise_id):
        data = _json_body()
        franchise = core.franchises.update_franchise(
            franchise_id, data.get('name'), data.get('location'), data.get('playbackOrder'))
        return success(franchise, 'Franchise updated successfully')

    @app.route('/api/franchises/<franchise_id>', methods=['DELETE'])
    @require_admin
    def delete_franchise(franchise_id):
        core.franchises.delete_franchise(franchise_id)
        return success(None, 'Franchise deleted successfully')

    @app.route('/api/franchises/<franchise_id>/regenerate-token', methods=['POST'])
    @require_admin
    def regenerate_token(franchise_id):
        token = core.franchises.regenerate_token(franchise_id)
        return success({'token': token, 'message': 'SAVE THE NEW TOKEN - it cannot be retrieved again!'},
                       'Token regenerated successfully')

    # -------------------------------------------------------------------------
    # Content
    # -------------------------------------------------------------------------
    @app.route('/api/content/upload', methods=['POST'])
    @require_admin
    def upload_content():
        filename, size, mime_type = core.files.save_uploaded_file(request.files.get('file'))
        try:
            content = core.content.add_content(
                filename, mime_type, size, _base_url(),
                name=request.form.get('name'), duration=request.form.get('duration'))
        except Exception:
            core.files.delete_file(filename)
            raise
        logger.info(f"[Content] Uploaded: {content['name']}")
        return success(content, 'Content uploaded successfully', 201)

    @app.route('/api/content')
    @require_admin
    def list_content():
        return success(core.content.list_content())

    @app.route('/api/content/<content_id>')
    @require_admin
    def get_content(content_id):
        return success(core.content.get_content(content_id))

    @app.route('/api/content/<content_id>', methods=['PUT'])
    @require_admin
    def update_content(content_id):
        data = _json_body()
        content = core.content.update_content(content_id, data.get('name'), data.get('duration'))
        return success(content, 'Content updated successfully')

    @app.route('/api/content/<content_id>', methods=['DELETE'])
    @require_admin
    def delete_content(content_id):
        filename = core.content.delete_content(content_id)
        core.files.delete_file(filename)
        return success(None, 'Content deleted successfully')

    @app.route('/content/<path:filename>')
    def serve_content(filename):
        return send_from_directory(core.files.content_folder, filename)

    # -------------------------------------------------------------------------
    # Folders
    # -------------------------------------------------------------------------
    @app.route('/api/folders')
    @require_admin
    def list_folders():
        return success(core.folders.list_folders())

    @app.route('/api/folders', methods=['POST'])
    @require_admin
    def create_folder():
        data = _json_body()
        folder = core.folders.create_folder(data.get('name'), data.get('contentIds'))
        return success(folder, 'Folder created successfully', 201)

    @app.route('/api/folders/<folder_id>', methods=['PUT'])
    @require_admin
    def update_folder(folder_id):
        data = _json_body()
        folder = core.folders.update_folder(folder_id, data.get('name'), data.get('contentIds'))
        return success(folder, 'Folder updated successfully')

    @app.route('/api/folders/<folder_id>', methods=['DELETE'])
    @require_admin
    def delete_folder(folder_id):
        core.folders.delete_folder(folder_id)
        return success(None, 'Folder deleted successfully')

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------
    @app.route('/api/assignments', methods=['POST'])
    @require_admin
    def set_assignments():
        data = _json_body()
        result = core.assignments.set_assignments(data.get('deviceId'), data.get('items'), data.get('playbackOrder'))
        return success(result, 'Assignments updated successfully')

    @app.route('/api/assignments')
    @require_admin
    def list_assignments():
        return success(core.assignments.list_assignments())

    @app.route('/api/assignments/<device_id>')
    @require_admin
    def get_assignments(device_id):
        return success(core.assignments.get_assignments(device_id))

    @app.route('/api/assignments/<device_id>', methods=['DELETE'])
    @require_admin
    def clear_assignments(device_id):
        core.assignments.clear_assignments(device_id)
        return success(None, 'Assignments cleared successfully')

    @app.route('/api/assignments/<device_id>/add', methods=['POST'])
    @require_admin
    def add_assignments(device_id):
        result = core.assignments.add_content(device_id, _json_body().get('contentIds'))
        return success(result, 'Content added to assignments')

    @app.route('/api/assignments/<device_id>/remove', methods=['POST'])
    @require_admin
    def remove_assignments(device_id):
        result = core.assignments.remove_content(device_id, _json_body().get('contentIds'))
        return success(result, 'Content removed from assignments')

    # -------------------------------------------------------------------------
    # Device (Android player)
    # -------------------------------------------------------------------------
    @app.route('/api/heartbeat', methods=['POST'])
    @require_device
    def heartbeat():
        last_sync = core.devices.heartbeat(g.franchise['id'])
        return success({'lastSync': last_sync, 'deviceId': g.franchise['deviceId']}, 'Heartbeat received')

    @app.route('/api/playlist')
    @require_device
    def get_playlist():
        resolved = core.resolve_playlist(g.franchise['deviceId'], _base_url())
        payload = dict(resolved['meta'])
        payload['playlist'] = resolved['items']
        return success(payload)

    @app.route('/api/device/info')
    @require_device
    def device_info():
        franchise = g.franchise
        return success({
            'id': franchise.get('id'),
            'name': franchise.get('name'),
            'location': franchise.get('location'),
            'deviceId': franchise.get('deviceId'),
            'status': franchise.get('status'),
            'lastSync': franchise.get('lastSync'),
        })

    @app.route('/api/device/report', methods=['POST'])
    @require_device
    def device_report():
        data = _json_body()
        core.devices.record_event(g.franchise, data.get('contentId'), data.get('action'),
                                  data.get('timestamp'), data.get('duration'))
        return success(None, 'Report received')

    # -------------------------------------------------------------------------
    # Device pairing (phone OTP)
    # -------------------------------------------------------------------------
    @app.route('/api/auth/device/send-otp', methods=['POST'])
    def send_otp():
        result = core.pairing.send_otp(_json_body().get('phone'))
        return success({'phone': result['phone'], 'message': 'OTP sent successfully'}, 'OTP sent to your phone')

    @app.route('/api/auth/device/resend-otp', methods=['POST'])
    def resend_otp():
        result = core.pairing.resend_otp(_json_body().get('phone'))
        return success({'phone': result['phone'], 'message': 'OTP resent successfully'}, 'OTP resent to your phone')

    @app.route('/api/auth/device/verify-otp', methods=['POST'])
    def verify_otp():
        data = _json_body()
        if not data.get('phone') or not data.get('otp'):
            raise ValidationError('Phone and OTP are required')
        result = core.pairing.verify_otp(data['phone'], data['otp'], data.get('deviceName'), data.get('location'))
        return success(result, 'Registration successful' if result['isNewPartner'] else 'Login successful')

    @app.route('/api/auth/device/check-status', methods=['POST'])
    def check_status():
        return success(core.pairing.check_status(_json_body().get('phone')))

    return app
