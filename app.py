import os
import secrets
import logging
import sys
import traceback
from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException
from datetime import datetime

load_dotenv()

from models import db
from errors import AuthError, BadRequest, LoginState
from auth import begin_login, token_required, get_current_identity
from two_factor import start_enrollment, confirm_enrollment, verify_totp_code, verify_backup_code, two_factor_status
from sessions import rotate_refresh_token, revoke_session
from security import (
    log_security_event, apply_security_headers, get_client_ip, get_user_agent, mask_email, sanitize_string,
    trust_proxy_hops,
)
from keyvault_client import keyvault_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Number of reverse proxies in front of the app; X-Forwarded-* is ignored when 0
trust_proxy_hops(app, int(os.environ.get('TRUSTED_PROXY_COUNT', '0')))

TESTING = os.environ.get('FLASK_ENV') == 'testing'

# Global error state
app_error_state = {
    'healthy': False,
    'error': None,
}

# ==================== Secure Configuration via Azure Key Vault ====================
# Priority: Key Vault -> Environment Variable -> Default

if TESTING:
    database_url = 'sqlite:///:memory:'
    logger.info("TESTING MODE: Using in-memory SQLite database")
else:
    database_url = keyvault_client.get_database_url()
logger.info(f"Database URL configured: {database_url.split('@')[1] if '@' in database_url else database_url}")
app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

secret_key = keyvault_client.get_flask_secret_key()
if secret_key:
    logger.info("SECRET_KEY loaded from Key Vault or environment variable")
    app.config['SECRET_KEY'] = secret_key
else:
    # Outstanding step-up and access tokens will not survive a restart
    logger.warning("SECRET_KEY not found in Key Vault or environment. Using random key - issued tokens will not survive restarts!")
    app.config['SECRET_KEY'] = secrets.token_hex(32)

# ==================== Security Configuration ====================

_use_https = os.environ.get('USE_HTTPS', 'false').lower() == 'true'

if TESTING:
    app.config['RATELIMIT_ENABLED'] = False
    limiter = None
    RATE_LIMITING_ENABLED = False
    logger.info("TESTING MODE: Rate limiting disabled")
else:
    app.config['RATELIMIT_ENABLED'] = True
    app.config['RATELIMIT_STORAGE_URL'] = os.environ.get('REDIS_URL', 'memory://')
    app.config['RATELIMIT_HEADERS_ENABLED'] = True

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=["200 per minute"],
        storage_uri=app.config['RATELIMIT_STORAGE_URL'],
    )
    RATE_LIMITING_ENABLED = True
    logger.info("Rate limiting enabled")

# JSON API only; nothing here should ever be framed or load subresources.
csp = {
    'default-src': "'none'",
    'frame-ancestors': "'none'",
    'base-uri': "'none'",
    'form-action': "'none'",
}

# HTTPS is terminated upstream
talisman = Talisman(
    app,
    content_security_policy=csp,
    force_https=False,
    session_cookie_secure=_use_https,
    frame_options='DENY',
    referrer_policy='no-referrer',
)

# ==================== Global Error Handlers ====================
# Full details are logged server-side; clients only ever see {error, code, state}.

def _error_body(message, code):
    return {'error': message, 'code': code, 'state': LoginState.AWAITING_CREDENTIALS.value}


@app.errorhandler(AuthError)
def handle_auth_error(e):
    """Domain errors carry their own status, code and next state."""
    if e.status >= 500:
        logger.error(f"Auth error {e.code}: {e.message}")
    return jsonify(e.to_dict()), e.status


@app.errorhandler(Exception)
def handle_exception(e):
    """Global exception handler to prevent stack trace leakage."""
    if isinstance(e, HTTPException):
        return jsonify(_error_body(e.description or e.name, e.name.upper().replace(' ', '_'))), e.code

    logger.error(f"Unhandled exception: {str(e)}")
    logger.error(traceback.format_exc())
    db.session.rollback()
    return jsonify(_error_body('An internal server error occurred', 'INTERNAL_ERROR')), 500


@app.errorhandler(500)
def handle_500(e):
    logger.error(f"500 Error: {str(e)}")
    return jsonify(_error_body('Internal server error', 'INTERNAL_ERROR')), 500


@app.errorhandler(404)
def handle_404(e):
    return jsonify(_error_body('Resource not found', 'NOT_FOUND')), 404


@app.errorhandler(405)
def handle_405(e):
    return jsonify(_error_body('Method not allowed', 'METHOD_NOT_ALLOWED')), 405


@app.errorhandler(429)
def handle_429(e):
    log_security_event('rate_limit', f"Rate limit exceeded: {e.description}", severity='WARNING')
    return jsonify(_error_body('Too many requests, please slow down', 'RATE_LIMITED')), 429


@app.errorhandler(400)
def handle_400(e):
    return jsonify(_error_body('Bad request', 'BAD_REQUEST')), 400


# Initialize database
db.init_app(app)

_db_initialized = False


def init_database():
    """Create tables on first request."""
    global _db_initialized
    if _db_initialized:
        return
    try:
        with app.app_context():
            with db.engine.connect() as connection:
                connection.execute(db.text("SELECT 1"))
            db.create_all()
        _db_initialized = True
        app_error_state['healthy'] = True
        app_error_state['error'] = None
        logger.info("Database tables created")
    except Exception as e:
        error_msg = f"Database initialization failed: {str(e)}"
        logger.error(error_msg)
        logger.error(traceback.format_exc())
        app_error_state['healthy'] = False
        app_error_state['error'] = error_msg


@app.before_request
def initialize_db():
    if not _db_initialized:
        init_database()


@app.after_request
def add_security_headers(response):
    """No auth response may be cached."""
    if request.path.startswith('/api/'):
        response = apply_security_headers(response)
    response.headers.pop('Server', None)
    return response


def rate_limit(limit_string):
    """Apply rate limiting if enabled, otherwise no-op."""
    def decorator(f):
        if RATE_LIMITING_ENABLED and limiter:
            return limiter.limit(limit_string)(f)
        return f
    return decorator


TENANT_ID_MAX_LENGTH = 36


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest('Request body must be a JSON object')
    return data


def _require_string(data, field):
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise BadRequest(f'{field} is required', field=field)
    return value


# ==================== Health Check ====================

@app.route('/api/health')
def health_check():
    if app_error_state['healthy']:
        return jsonify({'status': 'ok', 'timestamp': datetime.utcnow().isoformat()}), 200
    return jsonify({
        'status': 'unhealthy',
        'error': app_error_state['error'],
        'timestamp': datetime.utcnow().isoformat()
    }), 503


# ==================== Login ====================

@app.route('/api/auth/login', methods=['POST'])
@rate_limit("10 per minute")
def login():
    """
    Password step. Always answers with an error-shaped body: a second factor
    is mandatory, so success here is a 428 carrying tempToken or setupToken.
    """
    data = _json_body()
    email = _require_string(data, 'email')
    password = _require_string(data, 'password')
    tenant_id = data.get('tenantId') or None
    if tenant_id is not None and not isinstance(tenant_id, str):
        raise BadRequest('tenantId must be a string', field='tenantId')
    if tenant_id is not None:
        tenant_id = sanitize_string(tenant_id, max_length=TENANT_ID_MAX_LENGTH) or None

    log_security_event('auth', f"Login attempt for {mask_email(email.strip().lower())}")
    begin_login(email, password, tenant_id=tenant_id,
                ip_address=get_client_ip(), user_agent=get_user_agent())


# ==================== Two-Factor Enrollment ====================

@app.route('/api/auth/2fa/setup/start', methods=['POST'])
@rate_limit("20 per minute")
def two_factor_setup_start():
    data = _json_body()
    result = start_enrollment(_require_string(data, 'setupToken'))
    return jsonify(result), 200


@app.route('/api/auth/2fa/setup/confirm', methods=['POST'])
@rate_limit("20 per minute")
def two_factor_setup_confirm():
    data = _json_body()
    result = confirm_enrollment(
        _require_string(data, 'setupToken'),
        _require_string(data, 'code'),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    return jsonify(result), 200


# ==================== Two-Factor Verification ====================

@app.route('/api/auth/2fa/verify', methods=['POST'])
@rate_limit("20 per minute")
def two_factor_verify():
    data = _json_body()
    result = verify_totp_code(
        _require_string(data, 'tempToken'),
        _require_string(data, 'code'),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    return jsonify(result), 200


@app.route('/api/auth/2fa/verify/backup', methods=['POST'])
@rate_limit("20 per minute")
def two_factor_verify_backup():
    data = _json_body()
    result = verify_backup_code(
        _require_string(data, 'tempToken'),
        _require_string(data, 'backupCode'),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    return jsonify(result), 200


# ==================== Session ====================

@app.route('/api/auth/refresh', methods=['POST'])
@rate_limit("30 per minute")
def refresh_session():
    data = _json_body()
    result = rotate_refresh_token(
        _require_string(data, 'refreshToken'),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    return jsonify(result), 200


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    data = _json_body()
    revoked = revoke_session(_require_string(data, 'refreshToken'))
    if revoked:
        log_security_event('session', f"Logout revoked {revoked} refresh tokens")
    return jsonify({'message': 'Logged out'}), 200


@app.route('/api/auth/me')
@token_required
def get_me():
    user = get_current_identity()
    return jsonify({
        'user': user.to_dict(),
        'tenant': g.current_tenant.to_summary() if g.current_tenant else None,
    }), 200


@app.route('/api/auth/2fa/status')
@token_required
def get_two_factor_status():
    return jsonify(two_factor_status(get_current_identity())), 200


if __name__ == '__main__':
    app.run(debug=os.environ.get('FLASK_DEBUG', 'false').lower() == 'true', host='0.0.0.0', port=5000)
