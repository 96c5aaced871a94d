"""
Authentication error types.

Every error carries a stable machine code, the HTTP status it maps to, and the
login state the client must return to. app.py turns any AuthError into
{error, code, state, ...extra} with the matching status.
"""
import enum


class LoginState(enum.Enum):
    """Where the client is in the login flow."""
    AWAITING_CREDENTIALS = 'awaiting_credentials'
    AWAITING_TENANT_SELECTION = 'awaiting_tenant_selection'
    AWAITING_TWO_FACTOR = 'awaiting_two_factor'
    AWAITING_ENROLLMENT = 'awaiting_enrollment'
    AUTHENTICATED = 'authenticated'


class AuthError(Exception):
    """Base class for every error the login flow reports to a client."""

    code = 'AUTH_ERROR'
    status = 400
    state = LoginState.AWAITING_CREDENTIALS
    default_message = 'Authentication failed'

    def __init__(self, message=None, status=None, state=None, **extra):
        self.message = message or self.default_message
        if status is not None:
            self.status = status
        if state is not None:
            self.state = state
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self):
        body = {
            'error': self.message,
            'code': self.code,
            'state': self.state.value,
        }
        body.update(self.extra)
        return body


class BadRequest(AuthError):
    code = 'BAD_REQUEST'
    status = 400
    default_message = 'Invalid request'


class InvalidCredentials(AuthError):
    """Unknown email and wrong password look exactly alike."""
    code = 'INVALID_CREDENTIALS'
    status = 401
    default_message = 'Invalid email or password'


class AccountLocked(AuthError):
    code = 'ACCOUNT_LOCKED'
    status = 423
    default_message = 'Account temporarily locked due to repeated failed logins'


class MultiTenantSelectRequired(AuthError):
    code = 'MULTI_TENANT_SELECT_REQUIRED'
    status = 409
    state = LoginState.AWAITING_TENANT_SELECTION
    default_message = 'Select the business to sign in to'

    def __init__(self, tenants, message=None):
        super().__init__(message, tenants=tenants)
        self.tenants = tenants


class NoTenantAccess(AuthError):
    code = 'NO_TENANT_ACCESS'
    status = 403
    default_message = 'You do not have access to this business'


class TenantNotExist(AuthError):
    code = 'TENANT_NOT_EXIST'
    status = 404
    default_message = 'Business not found'


class TwoFactorRequired(AuthError):
    """Not a failure: password accepted, a TOTP or backup code is next."""
    code = 'TWO_FACTOR_REQUIRED'
    status = 428
    state = LoginState.AWAITING_TWO_FACTOR
    default_message = 'Two-factor authentication required'

    def __init__(self, temp_token, message=None):
        super().__init__(message, tempToken=temp_token)
        self.temp_token = temp_token


class TwoFactorSetupRequired(AuthError):
    """Not a failure: password accepted, TOTP enrollment is next."""
    code = 'TWO_FACTOR_SETUP_REQUIRED'
    status = 428
    state = LoginState.AWAITING_ENROLLMENT
    default_message = 'Two-factor authentication must be set up before signing in'

    def __init__(self, setup_token, admin_id, message=None):
        super().__init__(message, setupToken=setup_token, adminId=admin_id)
        self.setup_token = setup_token
        self.admin_id = admin_id


class InvalidCode(AuthError):
    """Wrong TOTP or backup code. The caller stays on the same step."""
    code = 'INVALID_CODE'
    status = 401
    state = LoginState.AWAITING_TWO_FACTOR
    default_message = 'Invalid verification code'


class EnrollmentNotStarted(AuthError):
    code = 'ENROLLMENT_NOT_STARTED'
    status = 400
    state = LoginState.AWAITING_ENROLLMENT
    default_message = 'Start two-factor setup before confirming a code'


class TokenExpired(AuthError):
    code = 'TOKEN_EXPIRED'
    status = 401
    default_message = 'Your session has expired, please sign in again'


class TokenInvalid(AuthError):
    code = 'TOKEN_INVALID'
    status = 401
    default_message = 'Invalid or already used token'


class TooManyAttempts(AuthError):
    code = 'TOO_MANY_ATTEMPTS'
    status = 429
    default_message = 'Too many incorrect codes, please sign in again'


class RefreshTokenReuse(AuthError):
    code = 'REFRESH_TOKEN_REUSED'
    status = 401
    default_message = 'Session revoked, please sign in again'
