from functools import wraps
from flask import request, g
from werkzeug.security import check_password_hash, generate_password_hash
from datetime import datetime, timedelta
import logging

from errors import AccountLocked, InvalidCredentials, NoTenantAccess, TenantNotExist, TokenInvalid

logger = logging.getLogger(__name__)

_dummy_hash = None


def _get_dummy_hash():
    """Hash checked when the email is unknown, so both failures cost the same."""
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = generate_password_hash('not-a-real-password')
    return _dummy_hash


def get_active_lockout(email):
    from models import AccountLockout

    lockout = AccountLockout.query.filter_by(email=email, unlocked_at=None).order_by(
        AccountLockout.expires_at.desc()
    ).first()
    if lockout is not None and lockout.is_active():
        return lockout
    return None


def _lock_if_over_limit(email, user, ip_address):
    """Create a lockout once recent password failures reach the limit."""
    from models import db, SystemConfig, LoginHistory, AccountLockout
    from security import log_security_event, mask_email

    max_attempts = SystemConfig.get_int(
        SystemConfig.KEY_MAX_LOGIN_ATTEMPTS,
        default=SystemConfig.DEFAULT_MAX_LOGIN_ATTEMPTS
    )
    window = SystemConfig.get_int(
        SystemConfig.KEY_LOGIN_ATTEMPT_WINDOW_MINUTES,
        default=SystemConfig.DEFAULT_LOGIN_ATTEMPT_WINDOW_MINUTES
    )
    duration = SystemConfig.get_int(
        SystemConfig.KEY_LOCKOUT_DURATION_MINUTES,
        default=SystemConfig.DEFAULT_LOCKOUT_DURATION_MINUTES
    )

    now = datetime.utcnow()
    since = now - timedelta(minutes=window)

    # Failures before the previous lockout were already punished
    previous = AccountLockout.query.filter_by(email=email).order_by(AccountLockout.locked_at.desc()).first()
    if previous and previous.locked_at > since:
        since = previous.locked_at

    failures = LoginHistory.query.filter(
        LoginHistory.email == email,
        LoginHistory.login_method == LoginHistory.METHOD_PASSWORD,
        LoginHistory.success.is_(False),
        # Refusals during a lockout are not password guesses
        db.or_(
            LoginHistory.failure_reason.is_(None),
            LoginHistory.failure_reason != LoginHistory.FAILURE_ACCOUNT_LOCKED,
        ),
        LoginHistory.created_at >= since,
    ).count()

    if failures < max_attempts:
        return None

    lockout = AccountLockout(
        user_id=user.id if user else None,
        email=email,
        ip_address=ip_address,
        reason='too_many_failed_logins',
        failed_attempts=failures,
        locked_at=now,
        expires_at=now + timedelta(minutes=duration),
    )
    db.session.add(lockout)
    db.session.commit()
    log_security_event('lockout', f"Locked {mask_email(email)} for {duration} minutes after {failures} failures",
                       user_id=user.id if user else None, severity='WARNING')
    return lockout


def verify_credentials(email, password, ip_address=None, user_agent=None):
    """
    Check an email/password pair.

    Unknown emails and wrong passwords raise the same InvalidCredentials, and
    both pay for one password hash check.

    Raises:
        AccountLocked: email is under an active lockout
        InvalidCredentials: anything else that is not a match
    """
    from models import User, LoginHistory, log_login_attempt
    from security import sanitize_email, mask_email

    clean_email = sanitize_email(email)
    password = password if isinstance(password, str) else ''

    if clean_email is None:
        check_password_hash(_get_dummy_hash(), password)
        raise InvalidCredentials()

    lockout = get_active_lockout(clean_email)
    if lockout:
        log_login_attempt(clean_email, LoginHistory.METHOD_PASSWORD, False, user_id=lockout.user_id,
                          failure_reason=LoginHistory.FAILURE_ACCOUNT_LOCKED, ip_address=ip_address, user_agent=user_agent)
        raise AccountLocked(lockedUntil=lockout.expires_at.isoformat())

    user = User.query.filter_by(email=clean_email).first()
    if user is not None and user.is_active and user.has_password():
        matched = user.check_password(password)
    else:
        check_password_hash(_get_dummy_hash(), password)
        matched = False

    if not matched:
        log_login_attempt(clean_email, LoginHistory.METHOD_PASSWORD, False,
                          user_id=user.id if user else None, failure_reason=LoginHistory.FAILURE_INVALID_CREDENTIALS,
                          ip_address=ip_address, user_agent=user_agent)
        logger.info(f"Password rejected for {mask_email(clean_email)}")
        _lock_if_over_limit(clean_email, user, ip_address)
        raise InvalidCredentials()

    log_login_attempt(clean_email, LoginHistory.METHOD_PASSWORD, True, user_id=user.id,
                      ip_address=ip_address, user_agent=user_agent)
    return user


def begin_login(email, password, tenant_id=None, ip_address=None, user_agent=None):
    """
    Run the password step of a login. Never returns.

    On success raises the second-factor signal (TwoFactorRequired or
    TwoFactorSetupRequired). A stale tenant hint is dropped and resolution is
    retried once without it; a second failure propagates.
    """
    from tenants import resolve_tenant
    from step_up import issue_challenge
    from security import log_security_event

    user = verify_credentials(email, password, ip_address=ip_address, user_agent=user_agent)

    try:
        tenant = resolve_tenant(user, tenant_id)
    except (TenantNotExist, NoTenantAccess) as e:
        if not tenant_id:
            raise
        log_security_event('auth', f"Ignoring stale tenant hint ({e.code})", user_id=user.id)
        tenant = resolve_tenant(user, None)

    raise issue_challenge(user, tenant)


def get_current_identity():
    """The identity behind the current bearer token, or None outside token_required."""
    return getattr(g, 'current_user', None)


def token_required(f):
    """Decorator requiring a valid access token in the Authorization header."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        from models import db, User, Tenant
        from sessions import decode_access_token

        header = request.headers.get('Authorization', '')
        if not header.startswith('Bearer '):
            raise TokenInvalid('Authentication required')

        claims = decode_access_token(header[len('Bearer '):].strip())
        try:
            user = db.session.get(User, int(claims['sub']))
        except (TypeError, ValueError):
            raise TokenInvalid()
        if user is None or not user.is_active:
            raise TokenInvalid()

        tenant = None
        if claims.get('tid'):
            tenant = db.session.get(Tenant, claims['tid'])
            if tenant is None or not tenant.is_available:
                raise TokenInvalid()

        g.current_user = user
        g.current_tenant = tenant
        return f(*args, **kwargs)
    return decorated_function
