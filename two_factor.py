"""
TOTP enrollment and verification.

Enrollment runs against a setup token:
    start   -> random base32 secret kept in a pending row, otpauth:// URI returned
    confirm -> code checked against the pending secret; only then is the secret
               promoted onto the identity, backup codes minted, and a fresh
               verify token issued (never a session)

Verification runs against a verify token with either a TOTP code or a
single-use backup code, and ends in session issuance.
"""
import hmac
import logging
import secrets
import time
from datetime import datetime

import pyotp
from sqlalchemy.exc import IntegrityError

from models import (
    db, SystemConfig, EnrollmentStep, StepUpPurpose, User, BackupCode, PendingEnrollment,
    LoginHistory, AuditLog, log_login_attempt, log_auth_event,
)
from errors import EnrollmentNotStarted, InvalidCode, LoginState, TokenInvalid
from crypto import encrypt_secret, decrypt_secret, hash_backup_code, normalize_backup_code
from step_up import load_step_up_token, issue_step_up_token, record_failed_attempt, consume_step_up_token
from sessions import issue_session
from security import log_security_event, mask_email

logger = logging.getLogger(__name__)

# One step either side of now, to absorb clock drift.
TOTP_VALID_WINDOW = 1
BACKUP_CODE_BYTES = 5

ENROLLMENT_TRANSITIONS = {
    EnrollmentStep.LOADING: {EnrollmentStep.SCAN},
    EnrollmentStep.SCAN: {EnrollmentStep.SCAN, EnrollmentStep.VERIFY},
    EnrollmentStep.VERIFY: {EnrollmentStep.SCAN, EnrollmentStep.VERIFY, EnrollmentStep.BACKUP},
    EnrollmentStep.BACKUP: {EnrollmentStep.COMPLETE},
    EnrollmentStep.COMPLETE: set(),
}


def advance_step(current, target):
    """Move an enrollment to target, or raise ValueError for an illegal jump."""
    if target not in ENROLLMENT_TRANSITIONS[current]:
        raise ValueError(f"Illegal enrollment transition {current.value} -> {target.value}")
    return target


def generate_backup_codes(count):
    """Plaintext codes as XXXXX-XXXXX, shown to the user exactly once."""
    codes = set()
    while len(codes) < count:
        raw = secrets.token_hex(BACKUP_CODE_BYTES).upper()
        codes.add(f"{raw[:5]}-{raw[5:]}")
    return sorted(codes)


def _matching_time_step(secret, code, for_time=None):
    """The time step a code belongs to, within the drift window, or None."""
    code = (code or '').strip().replace(' ', '')
    if not (code.isascii() and code.isdigit()) or len(code) != 6:
        return None
    totp = pyotp.TOTP(secret)
    current = int(time.time() if for_time is None else for_time) // totp.interval
    for step in range(current - TOTP_VALID_WINDOW, current + TOTP_VALID_WINDOW + 1):
        if hmac.compare_digest(code, totp.generate_otp(step)):
            return step
    return None


def _claim_time_step(user, step):
    """Record step as used. False if it, or a later step, was already accepted."""
    claimed = User.query.filter(
        User.id == user.id,
        db.or_(User.totp_last_step.is_(None), User.totp_last_step < step),
    ).update({'totp_last_step': step}, synchronize_session=False)
    return claimed == 1


def _totp_issuer():
    return SystemConfig.get(SystemConfig.KEY_TOTP_ISSUER, default=SystemConfig.DEFAULT_TOTP_ISSUER)


def _load_setup_claims(setup_token):
    claims = load_step_up_token(setup_token, StepUpPurpose.SETUP)
    if claims.user.two_factor_enabled:
        # Already enrolled elsewhere; this setup token is stale
        raise TokenInvalid()
    return claims


# ==================== Enrollment ====================

def start_enrollment(setup_token):
    """
    Begin (or resume) TOTP enrollment.

    Repeated calls with the same setup token return the same secret.

    Returns:
        dict: {otpauthUrl, secret, step}
    """
    claims = _load_setup_claims(setup_token)
    user = claims.user

    pending = PendingEnrollment.query.filter_by(setup_jti=claims.jti).first()
    if pending is None:
        secret = pyotp.random_base32()
        pending = PendingEnrollment(
            setup_jti=claims.jti,
            user_id=user.id,
            pending_secret=encrypt_secret(secret),
            step=advance_step(EnrollmentStep.LOADING, EnrollmentStep.SCAN),
            expires_at=claims.expires_at,
        )
        db.session.add(pending)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent start for the same token won; use its secret
            db.session.rollback()
            pending = PendingEnrollment.query.filter_by(setup_jti=claims.jti).first()
            if pending is None:
                raise TokenInvalid()
            secret = decrypt_secret(pending.pending_secret)
        else:
            logger.info(f"TOTP enrollment started for {mask_email(user.email)}")
    else:
        secret = decrypt_secret(pending.pending_secret)
        pending.step = advance_step(pending.step, EnrollmentStep.SCAN)
        db.session.commit()

    otpauth_url = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=_totp_issuer())
    return {
        'otpauthUrl': otpauth_url,
        'secret': secret,
        'step': pending.step.value,
    }


def confirm_enrollment(setup_token, code, ip_address=None, user_agent=None):
    """
    Finish enrollment with a code from the authenticator app.

    On a wrong code nothing is persisted on the identity and the same setup
    token can be retried within its attempt budget.

    Returns:
        dict: {backupCodes, tempToken, step}
    """
    claims = _load_setup_claims(setup_token)
    user = claims.user

    pending = PendingEnrollment.query.filter_by(setup_jti=claims.jti, user_id=user.id).first()
    if pending is None or pending.is_expired():
        raise EnrollmentNotStarted()

    pending.step = advance_step(pending.step, EnrollmentStep.VERIFY)
    secret = decrypt_secret(pending.pending_secret)

    step = _matching_time_step(secret, code)
    if step is None:
        db.session.commit()
        log_login_attempt(user.email, LoginHistory.METHOD_ENROLLMENT, False, user_id=user.id,
                          tenant_id=claims.tenant_id, failure_reason='invalid_code',
                          ip_address=ip_address, user_agent=user_agent)
        remaining = record_failed_attempt(claims)
        raise InvalidCode(status=400, state=LoginState.AWAITING_ENROLLMENT, attemptsRemaining=remaining)

    now = datetime.utcnow()
    promoted = User.query.filter(
        User.id == user.id,
        User.two_factor_enabled.is_(False),
    ).update({
        'two_factor_enabled': True,
        'totp_secret': pending.pending_secret,
        'two_factor_enabled_at': now,
        'two_factor_last_used_at': now,
        'totp_last_step': step,
    }, synchronize_session=False)
    if promoted != 1:
        db.session.rollback()
        raise TokenInvalid()

    count = SystemConfig.get_int(SystemConfig.KEY_BACKUP_CODE_COUNT, default=SystemConfig.DEFAULT_BACKUP_CODE_COUNT)
    backup_codes = generate_backup_codes(count)
    BackupCode.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    for backup_code in backup_codes:
        db.session.add(BackupCode(user_id=user.id, code_hash=hash_backup_code(backup_code)))

    consume_step_up_token(claims)

    step = advance_step(pending.step, EnrollmentStep.BACKUP)
    db.session.delete(pending)
    log_auth_event(user.id, AuditLog.ACTION_2FA_ENABLED, tenant_id=claims.tenant_id,
                   details={'backup_codes': count}, ip_address=ip_address)

    temp_token = issue_step_up_token(user, StepUpPurpose.VERIFY, claims.tenant)
    db.session.commit()

    log_login_attempt(user.email, LoginHistory.METHOD_ENROLLMENT, True, user_id=user.id,
                      tenant_id=claims.tenant_id, ip_address=ip_address, user_agent=user_agent)
    log_security_event('enrollment', f"Two-factor enabled for {mask_email(user.email)}", user_id=user.id)

    return {
        'backupCodes': backup_codes,
        'tempToken': temp_token,
        'step': step.value,
    }


# ==================== Verification ====================

def _load_verify_claims(temp_token):
    claims = load_step_up_token(temp_token, StepUpPurpose.VERIFY)
    if not claims.user.two_factor_enabled or not claims.user.totp_secret:
        raise TokenInvalid()
    return claims


def _reject_code(claims, method, ip_address, user_agent):
    user = claims.user
    log_login_attempt(user.email, method, False, user_id=user.id, tenant_id=claims.tenant_id,
                      failure_reason='invalid_code', ip_address=ip_address, user_agent=user_agent)
    remaining = record_failed_attempt(claims)
    raise InvalidCode(attemptsRemaining=remaining)


def verify_totp_code(temp_token, code, ip_address=None, user_agent=None):
    """Check a TOTP code and, on success, issue the session."""
    claims = _load_verify_claims(temp_token)
    user = claims.user
    tenant = claims.tenant

    # A code is accepted once; replays inside the drift window are wrong codes
    step = _matching_time_step(decrypt_secret(user.totp_secret), code)
    if step is None or not _claim_time_step(user, step):
        _reject_code(claims, LoginHistory.METHOD_TOTP, ip_address, user_agent)

    consume_step_up_token(claims)
    user.two_factor_last_used_at = datetime.utcnow()
    db.session.commit()

    log_login_attempt(user.email, LoginHistory.METHOD_TOTP, True, user_id=user.id,
                      tenant_id=claims.tenant_id, ip_address=ip_address, user_agent=user_agent)
    return issue_session(user, tenant, ip_address=ip_address, user_agent=user_agent)


def verify_backup_code(temp_token, backup_code, ip_address=None, user_agent=None):
    """
    Spend a backup code and, on success, issue the session.

    The code's row is deleted by a single conditional DELETE, so two requests
    racing with the same code cannot both succeed.
    """
    claims = _load_verify_claims(temp_token)
    user = claims.user
    tenant = claims.tenant

    deleted = 0
    if normalize_backup_code(backup_code):
        deleted = BackupCode.query.filter_by(
            user_id=user.id,
            code_hash=hash_backup_code(backup_code),
        ).delete(synchronize_session=False)

    if deleted != 1:
        db.session.rollback()
        _reject_code(claims, LoginHistory.METHOD_BACKUP_CODE, ip_address, user_agent)

    consume_step_up_token(claims)
    remaining = BackupCode.query.filter_by(user_id=user.id).count()
    user.two_factor_last_used_at = datetime.utcnow()
    log_auth_event(user.id, AuditLog.ACTION_BACKUP_CODE_USED, tenant_id=claims.tenant_id,
                   details={'remaining': remaining}, ip_address=ip_address)
    db.session.commit()

    log_login_attempt(user.email, LoginHistory.METHOD_BACKUP_CODE, True, user_id=user.id,
                      tenant_id=claims.tenant_id, ip_address=ip_address, user_agent=user_agent)
    if remaining <= 2:
        log_security_event('two_factor', f"Only {remaining} backup codes left", user_id=user.id,
                           severity='WARNING')

    payload = issue_session(user, tenant, ip_address=ip_address, user_agent=user_agent)
    payload['backupCodesRemaining'] = remaining
    return payload


def two_factor_status(user):
    return {
        'enabled': bool(user.two_factor_enabled),
        'backupCodesRemaining': user.remaining_backup_codes(),
        'lastUsedAt': user.two_factor_last_used_at.isoformat() if user.two_factor_last_used_at else None,
    }
