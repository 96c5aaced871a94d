"""
Short-lived, purpose-scoped tokens that carry a login between its steps.

A step-up token is an HS256 JWT:
    {sub, purpose, tid, iat, exp, jti, typ: "step_up"}

Signature, expiry and purpose are checked statelessly. A ledger row keyed by
jti tracks wrong-code attempts and consumption, so each token succeeds at most
once and cannot be brute forced past the configured retry budget.
"""
import logging
import secrets
from datetime import datetime, timedelta

import jwt
from flask import current_app, has_app_context

from models import db, SystemConfig, StepUpPurpose, StepUpToken, Tenant, User, AuditLog, log_auth_event
from errors import TokenExpired, TokenInvalid, TooManyAttempts, TwoFactorRequired, TwoFactorSetupRequired
from security import log_security_event

logger = logging.getLogger(__name__)

ALGORITHM = 'HS256'
TOKEN_TYPE = 'step_up'
DEV_SIGNING_KEY = 'dev-only-signing-key-change-me'

PURPOSE_TTL_KEYS = {
    StepUpPurpose.VERIFY: (SystemConfig.KEY_TEMP_TOKEN_TTL_MINUTES, SystemConfig.DEFAULT_TEMP_TOKEN_TTL_MINUTES),
    StepUpPurpose.SETUP: (SystemConfig.KEY_SETUP_TOKEN_TTL_MINUTES, SystemConfig.DEFAULT_SETUP_TOKEN_TTL_MINUTES),
}


def get_signing_key():
    """HS256 key shared by step-up and access tokens."""
    from keyvault_client import keyvault_client

    key = keyvault_client.get_token_signing_key()
    if not key and has_app_context():
        key = current_app.config.get('SECRET_KEY')
    if not key:
        logger.warning("Token signing key not configured - using development key")
        key = DEV_SIGNING_KEY
    return key


class StepUpClaims:
    """A verified step-up token together with the identity it names."""

    def __init__(self, payload, user):
        self.payload = payload
        self.user = user
        self.jti = payload['jti']
        self.purpose = StepUpPurpose(payload['purpose'])
        self.tenant_id = payload.get('tid')

    @property
    def tenant(self):
        if not self.tenant_id:
            return None
        return db.session.get(Tenant, self.tenant_id)

    @property
    def expires_at(self):
        return datetime.utcfromtimestamp(self.payload['exp'])


def issue_step_up_token(user, purpose, tenant=None):
    """
    Mint a step-up token and its ledger row.

    The row is added to the session but not committed; the caller commits it
    together with whatever else the step changed.
    """
    purpose = StepUpPurpose(purpose)
    ttl_key, ttl_default = PURPOSE_TTL_KEYS[purpose]
    ttl_minutes = SystemConfig.get_int(ttl_key, default=ttl_default)

    now = datetime.utcnow().replace(microsecond=0)
    expires_at = now + timedelta(minutes=ttl_minutes)
    jti = secrets.token_urlsafe(24)

    payload = {
        'sub': str(user.id),
        'purpose': purpose.value,
        'tid': tenant.id if tenant else None,
        'iat': now,
        'exp': expires_at,
        'jti': jti,
        'typ': TOKEN_TYPE,
    }
    token = jwt.encode(payload, get_signing_key(), algorithm=ALGORITHM)

    db.session.add(StepUpToken(
        jti=jti,
        user_id=user.id,
        tenant_id=tenant.id if tenant else None,
        purpose=purpose,
        issued_at=now,
        expires_at=expires_at,
    ))
    return token


def issue_challenge(user, tenant=None):
    """
    Build the second-factor signal for an identity whose password was accepted.

    Enrolled identities get a verify token, everyone else a setup token. The
    ledger row is committed before returning; callers raise the result.
    """
    if user.two_factor_enabled:
        token = issue_step_up_token(user, StepUpPurpose.VERIFY, tenant)
        db.session.commit()
        return TwoFactorRequired(token)

    token = issue_step_up_token(user, StepUpPurpose.SETUP, tenant)
    db.session.commit()
    return TwoFactorSetupRequired(token, user.id)


def load_step_up_token(token, purpose):
    """
    Verify a step-up token for the given purpose.

    Raises:
        TokenExpired: past its exp
        TokenInvalid: bad signature, wrong type or purpose, unknown or already used
        TooManyAttempts: burned after too many wrong codes
    """
    purpose = StepUpPurpose(purpose)
    if not token or not isinstance(token, str):
        raise TokenInvalid()

    try:
        payload = jwt.decode(
            token,
            get_signing_key(),
            algorithms=[ALGORITHM],
            options={'require': ['exp', 'iat', 'sub', 'jti']},
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpired()
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected step-up token: {e}")
        raise TokenInvalid()

    if payload.get('typ') != TOKEN_TYPE:
        raise TokenInvalid()
    if payload.get('purpose') != purpose.value:
        log_security_event('auth', f"Step-up token presented for wrong purpose {purpose.value}",
                           severity='WARNING')
        raise TokenInvalid()

    ledger = StepUpToken.query.filter_by(jti=payload['jti']).first()
    if ledger is None or ledger.consumed_at is not None:
        raise TokenInvalid()
    if ledger.burned_at is not None:
        raise TooManyAttempts()

    try:
        user = db.session.get(User, int(payload['sub']))
    except (TypeError, ValueError):
        raise TokenInvalid()
    if user is None or not user.is_active or ledger.user_id != user.id:
        raise TokenInvalid()

    return StepUpClaims(payload, user)


def record_failed_attempt(claims):
    """
    Count one wrong code against the token.

    Returns:
        int: attempts left before the token is burned

    Raises:
        TooManyAttempts: this failure exhausted the budget; the token is burned
    """
    max_attempts = SystemConfig.get_int(
        SystemConfig.KEY_MAX_CODE_ATTEMPTS,
        default=SystemConfig.DEFAULT_MAX_CODE_ATTEMPTS
    )

    StepUpToken.query.filter(
        StepUpToken.jti == claims.jti,
        StepUpToken.consumed_at.is_(None),
        StepUpToken.burned_at.is_(None),
    ).update({'failed_attempts': StepUpToken.failed_attempts + 1}, synchronize_session=False)
    db.session.commit()

    ledger = StepUpToken.query.filter_by(jti=claims.jti).first()
    if ledger is None or ledger.consumed_at is not None:
        raise TokenInvalid()

    if ledger.burned_at is not None or ledger.failed_attempts >= max_attempts:
        StepUpToken.query.filter(
            StepUpToken.jti == claims.jti,
            StepUpToken.burned_at.is_(None),
        ).update({'burned_at': datetime.utcnow()}, synchronize_session=False)
        log_auth_event(claims.user.id, AuditLog.ACTION_STEP_UP_BURNED, tenant_id=claims.tenant_id,
                       details={'purpose': claims.purpose.value, 'failed_attempts': ledger.failed_attempts})
        db.session.commit()
        log_security_event('two_factor', f"Step-up token burned after {ledger.failed_attempts} failed codes",
                           user_id=claims.user.id, severity='WARNING')
        raise TooManyAttempts()

    return max_attempts - ledger.failed_attempts


def consume_step_up_token(claims):
    """
    Mark the token used. Exactly one caller can win.

    Not committed here; a lost race rolls back the caller's pending changes.
    """
    updated = StepUpToken.query.filter(
        StepUpToken.jti == claims.jti,
        StepUpToken.consumed_at.is_(None),
        StepUpToken.burned_at.is_(None),
    ).update({'consumed_at': datetime.utcnow()}, synchronize_session=False)

    if updated != 1:
        db.session.rollback()
        raise TokenInvalid()
