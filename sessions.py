"""
Session issuance, refresh-token rotation and post-login routing.

Only reached after a completed TOTP or backup-code verification. A session is
a short-lived access JWT (typ "access") plus an opaque refresh token stored as
a keyed hash. Refresh tokens rotate on every use within a family; replaying a
revoked member revokes the family.
"""
import logging
import secrets
import uuid
from datetime import datetime, timedelta

import jwt

from models import (
    db, SystemConfig, IdentityRole, BusinessType, RefreshToken, Tenant, User, AuditLog,
    log_auth_event, password_expired,
)
from errors import RefreshTokenReuse, TokenExpired, TokenInvalid
from crypto import hash_token
from security import log_security_event
from step_up import ALGORITHM, get_signing_key

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = 'access'
REFRESH_TOKEN_BYTES = 48

# Platform roles land on their console regardless of tenant.
ROLE_DASHBOARDS = {
    IdentityRole.SUPER_ADMIN: '/super-admin',
    IdentityRole.PLATFORM_ADMIN: '/admin',
    IdentityRole.TECH_SUPPORT_MANAGER: '/tech-support',
    IdentityRole.TENANT_ADMIN: None,
    IdentityRole.STAFF: None,
}

BUSINESS_DASHBOARDS = {
    BusinessType.CLINIC: '/dashboard/clinic',
    BusinessType.SALON: '/dashboard/salon',
    BusinessType.PG: '/dashboard/pg',
    BusinessType.COWORKING: '/dashboard/coworking',
    BusinessType.SERVICE: '/dashboard/service',
    BusinessType.REALESTATE: '/dashboard/realestate',
    BusinessType.TOURISM: '/dashboard/tourism',
    BusinessType.EDUCATION: '/dashboard/education',
    BusinessType.LOGISTICS: '/dashboard/logistics',
    BusinessType.LEGAL: '/dashboard/legal',
    BusinessType.FURNITURE: '/dashboard/furniture',
    BusinessType.CONSULTING: '/dashboard/consulting',
    BusinessType.SOFTWARE_SERVICES: '/dashboard/software-services',
}

DEFAULT_DASHBOARD = '/dashboard/service'


def resolve_redirect(user, tenant=None):
    """Where the client goes after login: role console first, then the tenant's vertical."""
    if user.role.is_platform_role:
        return ROLE_DASHBOARDS[user.role]
    if tenant is not None and tenant.business_type is not None:
        return BUSINESS_DASHBOARDS.get(tenant.business_type, DEFAULT_DASHBOARD)
    return DEFAULT_DASHBOARD


def _create_access_token(user, tenant):
    ttl = SystemConfig.get_int(
        SystemConfig.KEY_ACCESS_TOKEN_TTL_MINUTES,
        default=SystemConfig.DEFAULT_ACCESS_TOKEN_TTL_MINUTES
    )
    now = datetime.utcnow().replace(microsecond=0)
    payload = {
        'sub': str(user.id),
        'tid': tenant.id if tenant else None,
        'role': user.role.value,
        'iat': now,
        'exp': now + timedelta(minutes=ttl),
        'jti': secrets.token_urlsafe(16),
        'typ': ACCESS_TOKEN_TYPE,
    }
    return jwt.encode(payload, get_signing_key(), algorithm=ALGORITHM)


def _family_deadline(family_started_at):
    """Absolute end of a refresh family, however often it is rotated."""
    hours = SystemConfig.get_int(
        SystemConfig.KEY_SESSION_ABSOLUTE_TIMEOUT_HOURS,
        default=SystemConfig.DEFAULT_SESSION_ABSOLUTE_TIMEOUT_HOURS
    )
    return family_started_at + timedelta(hours=hours)


def _create_refresh_token(user, tenant, family_id=None, parent_id=None, family_started_at=None,
                          ip_address=None, user_agent=None):
    """Add a refresh-token row to the session. Returns (raw token, row)."""
    ttl_days = SystemConfig.get_int(
        SystemConfig.KEY_REFRESH_TOKEN_TTL_DAYS,
        default=SystemConfig.DEFAULT_REFRESH_TOKEN_TTL_DAYS
    )
    now = datetime.utcnow()
    family_started_at = family_started_at or now
    raw = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
    row = RefreshToken(
        id=str(uuid.uuid4()),
        user_id=user.id,
        tenant_id=tenant.id if tenant else None,
        token_hash=hash_token(raw),
        family_id=family_id or str(uuid.uuid4()),
        family_started_at=family_started_at,
        parent_id=parent_id,
        expires_at=min(now + timedelta(days=ttl_days), _family_deadline(family_started_at)),
        ip_address=ip_address,
        user_agent=user_agent[:500] if user_agent else None,
    )
    db.session.add(row)
    return raw, row


def _session_payload(user, tenant, access_token, refresh_token):
    return {
        'accessToken': access_token,
        'refreshToken': refresh_token,
        'tenant': tenant.to_summary() if tenant else None,
        'user': user.to_dict(),
        'redirect': resolve_redirect(user, tenant),
        'forcePasswordReset': bool(user.must_change_password) or password_expired(user),
    }


def issue_session(user, tenant=None, ip_address=None, user_agent=None):
    """Mint an access/refresh pair for a fully verified identity and commit it."""
    user.last_login = datetime.utcnow()
    refresh_token, _ = _create_refresh_token(user, tenant, ip_address=ip_address, user_agent=user_agent)
    access_token = _create_access_token(user, tenant)
    db.session.commit()

    log_security_event('session', f"Session issued for tenant {tenant.id if tenant else '-'}", user_id=user.id)
    return _session_payload(user, tenant, access_token, refresh_token)


def revoke_family(family_id, reason):
    """Revoke every live token in a family. Returns how many were revoked; the caller commits."""
    return RefreshToken.query.filter(
        RefreshToken.family_id == family_id,
        RefreshToken.revoked_at.is_(None),
    ).update({'revoked_at': datetime.utcnow(), 'revoke_reason': reason}, synchronize_session=False)


def _handle_reuse(row):
    revoked = revoke_family(row.family_id, RefreshToken.REASON_REUSE_DETECTED)
    log_auth_event(row.user_id, AuditLog.ACTION_REFRESH_REUSE, tenant_id=row.tenant_id,
                   details={'family_id': row.family_id, 'revoked': revoked})
    db.session.commit()
    log_security_event('session', f"Refresh token reuse detected, revoked {revoked} tokens in family",
                       user_id=row.user_id, severity='WARNING')
    raise RefreshTokenReuse()


def rotate_refresh_token(raw_token, ip_address=None, user_agent=None):
    """
    Exchange a refresh token for a new session in the same family.

    Raises:
        TokenInvalid: unknown token, or the identity/tenant is no longer usable
        TokenExpired: token past its expiry, or its family past the absolute session lifetime
        RefreshTokenReuse: token was already rotated or revoked
    """
    if not raw_token or not isinstance(raw_token, str):
        raise TokenInvalid()

    row = RefreshToken.query.filter_by(token_hash=hash_token(raw_token)).first()
    if row is None:
        raise TokenInvalid()
    if row.is_revoked():
        if row.revoke_reason == RefreshToken.REASON_SESSION_EXPIRED:
            raise TokenExpired()
        _handle_reuse(row)
    if datetime.utcnow() >= _family_deadline(row.family_started_at):
        revoke_family(row.family_id, RefreshToken.REASON_SESSION_EXPIRED)
        db.session.commit()
        log_security_event('session', "Refresh family reached its absolute lifetime", user_id=row.user_id)
        raise TokenExpired()
    if row.is_expired():
        raise TokenExpired()

    claimed = RefreshToken.query.filter(
        RefreshToken.id == row.id,
        RefreshToken.revoked_at.is_(None),
    ).update({'revoked_at': datetime.utcnow(), 'revoke_reason': RefreshToken.REASON_ROTATION},
             synchronize_session=False)
    if claimed != 1:
        # Lost a race with another rotation of the same token
        db.session.rollback()
        _handle_reuse(row)

    user = db.session.get(User, row.user_id)
    tenant = db.session.get(Tenant, row.tenant_id) if row.tenant_id else None
    if user is None or not user.is_active or (row.tenant_id and (tenant is None or not tenant.is_available)):
        revoke_family(row.family_id, RefreshToken.REASON_LOGOUT)
        db.session.commit()
        raise TokenInvalid()

    refresh_token, new_row = _create_refresh_token(
        user, tenant,
        family_id=row.family_id,
        parent_id=row.id,
        family_started_at=row.family_started_at,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    row.replaced_by_id = new_row.id
    access_token = _create_access_token(user, tenant)
    db.session.commit()

    return _session_payload(user, tenant, access_token, refresh_token)


def revoke_session(raw_token):
    """Logout: revoke the presented token's whole family. Unknown tokens are ignored."""
    if not raw_token or not isinstance(raw_token, str):
        return 0
    row = RefreshToken.query.filter_by(token_hash=hash_token(raw_token)).first()
    if row is None:
        return 0
    revoked = revoke_family(row.family_id, RefreshToken.REASON_LOGOUT)
    db.session.commit()
    return revoked


def decode_access_token(token):
    """
    Verify an access token and return its claims.

    Step-up tokens are signed with the same key, so the type claim is required.
    """
    try:
        payload = jwt.decode(
            token,
            get_signing_key(),
            algorithms=[ALGORITHM],
            options={'require': ['exp', 'iat', 'sub']},
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpired()
    except jwt.InvalidTokenError:
        raise TokenInvalid()

    if payload.get('typ') != ACCESS_TOKEN_TYPE:
        raise TokenInvalid()
    return payload
