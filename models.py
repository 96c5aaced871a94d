import os
import enum
import uuid
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timedelta
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()


# ============================================================================
# ENUMS
# ============================================================================

class IdentityRole(enum.Enum):
    """Roles an identity can hold. Platform roles have no tenant."""
    SUPER_ADMIN = 'super_admin'
    PLATFORM_ADMIN = 'platform_admin'
    TECH_SUPPORT_MANAGER = 'tech_support_manager'
    TENANT_ADMIN = 'tenant_admin'
    STAFF = 'staff'

    @property
    def is_platform_role(self):
        return self in (
            IdentityRole.SUPER_ADMIN,
            IdentityRole.PLATFORM_ADMIN,
            IdentityRole.TECH_SUPPORT_MANAGER,
        )


class BusinessType(enum.Enum):
    """Tenant verticals. Drives the post-login dashboard."""
    CLINIC = 'clinic'
    SALON = 'salon'
    PG = 'pg'
    COWORKING = 'coworking'
    SERVICE = 'service'
    REALESTATE = 'realestate'
    TOURISM = 'tourism'
    EDUCATION = 'education'
    LOGISTICS = 'logistics'
    LEGAL = 'legal'
    FURNITURE = 'furniture'
    CONSULTING = 'consulting'
    SOFTWARE_SERVICES = 'software_services'


class StepUpPurpose(enum.Enum):
    """What a step-up token authorises its bearer to do next."""
    VERIFY = '2fa_verify'
    SETUP = '2fa_setup'


class EnrollmentStep(enum.Enum):
    """TOTP enrollment progress: loading -> scan -> verify -> backup -> complete."""
    LOADING = 'loading'
    SCAN = 'scan'
    VERIFY = 'verify'
    BACKUP = 'backup'
    COMPLETE = 'complete'


def _new_uuid():
    return str(uuid.uuid4())


class SystemConfig(db.Model):
    """Security policy knobs, editable at runtime without a redeploy."""

    __tablename__ = 'system_config'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), nullable=False, unique=True)
    value = db.Column(db.String(500), nullable=True)
    description = db.Column(db.String(500), nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Login lockout
    KEY_MAX_LOGIN_ATTEMPTS = 'max_login_attempts'
    KEY_LOGIN_ATTEMPT_WINDOW_MINUTES = 'login_attempt_window_minutes'
    KEY_LOCKOUT_DURATION_MINUTES = 'lockout_duration_minutes'

    # Step-up tokens
    KEY_TEMP_TOKEN_TTL_MINUTES = 'temp_token_ttl_minutes'
    KEY_SETUP_TOKEN_TTL_MINUTES = 'setup_token_ttl_minutes'
    KEY_MAX_CODE_ATTEMPTS = 'max_code_attempts'

    # Sessions
    KEY_ACCESS_TOKEN_TTL_MINUTES = 'access_token_ttl_minutes'
    KEY_REFRESH_TOKEN_TTL_DAYS = 'refresh_token_ttl_days'
    KEY_SESSION_ABSOLUTE_TIMEOUT_HOURS = 'session_absolute_timeout_hours'
    KEY_PASSWORD_EXPIRY_DAYS = 'password_expiry_days'

    # Enrollment
    KEY_BACKUP_CODE_COUNT = 'backup_code_count'
    KEY_TOTP_ISSUER = 'totp_issuer'

    DEFAULT_MAX_LOGIN_ATTEMPTS = 5
    DEFAULT_LOGIN_ATTEMPT_WINDOW_MINUTES = 30
    DEFAULT_LOCKOUT_DURATION_MINUTES = 30
    DEFAULT_TEMP_TOKEN_TTL_MINUTES = 5
    DEFAULT_SETUP_TOKEN_TTL_MINUTES = 10
    DEFAULT_MAX_CODE_ATTEMPTS = 5
    DEFAULT_ACCESS_TOKEN_TTL_MINUTES = 15
    DEFAULT_REFRESH_TOKEN_TTL_DAYS = 30
    DEFAULT_SESSION_ABSOLUTE_TIMEOUT_HOURS = 24  # caps a refresh family from its first login
    DEFAULT_PASSWORD_EXPIRY_DAYS = 90  # 0 disables expiry
    DEFAULT_BACKUP_CODE_COUNT = 10
    DEFAULT_TOTP_ISSUER = os.environ.get('TOTP_ISSUER', 'MyBizStream')

    @staticmethod
    def get(key, default=None):
        """Get a configuration value."""
        config = SystemConfig.query.filter_by(key=key).first()
        if config:
            return config.value
        return default

    @staticmethod
    def get_int(key, default=0):
        """Get a configuration value as integer."""
        value = SystemConfig.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except (ValueError, TypeError):
            return default

    @staticmethod
    def set(key, value, description=None):
        """Set a configuration value."""
        config = SystemConfig.query.filter_by(key=key).first()
        if config:
            config.value = str(value)
            if description:
                config.description = description
        else:
            config = SystemConfig(key=key, value=str(value), description=description)
            db.session.add(config)
        db.session.commit()
        return config

    def to_dict(self):
        return {
            'id': self.id,
            'key': self.key,
            'value': self.value,
            'description': self.description,
            'updated_at': self.updated_at.isoformat()
        }


# ============================================================================
# TENANCY
# ============================================================================

class Tenant(db.Model):
    """
    An isolated business account.

    Key invariants:
    - A soft-deleted or suspended tenant never resolves during login
    - Identities reach a tenant only through a TenantMembership
    """
    __tablename__ = 'tenants'

    id = db.Column(db.String(36), primary_key=True, default=_new_uuid)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=True)
    country = db.Column(db.String(10), nullable=True)
    business_type = db.Column(db.Enum(BusinessType), default=BusinessType.SERVICE)
    status = db.Column(db.String(20), default='active')  # active, suspended
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_available(self):
        return self.deleted_at is None and (self.status or 'active') == 'active'

    def to_summary(self):
        """Shape used in tenant selection lists and session payloads."""
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'country': self.country,
            'businessType': self.business_type.value if self.business_type else None,
        }


class TenantMembership(db.Model):
    """Links identities to tenants."""
    __tablename__ = 'tenant_memberships'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenants.id'), nullable=False)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref=db.backref('memberships', lazy='dynamic'))
    tenant = db.relationship('Tenant', backref=db.backref('memberships', lazy='dynamic'))

    __table_args__ = (
        db.UniqueConstraint('user_id', 'tenant_id', name='unique_user_tenant'),
    )


# ============================================================================
# IDENTITY
# ============================================================================

class User(db.Model):
    """An administrative or tenant-user identity with password + TOTP login."""

    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    password_hash = db.Column(db.String(255), nullable=True)
    role = db.Column(db.Enum(IdentityRole), nullable=False, default=IdentityRole.STAFF)
    is_active = db.Column(db.Boolean, default=True)

    # Two-factor state. totp_secret holds the Fernet-encrypted secret and is
    # only ever written together with two_factor_enabled=True.
    two_factor_enabled = db.Column(db.Boolean, nullable=False, default=False)
    totp_secret = db.Column(db.String(255), nullable=True)
    two_factor_enabled_at = db.Column(db.DateTime, nullable=True)
    two_factor_last_used_at = db.Column(db.DateTime, nullable=True)
    totp_last_step = db.Column(db.Integer, nullable=True)  # newest accepted TOTP time step

    must_change_password = db.Column(db.Boolean, default=False)
    password_changed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_login = db.Column(db.DateTime, nullable=True)

    backup_codes = db.relationship('BackupCode', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    def set_password(self, password):
        """Hash and set the password."""
        self.password_hash = generate_password_hash(password)
        self.password_changed_at = datetime.utcnow()

    def check_password(self, password):
        """Check if the provided password matches."""
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def has_password(self):
        return self.password_hash is not None

    def get_full_name(self):
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.first_name or self.last_name or ''

    def available_tenants(self):
        """Tenants this identity may log into, oldest membership first."""
        memberships = self.memberships.order_by(TenantMembership.joined_at, TenantMembership.id).all()
        return [m.tenant for m in memberships if m.tenant is not None and m.tenant.is_available]

    def remaining_backup_codes(self):
        return self.backup_codes.count()

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.get_full_name(),
            'first_name': self.first_name,
            'last_name': self.last_name,
            'role': self.role.value,
            'two_factor_enabled': self.two_factor_enabled,
            'created_at': self.created_at.isoformat(),
            'last_login': self.last_login.isoformat() if self.last_login else None,
        }


class BackupCode(db.Model):
    """
    One unused recovery code.

    Only a keyed hash is stored. Using a code deletes its row; the delete is
    the atomic check-and-remove, so a code can succeed at most once.
    """
    __tablename__ = 'backup_codes'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    code_hash = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'code_hash', name='unique_user_backup_code'),
    )


class PendingEnrollment(db.Model):
    """
    A TOTP enrollment in progress, bound to one setup token.

    The pending secret lives here, never on the User, until a valid code
    derived from it has been shown. The row is deleted on confirmation.
    """
    __tablename__ = 'pending_enrollments'

    id = db.Column(db.Integer, primary_key=True)
    setup_jti = db.Column(db.String(64), nullable=False, unique=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    pending_secret = db.Column(db.String(255), nullable=False)  # Fernet-encrypted
    step = db.Column(db.Enum(EnrollmentStep), nullable=False, default=EnrollmentStep.SCAN)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)

    user = db.relationship('User')

    def is_expired(self):
        return datetime.utcnow() > self.expires_at


class StepUpToken(db.Model):
    """
    Ledger row for an issued step-up token.

    The token itself is a signed JWT and is checked statelessly; this row only
    tracks how many wrong codes were tried and whether it was consumed.
    """
    __tablename__ = 'step_up_tokens'

    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(64), nullable=False, unique=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    tenant_id = db.Column(db.String(36), nullable=True)
    purpose = db.Column(db.Enum(StepUpPurpose), nullable=False)
    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    issued_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=True)
    burned_at = db.Column(db.DateTime, nullable=True)  # retry budget exhausted


class RefreshToken(db.Model):
    """
    Long-lived refresh credential, stored as a keyed hash.

    Tokens rotate on use; every rotation stays in the same family so that
    replaying a revoked token can revoke the whole chain.
    """
    __tablename__ = 'refresh_tokens'

    id = db.Column(db.String(36), primary_key=True, default=_new_uuid)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenants.id'), nullable=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    family_id = db.Column(db.String(36), nullable=False, index=True)
    family_started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    parent_id = db.Column(db.String(36), nullable=True)
    replaced_by_id = db.Column(db.String(36), nullable=True)
    issued_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    revoked_at = db.Column(db.DateTime, nullable=True)
    revoke_reason = db.Column(db.String(50), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)

    user = db.relationship('User')
    tenant = db.relationship('Tenant')

    # Revoke reasons
    REASON_ROTATION = 'rotation'
    REASON_REUSE_DETECTED = 'reuse_detected'
    REASON_LOGOUT = 'logout'
    REASON_SESSION_EXPIRED = 'session_expired'

    def is_expired(self):
        return datetime.utcnow() > self.expires_at

    def is_revoked(self):
        return self.revoked_at is not None


# ============================================================================
# AUDIT
# ============================================================================

class LoginHistory(db.Model):
    """Every credential and second-factor attempt, successful or not."""
    __tablename__ = 'login_history'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    tenant_id = db.Column(db.String(36), nullable=True, index=True)
    login_method = db.Column(db.String(20), nullable=False)
    success = db.Column(db.Boolean, nullable=False, index=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    METHOD_PASSWORD = 'password'
    METHOD_TOTP = 'totp'
    METHOD_BACKUP_CODE = 'backup_code'
    METHOD_ENROLLMENT = 'enrollment'

    FAILURE_INVALID_CREDENTIALS = 'invalid_credentials'
    FAILURE_ACCOUNT_LOCKED = 'account_locked'

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'email': self.email,
            'tenant_id': self.tenant_id,
            'login_method': self.login_method,
            'success': self.success,
            'failure_reason': self.failure_reason,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'created_at': self.created_at.isoformat(),
        }


def log_login_attempt(email, login_method, success, user_id=None, tenant_id=None,
                      failure_reason=None, ip_address=None, user_agent=None):
    """Record a login attempt. Commits immediately so failures are never lost."""
    entry = LoginHistory(
        email=email or '',
        login_method=login_method,
        success=success,
        user_id=user_id,
        tenant_id=tenant_id,
        failure_reason=failure_reason,
        ip_address=ip_address,
        user_agent=user_agent[:500] if user_agent else None,
    )
    db.session.add(entry)
    db.session.commit()
    return entry


class AccountLockout(db.Model):
    """Temporary block on password logins for an email."""
    __tablename__ = 'account_lockouts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    ip_address = db.Column(db.String(45), nullable=True)
    reason = db.Column(db.String(255), nullable=False)
    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    unlocked_at = db.Column(db.DateTime, nullable=True)

    def is_active(self):
        return self.unlocked_at is None and datetime.utcnow() < self.expires_at


class AuditLog(db.Model):
    """
    Immutable audit trail for changes to an identity's second factor.

    Key invariants:
    - Entries are never updated or deleted
    """
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    tenant_id = db.Column(db.String(36), nullable=True)
    action_type = db.Column(db.String(50), nullable=False)
    details = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    actor = db.relationship('User', foreign_keys=[actor_user_id])

    ACTION_2FA_ENABLED = '2fa.enabled'
    ACTION_BACKUP_CODE_USED = '2fa.backup_code_used'
    ACTION_STEP_UP_BURNED = '2fa.token_burned'
    ACTION_REFRESH_REUSE = 'session.refresh_reuse_detected'

    def to_dict(self):
        return {
            'id': self.id,
            'actor_user_id': self.actor_user_id,
            'tenant_id': self.tenant_id,
            'action_type': self.action_type,
            'details': self.details,
            'ip_address': self.ip_address,
            'created_at': self.created_at.isoformat(),
        }


def log_auth_event(actor_user_id, action_type, tenant_id=None, details=None, ip_address=None):
    """Add an audit entry to the current session. The caller commits."""
    entry = AuditLog(
        actor_user_id=actor_user_id,
        action_type=action_type,
        tenant_id=tenant_id,
        details=details,
        ip_address=ip_address,
    )
    db.session.add(entry)
    return entry


def password_expired(user, now=None):
    """True when the identity's password is older than the configured expiry."""
    days = SystemConfig.get_int(
        SystemConfig.KEY_PASSWORD_EXPIRY_DAYS,
        default=SystemConfig.DEFAULT_PASSWORD_EXPIRY_DAYS
    )
    if days <= 0 or not user.password_changed_at:
        return False
    now = now or datetime.utcnow()
    return now - user.password_changed_at > timedelta(days=days)
