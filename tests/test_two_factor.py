"""
Tests for TOTP enrollment and second-factor verification.
"""
import pytest
import pyotp
import jwt

from errors import EnrollmentNotStarted, InvalidCode, TokenInvalid, TooManyAttempts
from models import (
    AuditLog, BackupCode, EnrollmentStep, LoginHistory, PendingEnrollment, StepUpPurpose, StepUpToken, User,
)
from step_up import issue_step_up_token
from two_factor import (
    ENROLLMENT_TRANSITIONS, advance_step, generate_backup_codes,
    start_enrollment, confirm_enrollment, verify_totp_code, verify_backup_code, two_factor_status,
    _matching_time_step,
)
from crypto import decrypt_secret


def _token(session, user, purpose, tenant=None):
    token = issue_step_up_token(user, purpose, tenant)
    session.commit()
    return token


@pytest.fixture
def setup_token(session, make_user, make_tenant):
    user = make_user(tenants=[make_tenant()])
    return _token(session, user, StepUpPurpose.SETUP, user.available_tenants()[0])


@pytest.fixture
def enrolled(session, make_user, make_tenant, totp_secret):
    """(user, tempToken) for an enrolled identity with one tenant."""
    tenant = make_tenant()
    user = make_user(tenants=[tenant], totp_secret=totp_secret)
    return user, _token(session, user, StepUpPurpose.VERIFY, tenant)


class TestEnrollmentSteps:
    """Tests for the enrollment step transition table."""

    def test_every_step_has_an_entry(self):
        assert set(ENROLLMENT_TRANSITIONS) == set(EnrollmentStep)

    @pytest.mark.parametrize('current,target', [
        (EnrollmentStep.LOADING, EnrollmentStep.SCAN),
        (EnrollmentStep.SCAN, EnrollmentStep.VERIFY),
        (EnrollmentStep.VERIFY, EnrollmentStep.VERIFY),
        (EnrollmentStep.VERIFY, EnrollmentStep.BACKUP),
        (EnrollmentStep.BACKUP, EnrollmentStep.COMPLETE),
    ])
    def test_legal_transitions(self, current, target):
        assert advance_step(current, target) is target

    @pytest.mark.parametrize('current,target', [
        (EnrollmentStep.LOADING, EnrollmentStep.BACKUP),
        (EnrollmentStep.SCAN, EnrollmentStep.BACKUP),
        (EnrollmentStep.BACKUP, EnrollmentStep.SCAN),
        (EnrollmentStep.COMPLETE, EnrollmentStep.SCAN),
    ])
    def test_illegal_transitions(self, current, target):
        with pytest.raises(ValueError):
            advance_step(current, target)


class TestBackupCodeGeneration:
    """Tests for generate_backup_codes."""

    def test_count_and_format(self):
        codes = generate_backup_codes(10)
        assert len(codes) == len(set(codes)) == 10
        for code in codes:
            left, right = code.split('-')
            assert len(left) == len(right) == 5
            int(left + right, 16)


class TestStartEnrollment:
    """Tests for start_enrollment."""

    def test_returns_secret_and_uri(self, session, setup_token):
        result = start_enrollment(setup_token)

        assert result['step'] == 'scan'
        assert result['otpauthUrl'].startswith('otpauth://totp/')
        assert 'alice' in result['otpauthUrl']
        assert result['secret'] in result['otpauthUrl']

    def test_secret_not_written_to_user(self, session, setup_token):
        start_enrollment(setup_token)
        user = User.query.filter_by(email='alice@x.com').one()
        assert user.totp_secret is None
        assert user.two_factor_enabled is False

    def test_repeat_start_returns_same_secret(self, session, setup_token):
        first = start_enrollment(setup_token)
        second = start_enrollment(setup_token)
        assert first['secret'] == second['secret']
        assert PendingEnrollment.query.count() == 1

    def test_pending_secret_is_encrypted(self, session, setup_token):
        result = start_enrollment(setup_token)
        pending = PendingEnrollment.query.one()
        assert result['secret'] not in pending.pending_secret
        assert decrypt_secret(pending.pending_secret) == result['secret']

    def test_verify_token_rejected(self, session, enrolled):
        _, temp_token = enrolled
        with pytest.raises(TokenInvalid):
            start_enrollment(temp_token)

    def test_already_enrolled_identity_rejected(self, session, make_user, totp_secret):
        user = make_user(totp_secret=totp_secret)
        token = _token(session, user, StepUpPurpose.SETUP)
        with pytest.raises(TokenInvalid):
            start_enrollment(token)


class TestConfirmEnrollment:
    """Tests for confirm_enrollment."""

    def test_confirm_before_start(self, session, setup_token):
        with pytest.raises(EnrollmentNotStarted):
            confirm_enrollment(setup_token, '123456')

    def test_wrong_code_persists_nothing(self, session, setup_token, wrong_code):
        """A bad code leaves the identity unenrolled with no secret or codes."""
        secret = start_enrollment(setup_token)['secret']

        with pytest.raises(InvalidCode) as exc:
            confirm_enrollment(setup_token, wrong_code(secret))

        body = exc.value.to_dict()
        assert exc.value.status == 400
        assert body['state'] == 'awaiting_enrollment'
        assert body['attemptsRemaining'] == 4

        user = User.query.filter_by(email='alice@x.com').one()
        assert user.two_factor_enabled is False
        assert user.totp_secret is None
        assert BackupCode.query.count() == 0
        assert PendingEnrollment.query.one().step is EnrollmentStep.VERIFY

    def test_retry_after_wrong_code(self, session, setup_token, wrong_code):
        """The same setup token can be retried with the right code."""
        secret = start_enrollment(setup_token)['secret']
        with pytest.raises(InvalidCode):
            confirm_enrollment(setup_token, wrong_code(secret))

        result = confirm_enrollment(setup_token, pyotp.TOTP(secret).now())
        assert result['step'] == 'backup'

    def test_success_enables_two_factor(self, session, setup_token):
        secret = start_enrollment(setup_token)['secret']
        result = confirm_enrollment(setup_token, pyotp.TOTP(secret).now())

        user = User.query.filter_by(email='alice@x.com').one()
        assert user.two_factor_enabled is True
        assert decrypt_secret(user.totp_secret) == secret
        assert len(result['backupCodes']) == 10
        assert BackupCode.query.filter_by(user_id=user.id).count() == 10
        assert PendingEnrollment.query.count() == 0
        assert AuditLog.query.filter_by(action_type=AuditLog.ACTION_2FA_ENABLED).count() == 1

    def test_success_issues_verify_token_not_session(self, session, setup_token):
        secret = start_enrollment(setup_token)['secret']
        result = confirm_enrollment(setup_token, pyotp.TOTP(secret).now())

        assert 'accessToken' not in result
        claims = jwt.decode(result['tempToken'], options={'verify_signature': False})
        assert claims['purpose'] == '2fa_verify'
        setup_claims = jwt.decode(setup_token, options={'verify_signature': False})
        assert claims['tid'] == setup_claims['tid']

    def test_setup_token_consumed(self, session, setup_token):
        secret = start_enrollment(setup_token)['secret']
        confirm_enrollment(setup_token, pyotp.TOTP(secret).now())

        jti = jwt.decode(setup_token, options={'verify_signature': False})['jti']
        assert StepUpToken.query.filter_by(jti=jti).one().consumed_at is not None
        with pytest.raises(TokenInvalid):
            confirm_enrollment(setup_token, pyotp.TOTP(secret).now())

    def test_backup_codes_stored_hashed(self, session, setup_token):
        secret = start_enrollment(setup_token)['secret']
        codes = confirm_enrollment(setup_token, pyotp.TOTP(secret).now())['backupCodes']
        stored = {row.code_hash for row in BackupCode.query.all()}
        for code in codes:
            assert code not in stored
            assert code.replace('-', '') not in stored

    def test_retry_budget_applies(self, session, setup_token, wrong_code):
        secret = start_enrollment(setup_token)['secret']
        for _ in range(4):
            with pytest.raises(InvalidCode):
                confirm_enrollment(setup_token, wrong_code(secret))
        with pytest.raises(TooManyAttempts):
            confirm_enrollment(setup_token, wrong_code(secret))
        with pytest.raises(TooManyAttempts):
            confirm_enrollment(setup_token, pyotp.TOTP(secret).now())


class TestVerifyTotpCode:
    """Tests for verify_totp_code."""

    def test_valid_code_issues_session(self, session, enrolled, totp_secret):
        user, temp_token = enrolled
        result = verify_totp_code(temp_token, pyotp.TOTP(totp_secret).now())

        assert result['accessToken'] and result['refreshToken']
        assert result['user']['email'] == 'alice@x.com'
        assert result['tenant']['name'] == 'Sunrise Clinic'
        assert result['redirect'] == '/dashboard/clinic'
        assert result['forcePasswordReset'] is False
        assert 'backupCodesRemaining' not in result
        assert session.get(User, user.id).two_factor_last_used_at is not None

    def test_wrong_code_keeps_token_valid(self, session, enrolled, totp_secret, wrong_code):
        """A wrong code is 401 and the same token still works afterwards."""
        _, temp_token = enrolled
        with pytest.raises(InvalidCode) as exc:
            verify_totp_code(temp_token, wrong_code(totp_secret))
        assert exc.value.status == 401
        assert exc.value.to_dict()['state'] == 'awaiting_two_factor'

        assert verify_totp_code(temp_token, pyotp.TOTP(totp_secret).now())['accessToken']

    def test_non_numeric_code_is_invalid(self, session, enrolled):
        _, temp_token = enrolled
        with pytest.raises(InvalidCode):
            verify_totp_code(temp_token, 'abcdef')

    def test_token_single_use(self, session, enrolled, totp_secret):
        _, temp_token = enrolled
        verify_totp_code(temp_token, pyotp.TOTP(totp_secret).now())
        with pytest.raises(TokenInvalid):
            verify_totp_code(temp_token, pyotp.TOTP(totp_secret).now())

    def test_code_cannot_be_replayed(self, session, enrolled, totp_secret):
        """A code that opened one session is refused on a fresh token."""
        user, temp_token = enrolled
        code = pyotp.TOTP(totp_secret).now()
        verify_totp_code(temp_token, code)

        fresh = _token(session, user, StepUpPurpose.VERIFY)
        with pytest.raises(InvalidCode) as exc:
            verify_totp_code(fresh, code)
        assert exc.value.to_dict()['attemptsRemaining'] == 4

    def test_enrollment_code_cannot_verify(self, session, setup_token):
        """The code that confirmed enrollment is already spent."""
        secret = start_enrollment(setup_token)['secret']
        code = pyotp.TOTP(secret).now()
        result = confirm_enrollment(setup_token, code)

        user = User.query.filter_by(email='alice@x.com').one()
        assert user.totp_last_step is not None
        with pytest.raises(InvalidCode):
            verify_totp_code(result['tempToken'], code)

    def test_setup_token_cannot_verify(self, session, setup_token):
        with pytest.raises(TokenInvalid):
            verify_totp_code(setup_token, '123456')

    def test_attempts_logged(self, session, enrolled, totp_secret, wrong_code):
        _, temp_token = enrolled
        with pytest.raises(InvalidCode):
            verify_totp_code(temp_token, wrong_code(totp_secret))
        verify_totp_code(temp_token, pyotp.TOTP(totp_secret).now())

        entries = LoginHistory.query.filter_by(login_method=LoginHistory.METHOD_TOTP).order_by(LoginHistory.id).all()
        assert [e.success for e in entries] == [False, True]


class TestVerifyBackupCode:
    """Tests for verify_backup_code."""

    def test_backup_code_issues_session(self, session, enrolled, add_backup_codes):
        user, temp_token = enrolled
        add_backup_codes(user, ['AAAAA-11111', 'BBBBB-22222'])

        result = verify_backup_code(temp_token, 'AAAAA-11111')
        assert result['accessToken']
        assert result['backupCodesRemaining'] == 1
        assert AuditLog.query.filter_by(action_type=AuditLog.ACTION_BACKUP_CODE_USED).count() == 1

    def test_code_is_single_use(self, session, enrolled, add_backup_codes):
        """A spent code fails on a fresh token."""
        user, temp_token = enrolled
        add_backup_codes(user, ['AAAAA-11111'])
        verify_backup_code(temp_token, 'AAAAA-11111')

        fresh = _token(session, user, StepUpPurpose.VERIFY)
        with pytest.raises(InvalidCode):
            verify_backup_code(fresh, 'AAAAA-11111')
        assert BackupCode.query.count() == 0

    def test_input_is_normalized(self, session, enrolled, add_backup_codes):
        """Lowercase and missing dash are accepted."""
        user, temp_token = enrolled
        add_backup_codes(user, ['AAAAA-11111'])
        assert verify_backup_code(temp_token, ' aaaaa11111 ')['backupCodesRemaining'] == 0

    def test_unknown_code_counts_as_failure(self, session, enrolled, add_backup_codes):
        user, temp_token = enrolled
        add_backup_codes(user, ['AAAAA-11111'])
        with pytest.raises(InvalidCode) as exc:
            verify_backup_code(temp_token, 'FFFFF-99999')
        assert exc.value.to_dict()['attemptsRemaining'] == 4
        assert BackupCode.query.count() == 1

    def test_other_users_code_rejected(self, session, enrolled, make_user, add_backup_codes):
        _, temp_token = enrolled
        bob = make_user(email='bob@x.com')
        add_backup_codes(bob, ['CCCCC-33333'])
        with pytest.raises(InvalidCode):
            verify_backup_code(temp_token, 'CCCCC-33333')
        assert BackupCode.query.filter_by(user_id=bob.id).count() == 1


class TestTwoFactorStatus:
    """Tests for two_factor_status."""

    def test_status_for_enrolled(self, session, enrolled, add_backup_codes):
        user, _ = enrolled
        add_backup_codes(user, ['AAAAA-11111', 'BBBBB-22222'])
        status = two_factor_status(user)
        assert status['enabled'] is True
        assert status['backupCodesRemaining'] == 2


class TestTimeStepMatching:
    """Tests for matching a code to its TOTP time step."""

    AT = 1700000000

    def test_current_and_adjacent_steps(self, totp_secret):
        totp = pyotp.TOTP(totp_secret)
        step = self.AT // totp.interval
        assert _matching_time_step(totp_secret, totp.generate_otp(step), for_time=self.AT) == step
        assert _matching_time_step(totp_secret, totp.generate_otp(step - 1), for_time=self.AT) == step - 1
        assert _matching_time_step(totp_secret, totp.generate_otp(step + 1), for_time=self.AT) == step + 1

    def test_malformed_codes(self, totp_secret):
        assert _matching_time_step(totp_secret, '', for_time=self.AT) is None
        assert _matching_time_step(totp_secret, '12345', for_time=self.AT) is None
        assert _matching_time_step(totp_secret, '١٢٣٤٥٦', for_time=self.AT) is None
