"""Tests for the login and password-reset flows in AuthService.

Tests for:
- Rate limiting ahead of the credential check
- Failure counting and lockout classification
- Session issuance, authentication and logout
- Password reset completion
"""

from datetime import timedelta

import pytest

from authguard.service.auth import AuthService
from authguard.service.email import EmailService
from authguard.service.errors import (
    InvalidOrExpiredSessionError,
    InvalidTokenError,
    WeakPasswordError,
)
from authguard.service.password_reset import (
    InMemoryResetTokenStore,
    PasswordResetCoordinator,
)
from authguard.service.passwords import PasswordHasher
from authguard.service.rate_limit import TokenBucketLimiter
from authguard.service.sessions import SessionStore


class CountingDirectory:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def verify_credentials(self, identity, password):
        self.calls += 1
        return self.inner.verify_credentials(identity, password)

    def set_password_hash(self, user_id, password_hash):
        self.inner.set_password_hash(user_id, password_hash)

    def get_email(self, user_id):
        return self.inner.get_email(user_id)


class RecordingEmail(EmailService):
    def __init__(self):
        super().__init__()
        self.resets = []

    def send_password_reset(self, to_email, reset_url, ttl_minutes):
        self.resets.append((to_email, reset_url, ttl_minutes))
        return True


@pytest.fixture
def auth(directory, settings, clock):
    return AuthService(
        CountingDirectory(directory),
        SessionStore(clock=clock),
        TokenBucketLimiter(settings.login_rate_per_second, settings.login_burst, clock=clock),
        PasswordResetCoordinator(InMemoryResetTokenStore(), clock=clock),
        settings,
        clock=clock,
        email=RecordingEmail(),
    )


class TestLogin:
    def test_successful_login_issues_session(self, auth):
        result = auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1")

        assert result.ok is True
        assert result.user_id == "u1"
        assert result.error is None
        assert auth.authenticate(result.session_id) == "u1"

    def test_session_uses_configured_ttl(self, auth, clock):
        result = auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1")

        clock.advance(timedelta(minutes=31))

        with pytest.raises(InvalidOrExpiredSessionError):
            auth.authenticate(result.session_id)

    def test_bad_password_returns_401_with_guidance(self, auth):
        result = auth.login("alice@example.com", "wrong", client_key="ip1")

        assert result.ok is False
        assert result.session_id is None
        assert result.error.code == 401
        assert "password reset" in result.guidance

    def test_fourth_failure_is_classified_as_too_many(self, auth):
        codes = [
            auth.login("alice@example.com", "wrong", client_key=f"ip{i}").error.code
            for i in range(4)
        ]

        assert codes == [401, 401, 401, 429]
        assert auth.failure_count("alice@example.com") == 4

    def test_success_clears_failures(self, auth):
        auth.login("alice@example.com", "wrong", client_key="ip1")
        auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1")

        assert auth.failure_count("alice@example.com") == 0

    def test_failure_window_resets_counter(self, auth, clock):
        for i in range(3):
            auth.login("alice@example.com", "wrong", client_key=f"ip{i}")
        clock.advance(timedelta(minutes=16))

        result = auth.login("alice@example.com", "wrong", client_key="ip9")

        assert result.error.code == 401
        assert auth.failure_count("alice@example.com") == 1

    def test_rate_limited_client_skips_credential_check(self, auth):
        for _ in range(5):
            auth.login("alice@example.com", "wrong", client_key="ip1")
        calls_before = auth.directory.calls

        result = auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1")

        assert result.ok is False
        assert result.error.code == 429
        assert "wait a few minutes" in result.guidance
        assert auth.directory.calls == calls_before

    def test_rate_limit_recovers_after_refill(self, auth, clock):
        for _ in range(5):
            auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1")
        assert auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1").ok is False

        clock.advance(60)

        assert auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1").ok is True

    def test_logout_ends_session(self, auth):
        result = auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1")

        auth.logout(result.session_id)
        auth.logout(result.session_id)

        with pytest.raises(InvalidOrExpiredSessionError):
            auth.authenticate(result.session_id)

    def test_cleanup_forgets_stale_failure_counters(self, auth, clock):
        auth.login("alice@example.com", "wrong", client_key="ip1")
        auth.login("bob@example.com", "wrong", client_key="ip2")
        clock.advance(timedelta(minutes=20))

        assert auth.cleanup_expired_state() == 2


class TestPasswordReset:
    def test_reset_flow_updates_hash_and_revokes_sessions(self, auth, directory):
        login = auth.login("alice@example.com", "Correct-Horse-9", client_key="ip1")
        reset = auth.request_password_reset("u1")

        user_id = auth.complete_password_reset(reset.token, "N3w-Passw0rd!")

        assert user_id == "u1"
        assert PasswordHasher().verify(directory.password_hashes["u1"], "N3w-Passw0rd!")
        with pytest.raises(InvalidOrExpiredSessionError):
            auth.authenticate(login.session_id)

    def test_reset_link_is_emailed(self, auth):
        reset = auth.request_password_reset("u1")

        (to_email, url, ttl), = auth.email.resets
        assert to_email == "alice@example.com"
        assert url.endswith(f"reset_token={reset.token}")
        assert ttl == 15

    def test_weak_password_leaves_token_usable(self, auth):
        reset = auth.request_password_reset("u1")

        with pytest.raises(WeakPasswordError):
            auth.complete_password_reset(reset.token, "weak")

        assert auth.complete_password_reset(reset.token, "N3w-Passw0rd!") == "u1"

    def test_token_cannot_be_reused(self, auth):
        reset = auth.request_password_reset("u1")
        auth.complete_password_reset(reset.token, "N3w-Passw0rd!")

        with pytest.raises(InvalidTokenError):
            auth.complete_password_reset(reset.token, "An0ther-Passw0rd!")
