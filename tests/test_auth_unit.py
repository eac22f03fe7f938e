"""Unit tests for credential authentication and the account lockout cycle."""

import threading

import pytest

from admincore.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    TokenInvalidError,
)
from admincore.storage.models import AccountState, LoginOutcome


class TestAuthenticate:
    """Tests for AuthService.authenticate outcomes."""

    def test_success_returns_role_and_permission_closure(self, runtime, make_user, events):
        user = make_user("u@x.com", "good-password")

        result = runtime.auth.authenticate("u@x.com", "good-password")

        assert result.user.id == user.id
        assert result.user.last_login_at is not None
        assert result.role_names == frozenset({"ROLE_USER"})
        assert "SYSTEM_VIEW" in result.permission_names
        assert events[-1].outcome == LoginOutcome.SUCCESS

    def test_email_is_case_and_whitespace_insensitive(self, runtime, make_user):
        make_user("u@x.com", "good-password")

        result = runtime.auth.authenticate("  U@X.COM ", "good-password")

        assert result.user.email == "u@x.com"

    def test_unknown_email_is_invalid_credentials(self, runtime, events):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            runtime.auth.authenticate("ghost@x.com", "whatever")

        assert exc_info.value.error_code == "invalid_credentials"
        assert events[-1].outcome == LoginOutcome.INVALID_CREDENTIALS
        assert events[-1].user_id is None

    def test_wrong_password_counts_failure(self, runtime, make_user):
        user = make_user("u@x.com", "good-password")

        with pytest.raises(InvalidCredentialsError):
            runtime.auth.authenticate("u@x.com", "bad-password")

        assert runtime.store.get_user(user.id).failed_login_attempts == 1

    def test_unknown_email_and_wrong_password_share_message(self, runtime, make_user):
        make_user("u@x.com", "good-password")

        with pytest.raises(InvalidCredentialsError) as unknown:
            runtime.auth.authenticate("ghost@x.com", "bad-password")
        with pytest.raises(InvalidCredentialsError) as wrong:
            runtime.auth.authenticate("u@x.com", "bad-password")

        assert unknown.value.message == wrong.value.message

    def test_disabled_account_rejected_even_with_right_password(self, runtime, make_user, events):
        user = make_user("u@x.com", "good-password")
        runtime.store.update_user(user.id, is_active=False)

        with pytest.raises(AccountDisabledError):
            runtime.auth.authenticate("u@x.com", "good-password")

        assert events[-1].outcome == LoginOutcome.ACCOUNT_DISABLED

    def test_disabled_account_does_not_count_failures(self, runtime, make_user):
        user = make_user("u@x.com", "good-password")
        runtime.store.update_user(user.id, is_active=False)

        with pytest.raises(AccountDisabledError):
            runtime.auth.authenticate("u@x.com", "bad-password")

        assert runtime.store.get_user(user.id).failed_login_attempts == 0

    def test_success_resets_failure_counter(self, runtime, make_user):
        user = make_user("u@x.com", "good-password")
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                runtime.auth.authenticate("u@x.com", "bad-password")

        runtime.auth.authenticate("u@x.com", "good-password")

        assert runtime.store.get_user(user.id).failed_login_attempts == 0


class TestLockout:
    """Tests for the failed-attempt threshold and lazy lock expiry."""

    def test_lock_engages_on_threshold_attempt(self, runtime, make_user, settings, clock, events):
        user = make_user("u@x.com", "good-password")
        for _ in range(settings.max_login_attempts - 1):
            with pytest.raises(InvalidCredentialsError):
                runtime.auth.authenticate("u@x.com", "bad-password")

        with pytest.raises(AccountLockedError):
            runtime.auth.authenticate("u@x.com", "bad-password")

        stored = runtime.store.get_user(user.id)
        assert stored.failed_login_attempts == settings.max_login_attempts
        assert stored.account_locked_until == clock.now + settings.lock_duration
        assert events[-1].outcome == LoginOutcome.ACCOUNT_LOCKED

    def test_lockout_scenario(self, runtime, make_user, settings, clock):
        """Four misses, a locking fifth miss, a refused right password, then recovery."""
        user = make_user("u@x.com", "good-password")
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                runtime.auth.authenticate("u@x.com", "bad-password")
        with pytest.raises(AccountLockedError):
            runtime.auth.authenticate("u@x.com", "bad-password")

        with pytest.raises(AccountLockedError):
            runtime.auth.authenticate("u@x.com", "good-password")
        assert runtime.store.get_user(user.id).failed_login_attempts == 5

        clock.advance(milliseconds=settings.lock_duration_ms + 1)
        result = runtime.auth.authenticate("u@x.com", "good-password")

        assert result.user.failed_login_attempts == 0
        assert result.user.account_locked_until is None

    def test_locked_account_ignores_password_attempts(self, runtime, make_user, settings):
        user = make_user("u@x.com", "good-password")
        for _ in range(settings.max_login_attempts):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                runtime.auth.authenticate("u@x.com", "bad-password")

        with pytest.raises(AccountLockedError):
            runtime.auth.authenticate("u@x.com", "bad-password")

        assert runtime.store.get_user(user.id).failed_login_attempts == settings.max_login_attempts

    def test_expired_lock_resets_counter_before_counting(self, runtime, make_user, settings, clock):
        user = make_user("u@x.com", "good-password")
        for _ in range(settings.max_login_attempts):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                runtime.auth.authenticate("u@x.com", "bad-password")
        clock.advance(milliseconds=settings.lock_duration_ms + 1)

        with pytest.raises(InvalidCredentialsError):
            runtime.auth.authenticate("u@x.com", "bad-password")

        stored = runtime.store.get_user(user.id)
        assert stored.failed_login_attempts == 1
        assert stored.account_locked_until is None

    def test_lock_is_checked_before_disabled(self, runtime, make_user, settings):
        user = make_user("u@x.com", "good-password")
        for _ in range(settings.max_login_attempts):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                runtime.auth.authenticate("u@x.com", "bad-password")
        runtime.store.update_user(user.id, is_active=False)

        with pytest.raises(AccountLockedError):
            runtime.auth.authenticate("u@x.com", "good-password")

    def test_state_of_reports_lifecycle_state(self, runtime, make_user, settings, clock):
        user = make_user("u@x.com", "good-password")
        assert runtime.lifecycle.state_of(user) == AccountState.ACTIVE

        locked = runtime.store.record_failed_login(
            user.id, now=clock.now, max_attempts=1, lock_duration=settings.lock_duration
        )
        assert runtime.lifecycle.state_of(locked) == AccountState.LOCKED

        clock.advance(milliseconds=settings.lock_duration_ms + 1)
        assert runtime.lifecycle.state_of(locked) == AccountState.ACTIVE

        disabled = runtime.store.update_user(user.id, is_active=False)
        assert runtime.lifecycle.state_of(disabled) == AccountState.DISABLED

    def test_admin_unlock_clears_lock(self, runtime, make_user, settings):
        user = make_user("u@x.com", "good-password")
        for _ in range(settings.max_login_attempts):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                runtime.auth.authenticate("u@x.com", "bad-password")

        runtime.users.unlock_user(user.id)

        assert runtime.auth.authenticate("u@x.com", "good-password").user.id == user.id

    def test_concurrent_failures_are_all_counted(self, runtime, make_user, clock):
        user = make_user("u@x.com", "good-password")
        barrier = threading.Barrier(8)

        def fail():
            barrier.wait()
            for _ in range(25):
                runtime.store.record_failed_login(
                    user.id,
                    now=clock.now,
                    max_attempts=1000,
                    lock_duration=runtime.settings.lock_duration,
                )

        threads = [threading.Thread(target=fail) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert runtime.store.get_user(user.id).failed_login_attempts == 200


class TestLoginAndRefresh:
    """Tests for token issuance through login and refresh."""

    def test_login_tokens_carry_closure(self, runtime, make_user):
        make_user("u@x.com", "good-password")

        result = runtime.auth.login("u@x.com", "good-password")
        identity = runtime.tokens.verify(result.tokens.access_token)

        assert identity.user_id == result.user.id
        assert identity.roles == frozenset({"ROLE_USER"})
        assert result.tokens.token_type == "Bearer"

    def test_refresh_reflects_current_roles(self, runtime, make_user):
        user = make_user("u@x.com", "good-password")
        login = runtime.auth.login("u@x.com", "good-password")
        admin_role = runtime.store.get_role_by_name("ROLE_ADMIN")
        runtime.rbac.assign_role_to_user(user.id, admin_role.id)

        refreshed = runtime.auth.refresh(login.tokens.refresh_token)
        identity = runtime.tokens.verify(refreshed.access_token)

        assert "ROLE_ADMIN" in identity.roles
        assert refreshed.refresh_token == login.tokens.refresh_token

    def test_refresh_rejects_access_token(self, runtime, make_user):
        make_user("u@x.com", "good-password")
        login = runtime.auth.login("u@x.com", "good-password")

        with pytest.raises(TokenInvalidError):
            runtime.auth.refresh(login.tokens.access_token)

    def test_refresh_rejects_disabled_user(self, runtime, make_user):
        user = make_user("u@x.com", "good-password")
        login = runtime.auth.login("u@x.com", "good-password")
        runtime.users.deactivate_user(user.id)

        with pytest.raises(AccountDisabledError):
            runtime.auth.refresh(login.tokens.refresh_token)

    def test_refresh_for_unknown_subject(self, runtime):
        token = runtime.tokens.issue_refresh("ghost@x.com")

        with pytest.raises(TokenInvalidError):
            runtime.auth.refresh(token)


class TestRegister:
    """Tests for self-registration."""

    def test_register_assigns_default_role(self, runtime):
        user = runtime.auth.register("New@X.com", "a-password", first_name="New")

        default_role = runtime.store.get_role_by_name("ROLE_USER")
        assert user.email == "new@x.com"
        assert user.role_ids == {default_role.id}
        assert user.is_email_verified is False
        assert runtime.auth.authenticate("new@x.com", "a-password").user.id == user.id

    def test_register_duplicate_email(self, runtime, make_user):
        make_user("u@x.com", "good-password")

        with pytest.raises(ConflictError):
            runtime.auth.register("U@x.com", "another-password")
