from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Protocol

from admincore.config import Settings
from admincore.logging import get_logger
from admincore.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)
from admincore.service.lifecycle import AccountLifecycle
from admincore.service.passwords import PasswordService
from admincore.service.permissions import PermissionResolver
from admincore.service.tokens import TokenPair, TokenService
from admincore.storage.common import normalize_email
from admincore.storage.errors import ConstraintViolation
from admincore.storage.models import LoginOutcome, Role, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        is_active: bool = True,
        is_email_verified: bool = False,
        role_ids=(),
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...


@dataclass(frozen=True)
class AuthResult:
    user: User
    role_names: FrozenSet[str] = field(default_factory=frozenset)
    permission_names: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    auth: AuthResult

    @property
    def user(self) -> User:
        return self.auth.user


class AuthService:
    """Credential authentication, token issuance and self-registration."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        passwords: PasswordService,
        tokens: TokenService,
        lifecycle: AccountLifecycle,
        resolver: PermissionResolver,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.tokens = tokens
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.logger = logger

    def authenticate(
        self, email: str, password: str, *, client_ip: Optional[str] = None
    ) -> AuthResult:
        """Check credentials and apply the lockout state machine.

        Lock is checked before the enabled flag, and both before the password,
        so a locked or disabled account never reveals whether the password was
        right. A lapsed lock is cleared here, resetting the counter.

        Raises:
            InvalidCredentialsError: unknown email or wrong password
            AccountLockedError: lock active, or this failure reached the threshold
            AccountDisabledError: account soft-deleted
        """
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self.passwords.dummy_verify(password)
            self.lifecycle.emit(
                normalized, LoginOutcome.INVALID_CREDENTIALS, client_ip=client_ip
            )
            raise InvalidCredentialsError()

        if self.lifecycle.is_locked(user):
            self.lifecycle.emit(
                normalized, LoginOutcome.ACCOUNT_LOCKED, user=user, client_ip=client_ip
            )
            raise AccountLockedError()
        user = self.lifecycle.clear_if_expired(user)

        if not user.is_active:
            self.lifecycle.emit(
                normalized, LoginOutcome.ACCOUNT_DISABLED, user=user, client_ip=client_ip
            )
            raise AccountDisabledError()

        if not self.passwords.verify(user.password_hash, password):
            updated = self.lifecycle.record_failure(user)
            if self.lifecycle.is_locked(updated):
                self.lifecycle.emit(
                    normalized,
                    LoginOutcome.ACCOUNT_LOCKED,
                    user=updated,
                    client_ip=client_ip,
                )
                raise AccountLockedError()
            self.lifecycle.emit(
                normalized,
                LoginOutcome.INVALID_CREDENTIALS,
                user=updated,
                client_ip=client_ip,
            )
            raise InvalidCredentialsError()

        updated = self.lifecycle.record_success(user)
        if self.passwords.needs_rehash(user.password_hash):
            self.store.save_password(user.id, self.passwords.hash(password))
            self.logger.info("password_rehashed", user_id=user.id)
        closure = self.resolver.permission_closure(user.id)
        self.lifecycle.emit(
            normalized, LoginOutcome.SUCCESS, user=updated, client_ip=client_ip
        )
        return AuthResult(
            user=updated,
            role_names=closure.role_names,
            permission_names=closure.permission_names,
        )

    def login(
        self, email: str, password: str, *, client_ip: Optional[str] = None
    ) -> LoginResult:
        auth = self.authenticate(email, password, client_ip=client_ip)
        tokens = self.tokens.issue(
            auth.user.id, auth.user.email, auth.role_names, auth.permission_names
        )
        self.logger.info("login_succeeded", user_id=auth.user.id)
        return LoginResult(tokens=tokens, auth=auth)

    def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new access token from live role state; the refresh token is kept."""
        email = self.tokens.verify_refresh(refresh_token)
        user = self.store.get_user_by_email(email)
        if user is None:
            raise TokenInvalidError()
        if self.lifecycle.is_locked(user):
            raise AccountLockedError()
        if not user.is_active:
            raise AccountDisabledError()
        closure = self.resolver.permission_closure(user.id)
        access_token = self.tokens.issue_access(
            user.id, user.email, closure.role_names, closure.permission_names
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_expiry_ms,
        )

    def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        if not normalized or not password:
            raise ValidationError("email and password are required")
        if self.store.get_user_by_email(normalized) is not None:
            raise ConflictError("email already exists", detail={"field": "email"})
        default_role = self.store.get_role_by_name(self.settings.default_role_name)
        if default_role is None:
            raise NotFoundError(
                "default role not found",
                detail={"role": self.settings.default_role_name},
            )
        try:
            user = self.store.create_user(
                normalized,
                self.passwords.hash(password),
                first_name=first_name,
                last_name=last_name,
                phone_number=phone_number,
                is_email_verified=False,
                role_ids=[default_role.id],
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user


__all__ = ["AuthResult", "AuthService", "AuthStore", "LoginResult"]
