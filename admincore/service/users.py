from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from admincore.config import Settings
from admincore.logging import get_logger
from admincore.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from admincore.service.lifecycle import AccountLifecycle
from admincore.service.passwords import PasswordService
from admincore.service.permissions import PermissionClosure, PermissionResolver
from admincore.service.rbac import RbacService
from admincore.storage.errors import ConstraintViolation
from admincore.storage.models import AccountState, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class UserProfile:
    user: User
    closure: PermissionClosure
    state: AccountState


class UserAdminService:
    def __init__(
        self,
        store,
        settings: Settings,
        *,
        passwords: PasswordService,
        lifecycle: AccountLifecycle,
        resolver: PermissionResolver,
        rbac: RbacService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.rbac = rbac

    def _require(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def get_user(self, user_id: str) -> UserProfile:
        user = self._require(user_id)
        return UserProfile(
            user=user,
            closure=self.resolver.permission_closure(user_id),
            state=self.lifecycle.state_of(user),
        )

    def list_users(self, *, limit: int = 100, offset: int = 0) -> List[User]:
        return self.store.list_users(limit=limit, offset=offset)

    def update_profile(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        current_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> User:
        """Update profile fields; a password change requires the current password."""
        user = self._require(user_id)
        fields = {
            key: value
            for key, value in {
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "phone_number": phone_number,
            }.items()
            if value is not None
        }
        if "email" in fields:
            other = self.store.get_user_by_email(fields["email"])
            if other is not None and other.id != user_id:
                raise ConflictError("email already exists", detail={"field": "email"})
        if new_password is not None:
            if not current_password:
                raise ValidationError("current password is required")
            if not self.passwords.verify(user.password_hash, current_password):
                raise InvalidCredentialsError("current password is incorrect")
        try:
            updated = self.store.update_user(user_id, **fields) if fields else user
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if new_password is not None:
            self.store.save_password(user_id, self.passwords.hash(new_password))
            logger.info("password_changed", user_id=user_id)
        logger.info("user_updated", user_id=user_id, fields=sorted(fields))
        return self._require(user_id)

    def deactivate_user(self, user_id: str) -> User:
        self._require(user_id)
        updated = self.store.update_user(user_id, is_active=False)
        logger.info("user_deactivated", user_id=user_id)
        return updated

    def reactivate_user(self, user_id: str) -> User:
        self._require(user_id)
        updated = self.store.update_user(user_id, is_active=True)
        logger.info("user_reactivated", user_id=user_id)
        return updated

    def unlock_user(self, user_id: str) -> User:
        return self.lifecycle.unlock(user_id)

    def assign_role(self, user_id: str, role_id: str) -> User:
        return self.rbac.assign_role_to_user(user_id, role_id)

    def remove_role(self, user_id: str, role_id: str) -> User:
        return self.rbac.revoke_role_from_user(user_id, role_id)


__all__ = ["UserAdminService", "UserProfile"]
