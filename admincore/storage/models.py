from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PermissionAction(str, Enum):
    """Actions a catalog permission can grant on a resource."""

    VIEW = "VIEW"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    EXECUTE = "EXECUTE"
    ADMIN = "ADMIN"


class MenuType(str, Enum):
    """Closed set of menu node kinds; drives default permission computation."""

    INTERNAL = "INTERNAL"
    EXTERNAL = "EXTERNAL"
    DIVIDER = "DIVIDER"
    GROUP = "GROUP"
    PUBLIC = "PUBLIC"
    ADMIN = "ADMIN"


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DISABLED = "account_disabled"


class AccountState(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    DISABLED = "disabled"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    is_mfa_enabled: bool = False
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    role_ids: Set[str] = field(default_factory=set)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass
class Role:
    id: str
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    is_system: bool = False
    is_active: bool = True
    permission_ids: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    resource: str
    action: PermissionAction
    display_name: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Menu:
    id: str
    name: str
    menu_type: MenuType = MenuType.INTERNAL
    display_name: Optional[str] = None
    url: Optional[str] = None
    icon: Optional[str] = None
    target_window: str = "_self"
    sort_order: int = 0
    parent_id: Optional[str] = None
    menu_level: int = 0
    is_visible: bool = True
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RoleMenuPermission:
    """Explicit grant of menu capabilities to every holder of a role."""

    role_id: str
    menu_id: str
    can_view: bool = False
    can_access: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False
    can_execute: bool = False


@dataclass
class UserMenuPermission:
    """Per-user menu record.

    Flags left as ``None`` are not part of the override and keep the
    role-derived value. ``is_favorite`` is bookmarking only.
    """

    user_id: str
    menu_id: str
    can_view: Optional[bool] = None
    can_access: Optional[bool] = None
    can_create: Optional[bool] = None
    can_update: Optional[bool] = None
    can_delete: Optional[bool] = None
    can_execute: Optional[bool] = None
    is_override: bool = False
    is_favorite: bool = False


MENU_FLAGS = (
    "can_view",
    "can_access",
    "can_create",
    "can_update",
    "can_delete",
    "can_execute",
)


@dataclass(frozen=True)
class MenuPermissions:
    can_view: bool = False
    can_access: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False
    can_execute: bool = False

    @classmethod
    def none(cls) -> "MenuPermissions":
        return cls()

    @classmethod
    def full(cls) -> "MenuPermissions":
        return cls(**{flag: True for flag in MENU_FLAGS})

    def allows(self, action: str) -> bool:
        attr = f"can_{(action or '').strip().lower()}"
        if attr not in MENU_FLAGS:
            return False
        return bool(getattr(self, attr))

    def as_dict(self) -> Dict[str, bool]:
        return {flag: getattr(self, flag) for flag in MENU_FLAGS}


@dataclass
class LoginEvent:
    email: str
    outcome: LoginOutcome
    user_id: Optional[str] = None
    client_ip: Optional[str] = None
    failed_attempts: int = 0
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthorizationSnapshot:
    """Everything the resolver needs, read in one consistent pass."""

    user: User
    roles: List[Role]
    permissions: List[Permission]
    menu: Menu
    user_override: Optional[UserMenuPermission] = None
    role_menu_permissions: List[RoleMenuPermission] = field(default_factory=list)

    @property
    def role_names(self) -> FrozenSet[str]:
        return frozenset(role.name for role in self.roles)


@dataclass
class UserGrants:
    """A user with the roles and catalog permissions those roles carry."""

    user: User
    roles: List[Role]
    permissions: List[Permission]


__all__ = [
    "AccountState",
    "AuthorizationSnapshot",
    "LoginEvent",
    "LoginOutcome",
    "MENU_FLAGS",
    "Menu",
    "MenuPermissions",
    "MenuType",
    "Permission",
    "PermissionAction",
    "Role",
    "RoleMenuPermission",
    "User",
    "UserGrants",
    "UserMenuPermission",
    "new_id",
    "utcnow",
]
