from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from admincore.storage.models import (
    MENU_FLAGS,
    Menu,
    MenuPermissions,
    Permission,
    Role,
    RoleMenuPermission,
    User,
    UserMenuPermission,
)

MAX_NAME_LENGTH = 128
MAX_TEXT_LENGTH = 1024


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "token_expired",
    "token_invalid",
    "forbidden",
    "account_locked",
    "account_disabled",
    "insufficient_permission",
    "system_role_protected",
    "not_found",
    "validation_error",
    "menu_hierarchy_invalid",
    "conflict",
    "duplicate_resource",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


_RESOURCE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.-]*$")


def _validate_resource(value: str) -> str:
    value = value.strip()
    if not _RESOURCE_PATTERN.match(value):
        raise ValueError(
            "resource must start with a letter and contain only letters, digits, '_', '.', '-'"
        )
    return value


# auth


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    last_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    phone_number: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(
        ...,
        max_length=4096,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: str = ""
    phone_number: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    is_mfa_enabled: bool = False
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime
    role_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            phone_number=user.phone_number,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            is_mfa_enabled=user.is_mfa_enabled,
            failed_login_attempts=user.failed_login_attempts,
            account_locked_until=user.account_locked_until,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            role_ids=sorted(user.role_ids),
        )


class TokenResponse(BaseModel):
    """Token pair rendered with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    user: Dict[str, Any]


class MeResponse(BaseModel):
    user_id: str
    email: str
    roles: List[str]
    permissions: List[str]
    expires_at: Optional[datetime] = None


class PermissionCheck(BaseModel):
    resource: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    action: str = Field(..., min_length=1, max_length=32)


class PermissionCheckRequest(BaseModel):
    checks: List[PermissionCheck] = Field(..., min_length=1, max_length=100)


# permissions and roles


class PermissionRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    resource: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    action: str = Field(..., min_length=1, max_length=32)
    display_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)

    @field_validator("resource")
    @classmethod
    def _check_resource(cls, value: str) -> str:
        return _validate_resource(value)


class PermissionUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    resource: Optional[str] = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    action: Optional[str] = Field(default=None, min_length=1, max_length=32)
    display_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)

    @field_validator("resource")
    @classmethod
    def _check_resource(cls, value: Optional[str]) -> Optional[str]:
        return _validate_resource(value) if value is not None else None


class PermissionTemplateRequest(BaseModel):
    template: str = Field(..., min_length=1, max_length=32)
    resource: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)

    @field_validator("resource")
    @classmethod
    def _check_resource(cls, value: str) -> str:
        return _validate_resource(value)


class PermissionResponse(BaseModel):
    id: str
    name: str
    resource: str
    action: str
    display_name: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(
            id=permission.id,
            name=permission.name,
            resource=permission.resource,
            action=permission.action.value,
            display_name=permission.display_name,
            description=permission.description,
        )


class RoleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    display_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    permission_ids: List[str] = Field(default_factory=list, max_length=1000)
    is_active: bool = True


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    display_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    is_active: Optional[bool] = None


class RolePermissionsRequest(BaseModel):
    permission_ids: List[str] = Field(..., max_length=1000)


class DuplicateRoleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)


class RoleResponse(BaseModel):
    id: str
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    is_system: bool = False
    is_active: bool = True
    permission_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            display_name=role.display_name,
            description=role.description,
            is_system=role.is_system,
            is_active=role.is_active,
            permission_ids=sorted(role.permission_ids),
        )


# menus


class MenuRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    menu_type: str = Field(default="INTERNAL", max_length=16)
    display_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    url: Optional[str] = Field(default=None, max_length=2048)
    icon: Optional[str] = Field(default=None, max_length=64)
    target_window: str = Field(default="_self", max_length=16)
    sort_order: int = 0
    parent_id: Optional[str] = None
    is_visible: bool = True
    is_active: bool = True


class MenuUpdateRequest(BaseModel):
    """Partial update; only fields present in the body are applied."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    menu_type: Optional[str] = Field(default=None, max_length=16)
    display_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    url: Optional[str] = Field(default=None, max_length=2048)
    icon: Optional[str] = Field(default=None, max_length=64)
    target_window: Optional[str] = Field(default=None, max_length=16)
    sort_order: Optional[int] = None
    parent_id: Optional[str] = None
    is_visible: Optional[bool] = None
    is_active: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        fields = self.model_dump(exclude_unset=True)
        # parent_id is the only field where an explicit null means something
        return {
            key: value
            for key, value in fields.items()
            if value is not None or key == "parent_id"
        }


class MenuResponse(BaseModel):
    id: str
    name: str
    menu_type: str
    display_name: Optional[str] = None
    url: Optional[str] = None
    icon: Optional[str] = None
    target_window: str = "_self"
    sort_order: int = 0
    parent_id: Optional[str] = None
    menu_level: int = 0
    is_visible: bool = True
    is_active: bool = True

    @classmethod
    def from_menu(cls, menu: Menu) -> "MenuResponse":
        return cls(
            id=menu.id,
            name=menu.name,
            menu_type=menu.menu_type.value,
            display_name=menu.display_name,
            url=menu.url,
            icon=menu.icon,
            target_window=menu.target_window,
            sort_order=menu.sort_order,
            parent_id=menu.parent_id,
            menu_level=menu.menu_level,
            is_visible=menu.is_visible,
            is_active=menu.is_active,
        )


class MenuNodeResponse(MenuResponse):
    children: List["MenuNodeResponse"] = Field(default_factory=list)
    permissions: Optional[Dict[str, bool]] = None


class MenuPermissionsResponse(BaseModel):
    menu_id: str
    can_view: bool = False
    can_access: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False
    can_execute: bool = False

    @classmethod
    def from_permissions(
        cls, menu_id: str, perms: MenuPermissions
    ) -> "MenuPermissionsResponse":
        return cls(menu_id=menu_id, **perms.as_dict())


class MenuFlagsRequest(BaseModel):
    """Menu capability flags; omitted flags are left out of the write."""

    model_config = ConfigDict(extra="forbid")

    can_view: Optional[bool] = None
    can_access: Optional[bool] = None
    can_create: Optional[bool] = None
    can_update: Optional[bool] = None
    can_delete: Optional[bool] = None
    can_execute: Optional[bool] = None

    def flags(self) -> Dict[str, Optional[bool]]:
        return self.model_dump(exclude_unset=True)


class CopyMenuPermissionsRequest(BaseModel):
    source_menu_id: str
    target_menu_id: str


class RoleMenuPermissionResponse(BaseModel):
    role_id: str
    menu_id: str
    can_view: bool = False
    can_access: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False
    can_execute: bool = False

    @classmethod
    def from_record(cls, record: RoleMenuPermission) -> "RoleMenuPermissionResponse":
        return cls(
            role_id=record.role_id,
            menu_id=record.menu_id,
            **{flag: getattr(record, flag) for flag in MENU_FLAGS},
        )


class UserMenuPermissionResponse(BaseModel):
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

    @classmethod
    def from_record(cls, record: UserMenuPermission) -> "UserMenuPermissionResponse":
        return cls(
            user_id=record.user_id,
            menu_id=record.menu_id,
            is_override=record.is_override,
            is_favorite=record.is_favorite,
            **{flag: getattr(record, flag) for flag in MENU_FLAGS},
        )


# users


class UserUpdateRequest(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    last_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class UserRoleRequest(BaseModel):
    role_id: str


class UserDetailResponse(UserResponse):
    state: str
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)


class UserListResponse(BaseModel):
    items: List[UserResponse]
    limit: int
    offset: int
