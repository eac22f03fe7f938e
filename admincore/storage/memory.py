from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from admincore.logging import get_logger
from admincore.storage.common import (
    ensure_within_depth,
    normalize_email,
    subtree_ids,
    subtree_levels,
    validate_parent_chain,
)
from admincore.storage.errors import ConstraintViolation
from admincore.storage.models import (
    MENU_FLAGS,
    AuthorizationSnapshot,
    Menu,
    MenuType,
    Permission,
    PermissionAction,
    Role,
    RoleMenuPermission,
    User,
    UserGrants,
    UserMenuPermission,
    new_id,
    utcnow,
)

_USER_FIELDS = {
    "email",
    "first_name",
    "last_name",
    "phone_number",
    "is_active",
    "is_email_verified",
    "is_mfa_enabled",
}
_ROLE_FIELDS = {"name", "display_name", "description", "is_active"}
_PERMISSION_FIELDS = {"name", "resource", "action", "display_name", "description"}
_MENU_FIELDS = {
    "name",
    "menu_type",
    "display_name",
    "url",
    "icon",
    "target_window",
    "sort_order",
    "parent_id",
    "is_visible",
    "is_active",
}


class MemoryStore:
    """In-memory backing store for tests and local development.

    Every public method holds ``_data_lock`` for its whole body, so compound
    operations such as ``record_failed_login`` are atomic read-modify-writes and
    ``get_authorization_snapshot`` observes a single consistent state. Records
    handed out are copies; callers mutate state only through store methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.menus: Dict[str, Menu] = {}
        self.role_menu_permissions: Dict[Tuple[str, str], RoleMenuPermission] = {}
        self.user_menu_permissions: Dict[Tuple[str, str], UserMenuPermission] = {}
        # RLock so helpers can be called from inside locked public methods
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(record: Any) -> Any:
        return copy.deepcopy(record) if record is not None else None

    # users
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
        role_ids: Iterable[str] = (),
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if self._find_user_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            role_set = set(role_ids)
            missing = [rid for rid in role_set if rid not in self.roles]
            if missing:
                raise ConstraintViolation("role not found", {"role_ids": missing})
            user = User(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                phone_number=phone_number,
                is_active=is_active,
                is_email_verified=is_email_verified,
                role_ids=role_set,
            )
            self.users[user.id] = user
            return self._copy(user)

    def _find_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self._find_user_by_email(normalize_email(email)))

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: (u.created_at, u.id))
            return [self._copy(u) for u in ordered[offset : offset + limit]]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
                other = self._find_user_by_email(fields["email"])
                if other and other.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return self._copy(user)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            user.updated_at = utcnow()

    def record_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.account_locked_until = now + lock_duration
            user.updated_at = now
            return self._copy(user)

    def record_successful_login(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = 0
            user.account_locked_until = None
            user.last_login_at = now
            user.updated_at = now
            return self._copy(user)

    def clear_expired_lock(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.account_locked_until is not None and user.account_locked_until <= now:
                user.account_locked_until = None
                user.failed_login_attempts = 0
                user.updated_at = now
            return self._copy(user)

    def unlock_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.account_locked_until = None
            user.failed_login_attempts = 0
            user.updated_at = utcnow()
            return self._copy(user)

    def add_user_role(self, user_id: str, role_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            user.role_ids.add(role_id)
            user.updated_at = utcnow()
            return self._copy(user)

    def remove_user_role(self, user_id: str, role_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role_ids.discard(role_id)
            user.updated_at = utcnow()
            return self._copy(user)

    def list_users_with_role(self, role_id: str) -> List[User]:
        with self._data_lock:
            holders = [u for u in self.users.values() if role_id in u.role_ids]
            return [self._copy(u) for u in sorted(holders, key=lambda u: u.email)]

    def get_user_grants(self, user_id: str) -> Optional[UserGrants]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            roles, permissions = self._grants_for(user)
            return UserGrants(user=self._copy(user), roles=roles, permissions=permissions)

    def _grants_for(self, user: User) -> Tuple[List[Role], List[Permission]]:
        roles = [self.roles[rid] for rid in sorted(user.role_ids) if rid in self.roles]
        permission_ids = set()
        for role in roles:
            permission_ids.update(role.permission_ids)
        permissions = [
            self.permissions[pid] for pid in sorted(permission_ids) if pid in self.permissions
        ]
        return [self._copy(r) for r in roles], [self._copy(p) for p in permissions]

    # roles
    def create_role(
        self,
        name: str,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        is_system: bool = False,
        is_active: bool = True,
        permission_ids: Iterable[str] = (),
    ) -> Role:
        with self._data_lock:
            if self._find_role_by_name(name):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            perm_set = set(permission_ids)
            self._ensure_permissions_exist(perm_set)
            role = Role(
                id=new_id(),
                name=name,
                display_name=display_name,
                description=description,
                is_system=is_system,
                is_active=is_active,
                permission_ids=perm_set,
            )
            self.roles[role.id] = role
            return self._copy(role)

    def _find_role_by_name(self, name: str) -> Optional[Role]:
        return next((r for r in self.roles.values() if r.name == name), None)

    def _ensure_permissions_exist(self, permission_ids: Iterable[str]) -> None:
        missing = sorted(pid for pid in permission_ids if pid not in self.permissions)
        if missing:
            raise ConstraintViolation("permission not found", {"permission_ids": missing})

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self._copy(self.roles.get(role_id))

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return self._copy(self._find_role_by_name(name))

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [self._copy(r) for r in sorted(self.roles.values(), key=lambda r: r.name)]

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]:
        unknown = set(fields) - _ROLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported role fields: {sorted(unknown)}")
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if "name" in fields:
                other = self._find_role_by_name(fields["name"])
                if other and other.id != role_id:
                    raise ConstraintViolation("role name already exists", {"field": "name"})
            for key, value in fields.items():
                setattr(role, key, value)
            role.updated_at = utcnow()
            return self._copy(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for user in self.users.values():
                user.role_ids.discard(role_id)
            for key in [k for k in self.role_menu_permissions if k[0] == role_id]:
                self.role_menu_permissions.pop(key, None)
            return True

    def set_role_permissions(
        self, role_id: str, permission_ids: Iterable[str]
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            perm_set = set(permission_ids)
            self._ensure_permissions_exist(perm_set)
            role.permission_ids = perm_set
            role.updated_at = utcnow()
            return self._copy(role)

    def remove_role_permission(self, role_id: str, permission_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            role.permission_ids.discard(permission_id)
            role.updated_at = utcnow()
            return self._copy(role)

    # permissions
    def create_permission(
        self,
        name: str,
        resource: str,
        action: PermissionAction,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Permission:
        action = PermissionAction(action)
        with self._data_lock:
            self._ensure_permission_unique(None, name, resource, action)
            permission = Permission(
                id=new_id(),
                name=name,
                resource=resource,
                action=action,
                display_name=display_name,
                description=description,
            )
            self.permissions[permission.id] = permission
            return self._copy(permission)

    def _ensure_permission_unique(
        self,
        permission_id: Optional[str],
        name: str,
        resource: str,
        action: PermissionAction,
    ) -> None:
        for existing in self.permissions.values():
            if existing.id == permission_id:
                continue
            if existing.name == name:
                raise ConstraintViolation(
                    "permission name already exists", {"field": "name"}
                )
            if existing.resource == resource and existing.action == action:
                raise ConstraintViolation(
                    "permission for resource and action already exists",
                    {"field": "resource_action", "resource": resource, "action": action.value},
                )

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            return self._copy(self.permissions.get(permission_id))

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            found = next((p for p in self.permissions.values() if p.name == name), None)
            return self._copy(found)

    def get_permission_by_resource_action(
        self, resource: str, action: PermissionAction
    ) -> Optional[Permission]:
        action = PermissionAction(action)
        with self._data_lock:
            found = next(
                (
                    p
                    for p in self.permissions.values()
                    if p.resource == resource and p.action == action
                ),
                None,
            )
            return self._copy(found)

    def list_permissions(self, resource: Optional[str] = None) -> List[Permission]:
        with self._data_lock:
            results = [
                p for p in self.permissions.values() if resource is None or p.resource == resource
            ]
            ordered = sorted(results, key=lambda p: (p.resource, p.action.value))
            return [self._copy(p) for p in ordered]

    def update_permission(self, permission_id: str, **fields: Any) -> Optional[Permission]:
        unknown = set(fields) - _PERMISSION_FIELDS
        if unknown:
            raise ValueError(f"unsupported permission fields: {sorted(unknown)}")
        if "action" in fields:
            fields["action"] = PermissionAction(fields["action"])
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                return None
            self._ensure_permission_unique(
                permission_id,
                fields.get("name", permission.name),
                fields.get("resource", permission.resource),
                fields.get("action", permission.action),
            )
            for key, value in fields.items():
                setattr(permission, key, value)
            return self._copy(permission)

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            for role in self.roles.values():
                role.permission_ids.discard(permission_id)
            return True

    # menus
    def _children_of(self, menu_id: str) -> List[str]:
        children = [m for m in self.menus.values() if m.parent_id == menu_id]
        return [m.id for m in sorted(children, key=lambda m: (m.sort_order, m.id))]

    def _parent_of(self, menu_id: str) -> Optional[str]:
        menu = self.menus.get(menu_id)
        return menu.parent_id if menu else None

    def create_menu(
        self,
        name: str,
        *,
        menu_type: MenuType = MenuType.INTERNAL,
        display_name: Optional[str] = None,
        url: Optional[str] = None,
        icon: Optional[str] = None,
        target_window: str = "_self",
        sort_order: int = 0,
        parent_id: Optional[str] = None,
        is_visible: bool = True,
        is_active: bool = True,
        max_depth: Optional[int] = None,
    ) -> Menu:
        with self._data_lock:
            if parent_id is not None and parent_id not in self.menus:
                raise ConstraintViolation("parent menu not found", {"parent_id": parent_id})
            parent_level = validate_parent_chain(
                None, parent_id, self._parent_of, len(self.menus)
            )
            menu = Menu(
                id=new_id(),
                name=name,
                menu_type=MenuType(menu_type),
                display_name=display_name,
                url=url,
                icon=icon,
                target_window=target_window,
                sort_order=sort_order,
                parent_id=parent_id,
                menu_level=parent_level + 1,
                is_visible=is_visible,
                is_active=is_active,
            )
            ensure_within_depth({menu.id: menu.menu_level}, max_depth)
            self.menus[menu.id] = menu
            return self._copy(menu)

    def get_menu(self, menu_id: str) -> Optional[Menu]:
        with self._data_lock:
            return self._copy(self.menus.get(menu_id))

    def get_menu_by_url(self, url: str) -> Optional[Menu]:
        with self._data_lock:
            matches = sorted(
                (m for m in self.menus.values() if m.url == url),
                key=lambda m: (m.sort_order, m.id),
            )
            return self._copy(matches[0]) if matches else None

    def list_menus(self) -> List[Menu]:
        with self._data_lock:
            ordered = sorted(
                self.menus.values(), key=lambda m: (m.menu_level, m.sort_order, m.id)
            )
            return [self._copy(m) for m in ordered]

    def list_child_menus(self, menu_id: str) -> List[Menu]:
        with self._data_lock:
            return [self._copy(self.menus[cid]) for cid in self._children_of(menu_id)]

    def update_menu(
        self, menu_id: str, *, max_depth: Optional[int] = None, **fields: Any
    ) -> Optional[Menu]:
        unknown = set(fields) - _MENU_FIELDS
        if unknown:
            raise ValueError(f"unsupported menu fields: {sorted(unknown)}")
        if "menu_type" in fields:
            fields["menu_type"] = MenuType(fields["menu_type"])
        with self._data_lock:
            menu = self.menus.get(menu_id)
            if not menu:
                return None
            levels: Dict[str, int] = {}
            if "parent_id" in fields:
                parent_id = fields["parent_id"]
                if parent_id is not None and parent_id not in self.menus:
                    raise ConstraintViolation(
                        "parent menu not found", {"parent_id": parent_id}
                    )
                parent_level = validate_parent_chain(
                    menu_id, parent_id, self._parent_of, len(self.menus)
                )
                levels = subtree_levels(menu_id, parent_level + 1, self._children_of)
                ensure_within_depth(levels, max_depth)
            now = utcnow()
            for key, value in fields.items():
                setattr(menu, key, value)
            for node_id, level in levels.items():
                self.menus[node_id].menu_level = level
            menu.updated_at = now
            return self._copy(menu)

    def delete_menu(self, menu_id: str) -> List[str]:
        with self._data_lock:
            if menu_id not in self.menus:
                return []
            doomed = subtree_ids(menu_id, self._children_of)
            doomed_set = set(doomed)
            for node_id in doomed:
                self.menus.pop(node_id, None)
            for key in [k for k in self.role_menu_permissions if k[1] in doomed_set]:
                self.role_menu_permissions.pop(key, None)
            for key in [k for k in self.user_menu_permissions if k[1] in doomed_set]:
                self.user_menu_permissions.pop(key, None)
            return doomed

    # menu permission records
    def upsert_role_menu_permission(
        self, role_id: str, menu_id: str, **flags: bool
    ) -> RoleMenuPermission:
        unknown = set(flags) - set(MENU_FLAGS)
        if unknown:
            raise ValueError(f"unsupported menu flags: {sorted(unknown)}")
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if menu_id not in self.menus:
                raise ConstraintViolation("menu not found", {"menu_id": menu_id})
            record = self.role_menu_permissions.get((role_id, menu_id))
            if record is None:
                record = RoleMenuPermission(role_id=role_id, menu_id=menu_id)
                self.role_menu_permissions[(role_id, menu_id)] = record
            for flag, value in flags.items():
                setattr(record, flag, bool(value))
            return self._copy(record)

    def delete_role_menu_permission(self, role_id: str, menu_id: str) -> bool:
        with self._data_lock:
            return self.role_menu_permissions.pop((role_id, menu_id), None) is not None

    def list_role_menu_permissions(
        self, *, role_id: Optional[str] = None, menu_id: Optional[str] = None
    ) -> List[RoleMenuPermission]:
        with self._data_lock:
            results = [
                rec
                for (rid, mid), rec in self.role_menu_permissions.items()
                if (role_id is None or rid == role_id) and (menu_id is None or mid == menu_id)
            ]
            ordered = sorted(results, key=lambda r: (r.role_id, r.menu_id))
            return [self._copy(r) for r in ordered]

    def save_user_menu_permission(self, record: UserMenuPermission) -> UserMenuPermission:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": record.user_id})
            if record.menu_id not in self.menus:
                raise ConstraintViolation("menu not found", {"menu_id": record.menu_id})
            stored = self._copy(record)
            self.user_menu_permissions[(record.user_id, record.menu_id)] = stored
            return self._copy(stored)

    def get_user_menu_permission(
        self, user_id: str, menu_id: str
    ) -> Optional[UserMenuPermission]:
        with self._data_lock:
            return self._copy(self.user_menu_permissions.get((user_id, menu_id)))

    def delete_user_menu_permission(self, user_id: str, menu_id: str) -> bool:
        with self._data_lock:
            return self.user_menu_permissions.pop((user_id, menu_id), None) is not None

    def list_user_menu_permissions(self, user_id: str) -> List[UserMenuPermission]:
        with self._data_lock:
            results = [
                rec for (uid, _), rec in self.user_menu_permissions.items() if uid == user_id
            ]
            return [self._copy(r) for r in sorted(results, key=lambda r: r.menu_id)]

    # authorization reads
    def get_authorization_snapshot(
        self, user_id: str, menu_id: str
    ) -> Optional[AuthorizationSnapshot]:
        with self._data_lock:
            user = self.users.get(user_id)
            menu = self.menus.get(menu_id)
            if not user or not menu:
                return None
            return self._snapshot(user, menu)

    def list_authorization_snapshots(self, user_id: str) -> List[AuthorizationSnapshot]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return []
            ordered = sorted(self.menus.values(), key=lambda m: (m.sort_order, m.id))
            return [self._snapshot(user, menu) for menu in ordered]

    def _snapshot(self, user: User, menu: Menu) -> AuthorizationSnapshot:
        roles, permissions = self._grants_for(user)
        role_records = [
            self._copy(self.role_menu_permissions[(role.id, menu.id)])
            for role in roles
            if (role.id, menu.id) in self.role_menu_permissions
        ]
        return AuthorizationSnapshot(
            user=self._copy(user),
            roles=roles,
            permissions=permissions,
            menu=self._copy(menu),
            user_override=self._copy(self.user_menu_permissions.get((user.id, menu.id))),
            role_menu_permissions=role_records,
        )

    def counts(self) -> Dict[str, int]:
        with self._data_lock:
            return {
                "users": len(self.users),
                "roles": len(self.roles),
                "permissions": len(self.permissions),
                "menus": len(self.menus),
            }

    def close(self) -> None:
        return None


__all__ = ["MemoryStore"]