from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from admincore.config import Settings
from admincore.logging import get_logger
from admincore.service.errors import NotFoundError
from admincore.storage.models import (
    MENU_FLAGS,
    AuthorizationSnapshot,
    Menu,
    MenuPermissions,
    MenuType,
    Permission,
    PermissionAction,
    Role,
    RoleMenuPermission,
)

logger = get_logger(__name__)

MENU_ACTIONS = ("VIEW", "ACCESS", "CREATE", "UPDATE", "DELETE", "EXECUTE")
PERMISSION_LEVELS = ("VIEW_ONLY", "ACCESSIBLE", "EDITABLE", "ADMIN")


@dataclass(frozen=True)
class PermissionClosure:
    """Role and permission names granted through a user's active roles."""

    role_names: FrozenSet[str] = field(default_factory=frozenset)
    permission_names: FrozenSet[str] = field(default_factory=frozenset)


def _active_grants(
    roles: Iterable[Role], permissions: Iterable[Permission]
) -> Tuple[List[Role], List[Permission]]:
    active_roles = [role for role in roles if role.is_active]
    granted_ids = set()
    for role in active_roles:
        granted_ids.update(role.permission_ids)
    return active_roles, [p for p in permissions if p.id in granted_ids]


class PermissionResolver:
    """Computes a user's effective six-flag capability set for menus.

    Precedence, first match wins:
    1. inactive or invisible menu -> nothing
    2. admin role or any ADMIN-action permission -> everything
    3. per active role: its menu record, else the type default for its tier;
       OR-ed across roles
    4. user override record, each non-null flag replacing the derived value
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def resolve(self, user_id: str, menu_id: str) -> MenuPermissions:
        snapshot = self.store.get_authorization_snapshot(user_id, menu_id)
        if snapshot is None:
            raise NotFoundError(
                "user or menu not found", detail={"user_id": user_id, "menu_id": menu_id}
            )
        return self.evaluate(snapshot)

    def evaluate(self, snapshot: AuthorizationSnapshot) -> MenuPermissions:
        menu = snapshot.menu
        if not menu.is_active or not menu.is_visible:
            return MenuPermissions.none()

        roles, permissions = _active_grants(snapshot.roles, snapshot.permissions)
        role_names = {role.name for role in roles}
        if self._is_admin(role_names, permissions):
            return MenuPermissions.full()

        flags = self._role_flags(menu.menu_type, roles, snapshot.role_menu_permissions)

        override = snapshot.user_override
        if override is not None and override.is_override:
            for flag in MENU_FLAGS:
                value = getattr(override, flag)
                if value is not None:
                    flags[flag] = bool(value)

        return MenuPermissions(**flags)

    def _is_admin(self, role_names: Iterable[str], permissions: Iterable[Permission]) -> bool:
        if self.settings.admin_role_name in role_names:
            return True
        return any(p.action == PermissionAction.ADMIN for p in permissions)

    def _role_flags(
        self,
        menu_type: MenuType,
        roles: List[Role],
        records: Iterable[RoleMenuPermission],
    ) -> Dict[str, bool]:
        """OR of each active role's contribution.

        A role with a record for the menu contributes exactly that record; any
        other role contributes the type default for its own tier.
        """
        if not roles:
            return self._type_defaults(menu_type, False)
        by_role = {rec.role_id: rec for rec in records}
        flags = {flag: False for flag in MENU_FLAGS}
        for role in roles:
            record = by_role.get(role.id)
            if record is not None:
                derived = {flag: bool(getattr(record, flag)) for flag in MENU_FLAGS}
            else:
                derived = self._type_defaults(
                    menu_type, role.name == self.settings.manager_role_name
                )
            for flag, value in derived.items():
                flags[flag] = flags[flag] or value
        return flags

    @staticmethod
    def _type_defaults(menu_type: MenuType, is_manager: bool) -> Dict[str, bool]:
        flags = {flag: False for flag in MENU_FLAGS}
        match menu_type:
            case MenuType.PUBLIC:
                flags.update(can_view=True, can_access=True)
            case MenuType.INTERNAL:
                flags.update(can_view=True, can_access=True)
                if is_manager:
                    flags.update(can_create=True, can_update=True, can_execute=True)
            case MenuType.ADMIN:
                if is_manager:
                    flags["can_view"] = True
            case MenuType.EXTERNAL | MenuType.DIVIDER | MenuType.GROUP:
                # navigation-only nodes never carry actions
                flags.update(can_view=True, can_access=True)
            case _:
                raise ValueError(f"unknown menu type: {menu_type!r}")
        return flags

    def resolve_all(self, user_id: str) -> Dict[str, MenuPermissions]:
        self._require_user(user_id)
        snapshots = self.store.list_authorization_snapshots(user_id)
        return {snap.menu.id: self.evaluate(snap) for snap in snapshots}

    def has_menu_permission(self, user_id: str, menu_id: str, action: str) -> bool:
        if (action or "").strip().upper() not in MENU_ACTIONS:
            return False
        return self.resolve(user_id, menu_id).allows(action)

    def accessible_menus(
        self, user_id: str, menu_type: Optional[MenuType] = None
    ) -> List[Menu]:
        self._require_user(user_id)
        results = []
        for snap in self.store.list_authorization_snapshots(user_id):
            menu = snap.menu
            if not menu.is_active:
                continue
            if menu_type is not None and menu.menu_type != MenuType(menu_type):
                continue
            if self.evaluate(snap).can_access:
                results.append(menu)
        return sorted(results, key=lambda m: (m.sort_order, m.id))

    def can_access_url(self, user_id: str, url: str) -> bool:
        menu = self.store.get_menu_by_url(url)
        if menu is None:
            return self.settings.allow_unmapped_urls
        return self.resolve(user_id, menu.id).can_access

    def menus_by_permission_level(self, user_id: str) -> Dict[str, List[Menu]]:
        """Bucket active menus by the strongest capability the user holds."""
        self._require_user(user_id)
        buckets: Dict[str, List[Menu]] = {level: [] for level in PERMISSION_LEVELS}
        for snap in self.store.list_authorization_snapshots(user_id):
            if not snap.menu.is_active:
                continue
            perms = self.evaluate(snap)
            if perms.can_delete or perms.can_execute:
                buckets["ADMIN"].append(snap.menu)
            elif perms.can_create or perms.can_update:
                buckets["EDITABLE"].append(snap.menu)
            elif perms.can_access:
                buckets["ACCESSIBLE"].append(snap.menu)
            elif perms.can_view:
                buckets["VIEW_ONLY"].append(snap.menu)
        return buckets

    def validate_menu_hierarchy_permissions(
        self, user_id: str, parent_menu_id: str, child_menu_id: str
    ) -> bool:
        parent = self.resolve(user_id, parent_menu_id)
        child = self.resolve(user_id, child_menu_id)
        return parent.can_update and child.can_view

    def permission_closure(self, user_id: str) -> PermissionClosure:
        grants = self.store.get_user_grants(user_id)
        if grants is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        roles, permissions = _active_grants(grants.roles, grants.permissions)
        return PermissionClosure(
            role_names=frozenset(role.name for role in roles),
            permission_names=frozenset(p.name for p in permissions),
        )

    def is_admin(self, user_id: str) -> bool:
        """Same rule as the menu bypass, read from live role state."""
        grants = self.store.get_user_grants(user_id)
        if grants is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        roles, permissions = _active_grants(grants.roles, grants.permissions)
        return self._is_admin({role.name for role in roles}, permissions)

    def has_permission(self, user_id: str, resource: str, action: str) -> bool:
        try:
            wanted = PermissionAction((action or "").strip().upper())
        except ValueError:
            return False
        grants = self.store.get_user_grants(user_id)
        if grants is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        roles, permissions = _active_grants(grants.roles, grants.permissions)
        if self._is_admin({role.name for role in roles}, permissions):
            return True
        return any(p.resource == resource and p.action == wanted for p in permissions)

    def batch_check(
        self, user_id: str, checks: Iterable[Tuple[str, str]]
    ) -> Dict[str, bool]:
        """Evaluate ``(resource, action)`` pairs; keys are ``"resource:action"``."""
        return {
            f"{resource}:{action}": self.has_permission(user_id, resource, action)
            for resource, action in checks
        }

    def _require_user(self, user_id: str) -> None:
        if self.store.get_user(user_id) is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})


__all__ = [
    "MENU_ACTIONS",
    "PERMISSION_LEVELS",
    "PermissionClosure",
    "PermissionResolver",
]
