"""Built-in catalog: permissions, system roles, the default menu tree and dev users.

Every step is idempotent; existing records are left untouched.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from admincore.config import Settings
from admincore.logging import get_logger
from admincore.service.passwords import PasswordService
from admincore.storage.models import MenuType, PermissionAction, Role

logger = get_logger(__name__)

SYSTEM_RESOURCE = "SYSTEM"

_PERMISSIONS = (
    (PermissionAction.VIEW, "View", "View resource"),
    (PermissionAction.CREATE, "Create", "Create resource"),
    (PermissionAction.UPDATE, "Update", "Update resource"),
    (PermissionAction.DELETE, "Delete", "Delete resource"),
    (PermissionAction.ADMIN, "Admin", "Admin access"),
)

_DEV_USERS = (
    ("admin@example.com", "admin123", "Admin", "User", "admin"),
    ("user@example.com", "user123", "Test", "User", "default"),
)


def _ensure_permissions(store, settings: Settings) -> Dict[PermissionAction, str]:
    ids: Dict[PermissionAction, str] = {}
    for action, display_name, description in _PERMISSIONS:
        existing = store.get_permission_by_resource_action(SYSTEM_RESOURCE, action)
        if existing is None:
            name = (
                settings.admin_permission_name
                if action == PermissionAction.ADMIN
                else f"{SYSTEM_RESOURCE}_{action.value}"
            )
            existing = store.create_permission(
                name,
                SYSTEM_RESOURCE,
                action,
                display_name=display_name,
                description=description,
            )
        ids[action] = existing.id
    return ids


def _ensure_role(
    store,
    name: str,
    display_name: str,
    permission_ids: List[str],
    *,
    is_system: bool,
) -> Role:
    role = store.get_role_by_name(name)
    if role is None:
        role = store.create_role(
            name,
            display_name=display_name,
            is_system=is_system,
            permission_ids=permission_ids,
        )
        logger.info("seed_role_created", role=name)
    return role


def _ensure_menus(store) -> None:
    if store.list_menus():
        return
    store.create_menu(
        "dashboard",
        display_name="Dashboard",
        url="/dashboard",
        icon="dashboard",
        sort_order=1,
        menu_type=MenuType.INTERNAL,
    )
    system = store.create_menu(
        "system",
        display_name="System Management",
        icon="settings",
        sort_order=2,
        menu_type=MenuType.GROUP,
    )
    for order, (name, display_name, url, icon) in enumerate(
        (
            ("users", "User Management", "/system/users", "people"),
            ("roles", "Role Management", "/system/roles", "badge"),
            ("menus", "Menu Management", "/system/menus", "menu"),
        ),
        start=1,
    ):
        store.create_menu(
            name,
            display_name=display_name,
            url=url,
            icon=icon,
            parent_id=system.id,
            sort_order=order,
            menu_type=MenuType.INTERNAL,
        )
    store.create_menu(
        "settings",
        display_name="System Settings",
        url="/system/settings",
        icon="tune",
        parent_id=system.id,
        sort_order=4,
        menu_type=MenuType.ADMIN,
    )
    logger.info("seed_menus_created")


def seed_defaults(
    store,
    settings: Settings,
    passwords: Optional[PasswordService] = None,
    *,
    dev_users: bool = False,
) -> None:
    permission_ids = _ensure_permissions(store, settings)
    admin_role = _ensure_role(
        store,
        settings.admin_role_name,
        "Administrator",
        list(permission_ids.values()),
        is_system=True,
    )
    default_role = _ensure_role(
        store,
        settings.default_role_name,
        "User",
        [permission_ids[PermissionAction.VIEW]],
        is_system=True,
    )
    _ensure_role(
        store,
        settings.manager_role_name,
        "Manager",
        [
            permission_ids[PermissionAction.VIEW],
            permission_ids[PermissionAction.CREATE],
            permission_ids[PermissionAction.UPDATE],
        ],
        is_system=False,
    )
    _ensure_menus(store)

    if dev_users:
        hasher = passwords or PasswordService()
        roles = {"admin": admin_role, "default": default_role}
        for email, password, first_name, last_name, role_key in _DEV_USERS:
            if store.get_user_by_email(email) is not None:
                continue
            role_ids = {default_role.id, roles[role_key].id}
            store.create_user(
                email,
                hasher.hash(password),
                first_name=first_name,
                last_name=last_name,
                is_email_verified=True,
                role_ids=role_ids,
            )
            logger.info("seed_user_created", email=email)
    logger.info("seed_defaults_complete")


__all__ = ["SYSTEM_RESOURCE", "seed_defaults"]
