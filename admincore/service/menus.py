from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from admincore.config import Settings
from admincore.logging import get_logger
from admincore.service.errors import (
    ConflictError,
    MenuHierarchyError,
    NotFoundError,
    ValidationError,
)
from admincore.service.permissions import PermissionResolver
from admincore.storage.errors import ConstraintViolation, MenuCycleError, MenuDepthError
from admincore.storage.models import (
    MENU_FLAGS,
    Menu,
    MenuPermissions,
    MenuType,
    RoleMenuPermission,
    UserMenuPermission,
)

logger = get_logger(__name__)

_MUTABLE_FIELDS = {
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


@dataclass
class MenuNode:
    menu: Menu
    children: List["MenuNode"] = field(default_factory=list)
    permissions: Optional[MenuPermissions] = None


def _parse_type(value: MenuType | str) -> MenuType:
    try:
        return MenuType(str(getattr(value, "value", value)).upper())
    except ValueError:
        raise ValidationError(
            "unsupported menu type",
            detail={"menu_type": value, "allowed": [t.value for t in MenuType]},
        )


def _check_flags(flags: Mapping[str, Any]) -> None:
    unknown = sorted(set(flags) - set(MENU_FLAGS))
    if unknown:
        raise ValidationError("unknown menu permission flags", detail={"flags": unknown})


class MenuService:
    """Menu tree administration and per-role / per-user menu records."""

    def __init__(self, store, settings: Settings, resolver: PermissionResolver) -> None:
        self.store = store
        self.settings = settings
        self.resolver = resolver

    def list_menus(self) -> List[Menu]:
        return self.store.list_menus()

    def get_menu(self, menu_id: str) -> Menu:
        menu = self.store.get_menu(menu_id)
        if menu is None:
            raise NotFoundError("menu not found", detail={"menu_id": menu_id})
        return menu

    def _translate(self, exc: ConstraintViolation) -> Exception:
        if isinstance(exc, (MenuCycleError, MenuDepthError)):
            return MenuHierarchyError(exc.message, detail=exc.detail)
        if "parent_id" in exc.detail:
            return NotFoundError(exc.message, detail=exc.detail)
        return ConflictError(exc.message, detail=exc.detail)

    def create_menu(
        self,
        name: str,
        *,
        menu_type: MenuType | str = MenuType.INTERNAL,
        display_name: Optional[str] = None,
        url: Optional[str] = None,
        icon: Optional[str] = None,
        target_window: str = "_self",
        sort_order: int = 0,
        parent_id: Optional[str] = None,
        is_visible: bool = True,
        is_active: bool = True,
    ) -> Menu:
        if parent_id is not None:
            self.get_menu(parent_id)
        try:
            menu = self.store.create_menu(
                name,
                menu_type=_parse_type(menu_type),
                display_name=display_name,
                url=url,
                icon=icon,
                target_window=target_window,
                sort_order=sort_order,
                parent_id=parent_id,
                is_visible=is_visible,
                is_active=is_active,
                max_depth=self.settings.menu_max_depth,
            )
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        logger.info("menu_created", menu_id=menu.id, level=menu.menu_level)
        return menu

    def update_menu(self, menu_id: str, changes: Mapping[str, Any]) -> Menu:
        """Apply a partial update; an explicit ``parent_id=None`` moves to root.

        Parent reassignment is validated for cycles and depth before anything
        is written, and the moved subtree's levels are recomputed.
        """
        self.get_menu(menu_id)
        unknown = sorted(set(changes) - _MUTABLE_FIELDS)
        if unknown:
            raise ValidationError("unsupported menu fields", detail={"fields": unknown})
        fields = dict(changes)
        if "menu_type" in fields:
            fields["menu_type"] = _parse_type(fields["menu_type"])
        parent_id = fields.get("parent_id")
        if parent_id is not None:
            self.get_menu(parent_id)
        try:
            updated = self.store.update_menu(
                menu_id, max_depth=self.settings.menu_max_depth, **fields
            )
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        if updated is None:
            raise NotFoundError("menu not found", detail={"menu_id": menu_id})
        logger.info("menu_updated", menu_id=menu_id, fields=sorted(fields))
        return updated

    def delete_menu(self, menu_id: str) -> List[str]:
        self.get_menu(menu_id)
        removed = self.store.delete_menu(menu_id)
        logger.info("menu_deleted", menu_id=menu_id, removed=len(removed))
        return removed

    def _build_tree(
        self,
        menus: List[Menu],
        permissions: Optional[Dict[str, MenuPermissions]] = None,
    ) -> List[MenuNode]:
        def include(menu: Menu) -> bool:
            if not menu.is_active or not menu.is_visible:
                return False
            if permissions is None:
                return True
            perms = permissions.get(menu.id)
            return bool(perms and perms.can_view)

        children: Dict[Optional[str], List[Menu]] = {}
        for menu in menus:
            children.setdefault(menu.parent_id, []).append(menu)

        def build(parent_id: Optional[str]) -> List[MenuNode]:
            nodes = []
            for menu in sorted(children.get(parent_id, []), key=lambda m: (m.sort_order, m.id)):
                if not include(menu):
                    continue
                nodes.append(
                    MenuNode(
                        menu=menu,
                        children=build(menu.id),
                        permissions=permissions.get(menu.id) if permissions else None,
                    )
                )
            return nodes

        return build(None)

    def menu_tree(self) -> List[MenuNode]:
        """Active, visible menus; a hidden node hides its whole subtree."""
        return self._build_tree(self.store.list_menus())

    def user_menu_tree(self, user_id: str) -> List[MenuNode]:
        permissions = self.resolver.resolve_all(user_id)
        return self._build_tree(self.store.list_menus(), permissions)

    # role menu records
    def grant_role_menu_permission(
        self, role_id: str, menu_id: str, flags: Mapping[str, bool]
    ) -> RoleMenuPermission:
        _check_flags(flags)
        if self.store.get_role(role_id) is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        self.get_menu(menu_id)
        record = self.store.upsert_role_menu_permission(
            role_id, menu_id, **{flag: bool(value) for flag, value in flags.items()}
        )
        logger.info("role_menu_permission_granted", role_id=role_id, menu_id=menu_id)
        return record

    def revoke_role_menu_permission(self, role_id: str, menu_id: str) -> None:
        if not self.store.delete_role_menu_permission(role_id, menu_id):
            raise NotFoundError(
                "role menu permission not found",
                detail={"role_id": role_id, "menu_id": menu_id},
            )
        logger.info("role_menu_permission_revoked", role_id=role_id, menu_id=menu_id)

    def list_role_menu_permissions(
        self, *, role_id: Optional[str] = None, menu_id: Optional[str] = None
    ) -> List[RoleMenuPermission]:
        return self.store.list_role_menu_permissions(role_id=role_id, menu_id=menu_id)

    def copy_role_menu_permissions(self, source_menu_id: str, target_menu_id: str) -> int:
        self.get_menu(source_menu_id)
        self.get_menu(target_menu_id)
        records = self.store.list_role_menu_permissions(menu_id=source_menu_id)
        for record in records:
            self.store.upsert_role_menu_permission(
                record.role_id,
                target_menu_id,
                **{flag: getattr(record, flag) for flag in MENU_FLAGS},
            )
        logger.info(
            "role_menu_permissions_copied",
            source_menu_id=source_menu_id,
            target_menu_id=target_menu_id,
            count=len(records),
        )
        return len(records)

    # user menu records
    def _require_user(self, user_id: str) -> None:
        if self.store.get_user(user_id) is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})

    def set_user_override(
        self, user_id: str, menu_id: str, flags: Mapping[str, Optional[bool]]
    ) -> UserMenuPermission:
        """Store an override; flags left out (or None) keep the role-derived value."""
        _check_flags(flags)
        self._require_user(user_id)
        self.get_menu(menu_id)
        existing = self.store.get_user_menu_permission(user_id, menu_id)
        record = UserMenuPermission(
            user_id=user_id,
            menu_id=menu_id,
            is_override=True,
            is_favorite=existing.is_favorite if existing else False,
            **{flag: flags.get(flag) for flag in MENU_FLAGS},
        )
        saved = self.store.save_user_menu_permission(record)
        logger.info("user_menu_override_set", user_id=user_id, menu_id=menu_id)
        return saved

    def clear_user_override(self, user_id: str, menu_id: str) -> None:
        existing = self.store.get_user_menu_permission(user_id, menu_id)
        if existing is None or not existing.is_override:
            raise NotFoundError(
                "user menu override not found",
                detail={"user_id": user_id, "menu_id": menu_id},
            )
        if existing.is_favorite:
            self.store.save_user_menu_permission(
                UserMenuPermission(user_id=user_id, menu_id=menu_id, is_favorite=True)
            )
        else:
            self.store.delete_user_menu_permission(user_id, menu_id)
        logger.info("user_menu_override_cleared", user_id=user_id, menu_id=menu_id)

    def get_user_menu_record(self, user_id: str, menu_id: str) -> Optional[UserMenuPermission]:
        return self.store.get_user_menu_permission(user_id, menu_id)

    def toggle_favorite(self, user_id: str, menu_id: str) -> bool:
        self._require_user(user_id)
        self.get_menu(menu_id)
        existing = self.store.get_user_menu_permission(user_id, menu_id)
        if existing is None:
            self.store.save_user_menu_permission(
                UserMenuPermission(user_id=user_id, menu_id=menu_id, is_favorite=True)
            )
            return True
        existing.is_favorite = not existing.is_favorite
        if not existing.is_favorite and not existing.is_override:
            self.store.delete_user_menu_permission(user_id, menu_id)
        else:
            self.store.save_user_menu_permission(existing)
        return existing.is_favorite

    def list_favorites(self, user_id: str) -> List[Menu]:
        self._require_user(user_id)
        menus = []
        for record in self.store.list_user_menu_permissions(user_id):
            if not record.is_favorite:
                continue
            menu = self.store.get_menu(record.menu_id)
            if menu is not None and menu.is_active:
                menus.append(menu)
        return sorted(menus, key=lambda m: (m.sort_order, m.id))


__all__ = ["MenuNode", "MenuService"]
