from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from admincore.config import Settings
from admincore.logging import get_logger
from admincore.service.errors import (
    ConflictError,
    DuplicateResourceError,
    NotFoundError,
    SystemRoleError,
    ValidationError,
)
from admincore.storage.errors import ConstraintViolation
from admincore.storage.models import Permission, PermissionAction, Role, User

logger = get_logger(__name__)

PERMISSION_TEMPLATES: Dict[str, tuple[PermissionAction, ...]] = {
    "CRUD": (
        PermissionAction.CREATE,
        PermissionAction.VIEW,
        PermissionAction.UPDATE,
        PermissionAction.DELETE,
    ),
    "READ_ONLY": (PermissionAction.VIEW,),
    "FULL": tuple(PermissionAction),
}


def _parse_action(action: str | PermissionAction) -> PermissionAction:
    try:
        return PermissionAction(str(getattr(action, "value", action)).strip().upper())
    except ValueError:
        raise ValidationError(
            "unsupported permission action",
            detail={"action": action, "allowed": [a.value for a in PermissionAction]},
        )


class RbacService:
    """Role and permission catalog management."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    # permissions
    def list_permissions(self, resource: Optional[str] = None) -> List[Permission]:
        return self.store.list_permissions(resource=resource)

    def get_permission(self, permission_id: str) -> Permission:
        permission = self.store.get_permission(permission_id)
        if permission is None:
            raise NotFoundError(
                "permission not found", detail={"permission_id": permission_id}
            )
        return permission

    def list_resources(self) -> List[str]:
        return sorted({p.resource for p in self.store.list_permissions()})

    def list_actions(self) -> List[str]:
        return [action.value for action in PermissionAction]

    def _ensure_unique_permission(
        self,
        name: str,
        resource: str,
        action: PermissionAction,
        *,
        exclude_id: Optional[str] = None,
    ) -> None:
        by_name = self.store.get_permission_by_name(name)
        if by_name is not None and by_name.id != exclude_id:
            raise DuplicateResourceError(
                "permission name already exists", detail={"name": name}
            )
        by_pair = self.store.get_permission_by_resource_action(resource, action)
        if by_pair is not None and by_pair.id != exclude_id:
            raise DuplicateResourceError(
                "permission for resource and action already exists",
                detail={"resource": resource, "action": action.value},
            )

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str | PermissionAction,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Permission:
        parsed = _parse_action(action)
        self._ensure_unique_permission(name, resource, parsed)
        try:
            permission = self.store.create_permission(
                name,
                resource,
                parsed,
                display_name=display_name,
                description=description,
            )
        except ConstraintViolation as exc:
            raise DuplicateResourceError(exc.message, detail=exc.detail) from exc
        logger.info(
            "permission_created",
            permission_id=permission.id,
            resource=resource,
            action=parsed.value,
        )
        return permission

    def update_permission(
        self,
        permission_id: str,
        *,
        name: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str | PermissionAction] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Permission:
        current = self.get_permission(permission_id)
        fields = {
            key: value
            for key, value in {
                "name": name,
                "resource": resource,
                "display_name": display_name,
                "description": description,
            }.items()
            if value is not None
        }
        if action is not None:
            fields["action"] = _parse_action(action)
        self._ensure_unique_permission(
            fields.get("name", current.name),
            fields.get("resource", current.resource),
            fields.get("action", current.action),
            exclude_id=permission_id,
        )
        try:
            updated = self.store.update_permission(permission_id, **fields)
        except ConstraintViolation as exc:
            raise DuplicateResourceError(exc.message, detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError(
                "permission not found", detail={"permission_id": permission_id}
            )
        return updated

    def delete_permission(self, permission_id: str) -> None:
        if not self.store.delete_permission(permission_id):
            raise NotFoundError(
                "permission not found", detail={"permission_id": permission_id}
            )
        logger.info("permission_deleted", permission_id=permission_id)

    def create_from_template(self, template: str, resource: str) -> List[Permission]:
        """Create ``RESOURCE_ACTION`` permissions for each action of a template.

        Pairs that already exist are skipped, so applying a wider template after
        a narrower one only adds the missing actions.
        """
        actions = PERMISSION_TEMPLATES.get((template or "").strip().upper())
        if actions is None:
            raise ValidationError(
                "unknown permission template",
                detail={"template": template, "allowed": sorted(PERMISSION_TEMPLATES)},
            )
        resource = resource.strip()
        if not resource:
            raise ValidationError("resource is required")
        created = []
        for action in actions:
            if self.store.get_permission_by_resource_action(resource, action):
                continue
            created.append(
                self.create_permission(
                    f"{resource.upper()}_{action.value}",
                    resource,
                    action,
                    description=f"{action.value} permission for {resource}",
                )
            )
        logger.info(
            "permission_template_applied",
            template=template,
            resource=resource,
            created=len(created),
        )
        return created

    # roles
    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def _ensure_permissions_exist(self, permission_ids: Iterable[str]) -> List[str]:
        ids = list(dict.fromkeys(permission_ids))
        missing = [pid for pid in ids if self.store.get_permission(pid) is None]
        if missing:
            raise NotFoundError(
                "permission not found", detail={"permission_ids": missing}
            )
        return ids

    def create_role(
        self,
        name: str,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        permission_ids: Iterable[str] = (),
        is_active: bool = True,
        is_system: bool = False,
    ) -> Role:
        name = (name or "").strip()
        if not name:
            raise ValidationError("role name is required")
        if self.store.get_role_by_name(name) is not None:
            raise ConflictError("role name already exists", detail={"name": name})
        ids = self._ensure_permissions_exist(permission_ids)
        try:
            role = self.store.create_role(
                name,
                display_name=display_name,
                description=description,
                is_system=is_system,
                is_active=is_active,
                permission_ids=ids,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("role_created", role_id=role.id, role=name)
        return role

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Role:
        role = self.get_role(role_id)
        fields = {
            key: value
            for key, value in {
                "name": name,
                "display_name": display_name,
                "description": description,
                "is_active": is_active,
            }.items()
            if value is not None
        }
        if "name" in fields and fields["name"] != role.name:
            if role.is_system:
                raise SystemRoleError(
                    "system roles cannot be renamed", detail={"role": role.name}
                )
            if self.store.get_role_by_name(fields["name"]) is not None:
                raise ConflictError(
                    "role name already exists", detail={"name": fields["name"]}
                )
        try:
            updated = self.store.update_role(role_id, **fields)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return updated

    def delete_role(self, role_id: str) -> None:
        role = self.get_role(role_id)
        if role.is_system:
            raise SystemRoleError(
                "system roles cannot be deleted", detail={"role": role.name}
            )
        self.store.delete_role(role_id)
        logger.info("role_deleted", role_id=role_id, role=role.name)

    def role_permissions(self, role_id: str) -> List[Permission]:
        role = self.get_role(role_id)
        permissions = [self.store.get_permission(pid) for pid in role.permission_ids]
        return sorted(
            (p for p in permissions if p is not None),
            key=lambda p: (p.resource, p.action.value),
        )

    def assign_permissions(self, role_id: str, permission_ids: Iterable[str]) -> Role:
        """Replace the role's permission set."""
        self.get_role(role_id)
        ids = self._ensure_permissions_exist(permission_ids)
        updated = self.store.set_role_permissions(role_id, ids)
        if updated is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        logger.info("role_permissions_assigned", role_id=role_id, count=len(ids))
        return updated

    def revoke_permission(self, role_id: str, permission_id: str) -> Role:
        self.get_role(role_id)
        self.get_permission(permission_id)
        updated = self.store.remove_role_permission(role_id, permission_id)
        if updated is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return updated

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def assign_role_to_user(self, user_id: str, role_id: str) -> User:
        self._require_user(user_id)
        role = self.get_role(role_id)
        updated = self.store.add_user_role(user_id, role_id)
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("role_assigned", user_id=user_id, role=role.name)
        return updated

    def revoke_role_from_user(self, user_id: str, role_id: str) -> User:
        user = self._require_user(user_id)
        role = self.get_role(role_id)
        if role.name == self.settings.default_role_name:
            raise ValidationError(
                "the default role cannot be removed", detail={"role": role.name}
            )
        if role_id not in user.role_ids:
            raise NotFoundError(
                "user does not hold role", detail={"user_id": user_id, "role_id": role_id}
            )
        updated = self.store.remove_user_role(user_id, role_id)
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("role_revoked", user_id=user_id, role=role.name)
        return updated

    def users_with_role(self, role_id: str) -> List[User]:
        self.get_role(role_id)
        return self.store.list_users_with_role(role_id)

    def duplicate_role(self, role_id: str, new_name: str) -> Role:
        source = self.get_role(role_id)
        description = f"{source.description} (Copy)" if source.description else None
        return self.create_role(
            new_name,
            display_name=source.display_name,
            description=description,
            permission_ids=sorted(source.permission_ids),
            is_active=True,
            is_system=False,
        )


__all__ = ["PERMISSION_TEMPLATES", "RbacService"]
