from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from admincore.api.schemas import (
    CopyMenuPermissionsRequest,
    DuplicateRoleRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MenuFlagsRequest,
    MenuNodeResponse,
    MenuPermissionsResponse,
    MenuRequest,
    MenuResponse,
    MenuUpdateRequest,
    PermissionCheckRequest,
    PermissionRequest,
    PermissionResponse,
    PermissionTemplateRequest,
    PermissionUpdateRequest,
    RegisterRequest,
    RoleMenuPermissionResponse,
    RolePermissionsRequest,
    RoleRequest,
    RoleResponse,
    RoleUpdateRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserDetailResponse,
    UserListResponse,
    UserMenuPermissionResponse,
    UserResponse,
    UserRoleRequest,
    UserUpdateRequest,
)
from admincore.logging import get_correlation_id, get_logger
from admincore.service.errors import ForbiddenError, NotFoundError, ValidationError
from admincore.service.menus import MenuNode
from admincore.service.runtime import get_runtime
from admincore.service.tokens import Identity
from admincore.service.users import UserProfile
from admincore.storage.models import MenuType

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    return envelope


def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    return get_runtime().gate.authenticate_bearer(authorization)


def get_admin_identity(identity: Identity = Depends(get_identity)) -> Identity:
    return get_runtime().gate.require_admin(identity)


def require_menu_action(action: str):
    """Dependency allowing the call only when the caller holds ``action`` on ``{menu_id}``."""

    def _check(menu_id: str, identity: Identity = Depends(get_identity)) -> Identity:
        get_runtime().gate.require_menu_action(identity, menu_id, action)
        return identity

    return _check


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _node_to_response(node: MenuNode) -> MenuNodeResponse:
    base = MenuResponse.from_menu(node.menu)
    return MenuNodeResponse(
        **base.model_dump(),
        children=[_node_to_response(child) for child in node.children],
        permissions=node.permissions.as_dict() if node.permissions else None,
    )


def _profile_to_response(profile: UserProfile) -> UserDetailResponse:
    base = UserResponse.from_user(profile.user)
    return UserDetailResponse(
        **base.model_dump(),
        state=profile.state.value,
        roles=sorted(profile.closure.role_names),
        permissions=sorted(profile.closure.permission_names),
    )


def _parse_menu_type(value: Optional[str]) -> Optional[MenuType]:
    if value is None:
        return None
    try:
        return MenuType(value.strip().upper())
    except ValueError:
        raise ValidationError(
            "unsupported menu type",
            detail={"menu_type": value, "allowed": [t.value for t in MenuType]},
        )


# auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, request: Request):
    """Authenticate with email and password and issue a token pair.

    Raises:
        401: unknown email or wrong password
        403: account locked or disabled
    """
    runtime = get_runtime()
    result = runtime.auth.login(body.email, body.password, client_ip=_client_ip(request))
    user_data = UserResponse.from_user(result.user).model_dump(mode="json")
    user_data["roles"] = sorted(result.auth.role_names)
    user_data["permissions"] = sorted(result.auth.permission_names)
    data = LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
        user=user_data,
    )
    return _ok(data.model_dump(by_alias=True))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
def register(body: RegisterRequest):
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("self-registration is disabled")
    user = runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone_number=body.phone_number,
    )
    return _ok(UserResponse.from_user(user))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh_tokens(body: TokenRefreshRequest):
    """Mint a new access token; roles and permissions are re-read from storage."""
    pair = get_runtime().auth.refresh(body.refresh_token)
    data = TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )
    return _ok(data.model_dump(by_alias=True))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
def me(identity: Identity = Depends(get_identity)):
    return _ok(
        MeResponse(
            user_id=identity.user_id,
            email=identity.email,
            roles=sorted(identity.roles),
            permissions=sorted(identity.permissions),
            expires_at=identity.expires_at,
        )
    )


@router.post("/auth/permissions/check", response_model=Envelope, tags=["auth"])
def check_own_permissions(
    body: PermissionCheckRequest, identity: Identity = Depends(get_identity)
):
    results = get_runtime().resolver.batch_check(
        identity.user_id, [(check.resource, check.action) for check in body.checks]
    )
    return _ok(results)


# menus for the signed-in user


@router.get("/menus/tree", response_model=Envelope, tags=["menus"])
def my_menu_tree(identity: Identity = Depends(get_identity)):
    nodes = get_runtime().menus.user_menu_tree(identity.user_id)
    return _ok([_node_to_response(node) for node in nodes])


@router.get("/menus/accessible", response_model=Envelope, tags=["menus"])
def my_accessible_menus(
    menu_type: Optional[str] = Query(None, max_length=16),
    identity: Identity = Depends(get_identity),
):
    menus = get_runtime().resolver.accessible_menus(
        identity.user_id, _parse_menu_type(menu_type)
    )
    return _ok([MenuResponse.from_menu(menu) for menu in menus])


@router.get("/menus/by-level", response_model=Envelope, tags=["menus"])
def my_menus_by_level(identity: Identity = Depends(get_identity)):
    buckets = get_runtime().resolver.menus_by_permission_level(identity.user_id)
    return _ok(
        {
            level: [MenuResponse.from_menu(menu) for menu in menus]
            for level, menus in buckets.items()
        }
    )


@router.get("/menus/access", response_model=Envelope, tags=["menus"])
def my_url_access(
    url: str = Query(..., min_length=1, max_length=2048),
    identity: Identity = Depends(get_identity),
):
    allowed = get_runtime().resolver.can_access_url(identity.user_id, url)
    return _ok({"url": url, "allowed": allowed})


@router.get("/menus/favorites", response_model=Envelope, tags=["menus"])
def my_favorites(identity: Identity = Depends(get_identity)):
    menus = get_runtime().menus.list_favorites(identity.user_id)
    return _ok([MenuResponse.from_menu(menu) for menu in menus])


@router.post("/menus/{menu_id}/favorite", response_model=Envelope, tags=["menus"])
def toggle_my_favorite(
    menu_id: str, identity: Identity = Depends(require_menu_action("VIEW"))
):
    is_favorite = get_runtime().menus.toggle_favorite(identity.user_id, menu_id)
    return _ok({"menu_id": menu_id, "is_favorite": is_favorite})


@router.get("/menus/{menu_id}/permissions", response_model=Envelope, tags=["menus"])
def my_menu_permissions(menu_id: str, identity: Identity = Depends(get_identity)):
    perms = get_runtime().gate.menu_permissions(identity, menu_id)
    return _ok(MenuPermissionsResponse.from_permissions(menu_id, perms))


# admin: permissions


@router.get("/admin/permissions", response_model=Envelope, tags=["admin"])
def admin_list_permissions(
    resource: Optional[str] = Query(None, max_length=128),
    principal: Identity = Depends(get_admin_identity),
):
    permissions = get_runtime().rbac.list_permissions(resource)
    return _ok([PermissionResponse.from_permission(p) for p in permissions])


@router.get("/admin/permissions/resources", response_model=Envelope, tags=["admin"])
def admin_list_resources(principal: Identity = Depends(get_admin_identity)):
    return _ok(get_runtime().rbac.list_resources())


@router.get("/admin/permissions/actions", response_model=Envelope, tags=["admin"])
def admin_list_actions(principal: Identity = Depends(get_admin_identity)):
    return _ok(get_runtime().rbac.list_actions())


@router.post("/admin/permissions", response_model=Envelope, status_code=201, tags=["admin"])
def admin_create_permission(
    body: PermissionRequest, principal: Identity = Depends(get_admin_identity)
):
    permission = get_runtime().rbac.create_permission(
        body.name,
        body.resource,
        body.action,
        display_name=body.display_name,
        description=body.description,
    )
    return _ok(PermissionResponse.from_permission(permission))


@router.post(
    "/admin/permissions/template", response_model=Envelope, status_code=201, tags=["admin"]
)
def admin_apply_permission_template(
    body: PermissionTemplateRequest, principal: Identity = Depends(get_admin_identity)
):
    created = get_runtime().rbac.create_from_template(body.template, body.resource)
    return _ok([PermissionResponse.from_permission(p) for p in created])


@router.get("/admin/permissions/{permission_id}", response_model=Envelope, tags=["admin"])
def admin_get_permission(
    permission_id: str, principal: Identity = Depends(get_admin_identity)
):
    permission = get_runtime().rbac.get_permission(permission_id)
    return _ok(PermissionResponse.from_permission(permission))


@router.patch("/admin/permissions/{permission_id}", response_model=Envelope, tags=["admin"])
def admin_update_permission(
    permission_id: str,
    body: PermissionUpdateRequest,
    principal: Identity = Depends(get_admin_identity),
):
    permission = get_runtime().rbac.update_permission(
        permission_id, **body.model_dump(exclude_unset=True)
    )
    return _ok(PermissionResponse.from_permission(permission))


@router.delete("/admin/permissions/{permission_id}", response_model=Envelope, tags=["admin"])
def admin_delete_permission(
    permission_id: str, principal: Identity = Depends(get_admin_identity)
):
    get_runtime().rbac.delete_permission(permission_id)
    return _ok({"deleted": True, "permission_id": permission_id})


# admin: roles


@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
def admin_list_roles(principal: Identity = Depends(get_admin_identity)):
    return _ok([RoleResponse.from_role(role) for role in get_runtime().rbac.list_roles()])


@router.post("/admin/roles", response_model=Envelope, status_code=201, tags=["admin"])
def admin_create_role(body: RoleRequest, principal: Identity = Depends(get_admin_identity)):
    role = get_runtime().rbac.create_role(
        body.name,
        display_name=body.display_name,
        description=body.description,
        permission_ids=body.permission_ids,
        is_active=body.is_active,
    )
    return _ok(RoleResponse.from_role(role))


@router.get("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
def admin_get_role(role_id: str, principal: Identity = Depends(get_admin_identity)):
    return _ok(RoleResponse.from_role(get_runtime().rbac.get_role(role_id)))


@router.patch("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
def admin_update_role(
    role_id: str, body: RoleUpdateRequest, principal: Identity = Depends(get_admin_identity)
):
    role = get_runtime().rbac.update_role(role_id, **body.model_dump(exclude_unset=True))
    return _ok(RoleResponse.from_role(role))


@router.delete("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
def admin_delete_role(role_id: str, principal: Identity = Depends(get_admin_identity)):
    get_runtime().rbac.delete_role(role_id)
    return _ok({"deleted": True, "role_id": role_id})


@router.get("/admin/roles/{role_id}/permissions", response_model=Envelope, tags=["admin"])
def admin_role_permissions(role_id: str, principal: Identity = Depends(get_admin_identity)):
    permissions = get_runtime().rbac.role_permissions(role_id)
    return _ok([PermissionResponse.from_permission(p) for p in permissions])


@router.put("/admin/roles/{role_id}/permissions", response_model=Envelope, tags=["admin"])
def admin_assign_role_permissions(
    role_id: str,
    body: RolePermissionsRequest,
    principal: Identity = Depends(get_admin_identity),
):
    role = get_runtime().rbac.assign_permissions(role_id, body.permission_ids)
    return _ok(RoleResponse.from_role(role))


@router.delete(
    "/admin/roles/{role_id}/permissions/{permission_id}",
    response_model=Envelope,
    tags=["admin"],
)
def admin_revoke_role_permission(
    role_id: str, permission_id: str, principal: Identity = Depends(get_admin_identity)
):
    role = get_runtime().rbac.revoke_permission(role_id, permission_id)
    return _ok(RoleResponse.from_role(role))


@router.post(
    "/admin/roles/{role_id}/duplicate", response_model=Envelope, status_code=201, tags=["admin"]
)
def admin_duplicate_role(
    role_id: str,
    body: DuplicateRoleRequest,
    principal: Identity = Depends(get_admin_identity),
):
    role = get_runtime().rbac.duplicate_role(role_id, body.name)
    return _ok(RoleResponse.from_role(role))


@router.get("/admin/roles/{role_id}/users", response_model=Envelope, tags=["admin"])
def admin_role_users(role_id: str, principal: Identity = Depends(get_admin_identity)):
    users = get_runtime().rbac.users_with_role(role_id)
    return _ok([UserResponse.from_user(user) for user in users])


@router.get("/admin/roles/{role_id}/menu-permissions", response_model=Envelope, tags=["admin"])
def admin_role_menu_permissions(
    role_id: str, principal: Identity = Depends(get_admin_identity)
):
    runtime = get_runtime()
    runtime.rbac.get_role(role_id)
    records = runtime.menus.list_role_menu_permissions(role_id=role_id)
    return _ok([RoleMenuPermissionResponse.from_record(r) for r in records])


@router.put(
    "/admin/roles/{role_id}/menu-permissions/{menu_id}",
    response_model=Envelope,
    tags=["admin"],
)
def admin_grant_role_menu_permission(
    role_id: str,
    menu_id: str,
    body: MenuFlagsRequest,
    principal: Identity = Depends(get_admin_identity),
):
    record = get_runtime().menus.grant_role_menu_permission(role_id, menu_id, body.flags())
    return _ok(RoleMenuPermissionResponse.from_record(record))


@router.delete(
    "/admin/roles/{role_id}/menu-permissions/{menu_id}",
    response_model=Envelope,
    tags=["admin"],
)
def admin_revoke_role_menu_permission(
    role_id: str, menu_id: str, principal: Identity = Depends(get_admin_identity)
):
    get_runtime().menus.revoke_role_menu_permission(role_id, menu_id)
    return _ok({"deleted": True, "role_id": role_id, "menu_id": menu_id})


# admin: menus


@router.get("/admin/menus", response_model=Envelope, tags=["admin"])
def admin_list_menus(principal: Identity = Depends(get_admin_identity)):
    return _ok([MenuResponse.from_menu(menu) for menu in get_runtime().menus.list_menus()])


@router.get("/admin/menus/tree", response_model=Envelope, tags=["admin"])
def admin_menu_tree(principal: Identity = Depends(get_admin_identity)):
    return _ok([_node_to_response(node) for node in get_runtime().menus.menu_tree()])


@router.post("/admin/menus", response_model=Envelope, status_code=201, tags=["admin"])
def admin_create_menu(body: MenuRequest, principal: Identity = Depends(get_admin_identity)):
    menu = get_runtime().menus.create_menu(**body.model_dump())
    return _ok(MenuResponse.from_menu(menu))


@router.post("/admin/menus/copy-permissions", response_model=Envelope, tags=["admin"])
def admin_copy_menu_permissions(
    body: CopyMenuPermissionsRequest, principal: Identity = Depends(get_admin_identity)
):
    copied = get_runtime().menus.copy_role_menu_permissions(
        body.source_menu_id, body.target_menu_id
    )
    return _ok({"copied": copied})


@router.get("/admin/menus/{menu_id}", response_model=Envelope, tags=["admin"])
def admin_get_menu(menu_id: str, principal: Identity = Depends(get_admin_identity)):
    return _ok(MenuResponse.from_menu(get_runtime().menus.get_menu(menu_id)))


@router.patch("/admin/menus/{menu_id}", response_model=Envelope, tags=["admin"])
def admin_update_menu(
    menu_id: str, body: MenuUpdateRequest, principal: Identity = Depends(get_admin_identity)
):
    menu = get_runtime().menus.update_menu(menu_id, body.changes())
    return _ok(MenuResponse.from_menu(menu))


@router.delete("/admin/menus/{menu_id}", response_model=Envelope, tags=["admin"])
def admin_delete_menu(menu_id: str, principal: Identity = Depends(get_admin_identity)):
    removed = get_runtime().menus.delete_menu(menu_id)
    return _ok({"deleted": True, "menu_ids": removed})


@router.get("/admin/menus/{menu_id}/role-permissions", response_model=Envelope, tags=["admin"])
def admin_menu_role_permissions(
    menu_id: str, principal: Identity = Depends(get_admin_identity)
):
    runtime = get_runtime()
    runtime.menus.get_menu(menu_id)
    records = runtime.menus.list_role_menu_permissions(menu_id=menu_id)
    return _ok([RoleMenuPermissionResponse.from_record(r) for r in records])


# admin: users


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: Identity = Depends(get_admin_identity),
):
    users = get_runtime().users.list_users(limit=limit, offset=offset)
    return _ok(
        UserListResponse(
            items=[UserResponse.from_user(user) for user in users],
            limit=limit,
            offset=offset,
        )
    )


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
def admin_get_user(user_id: str, principal: Identity = Depends(get_admin_identity)):
    return _ok(_profile_to_response(get_runtime().users.get_user(user_id)))


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
def admin_update_user(
    user_id: str, body: UserUpdateRequest, principal: Identity = Depends(get_admin_identity)
):
    user = get_runtime().users.update_profile(user_id, **body.model_dump(exclude_unset=True))
    return _ok(UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
def admin_deactivate_user(user_id: str, principal: Identity = Depends(get_admin_identity)):
    if user_id == principal.user_id:
        raise ValidationError("administrators cannot deactivate themselves")
    return _ok(UserResponse.from_user(get_runtime().users.deactivate_user(user_id)))


@router.post("/admin/users/{user_id}/reactivate", response_model=Envelope, tags=["admin"])
def admin_reactivate_user(user_id: str, principal: Identity = Depends(get_admin_identity)):
    return _ok(UserResponse.from_user(get_runtime().users.reactivate_user(user_id)))


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
def admin_unlock_user(user_id: str, principal: Identity = Depends(get_admin_identity)):
    return _ok(UserResponse.from_user(get_runtime().users.unlock_user(user_id)))


@router.post("/admin/users/{user_id}/roles", response_model=Envelope, tags=["admin"])
def admin_assign_user_role(
    user_id: str, body: UserRoleRequest, principal: Identity = Depends(get_admin_identity)
):
    user = get_runtime().users.assign_role(user_id, body.role_id)
    return _ok(UserResponse.from_user(user))


@router.delete("/admin/users/{user_id}/roles/{role_id}", response_model=Envelope, tags=["admin"])
def admin_remove_user_role(
    user_id: str, role_id: str, principal: Identity = Depends(get_admin_identity)
):
    user = get_runtime().users.remove_role(user_id, role_id)
    return _ok(UserResponse.from_user(user))


@router.get("/admin/users/{user_id}/menu-permissions", response_model=Envelope, tags=["admin"])
def admin_user_menu_permissions(
    user_id: str, principal: Identity = Depends(get_admin_identity)
):
    resolved = get_runtime().resolver.resolve_all(user_id)
    return _ok(
        [
            MenuPermissionsResponse.from_permissions(menu_id, perms)
            for menu_id, perms in resolved.items()
        ]
    )


@router.post(
    "/admin/users/{user_id}/permissions/check", response_model=Envelope, tags=["admin"]
)
def admin_check_user_permissions(
    user_id: str,
    body: PermissionCheckRequest,
    principal: Identity = Depends(get_admin_identity),
):
    results = get_runtime().resolver.batch_check(
        user_id, [(check.resource, check.action) for check in body.checks]
    )
    return _ok(results)


@router.get(
    "/admin/users/{user_id}/menu-overrides/{menu_id}", response_model=Envelope, tags=["admin"]
)
def admin_get_user_override(
    user_id: str, menu_id: str, principal: Identity = Depends(get_admin_identity)
):
    record = get_runtime().menus.get_user_menu_record(user_id, menu_id)
    if record is None:
        raise NotFoundError(
            "user menu record not found", detail={"user_id": user_id, "menu_id": menu_id}
        )
    return _ok(UserMenuPermissionResponse.from_record(record))


@router.put(
    "/admin/users/{user_id}/menu-overrides/{menu_id}", response_model=Envelope, tags=["admin"]
)
def admin_set_user_override(
    user_id: str,
    menu_id: str,
    body: MenuFlagsRequest,
    principal: Identity = Depends(get_admin_identity),
):
    record = get_runtime().menus.set_user_override(user_id, menu_id, body.flags())
    return _ok(UserMenuPermissionResponse.from_record(record))


@router.delete(
    "/admin/users/{user_id}/menu-overrides/{menu_id}", response_model=Envelope, tags=["admin"]
)
def admin_clear_user_override(
    user_id: str, menu_id: str, principal: Identity = Depends(get_admin_identity)
):
    get_runtime().menus.clear_user_override(user_id, menu_id)
    return _ok({"deleted": True, "user_id": user_id, "menu_id": menu_id})


__all__ = ["get_admin_identity", "get_identity", "router"]
