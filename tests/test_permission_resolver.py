"""Tests for effective menu permission resolution."""

import pytest

from admincore.service.errors import NotFoundError
from admincore.storage.models import MenuPermissions, MenuType, PermissionAction


@pytest.fixture
def menu(runtime):
    return runtime.store.create_menu("reports", url="/reports", menu_type=MenuType.INTERNAL)


class TestTypeDefaults:
    """Menu-type defaults apply when no role record exists."""

    @pytest.mark.parametrize(
        "menu_type, expected",
        [
            (MenuType.PUBLIC, {"can_view", "can_access"}),
            (MenuType.INTERNAL, {"can_view", "can_access"}),
            (MenuType.ADMIN, set()),
            (MenuType.EXTERNAL, {"can_view", "can_access"}),
            (MenuType.GROUP, {"can_view", "can_access"}),
            (MenuType.DIVIDER, {"can_view", "can_access"}),
        ],
    )
    def test_plain_user(self, runtime, make_user, menu_type, expected):
        user = make_user()
        node = runtime.store.create_menu("node", menu_type=menu_type)

        perms = runtime.resolver.resolve(user.id, node.id)

        granted = {flag for flag, value in perms.as_dict().items() if value}
        assert granted == expected

    def test_manager_on_internal(self, runtime, make_user, menu):
        user = make_user(roles=["ROLE_MANAGER"])

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms == MenuPermissions(
            can_view=True,
            can_access=True,
            can_create=True,
            can_update=True,
            can_execute=True,
        )

    def test_manager_on_admin_menu_sees_only(self, runtime, make_user):
        user = make_user(roles=["ROLE_MANAGER"])
        node = runtime.store.create_menu("settings", menu_type=MenuType.ADMIN)

        perms = runtime.resolver.resolve(user.id, node.id)

        assert perms == MenuPermissions(can_view=True)


class TestAdminBypass:
    """Admins receive everything on active, visible menus."""

    def test_admin_role_gets_full(self, runtime, make_user):
        user = make_user(roles=["ROLE_ADMIN"])
        node = runtime.store.create_menu("settings", menu_type=MenuType.ADMIN)

        assert runtime.resolver.resolve(user.id, node.id) == MenuPermissions.full()

    def test_admin_action_permission_gets_full(self, runtime, make_user, menu):
        admin_perm = runtime.store.get_permission_by_resource_action(
            "SYSTEM", PermissionAction.ADMIN
        )
        role = runtime.rbac.create_role("ROLE_OPERATOR", permission_ids=[admin_perm.id])
        user = make_user()
        runtime.rbac.assign_role_to_user(user.id, role.id)

        assert runtime.resolver.resolve(user.id, menu.id) == MenuPermissions.full()

    def test_inactive_menu_blocks_admin(self, runtime, make_user):
        user = make_user(roles=["ROLE_ADMIN"])
        node = runtime.store.create_menu("old", is_active=False)

        assert runtime.resolver.resolve(user.id, node.id) == MenuPermissions.none()

    def test_invisible_menu_blocks_admin(self, runtime, make_user):
        user = make_user(roles=["ROLE_ADMIN"])
        node = runtime.store.create_menu("hidden", is_visible=False)

        assert runtime.resolver.resolve(user.id, node.id) == MenuPermissions.none()

    def test_inactive_admin_role_does_not_bypass(self, runtime, make_user):
        user = make_user(roles=["ROLE_ADMIN"])
        admin_role = runtime.store.get_role_by_name("ROLE_ADMIN")
        runtime.store.update_role(admin_role.id, is_active=False)
        node = runtime.store.create_menu("settings", menu_type=MenuType.ADMIN)

        assert runtime.resolver.resolve(user.id, node.id) == MenuPermissions.none()


class TestRoleRecords:
    """A role's menu record replaces that role's type default; roles are OR-ed."""

    def test_record_replaces_defaults(self, runtime, make_user, menu):
        user = make_user()
        role = runtime.store.get_role_by_name("ROLE_USER")
        runtime.menus.grant_role_menu_permission(role.id, menu.id, {"can_view": True})

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms == MenuPermissions(can_view=True)

    def test_records_are_or_combined(self, runtime, make_user, menu):
        user = make_user(roles=["ROLE_MANAGER"])
        user_role = runtime.store.get_role_by_name("ROLE_USER")
        manager_role = runtime.store.get_role_by_name("ROLE_MANAGER")
        runtime.menus.grant_role_menu_permission(
            user_role.id, menu.id, {"can_view": True, "can_access": True}
        )
        runtime.menus.grant_role_menu_permission(
            manager_role.id, menu.id, {"can_delete": True}
        )

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms == MenuPermissions(can_view=True, can_access=True, can_delete=True)

    def test_inactive_role_record_ignored(self, runtime, make_user, menu):
        role = runtime.rbac.create_role("ROLE_AUDITOR")
        user = make_user()
        runtime.rbac.assign_role_to_user(user.id, role.id)
        runtime.menus.grant_role_menu_permission(role.id, menu.id, {"can_delete": True})
        runtime.rbac.update_role(role.id, is_active=False)

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms == MenuPermissions(can_view=True, can_access=True)

    def test_lower_role_record_keeps_manager_defaults(self, runtime, make_user, menu):
        user = make_user(roles=["ROLE_MANAGER"])
        before = runtime.resolver.resolve(user.id, menu.id)
        user_role = runtime.store.get_role_by_name("ROLE_USER")
        runtime.menus.grant_role_menu_permission(
            user_role.id, menu.id, {"can_view": True, "can_access": True}
        )

        after = runtime.resolver.resolve(user.id, menu.id)

        assert after == before
        assert after.can_create and after.can_update and after.can_execute

    def test_role_record_restricts_only_that_role(self, runtime, make_user, menu):
        manager = make_user(email="manager@example.com", roles=["ROLE_MANAGER"])
        member = make_user(email="member@example.com")
        user_role = runtime.store.get_role_by_name("ROLE_USER")
        runtime.menus.grant_role_menu_permission(user_role.id, menu.id, {"can_view": True})

        assert runtime.resolver.resolve(member.id, menu.id) == MenuPermissions(can_view=True)
        assert runtime.resolver.resolve(manager.id, menu.id).can_access is True


class TestUserOverrides:
    """User overrides replace individual derived flags."""

    def test_override_can_revoke(self, runtime, make_user, menu):
        user = make_user()
        runtime.menus.set_user_override(user.id, menu.id, {"can_access": False})

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms == MenuPermissions(can_view=True, can_access=False)

    def test_override_can_grant(self, runtime, make_user, menu):
        user = make_user()
        runtime.menus.set_user_override(user.id, menu.id, {"can_delete": True})

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms.can_delete is True
        assert perms.can_view is True

    def test_override_revoke_applies_over_role_grant(self, runtime, make_user, menu):
        """A role grants UPDATE but the override denies it, so the override wins."""
        user = make_user(roles=["ROLE_MANAGER"])
        manager_role = runtime.store.get_role_by_name("ROLE_MANAGER")
        runtime.menus.grant_role_menu_permission(
            manager_role.id, menu.id, {"can_view": True, "can_update": True}
        )
        runtime.menus.set_user_override(user.id, menu.id, {"can_update": False})

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms.can_update is False
        assert perms.can_view is True

    def test_favorite_only_record_does_not_override(self, runtime, make_user, menu):
        user = make_user()
        runtime.menus.toggle_favorite(user.id, menu.id)

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms == MenuPermissions(can_view=True, can_access=True)

    def test_cleared_override_restores_defaults(self, runtime, make_user, menu):
        user = make_user()
        runtime.menus.set_user_override(user.id, menu.id, {"can_view": False})
        runtime.menus.clear_user_override(user.id, menu.id)

        perms = runtime.resolver.resolve(user.id, menu.id)

        assert perms == MenuPermissions(can_view=True, can_access=True)

    def test_override_does_not_apply_to_admin_bypass(self, runtime, make_user, menu):
        user = make_user(roles=["ROLE_ADMIN"])
        runtime.menus.set_user_override(user.id, menu.id, {"can_view": False})

        assert runtime.resolver.resolve(user.id, menu.id) == MenuPermissions.full()


class TestQueries:
    """Tests for derived permission queries."""

    def test_unknown_user_or_menu(self, runtime, make_user, menu):
        user = make_user()

        with pytest.raises(NotFoundError):
            runtime.resolver.resolve(user.id, "missing")
        with pytest.raises(NotFoundError):
            runtime.resolver.resolve("missing", menu.id)

    def test_has_menu_permission(self, runtime, make_user, menu):
        user = make_user()

        assert runtime.resolver.has_menu_permission(user.id, menu.id, "view") is True
        assert runtime.resolver.has_menu_permission(user.id, menu.id, "DELETE") is False
        assert runtime.resolver.has_menu_permission(user.id, menu.id, "FLY") is False

    def test_can_access_url(self, runtime, make_user):
        user = make_user()
        runtime.store.create_menu("secret", url="/secret", menu_type=MenuType.ADMIN)

        assert runtime.resolver.can_access_url(user.id, "/dashboard") is True
        assert runtime.resolver.can_access_url(user.id, "/secret") is False
        assert runtime.resolver.can_access_url(user.id, "/not-mapped") is True

    def test_can_access_url_denies_unmapped_when_configured(self, runtime, make_user):
        user = make_user()
        runtime.resolver.settings = runtime.settings.model_copy(
            update={"allow_unmapped_urls": False}
        )

        assert runtime.resolver.can_access_url(user.id, "/not-mapped") is False

    def test_accessible_menus_filters_by_type(self, runtime, make_user):
        user = make_user()

        accessible = runtime.resolver.accessible_menus(user.id)
        internal = runtime.resolver.accessible_menus(user.id, MenuType.INTERNAL)

        names = {m.name for m in accessible}
        assert "settings" not in names
        assert {"dashboard", "system", "users"} <= names
        assert all(m.menu_type == MenuType.INTERNAL for m in internal)
        assert "system" not in {m.name for m in internal}

    def test_menus_by_permission_level(self, runtime, make_user):
        admin = make_user("boss@x.com", roles=["ROLE_ADMIN"])
        user = make_user("plain@x.com")

        admin_levels = runtime.resolver.menus_by_permission_level(admin.id)
        user_levels = runtime.resolver.menus_by_permission_level(user.id)

        assert set(admin_levels) == {"ADMIN", "EDITABLE", "ACCESSIBLE", "VIEW_ONLY"}
        assert len(admin_levels["ADMIN"]) == len(runtime.store.list_menus())
        assert user_levels["ADMIN"] == []
        assert "dashboard" in {m.name for m in user_levels["ACCESSIBLE"]}

    def test_has_permission_and_batch_check(self, runtime, make_user):
        user = make_user()
        admin = make_user("boss@x.com", roles=["ROLE_ADMIN"])

        assert runtime.resolver.has_permission(user.id, "SYSTEM", "view") is True
        assert runtime.resolver.has_permission(user.id, "SYSTEM", "DELETE") is False
        assert runtime.resolver.has_permission(admin.id, "ANYTHING", "DELETE") is True
        assert runtime.resolver.has_permission(user.id, "SYSTEM", "bogus") is False
        assert runtime.resolver.batch_check(
            user.id, [("SYSTEM", "VIEW"), ("SYSTEM", "UPDATE")]
        ) == {"SYSTEM:VIEW": True, "SYSTEM:UPDATE": False}

    def test_validate_menu_hierarchy_permissions(self, runtime, make_user):
        manager = make_user("m@x.com", roles=["ROLE_MANAGER"])
        user = make_user("u@x.com")
        parent = runtime.store.create_menu("parent")
        child = runtime.store.create_menu("child", parent_id=parent.id)

        assert runtime.resolver.validate_menu_hierarchy_permissions(
            manager.id, parent.id, child.id
        ) is True
        assert runtime.resolver.validate_menu_hierarchy_permissions(
            user.id, parent.id, child.id
        ) is False

    def test_resolve_all_covers_every_menu(self, runtime, make_user):
        user = make_user()

        resolved = runtime.resolver.resolve_all(user.id)

        assert set(resolved) == {m.id for m in runtime.store.list_menus()}
